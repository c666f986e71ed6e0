"""
Embedding-backed chunk index for spoiler-bounded semantic search.

Books are split into overlapping windows of sanitised chapter text, embedded
through a LangChain `Embeddings` model and stored in SQLite. Searches only see
chunks ending at or before each book's ceiling.
"""
from __future__ import annotations

import asyncio
import hashlib
import sqlite3
from pathlib import Path
from typing import Any, Iterable

import numpy as np
from langchain_core.embeddings import Embeddings
from langchain_huggingface import HuggingFaceEmbeddings

from .config import (
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    DEFAULT_SEARCH_PER_BOOK_TOP_K,
    DEFAULT_SEARCH_TOP_K,
    EMBED_BATCH_SIZE,
    EMBEDDING_DEVICE,
    EMBEDDING_MODEL_NAME,
    KEYWORD_BOOST_WEIGHT,
    MAX_QUERY_TERMS,
    MIN_CHUNK_TEXT_LENGTH,
    RAG_INDEX_DB_PATH,
)
from .db_migrations import SqliteMigration, SqliteStore
from .errors import RetrievalError
from .models import Chapter, RetrievedChunk, now_ms
from .observability import get_logger
from .safe_offset import prepare_chapter_metrics
from .tokenization import compute_keyword_boost, extract_query_terms

logger = get_logger(__name__)

CHUNK_STEP = CHUNK_SIZE - CHUNK_OVERLAP
_EMBEDDING_MODEL = None


def get_embeddings() -> Embeddings:
    global _EMBEDDING_MODEL
    if _EMBEDDING_MODEL is None:
        _EMBEDDING_MODEL = HuggingFaceEmbeddings(
            model_name=EMBEDDING_MODEL_NAME,
            model_kwargs={"device": EMBEDDING_DEVICE},
            encode_kwargs={"normalize_embeddings": True},
        )
    return _EMBEDDING_MODEL


def chunk_book_text(
    book_id: str,
    chapters: list[Chapter],
    max_offset: int,
    start_exclusive: int = 0,
) -> list[RetrievedChunk]:
    """
    Splits sanitised chapters into CHUNK_SIZE windows stepping CHUNK_STEP.

    Windows are cut at `max_offset`; windows ending at or before
    `start_exclusive` are skipped so indexing can resume incrementally.
    """
    upper = max(0, int(max_offset))
    lower = max(0, int(start_exclusive))
    if upper <= lower:
        return []

    chunks: list[RetrievedChunk] = []
    for chapter in prepare_chapter_metrics(chapters).chapters:
        if chapter.end_offset <= lower:
            continue
        if chapter.start_offset >= upper:
            break
        chapter_len = len(chapter.text)
        for pos in range(0, chapter_len, CHUNK_STEP):
            start = chapter.start_offset + pos
            if start >= upper:
                break
            end = min(start + CHUNK_SIZE, chapter.end_offset)
            effective_end = min(end, upper)
            if effective_end <= lower:
                continue
            text = chapter.text[pos : pos + (effective_end - start)]
            if len(text) < MIN_CHUNK_TEXT_LENGTH:
                continue
            chunks.append(
                RetrievedChunk(
                    id=f"{book_id}_ch{chapter.chapter_index}_{pos}",
                    book_id=book_id,
                    chapter_index=chapter.chapter_index,
                    text=text,
                    start_offset=start,
                    end_offset=effective_end,
                )
            )
    return chunks


def content_signature(chapters: list[Chapter]) -> str:
    """Hash over chapter shapes; a change forces a rebuild of the book's index."""
    digest = hashlib.sha1()
    prepared = prepare_chapter_metrics(chapters).chapters
    digest.update(str(len(prepared)).encode("utf-8"))
    for chapter, source in zip(prepared, chapters):
        head = chapter.text[:80]
        tail = chapter.text[-80:]
        digest.update(
            f"{chapter.chapter_index}|{source.title}|{len(chapter.text)}|{head}|{tail}".encode("utf-8")
        )
    return digest.hexdigest()[:16]


def _to_blob(vector: Iterable[float]) -> bytes:
    return np.asarray(list(vector), dtype=np.float32).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def _cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    query_norm = float(np.linalg.norm(query)) or 1.0
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


class EmbeddingChunkIndex(SqliteStore):
    component = "rag_index"

    def __init__(self, db_path: str | Path | None = None, embeddings: Embeddings | None = None):
        super().__init__(db_path or RAG_INDEX_DB_PATH)
        self._embeddings = embeddings
        self._index_locks: dict[str, asyncio.Lock] = {}

    def migrations(self) -> list[SqliteMigration]:
        return [
            SqliteMigration(
                version=1,
                name="create_rag_index_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS rag_chunks (
                        chunk_id TEXT PRIMARY KEY,
                        book_id TEXT NOT NULL,
                        chapter_index INTEGER NOT NULL,
                        start_offset INTEGER NOT NULL,
                        end_offset INTEGER NOT NULL,
                        text TEXT NOT NULL,
                        embedding BLOB NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_rag_chunks_book_end ON rag_chunks(book_id, end_offset)",
                    """
                    CREATE TABLE IF NOT EXISTS rag_book_meta (
                        book_id TEXT PRIMARY KEY,
                        chunk_count INTEGER NOT NULL,
                        indexed_up_to INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL,
                        content_signature TEXT
                    )
                    """,
                ),
            ),
        ]

    # --- Model ---

    def is_model_ready(self) -> bool:
        return self._embeddings is not None

    def _get_model(self) -> Embeddings:
        if self._embeddings is None:
            logger.info("embedding_model_loading", model=EMBEDDING_MODEL_NAME)
            self._embeddings = get_embeddings()
        return self._embeddings

    # --- Metadata ---

    def get_book_meta(self, book_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT book_id, chunk_count, indexed_up_to, updated_at, content_signature
                FROM rag_book_meta WHERE book_id = ?
                """,
                (book_id,),
            ).fetchone()
        return dict(row) if row else None

    def indexed_up_to(self, book_id: str) -> int:
        meta = self.get_book_meta(book_id)
        return max(0, int(meta["indexed_up_to"])) if meta else 0

    def is_book_indexed(self, book_id: str) -> bool:
        meta = self.get_book_meta(book_id)
        return bool(meta and meta["chunk_count"] > 0)

    def delete_book(self, book_id: str):
        with self._connection() as conn:
            conn.execute("DELETE FROM rag_chunks WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM rag_book_meta WHERE book_id = ?", (book_id,))
        logger.info("rag_book_deleted", book_id=book_id)

    # --- Indexing ---

    async def index_book(self, book_id: str, chapters: list[Chapter], max_offset: int):
        """
        Embeds the book up to `max_offset`. Already indexed ranges are reused
        unless the chapter content changed since the last run.
        """
        if not book_id or not chapters:
            return
        lock = self._index_locks.setdefault(book_id, asyncio.Lock())
        async with lock:
            await self._index_book(book_id, chapters, max_offset)

    async def _index_book(self, book_id: str, chapters: list[Chapter], max_offset: int):
        total = prepare_chapter_metrics(chapters).sanitized_total_length
        target = min(max(0, int(max_offset)), total)
        if target <= 0:
            return

        signature = content_signature(chapters)
        meta = self.get_book_meta(book_id)
        if meta is None or meta["chunk_count"] <= 0 or meta["content_signature"] != signature:
            if meta is not None:
                logger.info("rag_index_rebuild", book_id=book_id)
            self.delete_book(book_id)
            indexed = 0
        else:
            indexed = max(0, int(meta["indexed_up_to"]))
        if target <= indexed:
            return

        pending = chunk_book_text(book_id, chapters, target, start_exclusive=indexed)
        model = self._get_model()
        for batch_start in range(0, len(pending), EMBED_BATCH_SIZE):
            batch = pending[batch_start : batch_start + EMBED_BATCH_SIZE]
            vectors = await model.aembed_documents([chunk.text for chunk in batch])
            self._store_chunks(batch, vectors)

        with self._connection() as conn:
            count = conn.execute(
                "SELECT COUNT(*) FROM rag_chunks WHERE book_id = ?", (book_id,)
            ).fetchone()[0]
            conn.execute(
                """
                INSERT OR REPLACE INTO rag_book_meta
                    (book_id, chunk_count, indexed_up_to, updated_at, content_signature)
                VALUES (?, ?, ?, ?, ?)
                """,
                (book_id, int(count), max(indexed, target), now_ms(), signature),
            )
        logger.info(
            "rag_book_indexed",
            book_id=book_id,
            new_chunks=len(pending),
            indexed_up_to=max(indexed, target),
        )

    def _store_chunks(self, chunks: list[RetrievedChunk], vectors: list[list[float]]):
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO rag_chunks
                    (chunk_id, book_id, chapter_index, start_offset, end_offset, text, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.id,
                        chunk.book_id,
                        chunk.chapter_index,
                        chunk.start_offset,
                        chunk.end_offset,
                        chunk.text,
                        _to_blob(vector),
                    )
                    for chunk, vector in zip(chunks, vectors)
                ],
            )

    # --- Search ---

    async def search(
        self,
        query: str,
        scope: dict[str, int | None],
        top_k: int = DEFAULT_SEARCH_TOP_K,
        per_book_top_k: int | None = None,
    ) -> list[RetrievedChunk]:
        """
        Ranks chunks of every scoped book whose end offset is within the book's
        ceiling (`None` means unbounded), keeps `per_book_top_k` per book and
        interleaves books round-robin, best book first.
        """
        top_k = max(1, int(top_k))
        entries = [(book_id, ceiling) for book_id, ceiling in scope.items() if book_id]
        if per_book_top_k is None:
            per_book_top_k = top_k if len(entries) <= 1 else DEFAULT_SEARCH_PER_BOOK_TOP_K
        per_book_top_k = max(1, int(per_book_top_k))
        if not entries or not query.strip():
            return []

        query_terms = extract_query_terms(query, limit=MAX_QUERY_TERMS)
        try:
            query_vector = np.asarray(await self._get_model().aembed_query(query), dtype=np.float32)
            ranked_by_book: dict[str, list[RetrievedChunk]] = {}
            for book_id, ceiling in entries:
                ranked = self._rank_book(book_id, ceiling, query_vector, query_terms, per_book_top_k)
                if ranked:
                    ranked_by_book[book_id] = ranked
        except (sqlite3.Error, ValueError, RuntimeError, OSError) as exc:
            raise RetrievalError(f"chunk search failed: {exc}") from exc

        return _interleave(ranked_by_book, top_k)

    def _rank_book(
        self,
        book_id: str,
        ceiling: int | None,
        query_vector: np.ndarray,
        query_terms: list[str],
        limit: int,
    ) -> list[RetrievedChunk]:
        if ceiling is not None and ceiling <= 0:
            return []
        sql = """
            SELECT chunk_id, chapter_index, start_offset, end_offset, text, embedding
            FROM rag_chunks WHERE book_id = ?
        """
        params: tuple = (book_id,)
        if ceiling is not None:
            sql += " AND end_offset <= ?"
            params = (book_id, int(ceiling))
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        if not rows:
            return []

        matrix = np.vstack([_from_blob(row["embedding"]) for row in rows])
        scores = _cosine_scores(query_vector, matrix)
        scored = [
            (float(scores[i]) + compute_keyword_boost(row["text"], query_terms) * KEYWORD_BOOST_WEIGHT, row)
            for i, row in enumerate(rows)
        ]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            RetrievedChunk(
                id=row["chunk_id"],
                book_id=book_id,
                chapter_index=row["chapter_index"],
                text=row["text"],
                start_offset=row["start_offset"],
                end_offset=row["end_offset"],
                score=score,
            )
            for score, row in scored[:limit]
        ]

    # --- Archive ---

    def export_archive(self) -> dict[str, list[dict[str, Any]]]:
        with self._connection() as conn:
            chunk_rows = conn.execute("SELECT * FROM rag_chunks ORDER BY book_id, start_offset").fetchall()
            meta_rows = conn.execute("SELECT * FROM rag_book_meta ORDER BY book_id").fetchall()
        chunks = []
        for row in chunk_rows:
            record = dict(row)
            record["embedding"] = _from_blob(record["embedding"]).tolist()
            chunks.append(record)
        return {"chunks": chunks, "meta": [dict(row) for row in meta_rows]}

    def restore_archive(self, payload: dict[str, Any] | None):
        """Replaces the whole index; malformed records are dropped."""
        if not payload:
            return
        chunks = [c for c in (payload.get("chunks") or []) if _valid_chunk_record(c)]
        metas = [m for m in (payload.get("meta") or []) if isinstance(m, dict) and m.get("book_id")]
        with self._connection() as conn:
            conn.execute("DELETE FROM rag_chunks")
            conn.execute("DELETE FROM rag_book_meta")
            conn.executemany(
                """
                INSERT OR REPLACE INTO rag_chunks
                    (chunk_id, book_id, chapter_index, start_offset, end_offset, text, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c["chunk_id"],
                        c["book_id"],
                        int(c["chapter_index"]),
                        int(c["start_offset"]),
                        int(c["end_offset"]),
                        c["text"],
                        _to_blob(c["embedding"]),
                    )
                    for c in chunks
                ],
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO rag_book_meta
                    (book_id, chunk_count, indexed_up_to, updated_at, content_signature)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        m["book_id"],
                        max(0, int(m.get("chunk_count") or 0)),
                        max(0, int(m.get("indexed_up_to") or 0)),
                        int(m.get("updated_at") or now_ms()),
                        m.get("content_signature"),
                    )
                    for m in metas
                ],
            )
        logger.info("rag_index_restored", chunks=len(chunks), books=len(metas))

    def storage_usage_bytes(self) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(text) + LENGTH(embedding)), 0) FROM rag_chunks"
            ).fetchone()
        return int(row[0])


def _valid_chunk_record(record: Any) -> bool:
    if not isinstance(record, dict):
        return False
    if not record.get("chunk_id") or not record.get("book_id") or not record.get("text"):
        return False
    try:
        start = int(record["start_offset"])
        end = int(record["end_offset"])
        chapter = int(record["chapter_index"])
    except (KeyError, TypeError, ValueError):
        return False
    embedding = record.get("embedding")
    return chapter >= 0 and 0 <= start <= end and isinstance(embedding, list) and len(embedding) > 0


def _interleave(ranked_by_book: dict[str, list[RetrievedChunk]], top_k: int) -> list[RetrievedChunk]:
    book_order = sorted(
        ranked_by_book,
        key=lambda book_id: ranked_by_book[book_id][0].score or 0.0,
        reverse=True,
    )
    queues = {book_id: list(ranked_by_book[book_id]) for book_id in book_order}
    selected: list[RetrievedChunk] = []
    while len(selected) < top_k:
        picked_any = False
        for book_id in book_order:
            if len(selected) >= top_k:
                break
            queue = queues[book_id]
            if not queue:
                continue
            selected.append(queue.pop(0))
            picked_any = True
        if not picked_any:
            break
    return selected
