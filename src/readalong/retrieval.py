"""
Spoiler-safe two-phase retrieval over one or many books.

Phase 1 searches each book without a ceiling for a generous candidate pool and
keeps only chunks ending at or before the book's safe offset. When that
leaves fewer than `top_k` chunks, phase 2 searches with the ceiling itself and
tops up with unseen chunks. Returning fewer chunks is always preferred over
returning a spoiler.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from .cancellation import CancellationToken
from .config import (
    CANDIDATE_MULTIPLIER,
    CHUNK_SEPARATOR,
    GLOBAL_CANDIDATES_PER_BOOK,
    GLOBAL_FALLBACK_PER_BOOK,
    RETRIEVAL_QUERY_MAX_CHARS,
    console,
)
from .errors import OperationCancelled
from .models import RetrievedChunk
from .observability import get_logger
from .safe_offset import SafeOffsetResolver
from .tokenization import sanitize_text_for_prompt

logger = get_logger(__name__)


@runtime_checkable
class ChunkSearchBackend(Protocol):
    async def search(
        self,
        query: str,
        scope: dict[str, int | None],
        top_k: int,
        per_book_top_k: int | None = None,
    ) -> list[RetrievedChunk]:
        ...

    def is_model_ready(self) -> bool:
        ...


def build_retrieval_query(note_text: str | None, latest_user_reply: str | None = None) -> str:
    """Latest reply first, then the note; keeps the trailing RETRIEVAL_QUERY_MAX_CHARS characters."""
    reply = sanitize_text_for_prompt(latest_user_reply).strip()
    note = sanitize_text_for_prompt(note_text).strip()
    if reply and note:
        merged = f"{reply}\n{note}"
    else:
        merged = reply or note
    return merged[-RETRIEVAL_QUERY_MAX_CHARS:]


def _within_ceiling(chunk: RetrievedChunk, safe_offsets: dict[str, int]) -> bool:
    return chunk.end_offset <= safe_offsets.get(chunk.book_id, 0)


class ChunkRetriever:
    def __init__(self, backend: ChunkSearchBackend, resolver: SafeOffsetResolver):
        self.backend = backend
        self.resolver = resolver

    async def retrieve_context(
        self,
        query: str,
        book_ids: list[str],
        *,
        top_k: int = 3,
        per_book: bool = False,
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        """Retrieved chunk texts per book, joined with the visible separator."""
        chunks_by_book = await self.retrieve_chunks(
            query, book_ids, top_k=top_k, per_book=per_book, token=token
        )
        return {
            book_id: CHUNK_SEPARATOR.join(chunk.text for chunk in chunks)
            for book_id, chunks in chunks_by_book.items()
        }

    async def retrieve_chunks(
        self,
        query: str,
        book_ids: list[str],
        *,
        top_k: int = 3,
        per_book: bool = False,
        token: CancellationToken | None = None,
    ) -> dict[str, list[RetrievedChunk]]:
        normalized_query = (query or "").strip()
        if not normalized_query or not book_ids:
            return {}
        top_k = max(1, int(top_k))

        was_ready = self.backend.is_model_ready()
        if not was_ready:
            console.print("[yellow]Loading the semantic search model...[/yellow]")

        try:
            safe_offsets = self.resolver.resolve_many(book_ids)
            if per_book:
                result = await self._retrieve_per_book(normalized_query, safe_offsets, top_k, token)
            else:
                result = await self._retrieve_global(normalized_query, safe_offsets, top_k, token)
        except OperationCancelled:
            raise
        except Exception as exc:
            logger.warning(
                "retrieval_failed",
                book_ids=list(book_ids),
                per_book=per_book,
                error=str(exc),
                exc_info=True,
            )
            if not was_ready:
                console.print("[bold red]Semantic search model failed to load.[/bold red]")
            return {}

        if not was_ready and self.backend.is_model_ready():
            console.print("[green]Semantic search model loaded.[/green]")
        logger.info(
            "retrieval_completed",
            per_book=per_book,
            top_k=top_k,
            books=len(result),
            chunks=sum(len(chunks) for chunks in result.values()),
        )
        return result

    async def _search(
        self,
        query: str,
        scope: dict[str, int | None],
        top_k: int,
        per_book_top_k: int,
        token: CancellationToken | None,
    ) -> list[RetrievedChunk]:
        call = self.backend.search(query, scope, top_k, per_book_top_k)
        if token is None:
            return await call
        return await token.guard(call)

    async def _retrieve_per_book(
        self,
        query: str,
        safe_offsets: dict[str, int],
        top_k: int,
        token: CancellationToken | None,
    ) -> dict[str, list[RetrievedChunk]]:
        result: dict[str, list[RetrievedChunk]] = {}
        for book_id, safe_offset in safe_offsets.items():
            ceilings = {book_id: safe_offset}
            candidate_top_k = top_k * CANDIDATE_MULTIPLIER
            candidates = await self._search(query, {book_id: None}, candidate_top_k, candidate_top_k, token)
            selected = await self._complete_with_fallback(
                query,
                candidates,
                ceilings,
                top_k,
                fallback_per_book=top_k,
                token=token,
            )
            if selected:
                result[book_id] = selected
        return result

    async def _retrieve_global(
        self,
        query: str,
        safe_offsets: dict[str, int],
        top_k: int,
        token: CancellationToken | None,
    ) -> dict[str, list[RetrievedChunk]]:
        if not safe_offsets:
            return {}
        n_books = len(safe_offsets)
        candidate_top_k = max(top_k * CANDIDATE_MULTIPLIER, max(1, n_books) * GLOBAL_CANDIDATES_PER_BOOK)
        candidate_per_book = candidate_top_k if n_books <= 1 else GLOBAL_CANDIDATES_PER_BOOK
        unbounded: dict[str, int | None] = {book_id: None for book_id in safe_offsets}

        candidates = await self._search(query, unbounded, candidate_top_k, candidate_per_book, token)
        selected = await self._complete_with_fallback(
            query,
            candidates,
            safe_offsets,
            top_k,
            fallback_per_book=top_k if n_books <= 1 else GLOBAL_FALLBACK_PER_BOOK,
            token=token,
        )

        grouped: dict[str, list[RetrievedChunk]] = {}
        for chunk in selected:
            grouped.setdefault(chunk.book_id, []).append(chunk)
        return grouped

    async def _complete_with_fallback(
        self,
        query: str,
        candidates: list[RetrievedChunk],
        safe_offsets: dict[str, int],
        top_k: int,
        *,
        fallback_per_book: int,
        token: CancellationToken | None,
    ) -> list[RetrievedChunk]:
        selected: list[RetrievedChunk] = []
        seen: set[str] = set()
        for chunk in candidates:
            if len(selected) >= top_k:
                break
            if chunk.id in seen or not _within_ceiling(chunk, safe_offsets):
                continue
            seen.add(chunk.id)
            selected.append(chunk)

        if len(selected) < top_k:
            bounded: dict[str, int | None] = dict(safe_offsets)
            fallback = await self._search(query, bounded, top_k, fallback_per_book, token)
            for chunk in fallback:
                if len(selected) >= top_k:
                    break
                if chunk.id in seen or not _within_ceiling(chunk, safe_offsets):
                    continue
                seen.add(chunk.id)
                selected.append(chunk)
        return selected
