"""Wiring layer: one object owning the stores, the retrieval stack and both engines."""
from __future__ import annotations

from pathlib import Path
from typing import Any

from langchain_core.embeddings import Embeddings
from langchain_core.runnables import Runnable

from .cancellation import OperationGate
from .chunk_index import EmbeddingChunkIndex
from .config import DATA_DIR, LIBRARY_DB_PATH, RAG_INDEX_DB_PATH, STUDY_HUB_DB_PATH
from .errors import EntityNotFoundError
from .metrics import ModelCallMetrics
from .model_client import ModelClient
from .notebooks import NoteAutosaver, NotebookService
from .observability import get_logger
from .quiz_engine import QuizSessionEngine
from .retrieval import ChunkRetriever, ChunkSearchBackend
from .safe_offset import SafeOffsetResolver, prepare_chapter_metrics
from .storage import BookLibrary, ProfileDirectory, StudyHubStore
from .thread_engine import ThreadEngine

logger = get_logger(__name__)


class ReadingCompanion:
    """
    Owns per-process state for the reading companion.
    UI code stays focused on rendering while this class wires the components.
    """

    def __init__(
        self,
        *,
        data_dir: str | Path | None = None,
        chat_model: Runnable | None = None,
        embeddings: Embeddings | None = None,
        search_backend: ChunkSearchBackend | None = None,
        profiles: ProfileDirectory | None = None,
    ):
        base = Path(data_dir) if data_dir is not None else None
        self.study_hub = StudyHubStore(base / "study_hub.sqlite" if base else STUDY_HUB_DB_PATH)
        self.library = BookLibrary(base / "library.sqlite" if base else LIBRARY_DB_PATH)
        self.index = EmbeddingChunkIndex(
            base / "rag_index.sqlite" if base else RAG_INDEX_DB_PATH,
            embeddings=embeddings,
        )
        self.profiles = profiles or ProfileDirectory()
        self.metrics = ModelCallMetrics(base or DATA_DIR)

        self.resolver = SafeOffsetResolver(self.library)
        self.retriever = ChunkRetriever(search_backend or self.index, self.resolver)
        self.model = ModelClient(chat_model, metrics=self.metrics)
        self.gate = OperationGate()

        self.notebooks = NotebookService(self.study_hub, self.library)
        self.autosaver = NoteAutosaver(self.notebooks)
        self.threads = ThreadEngine(self.notebooks, self.profiles, self.retriever, self.model, gate=self.gate)
        self.quizzes = QuizSessionEngine(
            self.study_hub, self.library, self.profiles, self.retriever, self.model, gate=self.gate
        )

    async def index_book(self, book_id: str) -> int:
        """
        Indexes the whole book and returns the reader's current safe offset.
        Spoiler safety is enforced at query time by the retriever's ceiling.
        """
        book = self.library.get_book(book_id)
        if book is None:
            raise EntityNotFoundError("book", book_id)
        stored = self.library.get_stored_content(book_id)
        if stored is None or not stored.chapters:
            return 0
        total = prepare_chapter_metrics(stored.chapters).sanitized_total_length
        await self.index.index_book(book_id, stored.chapters, total)
        safe_offset = self.resolver.resolve(book, stored)
        logger.info("book_indexed", book_id=book_id, indexed_up_to=total, safe_offset=safe_offset)
        return safe_offset

    def export_archive(self) -> dict[str, Any]:
        return {"study_hub": self.study_hub.export_archive(), "rag_index": self.index.export_archive()}

    def restore_archive(self, payload: dict[str, Any]):
        self.study_hub.restore_archive(payload.get("study_hub"))
        self.index.restore_archive(payload.get("rag_index"))

    def storage_usage_bytes(self) -> dict[str, int]:
        usage = self.study_hub.storage_usage_bytes()
        usage["rag_index_bytes"] = self.index.storage_usage_bytes()
        usage["total_bytes"] += usage["rag_index_bytes"]
        return usage

    def close(self):
        self.autosaver.flush()
        self.study_hub.close()
        self.library.close()
        self.index.close()
        logger.info("companion_closed")
