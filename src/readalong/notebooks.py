"""
Notebook and note CRUD over the study-hub store, plus debounced note autosave.
"""
from __future__ import annotations

import asyncio

from .config import NOTE_AUTOSAVE_DELAY_S
from .errors import ConfigurationError, EntityNotFoundError
from .models import Note, Notebook, now_ms
from .observability import get_logger
from .storage import BookLibrary, StudyHubStore

logger = get_logger(__name__)

_UNSET = object()


class NotebookService:
    def __init__(self, store: StudyHubStore, library: BookLibrary):
        self.store = store
        self.library = library

    def _default_title(self, book_ids: list[str]) -> str:
        titles = []
        for book_id in book_ids:
            book = self.library.get_book(book_id)
            if book is not None and book.title:
                titles.append(book.title)
        return ", ".join(titles)

    def create_notebook(
        self,
        book_ids: list[str],
        persona_id: str,
        title: str = "",
        cover_url: str | None = None,
    ) -> Notebook:
        if not book_ids:
            raise ConfigurationError("a notebook needs at least one bound book")
        if not persona_id:
            raise ConfigurationError("a notebook needs a persona")
        notebook = Notebook(
            title=title.strip() or self._default_title(book_ids),
            persona_id=persona_id,
            bound_book_ids=list(book_ids),
            cover_url=cover_url or None,
        )
        self.store.put_notebook(notebook)
        logger.info("notebook_created", notebook_id=notebook.id, books=len(book_ids))
        return notebook

    def get_notebook(self, notebook_id: str) -> Notebook:
        notebook = self.store.get_notebook(notebook_id)
        if notebook is None:
            raise EntityNotFoundError("notebook", notebook_id)
        return notebook

    def get_note(self, notebook_id: str, note_id: str) -> tuple[Notebook, Note]:
        notebook = self.get_notebook(notebook_id)
        note = notebook.find_note(note_id)
        if note is None:
            raise EntityNotFoundError("note", note_id)
        return notebook, note

    def list_notebooks(self) -> list[Notebook]:
        return self.store.get_all_notebooks()

    def update_notebook(
        self,
        notebook_id: str,
        *,
        title: str | None = None,
        bound_book_ids: list[str] | None = None,
        persona_id: str | None = None,
        cover_url=_UNSET,
    ) -> Notebook:
        notebook = self.get_notebook(notebook_id)
        if bound_book_ids is not None:
            if not bound_book_ids:
                raise ConfigurationError("a notebook needs at least one bound book")
            notebook.bound_book_ids = list(bound_book_ids)
        if title is not None:
            notebook.title = title.strip() or self._default_title(notebook.bound_book_ids)
        if persona_id:
            notebook.persona_id = persona_id
        if cover_url is not _UNSET:
            notebook.cover_url = cover_url or None
        notebook.updated_at = now_ms()
        self.store.put_notebook(notebook)
        return notebook

    def set_paper_background(self, notebook_id: str, url: str | None) -> Notebook:
        notebook = self.get_notebook(notebook_id)
        notebook.paper_background = url or None
        notebook.updated_at = now_ms()
        self.store.put_notebook(notebook)
        return notebook

    def delete_notebook(self, notebook_id: str):
        self.store.delete_notebook(notebook_id)
        logger.info("notebook_deleted", notebook_id=notebook_id)

    def add_note(self, notebook_id: str, content: str = "") -> Note:
        """New notes go first."""
        notebook = self.get_notebook(notebook_id)
        note = Note(content=content)
        notebook.notes.insert(0, note)
        notebook.updated_at = now_ms()
        self.store.put_notebook(notebook)
        return note

    def save_note_content(self, notebook_id: str, note_id: str, content: str) -> Note:
        notebook, note = self.get_note(notebook_id, note_id)
        note.content = content
        note.updated_at = now_ms()
        notebook.updated_at = note.updated_at
        self.store.put_notebook(notebook)
        return note

    def delete_note(self, notebook_id: str, note_id: str):
        notebook = self.get_notebook(notebook_id)
        notebook.notes = [n for n in notebook.notes if n.id != note_id]
        notebook.updated_at = now_ms()
        self.store.put_notebook(notebook)


class NoteAutosaver:
    """
    One resettable timer per note. Every edit restarts the timer; the content
    is persisted only once the delay elapses without another edit.
    """

    def __init__(self, service: NotebookService, delay_s: float = NOTE_AUTOSAVE_DELAY_S):
        self.service = service
        self.delay_s = delay_s
        self._pending: dict[str, tuple[asyncio.TimerHandle, str, str]] = {}

    @property
    def pending_note_ids(self) -> list[str]:
        return list(self._pending)

    def schedule(self, notebook_id: str, note_id: str, content: str):
        self.cancel(note_id)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.delay_s, self._fire, note_id)
        self._pending[note_id] = (handle, notebook_id, content)

    def cancel(self, note_id: str):
        entry = self._pending.pop(note_id, None)
        if entry is not None:
            entry[0].cancel()

    def flush(self):
        """Persists every pending edit now."""
        for note_id in list(self._pending):
            handle, _, _ = self._pending[note_id]
            handle.cancel()
            self._fire(note_id)

    def _fire(self, note_id: str):
        entry = self._pending.pop(note_id, None)
        if entry is None:
            return
        _, notebook_id, content = entry
        try:
            self.service.save_note_content(notebook_id, note_id, content)
        except EntityNotFoundError as exc:
            logger.warning("note_autosave_dropped", notebook_id=notebook_id, note_id=note_id, error=str(exc))
            return
        logger.info("note_autosaved", notebook_id=notebook_id, note_id=note_id, chars=len(content))
