"""
Durable record stores.

* StudyHubStore: notebooks and quiz sessions keyed by id, with archive
  export/restore and storage usage accounting.
* BookLibrary: book references plus their stored content and reading position.
* ProfileDirectory: in-memory lookup of personas, characters and world-book
  entries maintained by the settings screens.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from .config import LIBRARY_DB_PATH, STUDY_HUB_DB_PATH
from .db_migrations import SqliteMigration, SqliteStore
from .models import (
    Book,
    Character,
    Notebook,
    Persona,
    QuizSession,
    ReadingPosition,
    StoredBookContent,
    WorldBookEntry,
)
from .observability import get_logger

logger = get_logger(__name__)


def _utf8_bytes(payload: str) -> int:
    return len(payload.encode("utf-8"))


class StudyHubStore(SqliteStore):
    """SQLite-backed put/get/get_all/delete for notebooks and quiz sessions."""

    component = "study_hub"

    def __init__(self, db_path: str | Path | None = None):
        super().__init__(db_path or STUDY_HUB_DB_PATH)

    def migrations(self) -> list[SqliteMigration]:
        return [
            SqliteMigration(
                version=1,
                name="create_study_hub_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS notebooks (
                        id TEXT PRIMARY KEY,
                        updated_at INTEGER NOT NULL,
                        payload_json TEXT NOT NULL
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS quiz_sessions (
                        id TEXT PRIMARY KEY,
                        created_at INTEGER NOT NULL,
                        completed_at INTEGER,
                        payload_json TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_notebooks_updated ON notebooks(updated_at)",
                    "CREATE INDEX IF NOT EXISTS idx_quiz_sessions_created ON quiz_sessions(created_at)",
                ),
            ),
        ]

    # --- Notebooks ---

    def put_notebook(self, notebook: Notebook):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO notebooks (id, updated_at, payload_json) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    updated_at = excluded.updated_at,
                    payload_json = excluded.payload_json
                """,
                (notebook.id, notebook.updated_at, notebook.model_dump_json()),
            )

    def get_notebook(self, notebook_id: str) -> Notebook | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload_json FROM notebooks WHERE id = ?",
                (notebook_id,),
            ).fetchone()
        return Notebook.model_validate_json(row["payload_json"]) if row else None

    def get_all_notebooks(self) -> list[Notebook]:
        """Most recently updated first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM notebooks ORDER BY updated_at DESC"
            ).fetchall()
        return [Notebook.model_validate_json(row["payload_json"]) for row in rows]

    def delete_notebook(self, notebook_id: str):
        with self._connection() as conn:
            conn.execute("DELETE FROM notebooks WHERE id = ?", (notebook_id,))

    # --- Quiz sessions ---

    def put_quiz_session(self, session: QuizSession):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO quiz_sessions (id, created_at, completed_at, payload_json) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    completed_at = excluded.completed_at,
                    payload_json = excluded.payload_json
                """,
                (session.id, session.created_at, session.completed_at, session.model_dump_json()),
            )

    def get_quiz_session(self, session_id: str) -> QuizSession | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload_json FROM quiz_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        return QuizSession.model_validate_json(row["payload_json"]) if row else None

    def get_all_quiz_sessions(self) -> list[QuizSession]:
        """Newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM quiz_sessions ORDER BY created_at DESC"
            ).fetchall()
        return [QuizSession.model_validate_json(row["payload_json"]) for row in rows]

    def delete_quiz_session(self, session_id: str):
        with self._connection() as conn:
            conn.execute("DELETE FROM quiz_sessions WHERE id = ?", (session_id,))

    # --- Archive ---

    def export_archive(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "notebooks": [nb.model_dump(mode="json") for nb in self.get_all_notebooks()],
            "quiz_sessions": [qs.model_dump(mode="json") for qs in self.get_all_quiz_sessions()],
        }

    def restore_archive(self, payload: dict[str, Any] | None):
        """
        Replaces both collections with the archive content in one transaction.
        Records that fail validation are skipped.
        """
        if not payload:
            return
        notebooks = list(_validated(Notebook, payload.get("notebooks")))
        sessions = list(_validated(QuizSession, payload.get("quiz_sessions")))
        with self._connection() as conn:
            conn.execute("DELETE FROM notebooks")
            conn.execute("DELETE FROM quiz_sessions")
            conn.executemany(
                "INSERT INTO notebooks (id, updated_at, payload_json) VALUES (?, ?, ?)",
                [(nb.id, nb.updated_at, nb.model_dump_json()) for nb in notebooks],
            )
            conn.executemany(
                "INSERT INTO quiz_sessions (id, created_at, completed_at, payload_json) VALUES (?, ?, ?, ?)",
                [(qs.id, qs.created_at, qs.completed_at, qs.model_dump_json()) for qs in sessions],
            )
        logger.info("study_hub_restored", notebooks=len(notebooks), quiz_sessions=len(sessions))

    def storage_usage_bytes(self) -> dict[str, int]:
        with self._connection() as conn:
            nb_rows = conn.execute("SELECT payload_json FROM notebooks").fetchall()
            qs_rows = conn.execute("SELECT payload_json FROM quiz_sessions").fetchall()
        notebooks_bytes = sum(_utf8_bytes(row["payload_json"]) for row in nb_rows)
        quiz_sessions_bytes = sum(_utf8_bytes(row["payload_json"]) for row in qs_rows)
        return {
            "notebooks_bytes": notebooks_bytes,
            "quiz_sessions_bytes": quiz_sessions_bytes,
            "total_bytes": notebooks_bytes + quiz_sessions_bytes,
        }


def _validated(model, items: Iterable[Any] | None):
    for item in items or []:
        try:
            record = model.model_validate(item)
        except ValidationError as exc:
            logger.warning("archive_record_skipped", model=model.__name__, error=str(exc))
            continue
        if record.id:
            yield record


class BookLibrary(SqliteStore):
    """Book references and their stored content (chapters, reading position, summary cards)."""

    component = "library"

    def __init__(self, db_path: str | Path | None = None):
        super().__init__(db_path or LIBRARY_DB_PATH)

    def migrations(self) -> list[SqliteMigration]:
        return [
            SqliteMigration(
                version=1,
                name="create_library_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS books (
                        id TEXT PRIMARY KEY,
                        payload_json TEXT NOT NULL
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS book_contents (
                        book_id TEXT PRIMARY KEY,
                        payload_json TEXT NOT NULL
                    )
                    """,
                ),
            ),
        ]

    def put_book(self, book: Book):
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO books (id, payload_json) VALUES (?, ?)",
                (book.id, book.model_dump_json()),
            )

    def get_book(self, book_id: str) -> Book | None:
        with self._connection() as conn:
            row = conn.execute("SELECT payload_json FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.model_validate_json(row["payload_json"]) if row else None

    def get_all_books(self) -> list[Book]:
        with self._connection() as conn:
            rows = conn.execute("SELECT payload_json FROM books ORDER BY id").fetchall()
        return [Book.model_validate_json(row["payload_json"]) for row in rows]

    def put_stored_content(self, book_id: str, content: StoredBookContent):
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO book_contents (book_id, payload_json) VALUES (?, ?)",
                (book_id, content.model_dump_json()),
            )

    def get_stored_content(self, book_id: str) -> StoredBookContent | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload_json FROM book_contents WHERE book_id = ?",
                (book_id,),
            ).fetchone()
        return StoredBookContent.model_validate_json(row["payload_json"]) if row else None

    def update_reading_position(self, book_id: str, position: ReadingPosition):
        content = self.get_stored_content(book_id) or StoredBookContent()
        self.put_stored_content(book_id, content.model_copy(update={"reading_position": position}))

    def delete_book(self, book_id: str):
        with self._connection() as conn:
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.execute("DELETE FROM book_contents WHERE book_id = ?", (book_id,))


class ProfileDirectory:
    """Read-mostly lookup of personas, characters and world-book entries."""

    def __init__(
        self,
        personas: Iterable[Persona] = (),
        characters: Iterable[Character] = (),
        world_book_entries: Iterable[WorldBookEntry] = (),
    ):
        self._personas = {p.id: p for p in personas}
        self._characters = {c.id: c for c in characters}
        self.world_book_entries: list[WorldBookEntry] = list(world_book_entries)

    def get_persona(self, persona_id: str | None) -> Persona | None:
        return self._personas.get(persona_id or "")

    def get_character(self, character_id: str | None) -> Character | None:
        return self._characters.get(character_id or "")

    def put_persona(self, persona: Persona):
        self._personas[persona.id] = persona

    def put_character(self, character: Character):
        self._characters[character.id] = character

    def set_world_book_entries(self, entries: Iterable[WorldBookEntry]):
        self.world_book_entries = list(entries)
