import asyncio
import tempfile
import unittest
from pathlib import Path

from readalong.errors import ConfigurationError, EntityNotFoundError
from readalong.models import Book
from readalong.notebooks import NoteAutosaver, NotebookService
from readalong.storage import BookLibrary, StudyHubStore


class _NotebookTestBase:
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        self.store = StudyHubStore(base / "study_hub.sqlite")
        self.library = BookLibrary(base / "library.sqlite")
        self.library.put_book(Book(id="b1", title="Tale"))
        self.library.put_book(Book(id="b2", title="Saga"))
        self.service = NotebookService(self.store, self.library)

    def tearDown(self):
        self.store.close()
        self.library.close()
        self.tmp.cleanup()


class TestNotebookService(_NotebookTestBase, unittest.TestCase):
    def test_create_defaults_title_to_book_titles(self):
        notebook = self.service.create_notebook(["b1", "b2"], "p1")
        self.assertEqual(notebook.title, "Tale, Saga")
        self.assertEqual(self.service.get_notebook(notebook.id).bound_book_ids, ["b1", "b2"])

    def test_create_requires_books_and_persona(self):
        with self.assertRaises(ConfigurationError):
            self.service.create_notebook([], "p1")
        with self.assertRaises(ConfigurationError):
            self.service.create_notebook(["b1"], "")

    def test_notes_are_added_first_and_edited(self):
        notebook = self.service.create_notebook(["b1"], "p1", title="Mine")
        first = self.service.add_note(notebook.id, "one")
        second = self.service.add_note(notebook.id, "two")
        self.service.save_note_content(notebook.id, first.id, "one, revised")

        stored = self.service.get_notebook(notebook.id)
        self.assertEqual([n.id for n in stored.notes], [second.id, first.id])
        self.assertEqual(stored.find_note(first.id).content, "one, revised")

        self.service.delete_note(notebook.id, second.id)
        self.assertEqual([n.id for n in self.service.get_notebook(notebook.id).notes], [first.id])
        with self.assertRaises(EntityNotFoundError):
            self.service.get_note(notebook.id, second.id)

    def test_update_and_delete_notebook(self):
        notebook = self.service.create_notebook(["b1"], "p1", title="Mine", cover_url="cover.png")
        updated = self.service.update_notebook(notebook.id, title="  ", bound_book_ids=["b2"])
        self.assertEqual(updated.title, "Saga")
        self.assertEqual(updated.cover_url, "cover.png")

        cleared = self.service.update_notebook(notebook.id, cover_url=None)
        self.assertIsNone(cleared.cover_url)
        with self.assertRaises(ConfigurationError):
            self.service.update_notebook(notebook.id, bound_book_ids=[])

        self.service.set_paper_background(notebook.id, "paper.png")
        self.assertEqual(self.service.get_notebook(notebook.id).paper_background, "paper.png")

        self.service.delete_notebook(notebook.id)
        self.assertEqual(self.service.list_notebooks(), [])


class TestNoteAutosaver(_NotebookTestBase, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        super().setUp()
        self.notebook = self.service.create_notebook(["b1"], "p1")
        self.note = self.service.add_note(self.notebook.id, "")
        self.autosaver = NoteAutosaver(self.service, delay_s=0.05)

    def _content(self):
        return self.service.get_note(self.notebook.id, self.note.id)[1].content

    async def test_only_the_last_edit_is_saved_after_the_delay(self):
        self.autosaver.schedule(self.notebook.id, self.note.id, "d")
        self.autosaver.schedule(self.notebook.id, self.note.id, "dr")
        self.autosaver.schedule(self.notebook.id, self.note.id, "dra")
        self.assertEqual(self._content(), "")
        self.assertEqual(self.autosaver.pending_note_ids, [self.note.id])

        await asyncio.sleep(0.2)

        self.assertEqual(self._content(), "dra")
        self.assertEqual(self.autosaver.pending_note_ids, [])

    async def test_flush_saves_immediately(self):
        self.autosaver.schedule(self.notebook.id, self.note.id, "draft")
        self.autosaver.flush()
        self.assertEqual(self._content(), "draft")
        await asyncio.sleep(0.1)
        self.assertEqual(self._content(), "draft")

    async def test_cancel_discards_pending_edit(self):
        self.autosaver.schedule(self.notebook.id, self.note.id, "draft")
        self.autosaver.cancel(self.note.id)
        await asyncio.sleep(0.1)
        self.assertEqual(self._content(), "")

    async def test_edit_to_deleted_note_is_dropped(self):
        self.autosaver.schedule(self.notebook.id, self.note.id, "late")
        self.service.delete_note(self.notebook.id, self.note.id)
        self.autosaver.flush()
        self.assertEqual(self.autosaver.pending_note_ids, [])


if __name__ == "__main__":
    unittest.main()
