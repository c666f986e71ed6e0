import tempfile
import unittest

from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage

from readalong.companion import ReadingCompanion
from readalong.errors import EntityNotFoundError
from readalong.models import (
    Book,
    Chapter,
    Character,
    Persona,
    QuizConfig,
    ReadingPosition,
    StoredBookContent,
    WorldBookEntry,
)
from readalong.safe_offset import prepare_chapter_metrics


class _KeywordEmbeddings(Embeddings):
    def _vector(self, text):
        lowered = text.lower()
        return [float(lowered.count("dragon")), float(lowered.count("castle")), 0.1]

    def embed_documents(self, texts):
        return [self._vector(t) for t in texts]

    def embed_query(self, text):
        return self._vector(text)


class _RecordingChatModel:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    async def ainvoke(self, prompt):
        self.prompts.append(prompt)
        return AIMessage(content=self.replies.pop(0))


class TestReadingCompanion(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.chat_model = _RecordingChatModel(
            "[Comment] The dragon scene stays with me too.",
            '[{"question": "What breathed fire?", "options": ["Dragon", "Castle"], "correctAnswerIndices": [0]}]',
        )
        self.companion = ReadingCompanion(
            data_dir=self.tmp.name,
            chat_model=self.chat_model,
            embeddings=_KeywordEmbeddings(),
        )
        self.companion.profiles.put_persona(Persona(id="p1", name="Lin"))
        self.companion.profiles.put_character(
            Character(id="c1", name="Archivist", bound_world_book_categories=["lore"])
        )
        self.companion.profiles.set_world_book_entries(
            [WorldBookEntry(id="w1", title="Rule 1", category="lore", content="Dragons are rare.")]
        )
        library = self.companion.library
        library.put_book(Book(id="b1", title="Tale"))
        library.put_stored_content(
            "b1",
            StoredBookContent(
                chapters=[
                    Chapter(title="One", content="dragon fire " * 50),
                    Chapter(title="Two", content="castle wall " * 50),
                ],
                reading_position=ReadingPosition(chapter_index=0, chapter_char_offset=600),
            ),
        )

    def tearDown(self):
        self.companion.close()
        self.tmp.cleanup()

    async def test_index_book_covers_whole_book_and_returns_safe_offset(self):
        safe_offset = await self.companion.index_book("b1")
        stored = self.companion.library.get_stored_content("b1")
        total = prepare_chapter_metrics(stored.chapters).sanitized_total_length
        self.assertEqual(safe_offset, 600)
        self.assertGreater(total, 600)
        self.assertEqual(self.companion.index.indexed_up_to("b1"), total)
        with self.assertRaises(EntityNotFoundError):
            await self.companion.index_book("missing")

    async def test_retrieval_ceiling_hides_indexed_chunks_past_reading_position(self):
        await self.companion.index_book("b1")

        everything = await self.companion.index.search("castle", {"b1": None}, top_k=50, per_book_top_k=50)
        self.assertGreater(max(chunk.end_offset for chunk in everything), 600)

        visible = await self.companion.retriever.retrieve_chunks("castle", ["b1"], top_k=5, per_book=True)
        self.assertTrue(visible["b1"])
        self.assertTrue(all(chunk.end_offset <= 600 for chunk in visible["b1"]))
        self.assertTrue(all("castle" not in chunk.text for chunk in visible["b1"]))

    async def test_summon_and_quiz_use_only_read_passages(self):
        await self.companion.index_book("b1")
        notebook = self.companion.notebooks.create_notebook(["b1"], "p1")
        note = self.companion.notebooks.add_note(notebook.id, "The castle must be next.")

        outcome = await self.companion.threads.summon(notebook.id, note.id, ["c1"])
        self.assertEqual(len(outcome.threads), 1)
        comment_prompt = self.chat_model.prompts[0]
        self.assertIn("Dragons are rare.", comment_prompt)
        self.assertNotIn("castle wall", comment_prompt)

        session = await self.companion.quizzes.start(
            QuizConfig(book_ids=["b1"], question_count=1, custom_prompt="castle questions"), character_id="c1"
        )
        self.assertEqual(session.questions[0].options, ["Dragon", "Castle"])
        self.assertNotIn("castle wall", self.chat_model.prompts[1])
        self.assertFalse(self.companion.quizzes.cancel_generation(["b1"]))

        summary = self.companion.metrics.get_summary()
        self.assertEqual(summary["calls"]["by_kind"], {"note_comment": 1, "quiz_generation": 1})

    async def test_archive_roundtrip_and_usage(self):
        await self.companion.index_book("b1")
        notebook = self.companion.notebooks.create_notebook(["b1"], "p1")
        archive = self.companion.export_archive()

        self.companion.notebooks.delete_notebook(notebook.id)
        self.companion.index.delete_book("b1")
        self.companion.restore_archive(archive)

        self.assertEqual([nb.id for nb in self.companion.notebooks.list_notebooks()], [notebook.id])
        self.assertTrue(self.companion.index.is_book_indexed("b1"))
        usage = self.companion.storage_usage_bytes()
        self.assertGreater(usage["rag_index_bytes"], 0)
        self.assertEqual(
            usage["total_bytes"],
            usage["notebooks_bytes"] + usage["quiz_sessions_bytes"] + usage["rag_index_bytes"],
        )


if __name__ == "__main__":
    unittest.main()
