import tempfile
import unittest
from pathlib import Path

from langchain_core.embeddings import Embeddings

from readalong.chunk_index import EmbeddingChunkIndex, chunk_book_text, content_signature
from readalong.models import Chapter


class _KeywordEmbeddings(Embeddings):
    """Deterministic two-topic embedding: dragon-ness and castle-ness."""

    def __init__(self):
        self.document_calls = 0

    def _vector(self, text):
        lowered = text.lower()
        return [float(lowered.count("dragon")), float(lowered.count("castle")), 0.1]

    def embed_documents(self, texts):
        self.document_calls += 1
        return [self._vector(t) for t in texts]

    def embed_query(self, text):
        return self._vector(text)


def _two_topic_chapters():
    return [
        Chapter(title="Fire", content="dragon fire " * 50),
        Chapter(title="Stone", content="castle wall " * 50),
    ]


class TestChunkBookText(unittest.TestCase):
    def test_windows_overlap_and_ids_encode_position(self):
        chunks = chunk_book_text("bk", [Chapter(content="a" * 1000)], 10_000)
        self.assertEqual([c.id for c in chunks], ["bk_ch0_0", "bk_ch0_448", "bk_ch0_896"])
        self.assertEqual([(c.start_offset, c.end_offset) for c in chunks], [(0, 512), (448, 960), (896, 1000)])

    def test_windows_are_cut_at_max_offset(self):
        chunks = chunk_book_text("bk", [Chapter(content="a" * 1000)], 600)
        self.assertEqual([(c.start_offset, c.end_offset) for c in chunks], [(0, 512), (448, 600)])
        self.assertEqual(len(chunks[1].text), 152)

    def test_short_fragments_are_dropped(self):
        chunks = chunk_book_text("bk", [Chapter(content="a" * 460)], 10_000)
        # Second window would hold 12 chars.
        self.assertEqual([c.id for c in chunks], ["bk_ch0_0"])
        tiny = chunk_book_text("bk", [Chapter(content="short")], 10_000)
        self.assertEqual(tiny, [])

    def test_offsets_continue_across_chapters(self):
        chunks = chunk_book_text("bk", _two_topic_chapters(), 10_000)
        second = [c for c in chunks if c.chapter_index == 1]
        self.assertEqual(second[0].start_offset, 600)
        self.assertEqual(second[0].id, "bk_ch1_0")

    def test_start_exclusive_skips_covered_windows(self):
        chunks = chunk_book_text("bk", [Chapter(content="a" * 1000)], 1000, start_exclusive=600)
        self.assertEqual([c.id for c in chunks], ["bk_ch0_448", "bk_ch0_896"])

    def test_signature_tracks_content(self):
        chapters = _two_topic_chapters()
        self.assertEqual(content_signature(chapters), content_signature(_two_topic_chapters()))
        changed = [chapters[0], Chapter(title="Stone", content="castle gate " * 50)]
        self.assertNotEqual(content_signature(chapters), content_signature(changed))


class TestEmbeddingChunkIndex(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.embeddings = _KeywordEmbeddings()
        self.index = EmbeddingChunkIndex(Path(self.tmp.name) / "rag.sqlite", embeddings=self.embeddings)

    def tearDown(self):
        self.index.close()
        self.tmp.cleanup()

    async def test_incremental_indexing(self):
        chapters = [Chapter(content="a" * 1000)]
        await self.index.index_book("bk", chapters, 600)
        self.assertEqual(self.index.indexed_up_to("bk"), 600)
        self.assertEqual(self.index.get_book_meta("bk")["chunk_count"], 2)

        await self.index.index_book("bk", chapters, 1000)
        meta = self.index.get_book_meta("bk")
        self.assertEqual(meta["indexed_up_to"], 1000)
        self.assertEqual(meta["chunk_count"], 3)

        calls_before = self.embeddings.document_calls
        await self.index.index_book("bk", chapters, 800)
        self.assertEqual(self.embeddings.document_calls, calls_before)

    async def test_changed_content_rebuilds_index(self):
        await self.index.index_book("bk", [Chapter(content="a" * 1000)], 1000)
        await self.index.index_book("bk", [Chapter(content="b" * 300)], 300)
        meta = self.index.get_book_meta("bk")
        self.assertEqual(meta["chunk_count"], 1)
        self.assertEqual(meta["indexed_up_to"], 300)

    async def test_search_respects_ceiling(self):
        await self.index.index_book("bk", _two_topic_chapters(), 1200)

        unbounded = await self.index.search("castle", {"bk": None}, top_k=1, per_book_top_k=1)
        self.assertEqual(unbounded[0].chapter_index, 1)

        bounded = await self.index.search("castle", {"bk": 600}, top_k=5, per_book_top_k=5)
        self.assertTrue(bounded)
        self.assertTrue(all(c.end_offset <= 600 for c in bounded))

    async def test_search_interleaves_books_best_first(self):
        await self.index.index_book("b1", [Chapter(content="dragon fire " * 100)], 1200)
        await self.index.index_book("b2", [Chapter(content="castle wall " * 100)], 1200)

        results = await self.index.search("castle", {"b1": None, "b2": None}, top_k=3, per_book_top_k=2)

        self.assertEqual([c.book_id for c in results], ["b2", "b1", "b2"])
        self.assertGreaterEqual(results[0].score, results[1].score)

    async def test_zero_ceiling_and_unknown_book_yield_nothing(self):
        await self.index.index_book("bk", _two_topic_chapters(), 1200)
        self.assertEqual(await self.index.search("castle", {"bk": 0}), [])
        self.assertEqual(await self.index.search("castle", {"ghost": None}), [])

    async def test_archive_roundtrip_and_delete(self):
        await self.index.index_book("bk", _two_topic_chapters(), 1200)
        archive = self.index.export_archive()
        self.assertTrue(self.index.storage_usage_bytes() > 0)

        self.index.delete_book("bk")
        self.assertIsNone(self.index.get_book_meta("bk"))
        self.assertFalse(self.index.is_book_indexed("bk"))

        self.index.restore_archive(archive)
        self.assertTrue(self.index.is_book_indexed("bk"))
        results = await self.index.search("dragon", {"bk": None}, top_k=1)
        self.assertEqual(results[0].chapter_index, 0)

    def test_model_ready_when_embeddings_injected(self):
        self.assertTrue(self.index.is_model_ready())


if __name__ == "__main__":
    unittest.main()
