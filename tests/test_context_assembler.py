import unittest

from readalong.context_assembler import (
    build_book_context_section,
    build_note_comment_prompt,
    build_note_reply_prompt,
    build_quiz_generation_prompt,
    build_quiz_overall_comment_prompt,
    character_world_book_sections,
    parse_comment,
    parse_quiz_questions,
    prepare_book_context,
    prepare_book_contexts,
)
from readalong.models import (
    Book,
    BookContext,
    Chapter,
    Character,
    InsertPosition,
    Message,
    MessageRole,
    Persona,
    QuestionType,
    QuizConfig,
    QuizQuestion,
    ReadingPosition,
    StoredBookContent,
    SummaryCard,
    WorldBookEntry,
)


def _persona():
    return Persona(id="p1", name="Lin", user_nickname="Linny", description="Likes fantasy.")


def _character(categories=("lore",)):
    return Character(
        id="c1",
        name="Archivist",
        nickname="Archie",
        description="A dusty librarian.",
        bound_world_book_categories=list(categories),
    )


class TestParseComment(unittest.TestCase):
    def test_collects_tagged_lines(self):
        raw = "thinking...\n[Comment] First line\n[Comment]   Second line\n"
        self.assertEqual(parse_comment(raw), "First line\nSecond line")

    def test_accepts_fullwidth_tag(self):
        self.assertEqual(parse_comment("【评论】 很好"), "很好")

    def test_untagged_reply_is_returned_trimmed(self):
        self.assertEqual(parse_comment("  just text  "), "just text")
        self.assertEqual(parse_comment(None), "")


class TestParseQuizQuestions(unittest.TestCase):
    def test_parses_fenced_array_and_drops_malformed_items(self):
        raw = """Here you go:
```json
[
  {"question": "Who?", "options": ["A", "B"], "correctAnswerIndices": [1, "0", true], "type": "single", "explanation": "B did it"},
  {"question": 7, "options": []},
  {"options": ["x"]},
  {"question": "Which?", "options": [1, 2], "type": "weird"}
]
```"""
        questions = parse_quiz_questions(raw)
        self.assertEqual(len(questions), 2)
        self.assertEqual(questions[0].correct_answer_indices, [1])
        self.assertEqual(questions[0].explanation, "B did it")
        self.assertEqual(questions[1].options, ["1", "2"])
        self.assertEqual(questions[1].type, QuestionType.SINGLE)
        self.assertNotEqual(questions[0].id, questions[1].id)

    def test_invalid_or_missing_json(self):
        self.assertEqual(parse_quiz_questions("no json here"), [])
        self.assertEqual(parse_quiz_questions("[not valid json]"), [])
        self.assertEqual(parse_quiz_questions(""), [])


class TestBookContext(unittest.TestCase):
    def _stored(self, **overrides):
        data = {
            "chapters": [Chapter(content="abcdefghij"), Chapter(content="klmnopqrst")],
            "reading_position": ReadingPosition(chapter_index=1, chapter_char_offset=5, global_char_offset=15),
            "summary_cards": [
                SummaryCard(content="late card", start=10, end=20),
                SummaryCard(content="early card", start=0, end=10),
            ],
        }
        data.update(overrides)
        return StoredBookContent(**data)

    def test_summary_cards_and_excerpt_before_position(self):
        book = Book(id="b1", title="Tale")
        ctx = prepare_book_context(book, self._stored(), excerpt_chars=8)
        self.assertEqual(
            ctx.context,
            "[Story so far]\nearly card\n\n[Text near current reading position]\nhijklmno",
        )

    def test_chapter_without_offset_is_included_whole(self):
        book = Book(id="b1", title="Tale")
        stored = self._stored(
            reading_position=ReadingPosition(chapter_index=1, chapter_char_offset=0, global_char_offset=5),
            summary_cards=[],
        )
        ctx = prepare_book_context(book, stored, excerpt_chars=100)
        self.assertTrue(ctx.context.endswith("abcdefghijklmnopqrst"))

    def test_progress_decides_chapters_without_position(self):
        book = Book(id="b1", title="Tale", progress=50)
        stored = self._stored(reading_position=None, summary_cards=[])
        ctx = prepare_book_context(book, stored, excerpt_chars=100)
        self.assertTrue(ctx.context.endswith("\nabcdefghij"))

    def test_full_text_fallback(self):
        book = Book(id="b1", title="Tale", progress=50)
        stored = StoredBookContent(full_text="0123456789" * 2)
        ctx = prepare_book_context(book, stored, excerpt_chars=4)
        self.assertTrue(ctx.context.endswith("6789"))

    def test_books_without_readable_context_are_omitted(self):
        empty = StoredBookContent()
        contexts = prepare_book_contexts(
            [(Book(id="b1", title="One"), empty), (Book(id="b2", title="Two"), None)],
        )
        self.assertEqual(contexts, [])


class TestWorldBook(unittest.TestCase):
    def test_entries_are_filtered_split_and_ordered(self):
        entries = [
            WorldBookEntry(id="w1", title="Rule 10", category="lore"),
            WorldBookEntry(id="w2", title="Rule 2", category="lore"),
            WorldBookEntry(id="w3", title="No number", category="lore"),
            WorldBookEntry(id="w4", title="Rule 1", category="other"),
            WorldBookEntry(id="w5", title="Epilogue 3", category="lore", insert_position=InsertPosition.AFTER),
        ]
        before, after = character_world_book_sections(_character(), entries)
        self.assertEqual([e.id for e in before], ["w2", "w1", "w3"])
        self.assertEqual([e.id for e in after], ["w5"])

    def test_character_without_categories_gets_nothing(self):
        entries = [WorldBookEntry(id="w1", title="x", category="lore")]
        self.assertEqual(character_world_book_sections(_character(categories=()), entries), ([], []))


class TestPromptBuilders(unittest.TestCase):
    def setUp(self):
        self.contexts = [BookContext(book_id="b1", title="Tale", context="[Story so far]\nonce upon a time")]

    def test_book_context_section(self):
        self.assertEqual(build_book_context_section([]), "(No book content available)")
        section = build_book_context_section(self.contexts, {"b1": "passage one\n---\npassage two"})
        self.assertIn("《Tale》", section)
        self.assertIn("[Related passages (semantic search)]\npassage one", section)

    def test_note_comment_prompt(self):
        prompt = build_note_comment_prompt(
            persona=_persona(),
            character=_character(),
            world_book_entries=[WorldBookEntry(id="w1", title="Rule 1", category="lore", content="Be kind.")],
            note_content="The knight was brave.",
            book_contexts=self.contexts,
        )
        self.assertIn("You are Archivist", prompt)
        self.assertIn('you call them "Linny"', prompt)
        self.assertIn("The knight was brave.", prompt)
        self.assertIn("Be kind.", prompt)
        self.assertIn("[Comment]", prompt)
        self.assertNotIn("<chat_history>", prompt)

    def test_note_reply_prompt_lists_history(self):
        prompt = build_note_reply_prompt(
            persona=_persona(),
            character=_character(),
            world_book_entries=[],
            note_content="note",
            book_contexts=self.contexts,
            previous_messages=[Message(role=MessageRole.AI, content="Nice note.")],
            latest_user_reply="Thanks!",
        )
        self.assertIn("Archie: Nice note.", prompt)
        self.assertIn("Linny: Thanks!", prompt)

    def test_true_false_quiz_prompt_forces_two_options(self):
        config = QuizConfig(book_ids=["b1"], question_count=3, question_type=QuestionType.TRUEFALSE, option_count=5)
        prompt = build_quiz_generation_prompt(book_contexts=self.contexts, config=config)
        self.assertIn('["True", "False"]', prompt)
        self.assertIn("3 true/false questions", prompt)
        self.assertNotIn("5 options", prompt)
        self.assertIn('"type": "truefalse"', prompt)

    def test_overall_comment_prompt_reports_score(self):
        questions = [
            QuizQuestion(id="q1", question="Who?", options=["A", "B"], correct_answer_indices=[1]),
            QuizQuestion(id="q2", question="Where?", options=["X", "Y"], correct_answer_indices=[0]),
        ]
        prompt = build_quiz_overall_comment_prompt(
            persona=_persona(),
            character=_character(),
            world_book_entries=[],
            questions=questions,
            user_answers={"q1": [1], "q2": [1]},
            book_titles=["Tale"],
        )
        self.assertIn("2 questions, 1 correct, accuracy 50%", prompt)
        self.assertIn("User answer: Y (wrong)", prompt)
        self.assertIn("《Tale》", prompt)


if __name__ == "__main__":
    unittest.main()
