"""
Pure prompt assembly for note comments, thread replies and quizzes.

Book contexts combine the "story so far" summary cards the reader has passed
with the text immediately before the reading position. Prompt builders turn
contexts, retrieved passages, profiles and history into one prompt string;
parsers turn raw model output back into comments or quiz questions.
"""
from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable

from langchain_core.prompts import PromptTemplate

from .config import READING_EXCERPT_CHARS
from .models import (
    Book,
    BookContext,
    Character,
    InsertPosition,
    Message,
    MessageRole,
    Persona,
    QuestionType,
    QuizConfig,
    QuizQuestion,
    StoredBookContent,
    WorldBookEntry,
)
from .observability import get_logger
from .safe_offset import reading_global_char_offset
from .tokenization import sanitize_text_for_prompt

logger = get_logger(__name__)

COMMENT_TAG = "[Comment]"
SUMMARY_HEADER = "[Story so far]"
EXCERPT_HEADER = "[Text near current reading position]"
RELATED_PASSAGES_HEADER = "[Related passages (semantic search)]"
WORLD_BOOK_HEADER = "[Supplementary information]"
NO_BOOK_CONTENT = "(No book content available)"
NO_USER_PROFILE = "(No user information)"

_COMMENT_LINE_RE = re.compile(r"^(?:\[Comment\]|【评论】)\s*(.*)$")
_COMMENT_PREFIX_RE = re.compile(r"^(?:\[Comment\]|【评论】)\s*", flags=re.MULTILINE)
_CODE_FENCE_OPEN_RE = re.compile(r"```(?:json)?\s*", flags=re.IGNORECASE)
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_FIRST_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


# ---------------------------------------------------------------------------
# Book contexts
# ---------------------------------------------------------------------------

def _max_chapter_index_by_progress(book: Book, stored: StoredBookContent) -> int:
    if not stored.chapters:
        return -1
    position = stored.reading_position
    if position is not None and position.chapter_index is not None:
        return position.chapter_index
    return max(0, math.floor((book.progress or 0.0) / 100 * len(stored.chapters)) - 1)


def _text_up_to_position(book: Book, stored: StoredBookContent, global_offset: int, excerpt_chars: int) -> str:
    if excerpt_chars <= 0:
        return ""
    if stored.chapters:
        max_idx = _max_chapter_index_by_progress(book, stored)
        position = stored.reading_position
        parts: list[str] = []
        if position is not None and position.chapter_index is not None:
            for chapter in stored.chapters[: position.chapter_index]:
                parts.append(sanitize_text_for_prompt(chapter.content))
            current = ""
            if 0 <= position.chapter_index < len(stored.chapters):
                current = sanitize_text_for_prompt(stored.chapters[position.chapter_index].content)
            if position.chapter_char_offset > 0:
                current = current[: position.chapter_char_offset]
            parts.append(current)
        else:
            for chapter in stored.chapters[: max_idx + 1]:
                parts.append(sanitize_text_for_prompt(chapter.content))
        return "".join(parts)[-excerpt_chars:]
    if stored.full_text:
        start = max(0, global_offset - excerpt_chars)
        return sanitize_text_for_prompt(stored.full_text[start:global_offset])
    return ""


def prepare_book_context(
    book: Book,
    stored: StoredBookContent | None,
    excerpt_chars: int = READING_EXCERPT_CHARS,
) -> BookContext | None:
    """Context for one book, or None when the reader has nothing readable yet."""
    if stored is None:
        return None
    global_offset = reading_global_char_offset(book, stored)
    cards = sorted(
        (card for card in stored.summary_cards if card.end <= global_offset),
        key=lambda card: card.start,
    )
    summary_text = "\n".join(card.content for card in cards if card.content)
    excerpt_text = _text_up_to_position(book, stored, global_offset, excerpt_chars)
    if not summary_text and not excerpt_text:
        return None

    context = ""
    if summary_text:
        context += f"{SUMMARY_HEADER}\n{summary_text}\n\n"
    if excerpt_text:
        context += f"{EXCERPT_HEADER}\n{excerpt_text}"
    return BookContext(book_id=book.id, title=book.title, context=context.strip())


def prepare_book_contexts(
    pairs: Iterable[tuple[Book, StoredBookContent | None]],
    excerpt_chars: int = READING_EXCERPT_CHARS,
) -> list[BookContext]:
    contexts = []
    for book, stored in pairs:
        context = prepare_book_context(book, stored, excerpt_chars)
        if context is not None:
            contexts.append(context)
    return contexts


# ---------------------------------------------------------------------------
# World book
# ---------------------------------------------------------------------------

def world_book_order_code(entry: WorldBookEntry) -> float:
    match = _FIRST_NUMBER_RE.search(f"{entry.title} {entry.content}")
    return float(match.group(0)) if match else math.inf


def character_world_book_sections(
    character: Character,
    entries: Iterable[WorldBookEntry],
) -> tuple[list[WorldBookEntry], list[WorldBookEntry]]:
    """(before, after) entries in the character's bound categories, ordered by code."""
    categories = {c.strip() for c in character.bound_world_book_categories if c.strip()}
    if not categories:
        return [], []
    scoped = [entry for entry in entries if entry.category in categories]
    before = sorted(
        (e for e in scoped if e.insert_position is InsertPosition.BEFORE), key=world_book_order_code
    )
    after = sorted(
        (e for e in scoped if e.insert_position is InsertPosition.AFTER), key=world_book_order_code
    )
    return before, after


def format_world_book_section(entries: list[WorldBookEntry], title: str = WORLD_BOOK_HEADER) -> str:
    if not entries:
        return ""
    lines = [f"{title}:"]
    for index, entry in enumerate(entries, start=1):
        code = world_book_order_code(entry)
        code_text = "-" if math.isinf(code) else f"{code:g}"
        entry_title = entry.title.strip() or f"Entry {index}"
        entry_content = entry.content.strip() or "(empty)"
        lines.append(
            f"[World book {index} | code: {code_text} | category: {entry.category}] {entry_title}\n{entry_content}"
        )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

_PERSONA_BLOCK = """<identity>
You are {char_name}. Feel and speak the way they do.
Your nickname is "{char_nickname}". The person you are talking with is {user_name}; you call them "{user_nickname}".
</identity>

<user_profile>
[About {user_name}]
{user_description}
</user_profile>

<char_profile>
{char_profile}
</char_profile>
"""

_OUTPUT_ONE_COMMENT = """<output_format>
[Reply format (follow strictly, no exceptions)]
- Output exactly one {item}.
- The {item} must start with [Comment].
- Write the {item} text after [Comment].
- Do not output explanations, headings, numbering or code blocks.

[Comment] example {item} text
</output_format>"""

NOTE_COMMENT_TEMPLATE = PromptTemplate.from_template(
    _PERSONA_BLOCK
    + """
<book_context>
{book_context}
</book_context>
<note_content>
[The user's reading note]
{note_content}
</note_content>
{history_section}
<scene>
[Scene] This is a discussion board for reading notes. {user_nickname} wrote a reading note and you, as {char_name}, comment on it. Stay mostly on the note; occasionally you may drift to {user_nickname} themselves.
</scene>

<tone_and_style>
- The content and tone of the comment reflect your personality and way of speaking.
- You may agree with, add to, question or extend the note.
- Keep the comment natural and thoughtful.
- Do not describe actions with asterisks or brackets; express everything in words.
- Never spoil anything {user_nickname} has not read yet.
</tone_and_style>

"""
    + _OUTPUT_ONE_COMMENT.replace("{item}", "comment")
)

NOTE_REPLY_TEMPLATE = PromptTemplate.from_template(
    _PERSONA_BLOCK
    + """
<book_context>
{book_context}
</book_context>
<note_content>
[Original note]
{note_content}
</note_content>

<chat_history>
[Earlier discussion]
{history_lines}

[Latest reply from {user_nickname}]
{user_nickname}: {latest_reply}
</chat_history>

<scene>
[Scene] A multi-turn conversation on a reading-note board. {user_nickname} is replying to your earlier comment; continue the discussion in character.
</scene>

<tone_and_style>
- Stay in character and keep the style of the earlier discussion.
- Do not describe actions with asterisks or brackets; express everything in words.
- Never spoil anything {user_nickname} has not read yet.
</tone_and_style>

"""
    + _OUTPUT_ONE_COMMENT.replace("{item}", "reply")
)

QUIZ_GENERATION_TEMPLATE = PromptTemplate.from_template(
    """<book_context>
{book_context}
</book_context>

<task>
Using the book content above (story so far, text near the reading position and the related passages), write {question_count} {type_label} questions.
{type_instruction}
</task>

<user_requirements>
{custom_prompt}
</user_requirements>

<tone_and_style>
- Questions stay close to the provided content and fit its genre (plot and characters for fiction, arguments and methods for papers, concepts for philosophy, meanings and usage for vocabulary lists, and so on).
- The user's custom requirements decide the focus of the questions first.
- Never ask about anything beyond the provided content.
- Options should be plausible; avoid obviously right or wrong answers.
- Explanations give the reasoning directly and never mention search or retrieval.
</tone_and_style>

<output_format>
Return only JSON in exactly this shape, nothing else:
[
  {{
    "question": "question text",
    "options": {options_example},
    "correctAnswerIndices": [0],
    "type": "{question_type}",
    "explanation": "why the answer is correct"
  }}
]
</output_format>"""
)

QUIZ_OVERALL_COMMENT_TEMPLATE = PromptTemplate.from_template(
    _PERSONA_BLOCK
    + """
<quiz_result>
[Quiz]
{user_nickname} just finished a reading-comprehension quiz on {book_titles}.
{total} questions, {correct} correct, accuracy {percent}%.

[Answers]
{detail_lines}
</quiz_result>

<scene>
[Scene] {user_nickname} just finished a reading-comprehension quiz. In character, comment on their overall performance: an overall verdict, advice on weak spots, and encouragement or a push.
</scene>

<tone_and_style>
- The comment reflects your personality and way of speaking.
- Do not describe actions with asterisks or brackets; express everything in words.
</tone_and_style>

"""
    + _OUTPUT_ONE_COMMENT.replace("{item}", "comment")
)


def _char_profile(character: Character, world_book_entries: Iterable[WorldBookEntry]) -> str:
    before, after = character_world_book_sections(character, world_book_entries)
    before_text = format_world_book_section(before)
    after_text = format_world_book_section(after)
    profile = ""
    if before_text:
        profile += before_text + "\n"
    profile += f"[Who you are]\n{sanitize_text_for_prompt(character.description)}"
    if after_text:
        profile += "\n\n" + after_text
    return profile


def _persona_fields(
    persona: Persona,
    character: Character,
    world_book_entries: Iterable[WorldBookEntry],
) -> dict[str, str]:
    return {
        "char_name": character.name,
        "char_nickname": character.display_name,
        "user_name": persona.name,
        "user_nickname": persona.display_name,
        "user_description": sanitize_text_for_prompt(persona.description) or NO_USER_PROFILE,
        "char_profile": _char_profile(character, world_book_entries),
    }


def build_book_context_section(
    book_contexts: list[BookContext],
    rag_context_by_book_id: dict[str, str] | None = None,
) -> str:
    if not book_contexts:
        return NO_BOOK_CONTENT
    sections = []
    for ctx in book_contexts:
        rag = (rag_context_by_book_id or {}).get(ctx.book_id, "").strip()
        rag_section = f"\n\n{RELATED_PASSAGES_HEADER}\n{rag}" if rag else ""
        sections.append(f"《{ctx.title}》\n{ctx.context}{rag_section}")
    return "\n\n".join(sections)


def _history_lines(messages: Iterable[Message], persona: Persona, character: Character) -> str:
    lines = []
    for message in messages:
        speaker = character.display_name if message.role is MessageRole.AI else persona.display_name
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


def build_note_comment_prompt(
    *,
    persona: Persona,
    character: Character,
    world_book_entries: Iterable[WorldBookEntry],
    note_content: str,
    book_contexts: list[BookContext],
    conversation_history: list[Message] | None = None,
    rag_context_by_book_id: dict[str, str] | None = None,
) -> str:
    history_section = ""
    if conversation_history:
        history_section = (
            f"\n<chat_history>\n{_history_lines(conversation_history, persona, character)}\n</chat_history>\n"
        )
    return NOTE_COMMENT_TEMPLATE.format(
        **_persona_fields(persona, character, world_book_entries),
        book_context=build_book_context_section(book_contexts, rag_context_by_book_id),
        note_content=sanitize_text_for_prompt(note_content),
        history_section=history_section,
    )


def build_note_reply_prompt(
    *,
    persona: Persona,
    character: Character,
    world_book_entries: Iterable[WorldBookEntry],
    note_content: str,
    book_contexts: list[BookContext],
    previous_messages: list[Message],
    latest_user_reply: str,
    rag_context_by_book_id: dict[str, str] | None = None,
) -> str:
    return NOTE_REPLY_TEMPLATE.format(
        **_persona_fields(persona, character, world_book_entries),
        book_context=build_book_context_section(book_contexts, rag_context_by_book_id),
        note_content=sanitize_text_for_prompt(note_content),
        history_lines=_history_lines(previous_messages, persona, character),
        latest_reply=latest_user_reply,
    )


def _quiz_type_instruction(config: QuizConfig) -> str:
    qtype = config.question_type
    if qtype is QuestionType.TRUEFALSE:
        return (
            'Each question has exactly two options, "True" and "False"; '
            "correctAnswerIndices [0] means true and [1] means false."
        )
    if qtype is QuestionType.MULTIPLE:
        return (
            f"Each question has {config.effective_option_count} options; correctAnswerIndices lists "
            "every correct option (at least 2)."
        )
    return (
        f"Each question has {config.effective_option_count} options; correctAnswerIndices holds "
        "exactly one correct option."
    )


def build_quiz_generation_prompt(
    *,
    book_contexts: list[BookContext],
    config: QuizConfig,
    rag_context_by_book_id: dict[str, str] | None = None,
) -> str:
    if config.question_type is QuestionType.TRUEFALSE:
        options_example = json.dumps(["True", "False"])
    else:
        options_example = json.dumps(
            [f"Option {chr(ord('A') + i)}" for i in range(config.effective_option_count)]
        )
    return QUIZ_GENERATION_TEMPLATE.format(
        book_context=build_book_context_section(book_contexts, rag_context_by_book_id),
        question_count=config.question_count,
        type_label=config.question_type.label,
        type_instruction=_quiz_type_instruction(config),
        custom_prompt=config.custom_prompt.strip() or "(No extra requirements)",
        options_example=options_example,
        question_type=config.question_type.value,
    )


def _option_labels(question: QuizQuestion, indices: Iterable[int]) -> str:
    labels = []
    for i in indices:
        labels.append(question.options[i] if 0 <= i < len(question.options) else f"Option {i}")
    return ", ".join(labels)


def build_quiz_overall_comment_prompt(
    *,
    persona: Persona,
    character: Character,
    world_book_entries: Iterable[WorldBookEntry],
    questions: list[QuizQuestion],
    user_answers: dict[str, list[int]],
    book_titles: list[str],
) -> str:
    correct = 0
    details = []
    for idx, question in enumerate(questions, start=1):
        answer = user_answers.get(question.id, [])
        ok = question.is_correct(answer)
        correct += int(ok)
        details.append(
            f"Question {idx}: {question.question}\n"
            f"User answer: {_option_labels(question, answer) or 'not answered'} ({'correct' if ok else 'wrong'})\n"
            f"Correct answer: {_option_labels(question, question.correct_answer_indices)}"
        )
    total = len(questions)
    return QUIZ_OVERALL_COMMENT_TEMPLATE.format(
        **_persona_fields(persona, character, world_book_entries),
        book_titles=", ".join(f"《{title}》" for title in book_titles),
        total=total,
        correct=correct,
        percent=round(correct / max(total, 1) * 100),
        detail_lines="\n\n".join(details),
    )


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def parse_comment(raw: str | None) -> str:
    """Text of every line tagged as a comment; otherwise the raw reply minus stray tags."""
    trimmed = (raw or "").strip()
    comment_lines = []
    for line in trimmed.split("\n"):
        match = _COMMENT_LINE_RE.match(line)
        if match:
            comment_lines.append(match.group(1).strip())
    if comment_lines:
        return "\n".join(comment_lines)
    return _COMMENT_PREFIX_RE.sub("", trimmed).strip()


def _parse_question(item: Any) -> QuizQuestion | None:
    if not isinstance(item, dict) or not isinstance(item.get("question"), str):
        return None
    options = item.get("options")
    options = [str(option) for option in options] if isinstance(options, list) else []
    indices = item.get("correctAnswerIndices")
    indices = (
        [i for i in indices if isinstance(i, int) and not isinstance(i, bool)]
        if isinstance(indices, list)
        else []
    )
    try:
        qtype = QuestionType(item.get("type") or QuestionType.SINGLE.value)
    except ValueError:
        qtype = QuestionType.SINGLE
    explanation = item.get("explanation")
    return QuizQuestion(
        type=qtype,
        question=item["question"],
        options=options,
        correct_answer_indices=indices,
        explanation=explanation if isinstance(explanation, str) else "",
    )


def parse_quiz_questions(raw: str | None) -> list[QuizQuestion]:
    """Questions from the first JSON array in the reply; malformed items are dropped."""
    cleaned = _CODE_FENCE_OPEN_RE.sub("", raw or "").replace("```", "").strip()
    match = _JSON_ARRAY_RE.search(cleaned)
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("quiz_parse_failed", error=str(exc))
        return []
    if not isinstance(parsed, list):
        return []
    questions = []
    for item in parsed:
        question = _parse_question(item)
        if question is not None:
            questions.append(question)
    return questions


def load_book_contexts(library, book_ids: Iterable[str], excerpt_chars: int = READING_EXCERPT_CHARS) -> list[BookContext]:
    """Reads each known book and its stored content from the library, then prepares contexts."""
    pairs = []
    for book_id in book_ids:
        book = library.get_book(book_id)
        if book is None:
            continue
        pairs.append((book, library.get_stored_content(book_id)))
    return prepare_book_contexts(pairs, excerpt_chars)
