"""
Pydantic data model for books, retrieved chunks, notebooks, comment threads
and quiz sessions.
"""
from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Books and reading progress
# ---------------------------------------------------------------------------

class Chapter(BaseModel):
    title: str = ""
    content: str = ""


class ReadingPosition(BaseModel):
    chapter_index: int | None = None
    chapter_char_offset: int = 0
    global_char_offset: int = 0
    scroll_ratio: float = 0.0
    total_length: int = 0
    updated_at: int = Field(default_factory=now_ms)


class SummaryCard(BaseModel):
    """A "story so far" card covering [start, end) of a book."""
    id: str = Field(default_factory=new_id)
    content: str
    start: int
    end: int
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Book(BaseModel):
    id: str
    title: str
    author: str = ""
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    tags: list[str] = Field(default_factory=list)
    full_text_length: int | None = None


class StoredBookContent(BaseModel):
    full_text: str = ""
    chapters: list[Chapter] = Field(default_factory=list)
    reading_position: ReadingPosition | None = None
    summary_cards: list[SummaryCard] = Field(default_factory=list)


class RetrievedChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    book_id: str
    chapter_index: int = 0
    text: str
    start_offset: int
    end_offset: int
    score: float | None = None


class BookContext(BaseModel):
    """Reading-progress context for one book, as injected into prompts."""
    book_id: str
    title: str
    context: str


# ---------------------------------------------------------------------------
# Personas, characters and world-book entries (flat settings records)
# ---------------------------------------------------------------------------

class Persona(BaseModel):
    id: str
    name: str
    user_nickname: str = ""
    description: str = ""
    avatar: str = ""

    @property
    def display_name(self) -> str:
        return self.user_nickname or self.name


class Character(BaseModel):
    id: str
    name: str
    nickname: str = ""
    description: str = ""
    avatar: str = ""
    bound_world_book_categories: list[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.nickname or self.name


class InsertPosition(str, Enum):
    BEFORE = "BEFORE"
    AFTER = "AFTER"


class WorldBookEntry(BaseModel):
    id: str
    title: str = ""
    category: str = ""
    content: str = ""
    insert_position: InsertPosition = InsertPosition.BEFORE


# ---------------------------------------------------------------------------
# Notebooks, notes and comment threads
# ---------------------------------------------------------------------------

class MessageRole(str, Enum):
    USER = "user"
    AI = "ai"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str
    created_at: int = Field(default_factory=now_ms)


class CommentThread(BaseModel):
    id: str = Field(default_factory=new_id)
    character_id: str
    character_name: str
    character_avatar: str = ""
    messages: list[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Note(BaseModel):
    id: str = Field(default_factory=new_id)
    content: str = ""
    comment_threads: list[CommentThread] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    def find_thread(self, thread_id: str) -> CommentThread | None:
        return next((t for t in self.comment_threads if t.id == thread_id), None)


class Notebook(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    persona_id: str
    bound_book_ids: list[str] = Field(default_factory=list)
    cover_url: str | None = None
    paper_background: str | None = None
    notes: list[Note] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    def find_note(self, note_id: str) -> Note | None:
        return next((n for n in self.notes if n.id == note_id), None)


# ---------------------------------------------------------------------------
# Quiz
# ---------------------------------------------------------------------------

class QuestionType(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    TRUEFALSE = "truefalse"

    @property
    def label(self) -> str:
        if self is QuestionType.TRUEFALSE:
            return "true/false"
        if self is QuestionType.MULTIPLE:
            return "multiple-choice (several correct answers)"
        return "single-choice"

    @property
    def allows_multiple_answers(self) -> bool:
        return self is QuestionType.MULTIPLE


class QuizConfig(BaseModel):
    book_ids: list[str] = Field(default_factory=list)
    question_count: int = Field(default=5, ge=1)
    question_type: QuestionType = QuestionType.SINGLE
    option_count: int = Field(default=4, ge=2)
    custom_prompt: str = ""

    @property
    def effective_option_count(self) -> int:
        if self.question_type is QuestionType.TRUEFALSE:
            return 2
        return self.option_count


class QuizQuestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    type: QuestionType = QuestionType.SINGLE
    question: str
    options: list[str] = Field(default_factory=list)
    correct_answer_indices: list[int] = Field(default_factory=list)
    explanation: str = ""

    def is_correct(self, answer: list[int] | None) -> bool:
        """Exact set match: same size and every chosen index is correct. No partial credit."""
        chosen = list(answer or [])
        return len(chosen) == len(self.correct_answer_indices) and all(
            i in self.correct_answer_indices for i in chosen
        )


class QuizSession(BaseModel):
    id: str = Field(default_factory=new_id)
    config: QuizConfig
    questions: list[QuizQuestion] = Field(default_factory=list)
    user_answers: dict[str, list[int]] = Field(default_factory=dict)
    character_id: str = ""
    character_name: str = ""
    overall_comment: str = ""
    created_at: int = Field(default_factory=now_ms)
    completed_at: int | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def find_question(self, question_id: str) -> QuizQuestion | None:
        return next((q for q in self.questions if q.id == question_id), None)


class QuizScore(BaseModel):
    correct: int
    total: int

    @property
    def percent(self) -> int:
        return round(self.correct / max(self.total, 1) * 100)
