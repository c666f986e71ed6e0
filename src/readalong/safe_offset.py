"""
Spoiler-safe offset estimation.

A book's safe offset is the highest position in its sanitised text that the
reader has reached. Retrieved chunks must end at or before it.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from .models import Book, Chapter, ReadingPosition, StoredBookContent
from .observability import get_logger
from .storage import BookLibrary
from .tokenization import sanitize_text_for_prompt

logger = get_logger(__name__)


@dataclass(frozen=True)
class PreparedChapter:
    chapter_index: int
    raw_length: int
    text: str
    start_offset: int
    end_offset: int


@dataclass(frozen=True)
class ChapterMetrics:
    chapters: list[PreparedChapter]
    raw_total_length: int
    sanitized_total_length: int


def prepare_chapter_metrics(chapters: Iterable[Chapter]) -> ChapterMetrics:
    """Sanitises each chapter and records its start/end in the concatenated sanitised text."""
    prepared: list[PreparedChapter] = []
    raw_cursor = 0
    sanitized_cursor = 0
    for idx, chapter in enumerate(chapters):
        raw_text = chapter.content or ""
        text = sanitize_text_for_prompt(raw_text)
        prepared.append(
            PreparedChapter(
                chapter_index=idx,
                raw_length=len(raw_text),
                text=text,
                start_offset=sanitized_cursor,
                end_offset=sanitized_cursor + len(text),
            )
        )
        raw_cursor += len(raw_text)
        sanitized_cursor += len(text)
    return ChapterMetrics(
        chapters=prepared,
        raw_total_length=raw_cursor,
        sanitized_total_length=sanitized_cursor,
    )


def _clamp_offset(value, fallback: int = 0) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(0, int(number))


def _clamp_within(value, total: int, fallback: int) -> int:
    safe_total = max(0, int(total))
    return min(_clamp_offset(value, fallback), safe_total)


def estimate_safe_offset(
    chapters: list[Chapter] | None,
    reading_position: ReadingPosition | None,
    fallback_offset: int = 0,
) -> int:
    """
    Maps a reading position onto the sanitised chapter text.

    The chapter-relative position is preferred; a raw global offset is scaled
    by the sanitised/raw length ratio; otherwise `fallback_offset` is used.
    """
    safe_fallback = _clamp_offset(fallback_offset)
    if not chapters:
        return safe_fallback

    metrics = prepare_chapter_metrics(chapters)
    total = metrics.sanitized_total_length
    if total <= 0:
        return 0

    if reading_position is None:
        return _clamp_within(safe_fallback, total, safe_fallback)

    chapter_index = reading_position.chapter_index
    if chapter_index is not None and 0 <= chapter_index < len(metrics.chapters):
        chapter = metrics.chapters[chapter_index]
        raw_in_chapter = _clamp_offset(reading_position.chapter_char_offset)
        ratio = min(1.0, raw_in_chapter / chapter.raw_length) if chapter.raw_length > 0 else 0.0
        projected = round(ratio * len(chapter.text))
        return _clamp_within(chapter.start_offset + projected, total, safe_fallback)

    raw_global = _clamp_offset(reading_position.global_char_offset)
    if metrics.raw_total_length > 0:
        ratio = min(1.0, raw_global / metrics.raw_total_length)
        return _clamp_within(round(ratio * total), total, safe_fallback)

    return _clamp_within(safe_fallback, total, safe_fallback)


def stored_text_length(stored: StoredBookContent | None) -> int:
    if stored is None:
        return 0
    if stored.full_text:
        return len(stored.full_text)
    return sum(len(ch.content or "") for ch in stored.chapters)


def reading_global_char_offset(book: Book, stored: StoredBookContent | None) -> int:
    """Raw global offset of the reader: the stored position, else progress over the book length."""
    if stored is None:
        return 0
    position = stored.reading_position
    if position is not None and position.global_char_offset > 0:
        return position.global_char_offset
    progress = book.progress or 0.0
    return math.floor(progress / 100 * stored_text_length(stored))


class SafeOffsetResolver:
    def __init__(self, library: BookLibrary):
        self.library = library

    def resolve(self, book: Book, stored: StoredBookContent | None) -> int:
        try:
            fallback = max(0, reading_global_char_offset(book, stored))
            if stored is None:
                return fallback
            return estimate_safe_offset(stored.chapters, stored.reading_position, fallback)
        except (TypeError, ValueError, ZeroDivisionError, OverflowError) as exc:
            logger.warning("safe_offset_degraded", book_id=book.id, error=str(exc))
            return 0

    def resolve_many(self, book_ids: Iterable[str]) -> dict[str, int]:
        """Safe offset per known book id; unknown ids are skipped."""
        offsets: dict[str, int] = {}
        for book_id in book_ids:
            book = self.library.get_book(book_id)
            if book is None:
                logger.info("safe_offset_unknown_book", book_id=book_id)
                continue
            offsets[book_id] = self.resolve(book, self.library.get_stored_content(book_id))
        return offsets
