"""
Lifecycle of AI comment threads attached to a note.

A thread opens with one AI comment (summon), grows by user/AI pairs (reply),
and shrinks by truncation (delete message, regenerate). Persisted state only
changes at well-defined commit points; cancellation never rolls back what was
already committed.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from .cancellation import CancellationToken, OperationGate
from .config import COMMENT_RETRIEVAL_TOP_K, MAX_SUMMON_CHARACTERS, READING_EXCERPT_CHARS
from .context_assembler import (
    build_note_comment_prompt,
    build_note_reply_prompt,
    load_book_contexts,
    parse_comment,
)
from .errors import ConfigurationError, EntityNotFoundError, GenerationError, OperationCancelled
from .model_client import ModelClient
from .models import Character, CommentThread, Message, MessageRole, Notebook, Note, Persona, now_ms
from .notebooks import NotebookService
from .observability import get_logger
from .retrieval import ChunkRetriever, build_retrieval_query
from .storage import ProfileDirectory

logger = get_logger(__name__)

THREAD_OPERATION = "thread"


@dataclass
class SummonOutcome:
    threads: list[CommentThread] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


class ThreadEngine:
    def __init__(
        self,
        notebooks: NotebookService,
        profiles: ProfileDirectory,
        retriever: ChunkRetriever,
        model: ModelClient,
        *,
        gate: OperationGate | None = None,
        excerpt_chars: int = READING_EXCERPT_CHARS,
        top_k: int = COMMENT_RETRIEVAL_TOP_K,
    ):
        self.notebooks = notebooks
        self.profiles = profiles
        self.retriever = retriever
        self.model = model
        self.gate = gate or OperationGate()
        self.excerpt_chars = excerpt_chars
        self.top_k = top_k

    # --- Helpers ---

    def _persona(self, notebook: Notebook) -> Persona:
        persona = self.profiles.get_persona(notebook.persona_id)
        if persona is None:
            raise EntityNotFoundError("persona", notebook.persona_id)
        return persona

    def _thread(self, notebook_id: str, note_id: str, thread_id: str) -> tuple[Notebook, Note, CommentThread]:
        notebook, note = self.notebooks.get_note(notebook_id, note_id)
        thread = note.find_thread(thread_id)
        if thread is None:
            raise EntityNotFoundError("thread", thread_id)
        return notebook, note, thread

    def _character_for(self, thread: CommentThread) -> Character:
        character = self.profiles.get_character(thread.character_id)
        if character is None:
            raise EntityNotFoundError("character", thread.character_id)
        return character

    async def _rag_context(self, notebook: Notebook, query: str, token: CancellationToken) -> dict[str, str]:
        return await self.retriever.retrieve_context(
            query, notebook.bound_book_ids, top_k=self.top_k, per_book=True, token=token
        )

    def _commit_thread(
        self,
        notebook_id: str,
        note_id: str,
        thread_id: str,
        messages: list[Message],
    ) -> CommentThread:
        """Re-reads the notebook and replaces the thread's messages in one write."""
        notebook, note, thread = self._thread(notebook_id, note_id, thread_id)
        thread.messages = list(messages)
        thread.updated_at = now_ms()
        note.updated_at = thread.updated_at
        notebook.updated_at = thread.updated_at
        self.notebooks.store.put_notebook(notebook)
        return thread

    # --- Operations ---

    def is_busy(self, note_id: str) -> bool:
        return self.gate.is_busy(THREAD_OPERATION, note_id)

    def cancel(self, note_id: str) -> bool:
        return self.gate.cancel(THREAD_OPERATION, note_id)

    async def summon(self, notebook_id: str, note_id: str, character_ids: list[str]) -> SummonOutcome | None:
        """
        Opens one thread per character, sequentially. Returns None when a
        thread operation on this note is already running.
        """
        if not character_ids or len(character_ids) > MAX_SUMMON_CHARACTERS:
            raise ConfigurationError(f"summon needs between 1 and {MAX_SUMMON_CHARACTERS} characters")
        notebook, note = self.notebooks.get_note(notebook_id, note_id)
        if not note.content.strip():
            raise ConfigurationError("note is empty")
        persona = self._persona(notebook)

        token = self.gate.try_acquire(THREAD_OPERATION, note_id)
        if token is None:
            return None

        outcome = SummonOutcome()
        try:
            for character_id in character_ids:
                if token.cancelled:
                    outcome.cancelled = True
                    break
                character = self.profiles.get_character(character_id)
                if character is None:
                    logger.info("summon_character_skipped", note_id=note_id, character_id=character_id)
                    continue
                try:
                    thread = await self._open_thread(notebook_id, note_id, persona, character, token)
                except OperationCancelled:
                    outcome.cancelled = True
                    break
                except (GenerationError, EntityNotFoundError) as exc:
                    logger.warning(
                        "thread_summon_failed",
                        note_id=note_id,
                        character_id=character_id,
                        error=str(exc),
                    )
                    outcome.failures[character_id] = str(exc)
                    if isinstance(exc, EntityNotFoundError):
                        break
                    continue
                outcome.threads.append(thread)
        finally:
            self.gate.release(THREAD_OPERATION, note_id, token)

        logger.info(
            "summon_finished",
            note_id=note_id,
            created=len(outcome.threads),
            failed=len(outcome.failures),
            cancelled=outcome.cancelled,
        )
        return outcome

    async def _open_thread(
        self,
        notebook_id: str,
        note_id: str,
        persona: Persona,
        character: Character,
        token: CancellationToken,
    ) -> CommentThread:
        notebook, note = self.notebooks.get_note(notebook_id, note_id)
        book_contexts = load_book_contexts(self.notebooks.library, notebook.bound_book_ids, self.excerpt_chars)
        rag = await self._rag_context(notebook, build_retrieval_query(note.content), token)
        prompt = build_note_comment_prompt(
            persona=persona,
            character=character,
            world_book_entries=self.profiles.world_book_entries,
            note_content=note.content,
            book_contexts=book_contexts,
            rag_context_by_book_id=rag,
        )
        comment = parse_comment(await self.model.invoke(prompt, token, kind="note_comment"))
        if not comment:
            raise GenerationError("model reply contained no comment")

        # Commit against a fresh read; nothing awaits between read and write.
        notebook, note = self.notebooks.get_note(notebook_id, note_id)
        thread = CommentThread(
            character_id=character.id,
            character_name=character.display_name,
            character_avatar=character.avatar,
            messages=[Message(role=MessageRole.AI, content=comment)],
        )
        note.comment_threads.append(thread)
        note.updated_at = thread.created_at
        notebook.updated_at = thread.created_at
        self.notebooks.store.put_notebook(notebook)
        logger.info("thread_created", note_id=note_id, thread_id=thread.id, character_id=character.id)
        return thread

    async def reply(self, notebook_id: str, note_id: str, thread_id: str, text: str) -> CommentThread | None:
        """
        Appends the user's reply immediately, then asks the character to answer.
        The user message survives model failure and cancellation.
        """
        reply_text = (text or "").strip()
        if not reply_text:
            raise ConfigurationError("reply is empty")
        notebook, note, thread = self._thread(notebook_id, note_id, thread_id)
        persona = self._persona(notebook)
        character = self._character_for(thread)

        token = self.gate.try_acquire(THREAD_OPERATION, note_id)
        if token is None:
            return None
        try:
            previous = list(thread.messages)
            user_message = Message(role=MessageRole.USER, content=reply_text)
            thread = self._commit_thread(notebook_id, note_id, thread_id, previous + [user_message])

            try:
                ai_message = await self._generate_reply(
                    notebook, note, persona, character, previous, reply_text, token
                )
            except OperationCancelled:
                logger.info("thread_reply_cancelled", note_id=note_id, thread_id=thread_id)
                return thread

            current = self._thread(notebook_id, note_id, thread_id)[2]
            thread = self._commit_thread(notebook_id, note_id, thread_id, current.messages + [ai_message])
            logger.info("thread_replied", note_id=note_id, thread_id=thread_id, messages=len(thread.messages))
            return thread
        finally:
            self.gate.release(THREAD_OPERATION, note_id, token)

    async def _generate_reply(
        self,
        notebook: Notebook,
        note: Note,
        persona: Persona,
        character: Character,
        previous: list[Message],
        latest_reply: str,
        token: CancellationToken,
    ) -> Message:
        book_contexts = load_book_contexts(self.notebooks.library, notebook.bound_book_ids, self.excerpt_chars)
        rag = await self._rag_context(notebook, build_retrieval_query(note.content, latest_reply), token)
        prompt = build_note_reply_prompt(
            persona=persona,
            character=character,
            world_book_entries=self.profiles.world_book_entries,
            note_content=note.content,
            book_contexts=book_contexts,
            previous_messages=previous,
            latest_user_reply=latest_reply,
            rag_context_by_book_id=rag,
        )
        content = parse_comment(await self.model.invoke(prompt, token, kind="note_reply"))
        if not content:
            raise GenerationError("model reply contained no comment")
        return Message(role=MessageRole.AI, content=content)

    def delete_message(self, notebook_id: str, note_id: str, thread_id: str, index: int) -> CommentThread | None:
        """
        Index 0 removes the whole thread and returns None; any other index keeps
        only the messages before it.
        """
        notebook, note, thread = self._thread(notebook_id, note_id, thread_id)
        if not 0 <= index < len(thread.messages):
            raise ConfigurationError(f"message index out of range: {index}")

        if index == 0:
            note.comment_threads = [t for t in note.comment_threads if t.id != thread_id]
            note.updated_at = now_ms()
            notebook.updated_at = note.updated_at
            self.notebooks.store.put_notebook(notebook)
            logger.info("thread_deleted", note_id=note_id, thread_id=thread_id)
            return None

        thread = self._commit_thread(notebook_id, note_id, thread_id, thread.messages[:index])
        logger.info("thread_truncated", note_id=note_id, thread_id=thread_id, messages=index)
        return thread

    async def regenerate(self, notebook_id: str, note_id: str, thread_id: str, index: int) -> CommentThread | None:
        """
        Replaces messages[index:] with one fresh AI message. The truncation is
        only written together with the new message; on failure or cancellation
        the thread is left as it was.
        """
        notebook, note, thread = self._thread(notebook_id, note_id, thread_id)
        if not 0 <= index < len(thread.messages):
            raise ConfigurationError(f"message index out of range: {index}")
        persona = self._persona(notebook)
        character = self._character_for(thread)

        token = self.gate.try_acquire(THREAD_OPERATION, note_id)
        if token is None:
            return None
        try:
            truncated = list(thread.messages[:index])
            try:
                if index == 0:
                    book_contexts = load_book_contexts(
                        self.notebooks.library, notebook.bound_book_ids, self.excerpt_chars
                    )
                    rag = await self._rag_context(notebook, build_retrieval_query(note.content), token)
                    prompt = build_note_comment_prompt(
                        persona=persona,
                        character=character,
                        world_book_entries=self.profiles.world_book_entries,
                        note_content=note.content,
                        book_contexts=book_contexts,
                        rag_context_by_book_id=rag,
                    )
                    content = parse_comment(await self.model.invoke(prompt, token, kind="note_comment"))
                    if not content:
                        raise GenerationError("model reply contained no comment")
                    ai_message = Message(role=MessageRole.AI, content=content)
                else:
                    ai_message = await self._generate_reply(
                        notebook, note, persona, character, truncated, truncated[-1].content, token
                    )
            except OperationCancelled:
                logger.info("thread_regenerate_cancelled", note_id=note_id, thread_id=thread_id)
                return thread

            thread = self._commit_thread(notebook_id, note_id, thread_id, truncated + [ai_message])
            logger.info("thread_regenerated", note_id=note_id, thread_id=thread_id, index=index)
            return thread
        finally:
            self.gate.release(THREAD_OPERATION, note_id, token)
