"""
Quiz sessions: generate, answer, submit, exit and resume.

A session lives only in memory while being played; exiting or submitting
writes it to the study-hub store. Submitted sessions are terminal.
"""
from __future__ import annotations

from .cancellation import OperationGate
from .config import OVERALL_COMMENT_PLACEHOLDER, QUIZ_RETRIEVAL_TOP_K, READING_EXCERPT_CHARS
from .context_assembler import (
    build_quiz_generation_prompt,
    build_quiz_overall_comment_prompt,
    load_book_contexts,
    parse_comment,
    parse_quiz_questions,
)
from .errors import (
    CommentError,
    ConfigurationError,
    EntityNotFoundError,
    GenerationError,
    NoReadableContextError,
    OperationCancelled,
)
from .model_client import ModelClient
from .models import QuestionType, QuizConfig, QuizQuestion, QuizScore, QuizSession, now_ms
from .observability import get_logger
from .retrieval import ChunkRetriever
from .storage import BookLibrary, ProfileDirectory, StudyHubStore

logger = get_logger(__name__)

QUIZ_GENERATE_OPERATION = "quiz_generate"
QUIZ_SUBMIT_OPERATION = "quiz_submit"
TRUE_FALSE_OPTIONS = ["True", "False"]


def is_answer_correct(question: QuizQuestion, answer: list[int] | None) -> bool:
    return question.is_correct(answer)


def score(session: QuizSession) -> QuizScore:
    correct = sum(
        1 for question in session.questions if is_answer_correct(question, session.user_answers.get(question.id))
    )
    return QuizScore(correct=correct, total=len(session.questions))


def first_unanswered_index(session: QuizSession) -> int:
    for index, question in enumerate(session.questions):
        if not session.user_answers.get(question.id):
            return index
    return 0


def _normalize_question(question: QuizQuestion, config: QuizConfig) -> QuizQuestion:
    """Configured type wins; true/false questions always carry exactly two options."""
    if config.question_type is QuestionType.TRUEFALSE:
        indices = [i for i in question.correct_answer_indices if i in (0, 1)][:1]
        return question.model_copy(
            update={
                "type": QuestionType.TRUEFALSE,
                "options": list(TRUE_FALSE_OPTIONS),
                "correct_answer_indices": indices,
            }
        )
    return question.model_copy(update={"type": config.question_type})


class QuizSessionEngine:
    def __init__(
        self,
        store: StudyHubStore,
        library: BookLibrary,
        profiles: ProfileDirectory,
        retriever: ChunkRetriever,
        model: ModelClient,
        *,
        gate: OperationGate | None = None,
        excerpt_chars: int = READING_EXCERPT_CHARS,
        top_k: int = QUIZ_RETRIEVAL_TOP_K,
    ):
        self.store = store
        self.library = library
        self.profiles = profiles
        self.retriever = retriever
        self.model = model
        self.gate = gate or OperationGate()
        self.excerpt_chars = excerpt_chars
        self.top_k = top_k
        self._active: dict[str, QuizSession] = {}

    # --- Lookup ---

    def get_session(self, session_id: str) -> QuizSession:
        """The in-play session if there is one, otherwise the persisted record."""
        session = self._active.get(session_id) or self.store.get_quiz_session(session_id)
        if session is None:
            raise EntityNotFoundError("quiz session", session_id)
        return session

    def _active_session(self, session_id: str) -> QuizSession:
        session = self._active.get(session_id)
        if session is None:
            raise EntityNotFoundError("active quiz session", session_id)
        return session

    def list_sessions(self) -> list[QuizSession]:
        return self.store.get_all_quiz_sessions()

    def delete_session(self, session_id: str):
        self._active.pop(session_id, None)
        self.store.delete_quiz_session(session_id)
        logger.info("quiz_session_deleted", session_id=session_id)

    def cancel_generation(self, book_ids: list[str]) -> bool:
        return self.gate.cancel(QUIZ_GENERATE_OPERATION, _book_set_key(book_ids))

    # --- Generate ---

    async def start(self, config: QuizConfig, character_id: str | None = None) -> QuizSession | None:
        """
        Generates a new in-memory session. Returns None when a generation for
        the same book set is already running.
        """
        if not config.book_ids:
            raise ConfigurationError("a quiz needs at least one book")
        if not config.custom_prompt.strip():
            raise ConfigurationError("a quiz needs a prompt")

        book_contexts = load_book_contexts(self.library, config.book_ids, self.excerpt_chars)
        if not book_contexts:
            raise NoReadableContextError("none of the selected books has readable content yet")

        key = _book_set_key(config.book_ids)
        token = self.gate.try_acquire(QUIZ_GENERATE_OPERATION, key)
        if token is None:
            return None
        try:
            rag = await self.retriever.retrieve_context(
                config.custom_prompt, config.book_ids, top_k=self.top_k, per_book=True, token=token
            )
            prompt = build_quiz_generation_prompt(
                book_contexts=book_contexts, config=config, rag_context_by_book_id=rag
            )
            raw = await self.model.invoke(prompt, token, kind="quiz_generation")
        finally:
            self.gate.release(QUIZ_GENERATE_OPERATION, key, token)

        questions = [_normalize_question(q, config) for q in parse_quiz_questions(raw)]
        if not questions:
            logger.warning("quiz_generation_empty", book_ids=config.book_ids)
            raise GenerationError("model reply contained no usable questions")

        character = self.profiles.get_character(character_id)
        session = QuizSession(
            config=config,
            questions=questions,
            character_id=character.id if character else "",
            character_name=character.display_name if character else "",
        )
        self._active[session.id] = session
        logger.info("quiz_generated", session_id=session.id, questions=len(questions), type=config.question_type.value)
        return session

    # --- Play ---

    def select(self, session_id: str, question_id: str, option_index: int) -> QuizSession:
        """Single and true/false answers replace the selection; multiple-answer toggles it."""
        session = self._active_session(session_id)
        if session.is_completed:
            raise ConfigurationError("session is already submitted")
        question = session.find_question(question_id)
        if question is None:
            raise EntityNotFoundError("question", question_id)
        if not 0 <= option_index < len(question.options):
            raise ConfigurationError(f"option index out of range: {option_index}")

        if question.type.allows_multiple_answers:
            current = list(session.user_answers.get(question_id, []))
            if option_index in current:
                current.remove(option_index)
            else:
                current.append(option_index)
            session.user_answers[question_id] = current
        else:
            session.user_answers[question_id] = [option_index]
        return session

    def exit(self, session_id: str) -> QuizSession:
        """Persists the unfinished session (insert or update by id) and leaves play."""
        session = self._active.pop(session_id, None)
        if session is None:
            raise EntityNotFoundError("active quiz session", session_id)
        self.store.put_quiz_session(session)
        logger.info(
            "quiz_session_exited",
            session_id=session_id,
            answered=sum(1 for a in session.user_answers.values() if a),
            total=len(session.questions),
        )
        return session

    def resume(self, session_id: str) -> tuple[QuizSession, int]:
        """Re-enters an unfinished session at its first unanswered question."""
        session = self.get_session(session_id)
        if session.is_completed:
            raise ConfigurationError("submitted sessions cannot be resumed")
        self._active[session.id] = session
        return session, first_unanswered_index(session)

    async def submit(self, session_id: str, persona_id: str | None = None, character_id: str | None = None) -> QuizSession | None:
        """
        Freezes the answers, stamps completion and persists. The overall
        comment is best effort: a failed call stores the placeholder instead.
        """
        session = self._active_session(session_id)
        if session.is_completed:
            raise ConfigurationError("session is already submitted")

        token = self.gate.try_acquire(QUIZ_SUBMIT_OPERATION, session_id)
        if token is None:
            return None
        try:
            session.user_answers = {qid: list(answer) for qid, answer in session.user_answers.items()}
            session.completed_at = now_ms()
            character = self.profiles.get_character(character_id or session.character_id)
            if character is not None:
                session.character_id = character.id
                session.character_name = character.display_name
            session.overall_comment = OVERALL_COMMENT_PLACEHOLDER
            try:
                session.overall_comment = await self._overall_comment(session, persona_id, token)
            except (CommentError, OperationCancelled) as exc:
                logger.warning("quiz_overall_comment_failed", session_id=session_id, error=str(exc))
            except Exception as exc:
                logger.error(
                    "quiz_overall_comment_failed",
                    session_id=session_id,
                    error=str(exc),
                    exc_info=True,
                )
            finally:
                self.store.put_quiz_session(session)
                self._active.pop(session_id, None)
        finally:
            self.gate.release(QUIZ_SUBMIT_OPERATION, session_id, token)

        result = score(session)
        logger.info("quiz_submitted", session_id=session_id, correct=result.correct, total=result.total)
        return session

    async def _overall_comment(self, session: QuizSession, persona_id: str | None, token) -> str:
        persona = self.profiles.get_persona(persona_id)
        character = self.profiles.get_character(session.character_id)
        if persona is None or character is None:
            raise CommentError("overall comment needs a persona and a character")
        titles = []
        for book_id in session.config.book_ids:
            book = self.library.get_book(book_id)
            if book is not None:
                titles.append(book.title)
        prompt = build_quiz_overall_comment_prompt(
            persona=persona,
            character=character,
            world_book_entries=self.profiles.world_book_entries,
            questions=session.questions,
            user_answers=session.user_answers,
            book_titles=titles,
        )
        try:
            raw = await self.model.invoke(prompt, token, kind="quiz_overall_comment")
        except GenerationError as exc:
            raise CommentError(str(exc)) from exc
        comment = parse_comment(raw)
        if not comment:
            raise CommentError("model reply contained no comment")
        return comment


def _book_set_key(book_ids: list[str]) -> str:
    return ",".join(sorted(set(book_ids)))
