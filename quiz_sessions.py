"""Quiz session lifecycle: start, answer, complete, abandon.

A session is ``active`` until ``completed_at`` is set; abandoning deletes it
outright. Every multi-row write happens inside ``models.atomic()`` and the
unique constraints on answers, stats and progress back up the read-then-write
guards when two requests race.
"""
import logging
import random
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from curriculum import get_character, get_module, get_unlocked_module
from errors import EmptyContent, InvalidRequest, InvalidState, NotFound
from models import QuizAnswer, QuizSession, UserCharacterStats, atomic, db, utcnow
from progress import COMPLETION_THRESHOLD, get_progress_percentage, record_session_outcome
from quiz import (
    DEFAULT_QUIZ_CONFIG, QuizCharacter, answers_match, build_questions, generate_quiz, unique_readings,
)

logger = logging.getLogger(__name__)


@dataclass
class QuizSessionView:
    id: int
    module_id: int
    module_name: str
    questions: list
    total_items: int
    started_at: object

    def to_dict(self):
        return {
            "id": self.id,
            "module_id": self.module_id,
            "module_name": self.module_name,
            "questions": [q.to_dict() for q in self.questions],
            "total_items": self.total_items,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class AnswerResult:
    is_correct: bool
    correct_answer: str
    streak_count: int
    accuracy: float

    def to_dict(self):
        return dict(self.__dict__)


@dataclass
class BatchAnswer:
    character_id: int
    user_answer: str
    is_correct: bool = False
    response_time_ms: int = None

    @classmethod
    def from_dict(cls, data):
        try:
            character_id = int(data.get("character_id", data.get("characterId")))
        except (TypeError, ValueError, AttributeError):
            raise InvalidRequest("Each answer needs a character_id")
        user_answer = data.get("user_answer", data.get("userAnswer"))
        if not isinstance(user_answer, str):
            raise InvalidRequest("Each answer needs a user_answer")
        is_correct = data.get("is_correct", data.get("isCorrect", False))
        response_time = data.get("response_time_ms", data.get("responseTimeMs"))
        return cls(character_id, user_answer, bool(is_correct), _optional_int(response_time))


@dataclass
class BatchSubmitResult:
    score: int
    answered: int
    total_items: int

    def to_dict(self):
        return dict(self.__dict__)


@dataclass
class QuizResult:
    session_id: int
    score: int
    total_items: int
    percentage: float
    time_spent_ms: int
    module_progress_updated: bool
    new_module_progress: float
    is_module_completed: bool
    unlocked_next_module: bool

    def to_dict(self):
        return dict(self.__dict__)


def _optional_int(value):
    if value is None:
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        raise InvalidRequest("response_time_ms must be a number")


def _stats_by_character(user_id, character_ids):
    if not character_ids:
        return {}
    rows = UserCharacterStats.query.filter(
        UserCharacterStats.user_id == user_id,
        UserCharacterStats.character_id.in_(character_ids),
    ).all()
    return {s.character_id: s for s in rows}


def _record_attempt(user_id, character_id, is_correct, when, cache=None):
    """Create or update the learner's stats row for one character."""
    stats = cache.get(character_id) if cache is not None else None
    if stats is None:
        stats = UserCharacterStats.query.filter_by(user_id=user_id, character_id=character_id).first()
    if stats is None:
        stats = UserCharacterStats(user_id=user_id, character_id=character_id,
                                   total_attempts=0, correct_count=0, streak_count=0)
        db.session.add(stats)
    stats.record(is_correct, when)
    if cache is not None:
        cache[character_id] = stats
    return stats


def _owned_session(user_id, session_id, lock=False):
    query = QuizSession.query.filter_by(id=session_id, user_id=user_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def _active_session(user_id, session_id):
    session_obj = _owned_session(user_id, session_id)
    if session_obj is None:
        raise NotFound("Quiz session not found")
    if session_obj.is_completed:
        raise InvalidState("Quiz session already completed")
    return session_obj


# ── Start / resume ────────────────────────────────────────────────────────────

def start_quiz(user_id, module_id, config=DEFAULT_QUIZ_CONFIG, rng=None) -> QuizSessionView:
    """Create a session over ``module_id`` leaning toward the learner's weak characters.

    Locked modules are refused with ``ModuleLocked``.
    """
    get_unlocked_module(user_id, module_id)
    module = get_module(module_id)
    characters = [QuizCharacter.from_model(c) for c in module.characters]
    if not characters:
        raise EmptyContent()

    stats = _stats_by_character(user_id, [c.id for c in characters])
    questions = generate_quiz(characters, stats, config, rng or random.Random())

    with atomic():
        session_obj = QuizSession(
            user_id=user_id,
            module_id=module.id,
            total_items=len(questions),
            score=0,
            options_count=config.options_count,
            started_at=utcnow(),
        )
        session_obj.character_ids = [q.character.id for q in questions]
        db.session.add(session_obj)

    logger.info("Quiz %s started: user=%s module=%s items=%d",
                session_obj.id, user_id, module.id, len(questions))
    return QuizSessionView(
        id=session_obj.id,
        module_id=module.id,
        module_name=module.name,
        questions=questions,
        total_items=session_obj.total_items,
        started_at=session_obj.started_at,
    )


def get_active_quiz_session(user_id, session_id, rng=None):
    """Rebuild the unanswered questions of an active session, or None."""
    session_obj = _owned_session(user_id, session_id)
    if session_obj is None or session_obj.is_completed:
        return None

    module_characters = session_obj.module.characters
    by_id = {c.id: QuizCharacter.from_model(c) for c in module_characters}
    answered = {a.character_id for a in session_obj.answers}
    remaining = [by_id[cid] for cid in session_obj.character_ids if cid in by_id and cid not in answered]
    questions = build_questions(remaining, unique_readings(module_characters),
                                session_obj.options_count, rng or random.Random())
    return QuizSessionView(
        id=session_obj.id,
        module_id=session_obj.module_id,
        module_name=session_obj.module.name,
        questions=questions,
        total_items=session_obj.total_items,
        started_at=session_obj.started_at,
    )


# ── Answers ───────────────────────────────────────────────────────────────────

def submit_answer(user_id, session_id, character_id, user_answer, response_time_ms=None) -> AnswerResult:
    session_obj = _active_session(user_id, session_id)

    existing = QuizAnswer.query.filter_by(session_id=session_obj.id, character_id=character_id).first()
    if existing is not None:
        raise InvalidState("Character already answered in this session")

    character = get_character(character_id)
    if session_obj.character_ids and character.id not in session_obj.character_ids:
        raise NotFound("Character is not part of this quiz")

    is_correct = answers_match(user_answer, character.reading)
    now = utcnow()
    try:
        with atomic():
            db.session.add(QuizAnswer(
                session_id=session_obj.id,
                character_id=character.id,
                user_answer=user_answer,
                is_correct=is_correct,
                response_time_ms=response_time_ms,
                created_at=now,
            ))
            if is_correct:
                session_obj.score += 1
            stats = _record_attempt(user_id, character.id, is_correct, now)
    except IntegrityError:
        # the answer or the learner's stats row was written by a concurrent request
        logger.info("Answer write conflicted: session=%s character=%s", session_id, character_id)
        raise InvalidState("Answer conflicted with a concurrent submission, please retry")

    return AnswerResult(
        is_correct=is_correct,
        correct_answer=character.reading,
        streak_count=stats.streak_count,
        accuracy=stats.accuracy,
    )


def submit_answers_batch(user_id, session_id, answers) -> BatchSubmitResult:
    """Write a whole quiz's answers at once.

    Only allowed while the session has no answers. Correctness is recomputed
    here with the same rule the client used; the client's flag is only
    compared and logged.
    """
    session_obj = _active_session(user_id, session_id)
    if not answers:
        raise InvalidRequest("No answers provided")

    if QuizAnswer.query.filter_by(session_id=session_obj.id).count() > 0:
        raise InvalidState("Answers already submitted for this session")

    seen = set()
    for answer in answers:
        if answer.character_id in seen:
            raise InvalidState("Character already answered in this session")
        seen.add(answer.character_id)
    if len(answers) > session_obj.total_items:
        raise InvalidRequest("More answers than questions in this quiz")

    characters = {cid: get_character(cid) for cid in seen}
    allowed = set(session_obj.character_ids)
    if allowed and not seen <= allowed:
        raise NotFound("Character is not part of this quiz")

    now = utcnow()
    score = 0
    stats_cache = _stats_by_character(user_id, list(seen))
    try:
        with atomic():
            for answer in answers:
                reading = characters[answer.character_id].reading
                is_correct = answers_match(answer.user_answer, reading)
                if is_correct != answer.is_correct:
                    logger.warning(
                        "Client scored session=%s character=%s as %s, server says %s",
                        session_id, answer.character_id, answer.is_correct, is_correct,
                    )
                if is_correct:
                    score += 1
                db.session.add(QuizAnswer(
                    session_id=session_obj.id,
                    character_id=answer.character_id,
                    user_answer=answer.user_answer,
                    is_correct=is_correct,
                    response_time_ms=answer.response_time_ms,
                    created_at=now,
                ))
                _record_attempt(user_id, answer.character_id, is_correct, now, stats_cache)
            session_obj.score = score
    except IntegrityError:
        logger.info("Concurrent batch rejected for session %s", session_id)
        raise InvalidState("Answers conflicted with a concurrent submission, please retry")

    return BatchSubmitResult(score=score, answered=len(answers), total_items=session_obj.total_items)


def get_quiz_progress(user_id, session_id):
    session_obj = _owned_session(user_id, session_id)
    if session_obj is None:
        raise NotFound("Quiz session not found")
    answered = QuizAnswer.query.filter_by(session_id=session_obj.id).count()
    return {"score": session_obj.score, "answered": answered, "total_items": session_obj.total_items}


# ── Completion ────────────────────────────────────────────────────────────────

def complete_quiz(user_id, session_id) -> QuizResult:
    """Close the session and fold its score into module progress."""
    with atomic():
        session_obj = _owned_session(user_id, session_id, lock=True)
        if session_obj is None:
            raise NotFound("Quiz session not found")
        if session_obj.is_completed:
            raise InvalidState("Quiz session already completed")

        session_obj.completed_at = utcnow()
        update = record_session_outcome(
            user_id, session_obj.module_id, session_obj.score, session_obj.total_items,
            exclude_session_id=session_obj.id,
        )

    logger.info("Quiz %s completed: %d/%d", session_obj.id, session_obj.score, session_obj.total_items)
    return QuizResult(
        session_id=session_obj.id,
        score=session_obj.score,
        total_items=session_obj.total_items,
        percentage=session_obj.percentage,
        time_spent_ms=session_obj.time_spent_ms,
        module_progress_updated=update.changed,
        new_module_progress=update.new,
        is_module_completed=update.newly_completed,
        unlocked_next_module=update.unlocked_next_module,
    )


def abandon_quiz(user_id, session_id):
    """Delete an active session and its answers; no trace, no progress impact."""
    session_obj = _active_session(user_id, session_id)
    with atomic():
        db.session.delete(session_obj)
    logger.info("Quiz %s abandoned by user %s", session_id, user_id)


def get_quiz_result(user_id, session_id):
    """Result of a completed session, or None.

    Whether this session unlocked the next module cannot be reconstructed
    afterwards, so ``unlocked_next_module`` is always False here.
    """
    session_obj = _owned_session(user_id, session_id)
    if session_obj is None or not session_obj.is_completed:
        return None
    progress = get_progress_percentage(user_id, session_obj.module_id, default=session_obj.percentage)
    return QuizResult(
        session_id=session_obj.id,
        score=session_obj.score,
        total_items=session_obj.total_items,
        percentage=session_obj.percentage,
        time_spent_ms=session_obj.time_spent_ms,
        module_progress_updated=True,
        new_module_progress=progress,
        is_module_completed=progress >= COMPLETION_THRESHOLD,
        unlocked_next_module=False,
    )
