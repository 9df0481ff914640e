"""Module progress: smoothing a finished quiz into the learner's percentage."""
import logging
from dataclasses import dataclass

from models import QuizSession, UserProgress, db, utcnow

logger = logging.getLogger(__name__)

UNLOCK_THRESHOLD = 80
COMPLETION_THRESHOLD = 100

# Share of the new quiz in the blended percentage
NEW_SESSION_WEIGHT = 0.4
# Largest drop a single quiz may cause
MAX_REGRESSION = 10


@dataclass
class ProgressUpdate:
    previous: float
    new: float
    changed: bool
    newly_completed: bool
    unlocked_next_module: bool

    @classmethod
    def between(cls, previous, new):
        """Flags for a move from ``previous`` to ``new``; thresholds count only when crossed."""
        return cls(
            previous=previous,
            new=new,
            changed=new != previous,
            newly_completed=previous < COMPLETION_THRESHOLD <= new,
            unlocked_next_module=previous < UNLOCK_THRESHOLD <= new,
        )


def calculate_new_progress(current_progress, quiz_percentage, session_count):
    """Blend a quiz percentage into the running module progress.

    ``session_count`` includes the quiz being folded in, so 1 means this is
    the first completed quiz and its percentage is taken as-is.
    """
    if session_count <= 1:
        return quiz_percentage

    blended = current_progress * (1 - NEW_SESSION_WEIGHT) + quiz_percentage * NEW_SESSION_WEIGHT
    floor = max(0, current_progress - MAX_REGRESSION)
    return max(floor, min(100, blended))


def evaluate_progress(previous, quiz_percentage, session_count) -> ProgressUpdate:
    return ProgressUpdate.between(previous, calculate_new_progress(previous, quiz_percentage, session_count))


def is_module_accessible(index, previous_progress) -> bool:
    """Modules unlock in order: the first always, others once the one before reaches the threshold."""
    if index == 0:
        return True
    return (previous_progress or 0) >= UNLOCK_THRESHOLD


def get_progress_percentage(user_id, module_id, default=0.0) -> float:
    row = UserProgress.query.filter_by(user_id=user_id, module_id=module_id).first()
    return row.percentage if row else default


def record_session_outcome(user_id, module_id, score, total_items, exclude_session_id=None) -> ProgressUpdate:
    """Fold one finished quiz into ``UserProgress``.

    Writes into the current transaction; the caller commits. Sessions already
    marked completed count toward the session total, except
    ``exclude_session_id`` (the one being completed right now).
    """
    row = UserProgress.query.filter_by(user_id=user_id, module_id=module_id).first()
    previous = row.percentage if row else 0.0

    prior = QuizSession.query.filter(
        QuizSession.user_id == user_id,
        QuizSession.module_id == module_id,
        QuizSession.completed_at.isnot(None),
    )
    if exclude_session_id is not None:
        prior = prior.filter(QuizSession.id != exclude_session_id)
    session_count = prior.count() + 1

    quiz_percentage = score / total_items * 100 if total_items else 0.0
    update = evaluate_progress(previous, quiz_percentage, session_count)

    if row is None:
        row = UserProgress(user_id=user_id, module_id=module_id, percentage=update.new)
        db.session.add(row)
    else:
        row.percentage = update.new
        row.updated_at = utcnow()

    logger.info(
        "Progress user=%s module=%s %.1f -> %.1f (session %d)",
        user_id, module_id, previous, update.new, session_count,
    )
    if update.unlocked_next_module:
        logger.info("User %s unlocked the module after %s", user_id, module_id)
    return update
