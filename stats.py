"""Read-only learner statistics for dashboards and practice suggestions."""
from curriculum import get_module
from models import QuizSession, UserCharacterStats
from quiz import DEFAULT_QUIZ_CONFIG

# Accuracy below this marks a character as weak
WEAK_THRESHOLD = 0.6
# Accuracy at or above this, with enough attempts, marks it as strong
STRONG_THRESHOLD = 0.85
MIN_ATTEMPTS_FOR_STRONG = 3


def _character_stats(character, stats):
    attempts = stats.total_attempts if stats else 0
    correct = stats.correct_count if stats else 0
    return {
        "character_id": character.id,
        "character": character.character,
        "reading": character.reading,
        "total_attempts": attempts,
        "correct_count": correct,
        "accuracy": correct / attempts if attempts else 0.0,
        "streak_count": stats.streak_count if stats else 0,
        "last_attempt_at": stats.last_attempt_at.isoformat() if stats and stats.last_attempt_at else None,
    }


def _completed_sessions(user_id, module_id=None):
    query = QuizSession.query.filter(
        QuizSession.user_id == user_id,
        QuizSession.completed_at.isnot(None),
    )
    if module_id is not None:
        query = query.filter(QuizSession.module_id == module_id)
    return query.order_by(QuizSession.completed_at.desc())


def get_module_quiz_stats(user_id, module_id):
    module = get_module(module_id)
    sessions = _completed_sessions(user_id, module.id).all()

    characters = module.characters
    rows = UserCharacterStats.query.filter(
        UserCharacterStats.user_id == user_id,
        UserCharacterStats.character_id.in_([c.id for c in characters]),
    ).all() if characters else []
    stats_map = {s.character_id: s for s in rows}

    character_stats = [_character_stats(c, stats_map.get(c.id)) for c in characters]
    weak = sorted(
        (c for c in character_stats if c["total_attempts"] > 0 and c["accuracy"] < WEAK_THRESHOLD),
        key=lambda c: c["accuracy"],
    )
    strong = sorted(
        (c for c in character_stats
         if c["total_attempts"] >= MIN_ATTEMPTS_FOR_STRONG and c["accuracy"] >= STRONG_THRESHOLD),
        key=lambda c: c["accuracy"],
        reverse=True,
    )

    scores = [s.percentage for s in sessions]
    return {
        "module_id": module.id,
        "module_name": module.name,
        "total_sessions": len(sessions),
        "average_score": sum(scores) / len(scores) if scores else 0.0,
        "best_score": max(scores) if scores else 0.0,
        "total_time_spent_ms": sum(s.time_spent_ms for s in sessions),
        "character_stats": character_stats,
        "weak_characters": weak,
        "strong_characters": strong,
    }


def get_overall_quiz_stats(user_id, config=DEFAULT_QUIZ_CONFIG):
    sessions = _completed_sessions(user_id).all()
    all_stats = UserCharacterStats.query.filter_by(user_id=user_id).all()

    total_correct = sum(s.score for s in sessions)
    total_answers = sum(s.total_items for s in sessions)
    mastered = [
        s for s in all_stats
        if s.total_attempts >= config.min_attempts_for_mastery and s.accuracy >= config.mastery_threshold
    ]
    return {
        "total_quizzes": len(sessions),
        "total_correct_answers": total_correct,
        "total_answers": total_answers,
        "overall_accuracy": total_correct / total_answers if total_answers else 0.0,
        "total_time_spent_ms": sum(s.time_spent_ms for s in sessions),
        "mastered_characters": len(mastered),
        "total_characters_attempted": len(all_stats),
    }


def get_quiz_history(user_id, module_id, limit=10):
    """Completed sessions for a module, newest first."""
    sessions = _completed_sessions(user_id, module_id).limit(limit).all()
    return [
        {
            "session_id": s.id,
            "score": s.score,
            "total_items": s.total_items,
            "percentage": s.percentage,
            "completed_at": s.completed_at.isoformat(),
            "time_spent_ms": s.time_spent_ms,
        }
        for s in sessions
    ]


def get_characters_needing_practice(user_id, module_id=None, limit=10):
    """Attempted characters that are weak or barely practised, weakest first."""
    query = UserCharacterStats.query.filter_by(user_id=user_id)
    if module_id is not None:
        character_ids = [c.id for c in get_module(module_id).characters]
        query = query.filter(UserCharacterStats.character_id.in_(character_ids))

    candidates = [
        _character_stats(s.character, s)
        for s in query.all()
        if s.accuracy < WEAK_THRESHOLD or s.total_attempts < MIN_ATTEMPTS_FOR_STRONG
    ]
    candidates.sort(key=lambda c: (c["accuracy"], -c["total_attempts"]))
    return candidates[:limit]
