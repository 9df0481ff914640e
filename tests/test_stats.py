import pytest

from errors import NotFound
from quiz import QuizConfig
from quiz_sessions import complete_quiz, start_quiz, submit_answer
from stats import (
    get_characters_needing_practice, get_module_quiz_stats, get_overall_quiz_stats, get_quiz_history,
)


def play(user_id, module_id, wrong=()):
    """Run one full quiz, missing the characters whose reading is in ``wrong``."""
    view = start_quiz(user_id, module_id)
    for q in view.questions:
        given = "zz" if q.correct_answer in wrong else q.correct_answer
        submit_answer(user_id, view.id, q.character.id, given)
    complete_quiz(user_id, view.id)
    return view


def test_empty_stats(user, first_module):
    stats = get_module_quiz_stats(user.id, first_module.id)
    assert stats["total_sessions"] == 0
    assert stats["average_score"] == 0.0
    assert stats["weak_characters"] == []
    assert len(stats["character_stats"]) == 5
    assert all(c["total_attempts"] == 0 for c in stats["character_stats"])

    overall = get_overall_quiz_stats(user.id)
    assert overall["total_quizzes"] == 0
    assert overall["overall_accuracy"] == 0.0


def test_module_stats_after_quizzes(user, first_module):
    play(user.id, first_module.id, wrong={"a", "i"})
    play(user.id, first_module.id, wrong={"a"})
    play(user.id, first_module.id)

    stats = get_module_quiz_stats(user.id, first_module.id)
    assert stats["total_sessions"] == 3
    assert stats["best_score"] == pytest.approx(100)
    assert stats["average_score"] == pytest.approx((60 + 80 + 100) / 3)

    by_reading = {c["reading"]: c for c in stats["character_stats"]}
    assert by_reading["a"]["accuracy"] == pytest.approx(1 / 3)
    assert by_reading["a"]["streak_count"] == 1
    assert by_reading["u"]["correct_count"] == 3

    assert [c["reading"] for c in stats["weak_characters"]] == ["a"]
    assert {c["reading"] for c in stats["strong_characters"]} == {"u", "e", "o"}


def test_overall_stats_mastery_uses_config(user, first_module):
    for _ in range(5):
        play(user.id, first_module.id, wrong={"a"})

    overall = get_overall_quiz_stats(user.id)
    assert overall["total_quizzes"] == 5
    assert overall["total_answers"] == 25
    assert overall["total_correct_answers"] == 20
    assert overall["overall_accuracy"] == pytest.approx(0.8)
    assert overall["total_characters_attempted"] == 5
    assert overall["mastered_characters"] == 4

    strict = QuizConfig(min_attempts_for_mastery=6)
    assert get_overall_quiz_stats(user.id, strict)["mastered_characters"] == 0


def test_history_newest_first(user, first_module):
    first = play(user.id, first_module.id, wrong={"a"})
    second = play(user.id, first_module.id)

    history = get_quiz_history(user.id, first_module.id)
    assert [h["session_id"] for h in history] == [second.id, first.id]
    assert history[1]["percentage"] == pytest.approx(80)
    assert len(get_quiz_history(user.id, first_module.id, limit=1)) == 1


def test_characters_needing_practice(user, first_module):
    play(user.id, first_module.id, wrong={"a", "i"})
    play(user.id, first_module.id, wrong={"a"})

    needing = get_characters_needing_practice(user.id)
    # every character has fewer than three attempts, weakest first
    assert [c["reading"] for c in needing[:2]] == ["a", "i"]
    assert len(needing) == 5
    assert len(get_characters_needing_practice(user.id, limit=2)) == 2
    assert len(get_characters_needing_practice(user.id, module_id=first_module.id)) == 5

    play(user.id, first_module.id, wrong={"a"})
    needing = get_characters_needing_practice(user.id, module_id=first_module.id)
    assert [c["reading"] for c in needing] == ["a"]


def test_stats_unknown_module(user, seeded):
    with pytest.raises(NotFound):
        get_module_quiz_stats(user.id, 999)
