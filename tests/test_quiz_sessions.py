import random

import pytest

import quiz_sessions
from curriculum import list_modules
from errors import EmptyContent, InvalidRequest, InvalidState, ModuleLocked, NotFound
from models import Module, QuizAnswer, QuizSession, UserCharacterStats, UserProgress, db
from progress import get_progress_percentage
from quiz import QuizConfig
from quiz_sessions import (
    BatchAnswer, abandon_quiz, complete_quiz, get_active_quiz_session, get_quiz_progress,
    get_quiz_result, start_quiz, submit_answer, submit_answers_batch,
)


def answer_all(user_id, view, wrong=()):
    for q in view.questions:
        given = "zz" if q.character.id in wrong else q.correct_answer
        submit_answer(user_id, view.id, q.character.id, given)


def test_start_quiz_caps_to_module_size(user, first_module):
    view = start_quiz(user.id, first_module.id, QuizConfig(question_count=10), rng=random.Random(1))
    assert view.total_items == 5
    assert view.module_name == "Hiragana - Vowels"
    assert len({q.character.id for q in view.questions}) == 5
    for q in view.questions:
        assert len(q.options) == 4
        assert q.options.count(q.correct_answer) == 1

    stored = db.session.get(QuizSession, view.id)
    assert sorted(stored.character_ids) == sorted(q.character.id for q in view.questions)
    assert stored.score == 0
    assert not stored.is_completed


def test_start_quiz_respects_question_count(user, first_module):
    view = start_quiz(user.id, first_module.id, QuizConfig(question_count=3, options_count=2))
    assert view.total_items == 3
    assert all(len(q.options) == 2 for q in view.questions)


def test_start_quiz_on_empty_module(user, seeded):
    # order 0 sorts first, so the module is unlocked
    module = Module(name="Empty", order=0)
    db.session.add(module)
    db.session.commit()
    with pytest.raises(EmptyContent):
        start_quiz(user.id, module.id)


def test_start_quiz_unknown_module(user, seeded):
    with pytest.raises(NotFound):
        start_quiz(user.id, 12345)


def test_start_quiz_on_locked_module(user, seeded):
    modules = list_modules()
    with pytest.raises(ModuleLocked):
        start_quiz(user.id, modules[5].id)
    with pytest.raises(ModuleLocked):
        start_quiz(user.id, modules[1].id)
    assert QuizSession.query.count() == 0

    db.session.add(UserProgress(user_id=user.id, module_id=modules[0].id, percentage=80))
    db.session.commit()
    assert start_quiz(user.id, modules[1].id).module_name == "Hiragana - K-line"


def test_submit_answer_scores_and_tracks_stats(user, first_module):
    view = start_quiz(user.id, first_module.id)
    q = view.questions[0]

    result = submit_answer(user.id, view.id, q.character.id, q.correct_answer.upper(), 850)
    assert result.is_correct
    assert result.correct_answer == q.character.reading
    assert result.streak_count == 1
    assert result.accuracy == 1.0

    other = view.questions[1]
    miss = submit_answer(user.id, view.id, other.character.id, "nope")
    assert not miss.is_correct
    assert miss.streak_count == 0

    assert get_quiz_progress(user.id, view.id) == {"score": 1, "answered": 2, "total_items": 5}
    answer = QuizAnswer.query.filter_by(session_id=view.id, character_id=q.character.id).one()
    assert answer.response_time_ms == 850


def test_duplicate_answer_keeps_first(user, first_module):
    view = start_quiz(user.id, first_module.id)
    q = view.questions[0]
    submit_answer(user.id, view.id, q.character.id, "nope")

    with pytest.raises(InvalidState):
        submit_answer(user.id, view.id, q.character.id, q.correct_answer)

    answer = QuizAnswer.query.filter_by(session_id=view.id, character_id=q.character.id).one()
    assert not answer.is_correct
    assert db.session.get(QuizSession, view.id).score == 0
    stats = UserCharacterStats.query.filter_by(user_id=user.id, character_id=q.character.id).one()
    assert stats.total_attempts == 1


def test_concurrent_stats_write_is_not_reported_as_duplicate(user, first_module, monkeypatch):
    view = start_quiz(user.id, first_module.id)
    q = view.questions[0]
    db.session.add(UserCharacterStats(user_id=user.id, character_id=q.character.id,
                                      total_attempts=1, correct_count=1, streak_count=1))
    db.session.commit()

    def racing_insert(user_id, character_id, is_correct, when, cache=None):
        # another request created the stats row after this one looked for it
        stats = UserCharacterStats(user_id=user_id, character_id=character_id,
                                   total_attempts=1, correct_count=int(is_correct), streak_count=0)
        db.session.add(stats)
        return stats

    monkeypatch.setattr(quiz_sessions, "_record_attempt", racing_insert)
    with pytest.raises(InvalidState) as excinfo:
        submit_answer(user.id, view.id, q.character.id, q.correct_answer)
    assert "already answered" not in excinfo.value.message
    assert "retry" in excinfo.value.message
    assert QuizAnswer.query.filter_by(session_id=view.id).count() == 0
    assert db.session.get(QuizSession, view.id).score == 0

    monkeypatch.undo()
    assert submit_answer(user.id, view.id, q.character.id, q.correct_answer).is_correct


def test_answer_for_character_outside_quiz(user, first_module, seeded):
    view = start_quiz(user.id, first_module.id, QuizConfig(question_count=2), rng=random.Random(4))
    chosen = {q.character.id for q in view.questions}
    outsider = next(c for c in first_module.characters if c.id not in chosen)
    with pytest.raises(NotFound):
        submit_answer(user.id, view.id, outsider.id, outsider.reading)


def test_streak_carries_across_sessions(user, first_module):
    for _ in range(2):
        view = start_quiz(user.id, first_module.id)
        answer_all(user.id, view)
        complete_quiz(user.id, view.id)

    rows = UserCharacterStats.query.filter_by(user_id=user.id).all()
    assert len(rows) == 5
    assert all(s.streak_count == 2 and s.total_attempts == 2 for s in rows)


def test_other_users_session_is_not_found(make_user, first_module):
    owner = make_user("owner@example.com")
    intruder = make_user("intruder@example.com")
    view = start_quiz(owner.id, first_module.id)
    q = view.questions[0]

    with pytest.raises(NotFound):
        submit_answer(intruder.id, view.id, q.character.id, q.correct_answer)
    with pytest.raises(NotFound):
        complete_quiz(intruder.id, view.id)
    with pytest.raises(NotFound):
        get_quiz_progress(intruder.id, view.id)
    assert get_active_quiz_session(intruder.id, view.id) is None


# ── Batch ──

def test_batch_submit(user, first_module):
    view = start_quiz(user.id, first_module.id)
    answers = [
        BatchAnswer(q.character.id, q.correct_answer if i < 3 else "zz", is_correct=i < 3, response_time_ms=500)
        for i, q in enumerate(view.questions)
    ]
    result = submit_answers_batch(user.id, view.id, answers)
    assert result.score == 3
    assert result.answered == 5
    assert result.total_items == 5
    assert db.session.get(QuizSession, view.id).score == 3

    with pytest.raises(InvalidState):
        submit_answers_batch(user.id, view.id, answers[:1])


def test_partial_batch_reports_session_total(user, first_module):
    view = start_quiz(user.id, first_module.id)
    answers = [BatchAnswer(q.character.id, q.correct_answer, is_correct=True) for q in view.questions[:2]]
    result = submit_answers_batch(user.id, view.id, answers)
    assert result.to_dict() == {"score": 2, "answered": 2, "total_items": 5}


def test_batch_recomputes_correctness(user, first_module):
    view = start_quiz(user.id, first_module.id)
    q = view.questions[0]
    result = submit_answers_batch(user.id, view.id, [BatchAnswer(q.character.id, "zz", is_correct=True)])
    assert result.score == 0


def test_batch_rejects_bad_input(user, first_module):
    view = start_quiz(user.id, first_module.id)
    q = view.questions[0]
    with pytest.raises(InvalidRequest):
        submit_answers_batch(user.id, view.id, [])
    with pytest.raises(InvalidState):
        submit_answers_batch(user.id, view.id, [BatchAnswer(q.character.id, "a"), BatchAnswer(q.character.id, "a")])
    assert QuizAnswer.query.filter_by(session_id=view.id).count() == 0


def test_batch_answer_from_dict():
    answer = BatchAnswer.from_dict({"characterId": "7", "userAnswer": "ka", "isCorrect": True, "responseTimeMs": 1200})
    assert answer == BatchAnswer(7, "ka", True, 1200)
    with pytest.raises(InvalidRequest):
        BatchAnswer.from_dict({"user_answer": "ka"})
    with pytest.raises(InvalidRequest):
        BatchAnswer.from_dict({"character_id": 1})


# ── Completion ──

def test_complete_quiz_updates_progress(user, first_module):
    view = start_quiz(user.id, first_module.id)
    answer_all(user.id, view)

    result = complete_quiz(user.id, view.id)
    assert result.score == 5
    assert result.percentage == 100
    assert result.new_module_progress == 100
    assert result.module_progress_updated
    assert result.is_module_completed
    assert result.unlocked_next_module
    assert result.time_spent_ms >= 0

    with pytest.raises(InvalidState):
        complete_quiz(user.id, view.id)
    with pytest.raises(InvalidState):
        submit_answer(user.id, view.id, view.questions[0].character.id, "a")


def test_progress_smooths_over_sessions(user, first_module):
    first = start_quiz(user.id, first_module.id)
    answer_all(user.id, first, wrong={q.character.id for q in first.questions[:2]})
    assert complete_quiz(user.id, first.id).new_module_progress == pytest.approx(60)

    second = start_quiz(user.id, first_module.id)
    answer_all(user.id, second)
    result = complete_quiz(user.id, second.id)
    assert result.new_module_progress == pytest.approx(76)
    assert not result.unlocked_next_module

    third = start_quiz(user.id, first_module.id)
    answer_all(user.id, third)
    result = complete_quiz(user.id, third.id)
    assert result.new_module_progress == pytest.approx(85.6)
    assert result.unlocked_next_module
    assert not result.is_module_completed


def test_quiz_result(user, first_module):
    view = start_quiz(user.id, first_module.id)
    assert get_quiz_result(user.id, view.id) is None

    answer_all(user.id, view, wrong={view.questions[0].character.id})
    complete_quiz(user.id, view.id)
    result = get_quiz_result(user.id, view.id)
    assert result.score == 4
    assert result.percentage == pytest.approx(80)
    assert result.new_module_progress == pytest.approx(80)
    assert not result.is_module_completed
    assert not result.unlocked_next_module


def test_abandon_deletes_session_without_progress(user, first_module):
    view = start_quiz(user.id, first_module.id)
    q = view.questions[0]
    submit_answer(user.id, view.id, q.character.id, q.correct_answer)

    abandon_quiz(user.id, view.id)
    assert db.session.get(QuizSession, view.id) is None
    assert QuizAnswer.query.filter_by(session_id=view.id).count() == 0
    assert get_progress_percentage(user.id, first_module.id) == 0.0
    with pytest.raises(NotFound):
        abandon_quiz(user.id, view.id)


def test_abandon_completed_session_refused(user, first_module):
    view = start_quiz(user.id, first_module.id)
    complete_quiz(user.id, view.id)
    with pytest.raises(InvalidState):
        abandon_quiz(user.id, view.id)


# ── Resume ──

def test_resume_returns_unanswered_questions(user, first_module):
    view = start_quiz(user.id, first_module.id, QuizConfig(question_count=4))
    answered = view.questions[0]
    submit_answer(user.id, view.id, answered.character.id, answered.correct_answer)

    resumed = get_active_quiz_session(user.id, view.id, rng=random.Random(2))
    assert resumed.total_items == 4
    remaining = {q.character.id for q in resumed.questions}
    assert remaining == {q.character.id for q in view.questions[1:]}
    assert all(q.correct_answer in q.options for q in resumed.questions)

    complete_quiz(user.id, view.id)
    assert get_active_quiz_session(user.id, view.id) is None
