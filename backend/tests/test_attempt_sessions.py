from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from examprep import models, services
from examprep.database import engine
from examprep.errors import InvalidState, PolicyViolation, ValidationError
from examprep.main import app

client = TestClient(app)


def _start(quiz_id, headers):
    return client.post('/sessions', json={'quizId': quiz_id, 'deviceInfo': {'platform': 'web'}}, headers=headers)


def _answer(session_id, question_id, answer, headers, spent=30):
    return client.post(
        f'/sessions/{session_id}/answers',
        json={'questionId': question_id, 'selectedAnswer': answer, 'timeSpentSeconds': spent},
        headers=headers,
    )


def test_start_resume_answer_and_finalize_idempotently(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz()
    r = _start(quiz.id, headers)
    assert r.status_code == 201
    session = r.json()
    assert session['status'] == 'in_progress'
    assert session['attemptNumber'] == 1
    assert session['deviceInfo'] == {'platform': 'web'}

    resumed = _start(quiz.id, headers)
    assert resumed.status_code == 200
    assert resumed.json()['id'] == session['id']

    sid = session['id']
    q1, q2, q3 = quiz.question_ids
    assert _answer(sid, q1, 'A', headers).status_code == 200
    assert _answer(sid, q2, 'C', headers).status_code == 200
    # re-answering replaces the answer and accumulates time
    r = _answer(sid, q2, 'A', headers, spent=15)
    answers = r.json()['answers']
    assert [a['questionId'] for a in answers] == [q1, q2]
    assert answers[1]['selectedAnswer'] == 'A'
    assert answers[1]['timeSpentSeconds'] == 45

    first = client.post(f'/sessions/{sid}/finalize', headers=headers)
    assert first.status_code == 201
    result = first.json()
    assert result['correctCount'] == 2
    assert result['gradableCount'] == 3
    assert result['score'] == 67
    assert result['timeTakenSeconds'] == 75
    assert result['feedback']['title'] == 'Keep practicing'

    again = client.post(f'/sessions/{sid}/finalize', headers=headers)
    assert again.status_code == 200
    assert again.json()['id'] == result['id']
    assert again.json()['completedAt'] == result['completedAt']

    late = _answer(sid, q3, 'A', headers)
    assert late.status_code == 409
    assert late.json()['code'] == 'invalid_state'

    stored = client.get(f"/results/{result['id']}", headers=headers).json()
    for key in ('correctCount', 'score', 'timeTakenSeconds'):
        assert stored[key] == result[key]
    assert client.get(f'/sessions/{sid}', headers=headers).json()['status'] == 'completed'


def test_essay_excluded_from_score(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz([{}] * 5 + [{'type': 'essay', 'answer': None, 'steps': []}])
    sid = _start(quiz.id, headers).json()['id']
    for qid, given in zip(quiz.question_ids, ['A', 'A', 'A', 'B', 'B', 'My essay']):
        _answer(sid, qid, given, headers)
    result = client.post(f'/sessions/{sid}/finalize', headers=headers).json()
    assert result['gradableCount'] == 5
    assert result['correctCount'] == 3
    assert result['score'] == 60
    essay_item = [it for it in result['items'] if it['questionId'] == quiz.question_ids[-1]][0]
    assert essay_item['correct'] is None


def test_finalize_requires_an_answer(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz()
    sid = _start(quiz.id, headers).json()['id']
    r = client.post(f'/sessions/{sid}/finalize', headers=headers)
    assert r.status_code == 400
    assert r.json()['code'] == 'validation_error'


def test_retake_limit_rejects_extra_attempt(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz(max_attempts=1)
    sid = _start(quiz.id, headers).json()['id']
    _answer(sid, quiz.question_ids[0], 'A', headers)
    client.post(f'/sessions/{sid}/finalize', headers=headers)
    r = _start(quiz.id, headers)
    assert r.status_code == 409
    body = r.json()
    assert body['code'] == 'policy_violation'
    assert body['details']['max_attempts'] == 1
    assert body['status'] == 409


def test_cooldown_is_enforced_by_service(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz(max_attempts=3, cooldown_minutes=1440)
    svc = services.AttemptService(db)
    t0 = datetime(2026, 5, 1, 8, 0)
    attempt, created = svc.start(user, quiz.id, now=t0)
    assert created
    svc.submit_answer(user, attempt.id, quiz.question_ids[0], 'A', 20, now=t0)
    svc.finalize(user, attempt.id, now=t0)

    with pytest.raises(PolicyViolation):
        svc.start(user, quiz.id, now=t0 + timedelta(minutes=1))
    second, created = svc.start(user, quiz.id, now=t0 + timedelta(minutes=1441))
    assert created
    assert second.attempt_number == 2


def test_store_rejects_second_active_session(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz()
    db.add(models.AttemptSession(user_id=user.id, quiz_id=quiz.id))
    db.commit()
    db.add(models.AttemptSession(user_id=user.id, quiz_id=quiz.id))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_other_users_cannot_see_or_touch_session(register, seed_quiz, admin_headers):
    _, owner = register()
    _, other = register()
    quiz = seed_quiz()
    sid = _start(quiz.id, owner).json()['id']
    assert client.get(f'/sessions/{sid}', headers=other).status_code == 403
    assert _answer(sid, quiz.question_ids[0], 'A', other).status_code == 403
    assert client.get(f'/sessions/{sid}', headers=admin_headers).status_code == 200
    # unknown ids do not reveal existence to students
    assert client.get('/sessions/doesnotexist', headers=other).status_code == 403
    assert client.get('/sessions/doesnotexist', headers=admin_headers).status_code == 404


def test_question_outside_quiz_is_not_found(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz()
    other_quiz = seed_quiz()
    sid = _start(quiz.id, headers).json()['id']
    r = _answer(sid, other_quiz.question_ids[0], 'A', headers)
    assert r.status_code == 404
    assert r.json()['code'] == 'not_found'


def test_abandon_is_terminal(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz()
    sid = _start(quiz.id, headers).json()['id']
    _answer(sid, quiz.question_ids[0], 'A', headers)
    r = client.post(f'/sessions/{sid}/abandon', headers=headers)
    assert r.status_code == 200
    assert r.json()['status'] == 'abandoned'
    assert _answer(sid, quiz.question_ids[1], 'A', headers).json()['code'] == 'invalid_state'
    fin = client.post(f'/sessions/{sid}/finalize', headers=headers)
    assert fin.status_code == 409
    assert fin.json()['code'] == 'invalid_state'
    # a new attempt can start once the old one is terminal
    assert _start(quiz.id, headers).status_code == 201


def test_idle_sweep_abandons_stale_sessions(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz()
    svc = services.AttemptService(db)
    t0 = datetime(2026, 6, 1, 9, 0)
    attempt, _ = svc.start(user, quiz.id, now=t0)
    swept = svc.abandon_idle_sessions(idle_minutes=30, now=t0 + timedelta(minutes=31))
    assert swept >= 1
    refreshed = db.get(models.AttemptSession, attempt.id, populate_existing=True)
    assert refreshed.status == models.SESSION_ABANDONED
    with pytest.raises(InvalidState):
        svc.submit_answer(user, attempt.id, quiz.question_ids[0], 'A')


def test_sweep_endpoint_requires_admin(register, admin_headers):
    _, headers = register()
    assert client.post('/sessions/sweep', headers=headers).status_code == 403
    r = client.post('/sessions/sweep', params={'idleMinutes': 100000}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()['idleMinutes'] == 100000


def test_result_feedback_and_listing(register, seed_quiz):
    user_id, headers = register()
    _, other = register()
    quiz = seed_quiz()
    sid = _start(quiz.id, headers).json()['id']
    _answer(sid, quiz.question_ids[0], 'A', headers)
    result = client.post(f'/sessions/{sid}/finalize', headers=headers).json()

    r = client.post(
        f"/results/{result['id']}/feedback",
        json={'questionId': quiz.question_ids[0], 'rating': 4, 'comments': 'clear question'},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json()['questionFeedback'][0]['rating'] == 4

    bad = client.post(f"/results/{result['id']}/feedback", json={'rating': 6}, headers=headers)
    assert bad.status_code == 400
    assert bad.json()['code'] == 'validation_error'

    page = client.get(f'/results/user/{user_id}', params={'quizId': quiz.id}, headers=headers).json()
    assert page['pagination']['totalItems'] == 1
    assert page['results'][0]['id'] == result['id']
    assert client.get(f'/results/user/{user_id}', headers=other).status_code == 403


def test_feedback_validation_in_service(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz()
    attempts = services.AttemptService(db)
    attempt, _ = attempts.start(user, quiz.id)
    attempts.submit_answer(user, attempt.id, quiz.question_ids[0], 'A')
    result, _ = attempts.finalize(user, attempt.id)
    svc = services.ResultService(db)
    with pytest.raises(ValidationError):
        svc.add_feedback(user, result.id, rating=-1)
    with pytest.raises(ValidationError):
        svc.add_feedback(user, result.id, rating=3, comments='x' * 1001)
    svc.add_feedback(user, result.id, rating=0)
    assert len(svc.get(user, result.id).question_feedback) == 1


def test_boolean_answer_matches_capitalised_key(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz([{'type': 'true_false', 'answer': 'True', 'options': ['True', 'False']}])
    sid = _start(quiz.id, headers).json()['id']
    assert _answer(sid, quiz.question_ids[0], True, headers).status_code == 200
    result = client.post(f'/sessions/{sid}/finalize', headers=headers).json()
    assert result['score'] == 100


def test_store_rejects_duplicate_answer_rows(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz()
    attempt, _ = services.AttemptService(db).start(user, quiz.id)
    qid = quiz.question_ids[0]
    db.add(models.SessionAnswer(session_id=attempt.id, question_id=qid, selected_answer='A'))
    db.commit()
    db.add(models.SessionAnswer(session_id=attempt.id, question_id=qid, selected_answer='B'))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_concurrent_first_answer_is_merged(db, make_user, seed_quiz, monkeypatch):
    user = make_user()
    quiz = seed_quiz()
    qid = quiz.question_ids[0]
    svc = services.AttemptService(db)
    attempt, _ = svc.start(user, quiz.id)

    real = svc.session_repo.record_answer
    calls = []

    def racing(target, question_id, *args):
        calls.append(question_id)
        if len(calls) == 1:
            # another request stores the first answer after this one loaded the session
            assert target.answers == []
            with Session(engine) as other:
                other.add(models.SessionAnswer(session_id=target.id, question_id=question_id,
                                               selected_answer='B', time_spent_seconds=7))
                other.commit()
        return real(target, question_id, *args)

    monkeypatch.setattr(svc.session_repo, 'record_answer', racing)
    updated = svc.submit_answer(user, attempt.id, qid, 'A', time_spent_seconds=5)
    rows = [a for a in updated.answers if a.question_id == qid]
    assert len(calls) == 2
    assert len(rows) == 1
    assert rows[0].selected_answer == 'A'
    assert rows[0].time_spent_seconds == 12
