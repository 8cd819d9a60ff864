import pytest
from fastapi.testclient import TestClient

from examprep import models, services
from examprep.errors import Conflict, ValidationError
from examprep.main import app

client = TestClient(app)


def _hint(headers, question_id, **extra):
    return client.post('/hints', json={'questionId': question_id, **extra}, headers=headers)


def test_reveals_merge_into_one_sorted_entry(register, seed_quiz):
    user_id, headers = register()
    quiz = seed_quiz([{'steps': ['a', 'b', 'c', 'd'], 'difficulty': 'hard'}])
    qid = quiz.question_ids[0]
    ids = set()
    for step in (2, 0, 2, 1):
        r = _hint(headers, qid, stepNumber=step, timeSpentOnHint=10, pointsDeducted=0.5)
        assert r.status_code == 201
        ids.add(r.json()['id'])
    entry = r.json()
    assert len(ids) == 1
    assert entry['userId'] == user_id
    assert entry['stepsViewed'] == [0, 1, 2]
    assert entry['timeSpentOnHint'] == 40
    assert entry['pointsDeducted'] == 2.0
    assert entry['totalStepsAvailable'] == 4
    assert entry['completionPercentage'] == 75
    assert entry['hasViewedAllSteps'] is False
    assert entry['context']['difficulty'] == 'hard'
    assert entry['sessionId'] is None


def test_step_beyond_available_steps_is_rejected(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz([{'steps': ['only', 'two']}])
    r = _hint(headers, quiz.question_ids[0], stepNumber=2)
    assert r.status_code == 400
    body = r.json()
    assert body['code'] == 'validation_error'
    assert body['details']['total_steps_available'] == 2
    # nothing was written
    me = client.get('/hints/me', params={'questionId': quiz.question_ids[0]}, headers=headers).json()
    assert me['pagination']['totalItems'] == 0


def test_negative_step_rejected_by_schema(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz()
    r = _hint(headers, quiz.question_ids[0], stepNumber=-1)
    assert r.status_code == 422
    assert r.json()['code'] == 'validation_error'


def test_session_scoped_entries_snapshot_attempt(register, seed_quiz):
    _, headers = register()
    quiz = seed_quiz()
    qid = quiz.question_ids[0]
    sid = client.post('/sessions', json={'quizId': quiz.id}, headers=headers).json()['id']
    scoped = _hint(headers, qid, sessionId=sid, stepNumber=0, pointsDeducted=1).json()
    loose = _hint(headers, qid, stepNumber=1).json()
    assert scoped['id'] != loose['id']
    assert scoped['sessionId'] == sid
    assert scoped['quizId'] == quiz.id
    assert scoped['context']['attemptNumber'] == 1

    client.post(f'/sessions/{sid}/answers', json={'questionId': qid, 'selectedAnswer': 'A'}, headers=headers)
    result = client.post(f'/sessions/{sid}/finalize', headers=headers).json()
    assert result['hintUsageIds'] == [scoped['id']]
    assert result['pointsDeducted'] == 1.0
    assert result['netPoints'] == 0.0

    r = _hint(headers, qid, sessionId=sid, stepNumber=1)
    assert r.status_code == 409
    assert r.json()['code'] == 'invalid_state'


def test_hint_for_someone_elses_session_is_forbidden(register, seed_quiz):
    _, owner = register()
    _, other = register()
    quiz = seed_quiz()
    sid = client.post('/sessions', json={'quizId': quiz.id}, headers=owner).json()['id']
    assert _hint(other, quiz.question_ids[0], sessionId=sid).status_code == 403
    assert _hint(owner, quiz.question_ids[0], sessionId='missing').status_code == 404


def test_recording_for_another_user_requires_admin(register, seed_quiz, admin_headers):
    target_id, _ = register()
    _, other = register()
    quiz = seed_quiz()
    assert _hint(other, quiz.question_ids[0], userId=target_id).status_code == 403
    r = _hint(admin_headers, quiz.question_ids[0], userId=target_id, stepNumber=0)
    assert r.status_code == 201
    assert r.json()['userId'] == target_id


def test_access_update_and_delete(register, seed_quiz, admin_headers):
    _, owner = register()
    _, other = register()
    quiz = seed_quiz()
    entry = _hint(owner, quiz.question_ids[0], stepNumber=1, pointsDeducted=2, timeSpentOnHint=30).json()
    hid = entry['id']

    assert client.get(f'/hints/{hid}', headers=other).status_code == 403
    assert client.get(f'/hints/{hid}', headers=admin_headers).status_code == 200

    r = client.put(f'/hints/{hid}', json={'stepsViewed': [2, 0, 2], 'hintType': 'formula'}, headers=owner)
    assert r.status_code == 200
    assert r.json()['stepsViewed'] == [0, 2]
    assert r.json()['hintType'] == 'formula'

    r = client.put(f'/hints/{hid}', json={'pointsDeducted': 1}, headers=owner)
    assert r.status_code == 400
    r = client.put(f'/hints/{hid}', json={'stepsViewed': [3]}, headers=owner)
    assert r.status_code == 400
    assert client.put(f'/hints/{hid}', json={}, headers=owner).status_code == 422
    assert client.put(f'/hints/{hid}', json={'timeSpentOnHint': 45}, headers=other).status_code == 403

    assert client.delete(f'/hints/{hid}', headers=other).status_code == 403
    assert client.delete(f'/hints/{hid}', headers=owner).status_code == 204
    assert client.get(f'/hints/{hid}', headers=owner).status_code == 403
    assert client.get(f'/hints/{hid}', headers=admin_headers).status_code == 404


def test_history_filters_and_pagination(register, seed_quiz):
    user_id, headers = register()
    _, other = register()
    quiz = seed_quiz([{}, {}, {}])
    for qid in quiz.question_ids:
        _hint(headers, qid, stepNumber=0, quizId=quiz.id, hintType='example' if qid == quiz.question_ids[0] else 'step')

    page = client.get(f'/hints/user/{user_id}', params={'limit': 2}, headers=headers).json()
    assert page['pagination'] == {'currentPage': 1, 'totalPages': 2, 'totalItems': 3, 'itemsPerPage': 2}
    assert len(page['hintUsages']) == 2

    examples = client.get('/hints/me', params={'hintType': 'example'}, headers=headers).json()
    assert [h['questionId'] for h in examples['hintUsages']] == [quiz.question_ids[0]]
    by_quiz = client.get('/hints/me', params={'quizId': quiz.id}, headers=headers).json()
    assert by_quiz['pagination']['totalItems'] == 3

    assert client.get(f'/hints/user/{user_id}', headers=other).status_code == 403


def test_bulk_delete_is_admin_only(register, seed_quiz, admin_headers):
    _, headers = register()
    quiz = seed_quiz([{}, {}])
    ids = [_hint(headers, qid, stepNumber=0).json()['id'] for qid in quiz.question_ids]
    assert client.post('/hints/bulk-delete', json={'hintUsageIds': ids}, headers=headers).status_code == 403
    r = client.post('/hints/bulk-delete', json={'hintUsageIds': ids}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {'deletedCount': 2}


def test_compare_and_set_retries_after_lost_race(db, make_user, seed_quiz, monkeypatch):
    user = make_user()
    quiz = seed_quiz()
    qid = quiz.question_ids[0]
    svc = services.HintService(db)
    svc.record(user, qid, step_number=0)

    real = svc.hint_repo.compare_and_set
    calls = []

    def flaky(hint_id, version, values):
        calls.append(version)
        if len(calls) == 1:
            # simulate a concurrent writer landing first
            entry = svc.hint_repo.get(hint_id)
            real(hint_id, entry.version, {'steps_viewed': sorted(set(entry.steps_viewed) | {2})})
            return False
        return real(hint_id, version, values)

    monkeypatch.setattr(svc.hint_repo, 'compare_and_set', flaky)
    entry, created = svc.record(user, qid, step_number=1)
    assert not created
    assert entry.steps_viewed == [0, 1, 2]
    assert len(calls) == 2


def test_persistent_contention_surfaces_conflict(db, make_user, seed_quiz, monkeypatch):
    user = make_user()
    quiz = seed_quiz()
    svc = services.HintService(db)
    svc.record(user, quiz.question_ids[0], step_number=0)
    monkeypatch.setattr(svc.hint_repo, 'compare_and_set', lambda *a, **k: False)
    with pytest.raises(Conflict):
        svc.record(user, quiz.question_ids[0], step_number=1)


def test_question_without_steps_has_no_bound(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz([{'steps': []}])
    svc = services.HintService(db)
    entry, _ = svc.record(user, quiz.question_ids[0], step_number=7, hint_type='explanation')
    assert entry.total_steps_available is None
    assert entry.completion_percentage == 0
    assert entry.hint_type == 'explanation'
    with pytest.raises(ValidationError):
        svc.update(user, entry.id, points_deducted=-0.5)


def test_merge_checks_step_against_stored_step_count(db, make_user, seed_quiz):
    user = make_user()
    quiz = seed_quiz([{'steps': ['a', 'b', 'c']}])
    qid = quiz.question_ids[0]
    svc = services.HintService(db)
    entry, _ = svc.record(user, qid, step_number=0)

    question = db.get(models.Question, qid)
    question.steps = ['a', 'b', 'c', 'd', 'e', 'f']
    db.add(question)
    db.commit()

    with pytest.raises(ValidationError):
        svc.record(user, qid, step_number=5)
    merged, created = svc.record(user, qid, step_number=2)
    assert not created
    assert merged.id == entry.id
    assert merged.steps_viewed == [0, 2]
    assert merged.total_steps_available == 3
    assert all(step < merged.total_steps_available for step in merged.steps_viewed)


def test_add_step_to_existing_entry(register, seed_quiz, admin_headers):
    _, owner = register()
    _, other = register()
    quiz = seed_quiz([{'steps': ['a', 'b', 'c']}])
    hid = _hint(owner, quiz.question_ids[0], stepNumber=2).json()['id']

    r = client.post(f'/hints/{hid}/steps', json={'stepNumber': 0}, headers=owner)
    assert r.status_code == 200
    assert r.json()['stepsViewed'] == [0, 2]
    again = client.post(f'/hints/{hid}/steps', json={'stepNumber': 0}, headers=owner)
    assert again.status_code == 200
    assert again.json()['stepsViewed'] == [0, 2]

    beyond = client.post(f'/hints/{hid}/steps', json={'stepNumber': 3}, headers=owner)
    assert beyond.status_code == 400
    assert beyond.json()['details']['total_steps_available'] == 3
    assert client.post(f'/hints/{hid}/steps', json={'stepNumber': -1}, headers=owner).status_code == 422

    assert client.post(f'/hints/{hid}/steps', json={'stepNumber': 1}, headers=other).status_code == 403
    r = client.post(f'/hints/{hid}/steps', json={'stepNumber': 1}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()['stepsViewed'] == [0, 1, 2]
    assert r.json()['hasViewedAllSteps'] is True
    assert client.post('/hints/99999999/steps', json={'stepNumber': 0}, headers=admin_headers).status_code == 404
