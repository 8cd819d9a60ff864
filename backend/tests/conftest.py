import os
import tempfile
import uuid
from pathlib import Path

import pytest

# Point the app at a throwaway SQLite file before anything imports it.
_DB_DIR = Path(tempfile.mkdtemp(prefix="examprep-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["ADMIN_USERNAMES"] = "admin"
os.environ.setdefault("ENV", "dev")

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from examprep import models  # noqa: E402
from examprep.database import engine  # noqa: E402
from examprep.main import app  # noqa: E402

ADMIN_PASSWORD = "admin-pass"

_client = TestClient(app)


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


def _login(client, username, password):
    client.post('/auth/register', json={'username': username, 'password': password})
    r = client.post('/auth/login', json={'username': username, 'password': password})
    assert r.status_code == 200
    return {'Authorization': f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def register():
    """Register a fresh student; returns `(user_id, headers)`."""
    def _register(prefix="student"):
        username = f"{prefix}-{uuid.uuid4().hex[:10]}"
        r = _client.post('/auth/register', json={'username': username, 'password': 'pass123'})
        assert r.status_code == 200
        return r.json()['id'], _login(_client, username, 'pass123')
    return _register


@pytest.fixture
def admin_headers():
    return _login(_client, 'admin', ADMIN_PASSWORD)


@pytest.fixture
def make_user(db):
    """Create a user row directly, for service-level tests."""
    def _make(role="student"):
        user = models.User(username=f"u-{uuid.uuid4().hex[:12]}", password_hash="x", role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def seed_quiz(db):
    """Create questions and a quiz.

    `questions` is a list of dicts with optional keys `type`, `answer`,
    `steps`, `difficulty` and `points`. Defaults to three multiple choice
    questions whose correct answer is "A".
    """
    def _seed(questions=None, max_attempts=3, cooldown_minutes=0):
        entries = questions if questions is not None else [{}, {}, {}]
        ids = []
        for i, item in enumerate(entries):
            q = models.Question(
                question_text=item.get('text', f'Question {i + 1}?'),
                question_type=item.get('type', 'multiple_choice'),
                options=item.get('options', ['A', 'B', 'C', 'D']),
                correct_answer=item.get('answer', 'A'),
                steps=item.get('steps', ['first', 'second', 'third']),
                difficulty=item.get('difficulty', 'medium'),
                points=item.get('points', 1),
            )
            db.add(q)
            db.commit()
            db.refresh(q)
            ids.append(q.id)
        quiz = models.Quiz(
            title=f'Quiz {uuid.uuid4().hex[:6]}',
            question_ids=ids,
            max_attempts=max_attempts,
            cooldown_minutes=cooldown_minutes,
        )
        db.add(quiz)
        db.commit()
        db.refresh(quiz)
        return quiz
    return _seed
