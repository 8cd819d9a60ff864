"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table and uses relationships where appropriate.
Timestamps are stored as naive UTC values (see `utcnow`) so they compare
cleanly after a round-trip through SQLite.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, Relationship, SQLModel

SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"
SESSION_ABANDONED = "abandoned"
TERMINAL_SESSION_STATES = frozenset({SESSION_COMPLETED, SESSION_ABANDONED})

QUESTION_TYPES = ("multiple_choice", "true_false", "short_answer", "essay")
HINT_TYPES = ("step", "explanation", "formula", "example")


def utcnow() -> datetime:
    """Current UTC time without tzinfo, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _json_list():
    return Field(default_factory=list, sa_column=Column(JSON, nullable=False))


def _json_dict():
    return Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: `student` or `admin`
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = Field(default="student")
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Topic(SQLModel, table=True):
    """Catalog topic; only referenced here, never authored."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    subject: Optional[str] = Field(default=None, index=True)


class Resource(SQLModel, table=True):
    """Catalog learning resource that adaptive rules may recommend."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    url: Optional[str] = None


class Question(SQLModel, table=True):
    """A question from the content store.

    `steps` holds the ordered solution steps revealed as hints; its length
    bounds the valid hint step indices.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    topic_id: Optional[int] = Field(default=None, foreign_key="topic.id", index=True)
    subject: Optional[str] = Field(default=None, index=True)
    question_text: str
    question_type: str = Field(default="multiple_choice")
    options: List[str] = _json_list()
    correct_answer: Optional[str] = None
    steps: List[str] = _json_list()
    difficulty: Optional[str] = Field(default=None, index=True)
    points: int = 1


class Quiz(SQLModel, table=True):
    """A quiz: an ordered list of question ids plus its retake policy.

    `max_attempts` of `None` or 0 means unlimited attempts; a
    `cooldown_minutes` of 0 allows an immediate retake.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    difficulty: Optional[str] = None
    question_ids: List[int] = _json_list()
    max_attempts: Optional[int] = 3
    cooldown_minutes: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class AttemptSession(SQLModel, table=True):
    """One quiz attempt, from `in_progress` to a terminal state.

    The partial unique index keeps at most one in-progress attempt per
    (user, quiz) at the store level.
    """
    __table_args__ = (
        Index(
            "uq_attempt_active_per_quiz",
            "user_id",
            "quiz_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
    )
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    quiz_id: int = Field(foreign_key="quiz.id", index=True)
    attempt_number: int = 1
    status: str = Field(default=SESSION_IN_PROGRESS, index=True)
    start_time: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow, index=True)
    end_time: Optional[datetime] = None
    device_info: Dict[str, Any] = _json_dict()
    answers: List["SessionAnswer"] = Relationship(
        back_populates="session",
        sa_relationship_kwargs={"order_by": "SessionAnswer.position", "cascade": "all, delete-orphan"},
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATES


class SessionAnswer(SQLModel, table=True):
    """An answer recorded inside an `AttemptSession`, one per question."""
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_session_answer_question"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="attemptsession.id", index=True)
    question_id: int = Field(foreign_key="question.id")
    position: int = 0
    selected_answer: Optional[str] = None
    time_spent_seconds: int = 0
    answered_at: datetime = Field(default_factory=utcnow)
    session: Optional[AttemptSession] = Relationship(back_populates="answers")


class HintUsage(SQLModel, table=True):
    """Hint ledger entry for one (user, question, session) key.

    `session_key` is the attempt session id, or an empty string for hints
    requested outside of an attempt. `version` backs the compare-and-set
    merge performed by the repository.
    """
    __table_args__ = (
        UniqueConstraint("user_id", "question_id", "session_key", name="uq_hint_usage_key"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    question_id: int = Field(foreign_key="question.id", index=True)
    session_key: str = Field(default="", index=True)
    quiz_id: Optional[int] = Field(default=None, foreign_key="quiz.id", index=True)
    used_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    steps_viewed: List[int] = _json_list()
    total_steps_available: Optional[int] = None
    hint_type: str = Field(default="step")
    points_deducted: float = 0.0
    time_spent_on_hint: float = 0.0
    device_info: Dict[str, Any] = _json_dict()
    context: Dict[str, Any] = _json_dict()
    version: int = 1

    @property
    def session_id(self) -> Optional[str]:
        return self.session_key or None

    @property
    def completion_percentage(self) -> int:
        if not self.total_steps_available:
            return 0
        return round(len(self.steps_viewed) / self.total_steps_available * 100)

    @property
    def has_viewed_all_steps(self) -> bool:
        return bool(self.total_steps_available) and len(self.steps_viewed) >= self.total_steps_available


class QuizResult(SQLModel, table=True):
    """The scored outcome of one finalized `AttemptSession`.

    `session_id` is unique: a session produces exactly one result.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    quiz_id: int = Field(foreign_key="quiz.id", index=True)
    session_id: str = Field(foreign_key="attemptsession.id", unique=True)
    question_ids: List[int] = _json_list()
    correct_count: int = 0
    gradable_count: int = 0
    answered_count: int = 0
    total_questions: int = 0
    score: int = 0
    points_earned: int = 0
    points_deducted: float = 0.0
    net_points: float = 0.0
    time_taken_seconds: int = 0
    completed_at: datetime = Field(default_factory=utcnow, index=True)
    hint_usage_ids: List[int] = _json_list()
    feedback: Dict[str, Any] = _json_dict()
    items: List["QuizResultItem"] = Relationship(back_populates="quiz_result")
    question_feedback: List["QuestionFeedback"] = Relationship(
        back_populates="quiz_result",
        sa_relationship_kwargs={"order_by": "QuestionFeedback.id"},
    )


class QuizResultItem(SQLModel, table=True):
    """A single question outcome inside a `QuizResult`.

    `correct` is `None` for essay questions, which are never auto-scored.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_result_id: int = Field(foreign_key="quizresult.id", index=True)
    question_id: int = Field(foreign_key="question.id")
    given_answer: Optional[str] = None
    correct: Optional[bool] = None
    time_spent_seconds: int = 0
    quiz_result: Optional[QuizResult] = Relationship(back_populates="items")


class QuestionFeedback(SQLModel, table=True):
    """A comment appended to a result after it was created."""
    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_result_id: int = Field(foreign_key="quizresult.id", index=True)
    user_id: int = Field(foreign_key="user.id")
    question_id: Optional[int] = Field(default=None, foreign_key="question.id")
    rating: int
    comments: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    quiz_result: Optional[QuizResult] = Relationship(back_populates="question_feedback")


class AdaptiveProfile(SQLModel, table=True):
    """Per-user difficulty level, ordered adjustment rules and recommendations.

    `progress` keeps the bounded metric window used by the last evaluation,
    keyed by metric name.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True, index=True)
    current_level: str = Field(default="beginner", index=True)
    adjustment_rules: List[Dict[str, Any]] = _json_list()
    recommended_content: List[Dict[str, Any]] = _json_list()
    progress: Dict[str, List[float]] = _json_dict()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
