"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. The wire format is camelCase; attributes
stay snake_case so response models can be built straight from ORM rows.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Level = Literal["beginner", "intermediate", "advanced"]
Metric = Literal["score", "timeSpent", "accuracy", "completionRate"]
Action = Literal["increaseDifficulty", "decreaseDifficulty", "suggestResource"]
HintType = Literal["step", "explanation", "formula", "example"]
ContentKind = Literal["topic", "quiz", "resource"]
AnswerValue = Union[bool, int, float, str, None]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- auth -----------------------------------------------------------------

class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str = Field(min_length=1, max_length=80)
    password: str = Field(min_length=1)


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


# --- quizzes and sessions -------------------------------------------------

class QuestionOut(CamelModel):
    """Question as shown to a quiz taker (no correct answer)."""
    id: int
    question_text: str
    question_type: str
    options: List[str] = []
    difficulty: Optional[str] = None
    points: int = 1
    total_steps: int = 0


class QuizOut(CamelModel):
    id: int
    title: str
    difficulty: Optional[str] = None
    max_attempts: Optional[int] = None
    cooldown_minutes: int = 0
    questions: List[QuestionOut] = []


class DeviceInfo(CamelModel):
    platform: Optional[str] = None
    browser: Optional[str] = None
    version: Optional[str] = None
    screen_size: Optional[str] = None


class SessionStartIn(CamelModel):
    quiz_id: int
    device_info: Optional[DeviceInfo] = None


class AnswerIn(CamelModel):
    """Single answer submitted while an attempt is in progress."""
    question_id: int
    selected_answer: AnswerValue = None
    time_spent_seconds: int = Field(default=0, ge=0)


class SessionAnswerOut(CamelModel):
    question_id: int
    selected_answer: Optional[str] = None
    time_spent_seconds: int = 0
    answered_at: datetime


class SessionOut(CamelModel):
    id: str
    user_id: int
    quiz_id: int
    attempt_number: int
    status: str
    start_time: datetime
    last_active: datetime
    end_time: Optional[datetime] = None
    device_info: Dict[str, Any] = {}
    answers: List[SessionAnswerOut] = []


class SweepOut(CamelModel):
    abandoned: int
    idle_minutes: int


# --- results --------------------------------------------------------------

class ResultItemOut(CamelModel):
    question_id: int
    given_answer: Optional[str] = None
    correct: Optional[bool] = None
    time_spent_seconds: int = 0


class QuestionFeedbackIn(CamelModel):
    question_id: Optional[int] = None
    rating: int
    comments: Optional[str] = Field(default=None, max_length=1000)


class QuestionFeedbackOut(CamelModel):
    id: int
    user_id: int
    question_id: Optional[int] = None
    rating: int
    comments: Optional[str] = None
    created_at: datetime


class ResultOut(CamelModel):
    id: int
    user_id: int
    quiz_id: int
    session_id: str
    question_ids: List[int] = []
    correct_count: int
    gradable_count: int
    answered_count: int
    total_questions: int
    score: int
    points_earned: int
    points_deducted: float
    net_points: float
    time_taken_seconds: int
    completed_at: datetime
    hint_usage_ids: List[int] = []
    feedback: Dict[str, Any] = {}
    items: List[ResultItemOut] = []
    question_feedback: List[QuestionFeedbackOut] = []


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


class ResultPageOut(CamelModel):
    results: List[ResultOut]
    pagination: Pagination


# --- hint ledger ----------------------------------------------------------

class HintContextIn(CamelModel):
    attempt_number: Optional[int] = Field(default=None, ge=1)
    time_before_hint: Optional[float] = Field(default=None, ge=0)


class HintRecordIn(CamelModel):
    """Body of `POST /hints`.

    `userId` is accepted for compatibility but must match the caller
    unless the caller is an admin.
    """
    question_id: int
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    quiz_id: Optional[int] = None
    step_number: Optional[int] = Field(default=None, ge=0)
    hint_type: HintType = "step"
    time_spent_on_hint: float = Field(default=0, ge=0)
    points_deducted: float = Field(default=0, ge=0)
    device_info: Optional[DeviceInfo] = None
    context: Optional[HintContextIn] = None


class HintStepIn(CamelModel):
    step_number: int = Field(ge=0)


class HintUpdateIn(CamelModel):
    steps_viewed: Optional[List[int]] = None
    hint_type: Optional[HintType] = None
    points_deducted: Optional[float] = Field(default=None, ge=0)
    time_spent_on_hint: Optional[float] = Field(default=None, ge=0)
    context: Optional[HintContextIn] = None

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class HintOut(CamelModel):
    id: int
    user_id: int
    question_id: int
    session_id: Optional[str] = None
    quiz_id: Optional[int] = None
    used_at: datetime
    updated_at: datetime
    steps_viewed: List[int] = []
    total_steps_available: Optional[int] = None
    hint_type: str
    points_deducted: float
    time_spent_on_hint: float
    device_info: Dict[str, Any] = {}
    context: Dict[str, Any] = {}
    completion_percentage: int = 0
    has_viewed_all_steps: bool = False


class HintPageOut(CamelModel):
    hint_usages: List[HintOut]
    pagination: Pagination


class BulkDeleteIn(CamelModel):
    hint_usage_ids: List[int] = Field(min_length=1)


class BulkDeleteOut(CamelModel):
    deleted_count: int


class QuestionSummary(CamelModel):
    id: int
    question_text: str
    difficulty: Optional[str] = None
    total_steps: int = 0


class QuestionHintStatsOut(CamelModel):
    total_usages: int
    unique_users: int
    average_steps_viewed: float
    average_time_spent: float
    total_points_deducted: float
    hint_type_distribution: Dict[str, int] = {}
    step_usage_distribution: Dict[str, int] = {}
    needs_better_hints: bool
    question: Optional[QuestionSummary] = None


class FlaggedQuestionOut(CamelModel):
    question_id: int
    total_usages: int
    average_steps_viewed: float
    average_time_spent: float
    question: Optional[QuestionSummary] = None


class HintTrendOut(CamelModel):
    month: str
    count: int
    total_time_spent: float
    average_steps_viewed: float


class UserHintAnalyticsOut(CamelModel):
    total_hints_used: int
    average_steps_per_hint: float
    total_time_spent: float
    total_points_deducted: float
    hints_by_difficulty: Dict[str, int] = {}
    hints_by_type: Dict[str, int] = {}
    hint_trends: List[HintTrendOut] = []


class HintSummaryOut(CamelModel):
    period: str
    total_hints: int
    unique_users: int
    unique_questions: int
    total_time_spent: float
    total_points_deducted: float
    average_steps_viewed: float


# --- adaptive profiles ----------------------------------------------------

class AdjustmentRuleIn(CamelModel):
    metric: Metric
    threshold: float
    action: Action
    resource_ref: Optional[int] = None
    value: int = Field(default=1, ge=1)
    comparison: Literal["gte", "lte"] = "gte"

    @model_validator(mode="after")
    def _resource_ref_iff_suggest(self):
        if self.action == "suggestResource" and self.resource_ref is None:
            raise ValueError("resourceRef is required when action is suggestResource")
        if self.action != "suggestResource" and self.resource_ref is not None:
            raise ValueError("resourceRef is only allowed when action is suggestResource")
        return self


class AdjustmentRuleOut(CamelModel):
    metric: str
    threshold: float
    action: str
    resource_ref: Optional[int] = None
    value: int = 1
    comparison: str = "gte"


class ContentRef(CamelModel):
    """Tagged reference to catalog content: `kind` picks the table."""
    content_type: ContentKind
    content_id: int


class AdaptiveProfileIn(CamelModel):
    user_id: int
    current_level: Level = "beginner"
    adjustment_rules: List[AdjustmentRuleIn] = []
    recommended_content: List[ContentRef] = []


class AdaptiveProfileUpdateIn(CamelModel):
    current_level: Optional[Level] = None
    adjustment_rules: Optional[List[AdjustmentRuleIn]] = None
    recommended_content: Optional[List[ContentRef]] = None

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class PerformanceSampleIn(CamelModel):
    """Explicit metric sample appended to the window before evaluation."""
    score: Optional[float] = Field(default=None, ge=0, le=100)
    time_spent: Optional[float] = Field(default=None, ge=0)
    accuracy: Optional[float] = Field(default=None, ge=0, le=100)
    completion_rate: Optional[float] = Field(default=None, ge=0, le=100)


class AdaptiveProfileOut(CamelModel):
    id: int
    user_id: int
    current_level: str
    adjustment_rules: List[AdjustmentRuleOut] = []
    recommended_content: List[ContentRef] = []
    progress: Dict[str, List[float]] = {}
    created_at: datetime
    updated_at: datetime


class AdjustmentOut(CamelModel):
    profile: AdaptiveProfileOut
    previous_level: str
    fired_rules: List[int] = []
    averages: Dict[str, Optional[float]] = {}


class AdaptiveProfilePageOut(CamelModel):
    profiles: List[AdaptiveProfileOut]
    pagination: Pagination
