"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories and
the pure helpers in `utils`. Services perform validation, authorization
checks against the acting user, execute domain logic and persist
aggregates via repositories. They raise `errors.ServiceError` subclasses
and never build HTTP responses.

Every service accepts an optional logger so the HTTP layer can pass a
request-scoped adapter; scripts and tests may omit it.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .auth import ensure_self_or_admin
from .config import settings
from .errors import Conflict, Forbidden, InvalidState, NotFound, PolicyViolation, ValidationError
from .utils.adaptive_rules import evaluate_rules, merge_recommendations, trim_window
from .utils.hint_analytics import (
    empty_question_stats,
    performance_window,
    question_hint_stats,
    questions_needing_better_hints,
    usage_summary,
    user_hint_analytics,
)
from .utils.retake_policy import RetakePolicy, check_retake
from .utils.scoring import normalize_answer, score_attempt

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
log = logging.getLogger("examprep.services")


def _event(logger, name: str, **fields) -> None:
    logger.info("%s %s", name, json.dumps(fields, default=str, ensure_ascii=True))


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _owned(record, actor: models.User, label: str):
    """Return `record` if `actor` may see it.

    Non-admins get Forbidden both for records of other users and for ids
    that do not exist, so existence is not revealed.
    """
    if record is None:
        if actor.is_admin:
            raise NotFound(f"{label} not found")
        raise Forbidden("not permitted")
    ensure_self_or_admin(actor, record.user_id)
    return record


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session, logger=None):
        self.session = session
        self.logger = logger or log
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str) -> models.User:
        """Create a new user with a hashed password.

        Usernames listed in `ADMIN_USERNAMES` receive the admin role.
        """
        hashed = PWD_CTX.hash(password)
        role = "admin" if username in settings.ADMIN_USERNAMES else "student"
        u = models.User(username=username, password_hash=hashed, role=role)
        user = self.user_repo.create(u)
        _event(self.logger, "user_registered", user_id=user.id, role=user.role)
        return user

    def authenticate(self, username: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "role": user.role,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class AttemptService:
    """Attempt session lifecycle: start, answer, abandon and finalize."""
    def __init__(self, session: Session, logger=None):
        self.session = session
        self.logger = logger or log
        self.quiz_repo = repositories.QuizRepository(session)
        self.session_repo = repositories.SessionRepository(session)
        self.result_repo = repositories.ResultRepository(session)
        self.hint_repo = repositories.HintRepository(session)

    def _load(self, session_id: str, actor: models.User, owner_only: bool = False) -> models.AttemptSession:
        attempt = _owned(self.session_repo.get(session_id, fresh=True), actor, "session")
        if owner_only and attempt.user_id != actor.id:
            raise Forbidden("only the owner may modify this session")
        return attempt

    def start(
        self,
        actor: models.User,
        quiz_id: int,
        device_info: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[models.AttemptSession, bool]:
        """Start (or resume) an attempt. Returns `(session, created)`."""
        now = now or models.utcnow()
        quiz = self.quiz_repo.get(quiz_id)
        if quiz is None:
            raise NotFound("quiz not found")
        existing = self.session_repo.find_active(actor.id, quiz_id)
        if existing is not None:
            _event(self.logger, "session_resumed", session_id=existing.id, user_id=actor.id, quiz_id=quiz_id)
            return existing, False

        prior_count, last_completed = self.result_repo.attempt_stats(actor.id, quiz_id)
        policy = RetakePolicy(max_attempts=quiz.max_attempts, cooldown_minutes=quiz.cooldown_minutes or 0)
        try:
            check_retake(policy, prior_count, last_completed, now)
        except PolicyViolation as exc:
            _event(self.logger, "retake_rejected", user_id=actor.id, quiz_id=quiz_id, reason=exc.message)
            raise

        attempt = models.AttemptSession(
            user_id=actor.id,
            quiz_id=quiz_id,
            attempt_number=prior_count + 1,
            start_time=now,
            last_active=now,
            device_info=device_info or {},
        )
        try:
            attempt = self.session_repo.create(attempt)
        except IntegrityError:
            # a concurrent start won the partial unique index
            self.session.rollback()
            existing = self.session_repo.find_active(actor.id, quiz_id)
            if existing is None:
                raise Conflict("could not start attempt; retry")
            return existing, False
        _event(
            self.logger,
            "session_started",
            session_id=attempt.id,
            user_id=actor.id,
            quiz_id=quiz_id,
            attempt_number=attempt.attempt_number,
        )
        return attempt, True

    def get(self, actor: models.User, session_id: str) -> models.AttemptSession:
        return self._load(session_id, actor)

    def list_active(self, actor: models.User) -> List[models.AttemptSession]:
        return self.session_repo.list_active(actor.id)

    def submit_answer(
        self,
        actor: models.User,
        session_id: str,
        question_id: int,
        selected_answer: Any,
        time_spent_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> models.AttemptSession:
        """Record (or replace) the answer to one question of the quiz."""
        now = now or models.utcnow()
        attempt = self._load(session_id, actor, owner_only=True)
        if attempt.status != models.SESSION_IN_PROGRESS:
            raise InvalidState("session is no longer in progress", details={"status": attempt.status})
        quiz = self.quiz_repo.get(attempt.quiz_id)
        if quiz is None or question_id not in (quiz.question_ids or []):
            raise NotFound("question is not part of this quiz")
        answer = normalize_answer(selected_answer)
        try:
            self.session_repo.record_answer(attempt, question_id, answer, time_spent_seconds, now)
        except IntegrityError:
            # a concurrent request stored the first answer for this question; merge into it
            self.session.rollback()
            attempt = self._load(session_id, actor, owner_only=True)
            if attempt.status != models.SESSION_IN_PROGRESS:
                raise InvalidState("session is no longer in progress", details={"status": attempt.status})
            try:
                self.session_repo.record_answer(attempt, question_id, answer, time_spent_seconds, now)
            except IntegrityError:
                self.session.rollback()
                raise Conflict("answer changed concurrently; retry")
        self.session.refresh(attempt)
        return attempt

    def abandon(self, actor: models.User, session_id: str, now: Optional[datetime] = None) -> models.AttemptSession:
        now = now or models.utcnow()
        attempt = self._load(session_id, actor)
        if attempt.status != models.SESSION_IN_PROGRESS:
            raise InvalidState("session is no longer in progress", details={"status": attempt.status})
        moved = self.session_repo.transition(attempt.id, models.SESSION_IN_PROGRESS, models.SESSION_ABANDONED, now)
        self.session.commit()
        if not moved:
            raise InvalidState("session is no longer in progress")
        _event(self.logger, "session_abandoned", session_id=attempt.id, user_id=attempt.user_id)
        return self.session_repo.get(attempt.id, fresh=True)

    def abandon_idle_sessions(self, idle_minutes: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Abandon every in-progress session idle for `idle_minutes`."""
        now = now or models.utcnow()
        idle_minutes = idle_minutes or settings.SESSION_IDLE_MINUTES
        count = self.session_repo.abandon_idle(now - timedelta(minutes=idle_minutes), now)
        _event(self.logger, "sessions_swept", abandoned=count, idle_minutes=idle_minutes)
        return count

    def _replayed(self, session_id: str) -> Tuple[models.QuizResult, bool]:
        result = self.result_repo.get_by_session(session_id)
        if result is not None:
            return result, False
        attempt = self.session_repo.get(session_id, fresh=True)
        if attempt is not None and attempt.status == models.SESSION_ABANDONED:
            raise InvalidState("session was abandoned", details={"status": attempt.status})
        raise Conflict("session is being finalized concurrently; retry")

    def finalize(
        self, actor: models.User, session_id: str, now: Optional[datetime] = None
    ) -> Tuple[models.QuizResult, bool]:
        """Score the session and persist its result exactly once.

        Returns `(result, created)`. Replaying finalize on a completed
        session returns the stored result unchanged.
        """
        now = now or models.utcnow()
        attempt = self._load(session_id, actor, owner_only=True)
        existing = self.result_repo.get_by_session(attempt.id)
        if existing is not None:
            _event(self.logger, "finalize_replayed", session_id=attempt.id, result_id=existing.id)
            return existing, False
        if attempt.status == models.SESSION_ABANDONED:
            raise InvalidState("session was abandoned", details={"status": attempt.status})
        if attempt.status != models.SESSION_IN_PROGRESS:
            return self._replayed(attempt.id)
        if not attempt.answers:
            raise ValidationError("at least one answer is required to finalize")

        quiz = self.quiz_repo.get(attempt.quiz_id)
        questions = self.quiz_repo.questions_for(quiz) if quiz is not None else []
        card = score_attempt(questions, attempt.answers)
        hints = self.hint_repo.all_for_session(attempt.id)
        deducted = float(sum(h.points_deducted for h in hints))

        result = models.QuizResult(
            user_id=attempt.user_id,
            quiz_id=attempt.quiz_id,
            session_id=attempt.id,
            question_ids=[q.id for q in questions],
            correct_count=card.correct_count,
            gradable_count=card.gradable_count,
            answered_count=card.answered_count,
            total_questions=card.total_questions,
            score=card.score,
            points_earned=card.points_earned,
            points_deducted=deducted,
            net_points=max(0.0, card.points_earned - deducted),
            time_taken_seconds=card.time_taken_seconds,
            completed_at=now,
            hint_usage_ids=[h.id for h in hints],
            feedback=card.feedback,
        )
        items = [
            models.QuizResultItem(
                question_id=it.question_id,
                given_answer=it.given_answer,
                correct=it.correct,
                time_spent_seconds=it.time_spent_seconds,
            )
            for it in card.items
        ]
        try:
            if not self.session_repo.transition(attempt.id, models.SESSION_IN_PROGRESS, models.SESSION_COMPLETED, now):
                self.session.rollback()
                return self._replayed(attempt.id)
            self.result_repo.stage_result(result, items)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return self._replayed(attempt.id)
        self.session.refresh(result)
        _event(
            self.logger,
            "session_finalized",
            session_id=attempt.id,
            result_id=result.id,
            score=result.score,
            correct=result.correct_count,
            gradable=result.gradable_count,
        )
        return result, True


class ResultService:
    """Read quiz results and append question feedback."""
    MAX_FEEDBACK_ENTRIES = 100
    MAX_COMMENT_LENGTH = 1000

    def __init__(self, session: Session, logger=None):
        self.session = session
        self.logger = logger or log
        self.result_repo = repositories.ResultRepository(session)

    def get(self, actor: models.User, result_id: int) -> models.QuizResult:
        return _owned(self.result_repo.get(result_id), actor, "result")

    def list_for_user(
        self, actor: models.User, user_id: int, page: int = 1, limit: int = 20, quiz_id: Optional[int] = None
    ) -> Tuple[List[models.QuizResult], int]:
        ensure_self_or_admin(actor, user_id)
        return self.result_repo.list_for_user(user_id, page=page, limit=limit, quiz_id=quiz_id)

    def add_feedback(
        self,
        actor: models.User,
        result_id: int,
        rating: int,
        comments: Optional[str] = None,
        question_id: Optional[int] = None,
    ) -> models.QuizResult:
        result = self.get(actor, result_id)
        problems = []
        if not 0 <= rating <= 5:
            problems.append({"field": "rating", "error": "must be between 0 and 5"})
        if comments is not None and len(comments) > self.MAX_COMMENT_LENGTH:
            problems.append({"field": "comments", "error": f"must be at most {self.MAX_COMMENT_LENGTH} characters"})
        if question_id is not None and question_id not in (result.question_ids or []):
            problems.append({"field": "questionId", "error": "question is not part of this result"})
        if problems:
            raise ValidationError("invalid feedback", details=problems)
        if self.result_repo.count_feedback(result.id) >= self.MAX_FEEDBACK_ENTRIES:
            raise ValidationError(f"a result accepts at most {self.MAX_FEEDBACK_ENTRIES} feedback entries")
        self.result_repo.add_feedback(
            models.QuestionFeedback(
                quiz_result_id=result.id,
                user_id=actor.id,
                question_id=question_id,
                rating=rating,
                comments=comments,
            )
        )
        self.session.refresh(result)
        return result


class HintService:
    """Hint ledger upsert, history and maintenance."""
    def __init__(self, session: Session, logger=None):
        self.session = session
        self.logger = logger or log
        self.hint_repo = repositories.HintRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)
        self.session_repo = repositories.SessionRepository(session)
        self.user_repo = repositories.UserRepository(session)

    @staticmethod
    def _check_steps(steps: Sequence[int], total_steps: Optional[int]) -> None:
        invalid = [s for s in steps if s < 0 or (total_steps is not None and s >= total_steps)]
        if invalid:
            raise ValidationError(
                "step number out of range",
                details={"invalid_steps": invalid, "total_steps_available": total_steps},
            )

    def record(
        self,
        actor: models.User,
        question_id: int,
        user_id: Optional[int] = None,
        session_id: Optional[str] = None,
        quiz_id: Optional[int] = None,
        step_number: Optional[int] = None,
        hint_type: Optional[str] = None,
        time_spent: float = 0.0,
        points_deducted: float = 0.0,
        device_info: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[models.HintUsage, bool]:
        """Create or merge the ledger entry for (user, question, session).

        Time spent and points deducted are deltas added to the stored
        totals. Returns `(entry, created)`.
        """
        now = now or models.utcnow()
        target_user = actor.id if user_id is None else user_id
        ensure_self_or_admin(actor, target_user)
        if target_user != actor.id and self.user_repo.get(target_user) is None:
            raise NotFound("user not found")
        question = self.quiz_repo.get_question(question_id)
        if question is None:
            raise NotFound("question not found")
        total_steps = len(question.steps) or None

        session_key = ""
        snapshot = {k: v for k, v in (context or {}).items() if v is not None}
        snapshot["difficulty"] = question.difficulty
        if session_id:
            attempt = self.session_repo.get(session_id)
            if attempt is None:
                raise NotFound("session not found")
            if attempt.user_id != target_user:
                raise Forbidden("session belongs to another user")
            if attempt.status != models.SESSION_IN_PROGRESS:
                raise InvalidState("session is no longer in progress", details={"status": attempt.status})
            session_key = attempt.id
            quiz_id = attempt.quiz_id
            snapshot["attemptNumber"] = attempt.attempt_number
        elif quiz_id is not None and self.quiz_repo.get(quiz_id) is None:
            raise NotFound("quiz not found")

        for attempt_no in range(settings.HINT_UPSERT_RETRIES):
            entry = self.hint_repo.find_by_key(target_user, question_id, session_key)
            if entry is None:
                if step_number is not None:
                    self._check_steps([step_number], total_steps)
                fresh = models.HintUsage(
                    user_id=target_user,
                    question_id=question_id,
                    session_key=session_key,
                    quiz_id=quiz_id,
                    used_at=now,
                    updated_at=now,
                    steps_viewed=[] if step_number is None else [step_number],
                    total_steps_available=total_steps,
                    hint_type=hint_type or "step",
                    points_deducted=points_deducted,
                    time_spent_on_hint=time_spent,
                    device_info=device_info or {},
                    context=snapshot,
                )
                try:
                    entry = self.hint_repo.insert(fresh)
                except IntegrityError:
                    self.session.rollback()
                    continue
                _event(self.logger, "hint_recorded", hint_id=entry.id, user_id=target_user,
                       question_id=question_id, session_id=session_key or None, created=True)
                return entry, True

            # existing entries keep the step count captured when they were created
            steps = set(entry.steps_viewed)
            if step_number is not None:
                self._check_steps([step_number], entry.total_steps_available)
                steps.add(step_number)
            values = {
                "steps_viewed": sorted(steps),
                "time_spent_on_hint": entry.time_spent_on_hint + time_spent,
                "points_deducted": entry.points_deducted + points_deducted,
                "hint_type": hint_type or entry.hint_type,
                "device_info": device_info or entry.device_info,
                "context": {**snapshot, **entry.context},
                "quiz_id": entry.quiz_id if entry.quiz_id is not None else quiz_id,
                "updated_at": now,
            }
            if self.hint_repo.compare_and_set(entry.id, entry.version, values):
                merged = self.hint_repo.get(entry.id)
                _event(self.logger, "hint_recorded", hint_id=merged.id, user_id=target_user,
                       question_id=question_id, session_id=session_key or None, created=False)
                return merged, False
            _event(self.logger, "hint_upsert_retry", hint_id=entry.id, attempt=attempt_no + 1)

        raise Conflict(
            "hint ledger entry changed concurrently; retry",
            details={"attempts": settings.HINT_UPSERT_RETRIES},
        )

    def get(self, actor: models.User, hint_id: int) -> models.HintUsage:
        return _owned(self.hint_repo.get(hint_id), actor, "hint usage")

    def history(
        self,
        actor: models.User,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        question_id: Optional[int] = None,
        quiz_id: Optional[int] = None,
        hint_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Tuple[List[models.HintUsage], int]:
        """Paginated ledger entries for `user_id`, newest first."""
        ensure_self_or_admin(actor, user_id)
        return self.hint_repo.list_for_user(
            user_id,
            page=page,
            limit=limit,
            question_id=question_id,
            quiz_id=quiz_id,
            hint_type=hint_type,
            start_date=_naive_utc(start_date),
            end_date=_naive_utc(end_date),
        )

    def update(
        self,
        actor: models.User,
        hint_id: int,
        steps_viewed: Optional[List[int]] = None,
        hint_type: Optional[str] = None,
        points_deducted: Optional[float] = None,
        time_spent: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> models.HintUsage:
        """Replace mutable fields; running totals may only grow."""
        now = now or models.utcnow()
        entry = self.get(actor, hint_id)
        values: Dict[str, Any] = {"updated_at": now}
        if steps_viewed is not None:
            self._check_steps(steps_viewed, entry.total_steps_available)
            values["steps_viewed"] = sorted(set(steps_viewed))
        if hint_type is not None:
            values["hint_type"] = hint_type
        if points_deducted is not None:
            if points_deducted < entry.points_deducted:
                raise ValidationError(
                    "pointsDeducted cannot decrease",
                    details={"current": entry.points_deducted, "requested": points_deducted},
                )
            values["points_deducted"] = points_deducted
        if time_spent is not None:
            if time_spent < entry.time_spent_on_hint:
                raise ValidationError(
                    "timeSpentOnHint cannot decrease",
                    details={"current": entry.time_spent_on_hint, "requested": time_spent},
                )
            values["time_spent_on_hint"] = time_spent
        if context is not None:
            values["context"] = {**entry.context, **{k: v for k, v in context.items() if v is not None}}
        if not self.hint_repo.compare_and_set(entry.id, entry.version, values):
            raise Conflict("hint ledger entry changed concurrently; retry")
        _event(self.logger, "hint_updated", hint_id=entry.id, actor_id=actor.id)
        return self.hint_repo.get(entry.id)

    def add_step(
        self, actor: models.User, hint_id: int, step_number: int, now: Optional[datetime] = None
    ) -> models.HintUsage:
        """Mark one more step of an existing entry as viewed."""
        now = now or models.utcnow()
        entry = self.get(actor, hint_id)
        self._check_steps([step_number], entry.total_steps_available)
        for _ in range(settings.HINT_UPSERT_RETRIES):
            if step_number in entry.steps_viewed:
                return entry
            values = {"steps_viewed": sorted(set(entry.steps_viewed) | {step_number}), "updated_at": now}
            if self.hint_repo.compare_and_set(entry.id, entry.version, values):
                _event(self.logger, "hint_step_added", hint_id=entry.id, step_number=step_number)
                return self.hint_repo.get(entry.id)
            entry = self.hint_repo.get(entry.id)
            if entry is None:
                raise NotFound("hint usage not found")
        raise Conflict(
            "hint ledger entry changed concurrently; retry",
            details={"attempts": settings.HINT_UPSERT_RETRIES},
        )

    def delete(self, actor: models.User, hint_id: int) -> None:
        entry = self.get(actor, hint_id)
        self.hint_repo.delete(entry)
        _event(self.logger, "hint_deleted", hint_id=hint_id, actor_id=actor.id)

    def bulk_delete(self, hint_ids: Sequence[int]) -> int:
        count = self.hint_repo.bulk_delete(hint_ids)
        _event(self.logger, "hints_bulk_deleted", requested=len(hint_ids), deleted=count)
        return count


def _question_summary(question: Optional[models.Question]) -> Optional[Dict[str, Any]]:
    if question is None:
        return None
    return {
        "id": question.id,
        "question_text": question.question_text,
        "difficulty": question.difficulty,
        "total_steps": len(question.steps or []),
    }


class AnalyticsService:
    """Read-only statistics over the hint ledger and results.

    Statistics are advisory: store failures are logged and answered with
    zeroed payloads instead of failing the request.
    """
    def __init__(self, session: Session, logger=None):
        self.session = session
        self.logger = logger or log
        self.hint_repo = repositories.HintRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)
        self.result_repo = repositories.ResultRepository(session)

    def question_stats(self, question_id: int) -> Dict[str, Any]:
        question = self.quiz_repo.get_question(question_id)
        if question is None:
            raise NotFound("question not found")
        try:
            stats = question_hint_stats(self.hint_repo.all_for_question(question_id))
        except SQLAlchemyError:
            self.logger.exception("question_stats_failed %s", json.dumps({"question_id": question_id}))
            stats = empty_question_stats()
        stats["question"] = _question_summary(question)
        return stats

    def flagged_questions(self) -> List[Dict[str, Any]]:
        try:
            flagged = questions_needing_better_hints(self.hint_repo.all_between())
        except SQLAlchemyError:
            self.logger.exception("flagged_questions_failed %s", json.dumps({}))
            return []
        for row in flagged:
            row["question"] = _question_summary(self.quiz_repo.get_question(row["question_id"]))
        return flagged

    def summary(
        self, group_by: str = "day", start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        try:
            entries = self.hint_repo.all_between(_naive_utc(start), _naive_utc(end))
        except SQLAlchemyError:
            self.logger.exception("hint_summary_failed %s", json.dumps({"group_by": group_by}))
            entries = []
        try:
            return usage_summary(entries, group_by)
        except ValueError as exc:
            raise ValidationError(str(exc))

    def user_analytics(self, actor: models.User, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        ensure_self_or_admin(actor, user_id)
        now = now or models.utcnow()
        try:
            entries = self.hint_repo.all_for_user(user_id)
            difficulties = self.quiz_repo.difficulty_map(e.question_id for e in entries)
        except SQLAlchemyError:
            self.logger.exception("user_hint_analytics_failed %s", json.dumps({"user_id": user_id}))
            entries, difficulties = [], {}
        return user_hint_analytics(entries, difficulties, settings.HINT_TREND_MONTHS, now)

    def performance_window(self, user_id: int, window: Optional[int] = None) -> Dict[str, List[float]]:
        """Metric history from the user's most recent results, oldest first."""
        window = window or settings.ADAPTIVE_METRICS_WINDOW
        return performance_window(self.result_repo.recent_for_user(user_id, window))


class AdaptiveService:
    """Adaptive profile management and rule-driven level adjustment."""
    def __init__(self, session: Session, logger=None):
        self.session = session
        self.logger = logger or log
        self.profile_repo = repositories.AdaptiveProfileRepository(session)
        self.user_repo = repositories.UserRepository(session)
        self.catalog = repositories.CatalogRepository(session)
        self.analytics = AnalyticsService(session, logger=self.logger)

    def _check_references(self, rules: Sequence[Dict[str, Any]], recommended: Sequence[Dict[str, Any]]) -> None:
        refs = [("resource", int(r["resource_ref"])) for r in rules if r.get("action") == "suggestResource"]
        refs += [(c["content_type"], int(c["content_id"])) for c in recommended]
        missing = self.catalog.missing(refs)
        if missing:
            raise ValidationError("invalid content references", details={"invalid_references": missing})

    def create(
        self,
        user_id: int,
        current_level: str = "beginner",
        rules: Sequence[Dict[str, Any]] = (),
        recommended: Sequence[Dict[str, Any]] = (),
    ) -> models.AdaptiveProfile:
        if self.user_repo.get(user_id) is None:
            raise ValidationError("invalid user reference", details={"invalid_references": [{"user_id": user_id}]})
        if self.profile_repo.get_by_user(user_id) is not None:
            raise Conflict("adaptive profile already exists for this user")
        self._check_references(rules, recommended)
        profile = models.AdaptiveProfile(
            user_id=user_id,
            current_level=current_level,
            adjustment_rules=[dict(r) for r in rules],
            recommended_content=merge_recommendations([], recommended),
        )
        try:
            profile = self.profile_repo.create(profile)
        except IntegrityError:
            self.session.rollback()
            raise Conflict("adaptive profile already exists for this user")
        _event(self.logger, "adaptive_profile_created", user_id=user_id, level=current_level)
        return profile

    def get(self, actor: models.User, user_id: int) -> models.AdaptiveProfile:
        ensure_self_or_admin(actor, user_id)
        profile = self.profile_repo.get_by_user(user_id)
        if profile is None:
            raise NotFound("adaptive profile not found")
        return profile

    def update(
        self,
        actor: models.User,
        user_id: int,
        current_level: Optional[str] = None,
        rules: Optional[Sequence[Dict[str, Any]]] = None,
        recommended: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> models.AdaptiveProfile:
        profile = self.get(actor, user_id)
        self._check_references(rules or [], recommended or [])
        if current_level is not None:
            profile.current_level = current_level
        if rules is not None:
            profile.adjustment_rules = [dict(r) for r in rules]
        if recommended is not None:
            profile.recommended_content = merge_recommendations([], recommended)
        profile.updated_at = models.utcnow()
        profile = self.profile_repo.save(profile)
        _event(self.logger, "adaptive_profile_updated", user_id=user_id, actor_id=actor.id)
        return profile

    def list(self, page: int = 1, limit: int = 10, current_level: Optional[str] = None):
        return self.profile_repo.list(page=page, limit=limit, current_level=current_level)

    def adjust(
        self,
        actor: models.User,
        user_id: int,
        sample: Optional[Dict[str, Optional[float]]] = None,
        now: Optional[datetime] = None,
    ):
        """Evaluate the profile's rules against the user's recent metrics.

        Reading the window, evaluating and writing the profile form one
        unit: any failure rolls back and leaves the profile untouched.
        Returns `(profile, evaluation)`.
        """
        profile = self.get(actor, user_id)
        window = settings.ADAPTIVE_METRICS_WINDOW
        try:
            metrics = self.analytics.performance_window(user_id, window)
            for metric, value in (sample or {}).items():
                if value is not None:
                    metrics.setdefault(metric, []).append(float(value))
            metrics = trim_window(metrics, window)
            outcome = evaluate_rules(
                profile.current_level,
                profile.adjustment_rules,
                metrics,
                profile.recommended_content,
                window=window,
            )
            profile.current_level = outcome.level
            profile.recommended_content = outcome.recommended_content
            profile.progress = metrics
            profile.updated_at = now or models.utcnow()
            self.session.add(profile)
            self.session.commit()
        except ValueError as exc:
            self.session.rollback()
            raise ValidationError(str(exc))
        except SQLAlchemyError:
            self.session.rollback()
            self.logger.exception("adaptive_adjust_failed %s", json.dumps({"user_id": user_id}))
            raise
        self.session.refresh(profile)
        _event(
            self.logger,
            "adaptive_adjusted",
            user_id=user_id,
            previous_level=outcome.previous_level,
            level=outcome.level,
            fired=outcome.fired,
        )
        return profile, outcome
