"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users, quizzes
and questions, attempt sessions, hint ledger, results, adaptive profiles).
Repositories return SQLModel objects. Simple writes commit immediately;
the conditional updates used for state transitions leave the commit to the
calling service so several writes can land together.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, update, delete
from sqlmodel import Session, select

from . import models

# kind -> table used to resolve tagged content references
CONTENT_TABLES = {
    "topic": models.Topic,
    "quiz": models.Quiz,
    "resource": models.Resource,
}


def _paginate(session: Session, stmt, page: int, limit: int) -> Tuple[List[Any], int]:
    total = session.exec(select(func.count()).select_from(stmt.subquery())).one()
    rows = session.exec(stmt.offset((page - 1) * limit).limit(limit)).all()
    return list(rows), int(total)


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class QuizRepository:
    """Read access to quizzes and their questions (the content store)."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)

    def get_question(self, question_id: int) -> Optional[models.Question]:
        return self.session.get(models.Question, question_id)

    def questions_for(self, quiz: models.Quiz) -> List[models.Question]:
        """Return the quiz's questions in quiz order, skipping dangling ids."""
        if not quiz.question_ids:
            return []
        stmt = select(models.Question).where(models.Question.id.in_(quiz.question_ids))
        by_id = {q.id: q for q in self.session.exec(stmt).all()}
        return [by_id[qid] for qid in quiz.question_ids if qid in by_id]

    def difficulty_map(self, question_ids: Iterable[int]) -> Dict[int, Optional[str]]:
        ids = list(set(question_ids))
        if not ids:
            return {}
        stmt = select(models.Question.id, models.Question.difficulty).where(models.Question.id.in_(ids))
        return {qid: diff for qid, diff in self.session.exec(stmt).all()}

    def create_question(self, question: models.Question) -> models.Question:
        self.session.add(question)
        self.session.commit()
        self.session.refresh(question)
        return question

    def create(self, quiz: models.Quiz) -> models.Quiz:
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz


class CatalogRepository:
    """Existence checks for tagged content references."""
    def __init__(self, session: Session):
        self.session = session

    def resolve(self, kind: str, content_id: int):
        table = CONTENT_TABLES.get(kind)
        if table is None:
            return None
        return self.session.get(table, content_id)

    def missing(self, refs: Iterable[Tuple[str, int]]) -> List[Dict[str, Any]]:
        """Return every `(kind, id)` pair that does not resolve."""
        return [
            {"content_type": kind, "content_id": cid}
            for kind, cid in refs
            if self.resolve(kind, cid) is None
        ]


class SessionRepository:
    """Persistence for `AttemptSession` and its recorded answers."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: models.AttemptSession) -> models.AttemptSession:
        """Insert a new attempt; the partial unique index may reject it."""
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    def get(self, session_id: str, fresh: bool = False) -> Optional[models.AttemptSession]:
        if fresh:
            return self.session.get(models.AttemptSession, session_id, populate_existing=True)
        return self.session.get(models.AttemptSession, session_id)

    def find_active(self, user_id: int, quiz_id: int) -> Optional[models.AttemptSession]:
        stmt = select(models.AttemptSession).where(
            models.AttemptSession.user_id == user_id,
            models.AttemptSession.quiz_id == quiz_id,
            models.AttemptSession.status == models.SESSION_IN_PROGRESS,
        )
        return self.session.exec(stmt).first()

    def list_active(self, user_id: int) -> List[models.AttemptSession]:
        stmt = select(models.AttemptSession).where(
            models.AttemptSession.user_id == user_id,
            models.AttemptSession.status == models.SESSION_IN_PROGRESS,
        ).order_by(models.AttemptSession.start_time.desc())
        return list(self.session.exec(stmt).all())

    def record_answer(
        self,
        attempt: models.AttemptSession,
        question_id: int,
        selected_answer: Optional[str],
        time_spent_seconds: int,
        now: datetime,
    ) -> models.SessionAnswer:
        """Add or replace the answer for `question_id`, accumulating time."""
        existing = next((a for a in attempt.answers if a.question_id == question_id), None)
        if existing is None:
            existing = models.SessionAnswer(
                session_id=attempt.id,
                question_id=question_id,
                position=len(attempt.answers),
                selected_answer=selected_answer,
                time_spent_seconds=time_spent_seconds,
                answered_at=now,
            )
            attempt.answers.append(existing)
        else:
            existing.selected_answer = selected_answer
            existing.time_spent_seconds += time_spent_seconds
            existing.answered_at = now
        attempt.last_active = now
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(existing)
        return existing

    def transition(self, session_id: str, from_status: str, to_status: str, now: datetime) -> bool:
        """Conditionally move a session between states without committing.

        Returns False when the session was not in `from_status`, which is
        how concurrent finalize/abandon calls detect that they lost.
        """
        stmt = (
            update(models.AttemptSession)
            .where(models.AttemptSession.id == session_id, models.AttemptSession.status == from_status)
            .values(status=to_status, end_time=now, last_active=now)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def abandon_idle(self, cutoff: datetime, now: datetime) -> int:
        """Abandon every in-progress session inactive since before `cutoff`."""
        stmt = (
            update(models.AttemptSession)
            .where(
                models.AttemptSession.status == models.SESSION_IN_PROGRESS,
                models.AttemptSession.last_active < cutoff,
            )
            .values(status=models.SESSION_ABANDONED, end_time=now)
            .execution_options(synchronize_session=False)
        )
        count = self.session.execute(stmt).rowcount
        self.session.commit()
        return count


class HintRepository:
    """Hint ledger storage with a versioned compare-and-set merge."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, hint_id: int) -> Optional[models.HintUsage]:
        return self.session.get(models.HintUsage, hint_id, populate_existing=True)

    def find_by_key(self, user_id: int, question_id: int, session_key: str) -> Optional[models.HintUsage]:
        stmt = select(models.HintUsage).where(
            models.HintUsage.user_id == user_id,
            models.HintUsage.question_id == question_id,
            models.HintUsage.session_key == session_key,
        ).execution_options(populate_existing=True)
        return self.session.exec(stmt).first()

    def insert(self, entry: models.HintUsage) -> models.HintUsage:
        """Insert a new ledger entry; raises IntegrityError on a key clash."""
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def compare_and_set(self, hint_id: int, expected_version: int, values: Dict[str, Any]) -> bool:
        """Write `values` only if the row still has `expected_version`."""
        stmt = (
            update(models.HintUsage)
            .where(models.HintUsage.id == hint_id, models.HintUsage.version == expected_version)
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        applied = self.session.execute(stmt).rowcount == 1
        self.session.commit()
        return applied

    def list_for_user(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        question_id: Optional[int] = None,
        quiz_id: Optional[int] = None,
        hint_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Tuple[List[models.HintUsage], int]:
        stmt = select(models.HintUsage).where(models.HintUsage.user_id == user_id)
        if question_id is not None:
            stmt = stmt.where(models.HintUsage.question_id == question_id)
        if quiz_id is not None:
            stmt = stmt.where(models.HintUsage.quiz_id == quiz_id)
        if hint_type:
            stmt = stmt.where(models.HintUsage.hint_type == hint_type)
        if start_date is not None:
            stmt = stmt.where(models.HintUsage.used_at >= start_date)
        if end_date is not None:
            stmt = stmt.where(models.HintUsage.used_at <= end_date)
        stmt = stmt.order_by(models.HintUsage.used_at.desc(), models.HintUsage.id.desc())
        return _paginate(self.session, stmt, page, limit)

    def all_for_user(self, user_id: int) -> List[models.HintUsage]:
        stmt = select(models.HintUsage).where(models.HintUsage.user_id == user_id)
        return list(self.session.exec(stmt).all())

    def all_for_question(self, question_id: int) -> List[models.HintUsage]:
        stmt = select(models.HintUsage).where(models.HintUsage.question_id == question_id)
        return list(self.session.exec(stmt).all())

    def all_for_session(self, session_key: str) -> List[models.HintUsage]:
        stmt = select(models.HintUsage).where(models.HintUsage.session_key == session_key).order_by(models.HintUsage.id)
        return list(self.session.exec(stmt).all())

    def all_between(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[models.HintUsage]:
        stmt = select(models.HintUsage)
        if start is not None:
            stmt = stmt.where(models.HintUsage.used_at >= start)
        if end is not None:
            stmt = stmt.where(models.HintUsage.used_at <= end)
        return list(self.session.exec(stmt).all())

    def save(self, entry: models.HintUsage) -> models.HintUsage:
        entry.version += 1
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def delete(self, entry: models.HintUsage) -> None:
        self.session.delete(entry)
        self.session.commit()

    def bulk_delete(self, hint_ids: Sequence[int]) -> int:
        stmt = delete(models.HintUsage).where(models.HintUsage.id.in_(list(hint_ids)))
        count = self.session.execute(stmt).rowcount
        self.session.commit()
        return count


class ResultRepository:
    """Persist quiz result aggregates, their items and appended feedback."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, result_id: int) -> Optional[models.QuizResult]:
        return self.session.get(models.QuizResult, result_id)

    def get_by_session(self, session_id: str) -> Optional[models.QuizResult]:
        stmt = select(models.QuizResult).where(models.QuizResult.session_id == session_id)
        return self.session.exec(stmt).first()

    def stage_result(self, result: models.QuizResult, items: List[models.QuizResultItem]) -> models.QuizResult:
        """Add a result and its items to the unit of work without committing."""
        self.session.add(result)
        self.session.flush()
        for it in items:
            it.quiz_result_id = result.id
            self.session.add(it)
        return result

    def attempt_stats(self, user_id: int, quiz_id: int) -> Tuple[int, Optional[datetime]]:
        """Return (prior result count, latest completion time) for a quiz."""
        stmt = select(func.count(models.QuizResult.id), func.max(models.QuizResult.completed_at)).where(
            models.QuizResult.user_id == user_id,
            models.QuizResult.quiz_id == quiz_id,
        )
        count, last = self.session.exec(stmt).one()
        return int(count or 0), last

    def recent_for_user(self, user_id: int, limit: int) -> List[models.QuizResult]:
        stmt = (
            select(models.QuizResult)
            .where(models.QuizResult.user_id == user_id)
            .order_by(models.QuizResult.completed_at.desc(), models.QuizResult.id.desc())
            .limit(limit)
        )
        return list(self.session.exec(stmt).all())

    def list_for_user(
        self, user_id: int, page: int = 1, limit: int = 20, quiz_id: Optional[int] = None
    ) -> Tuple[List[models.QuizResult], int]:
        stmt = select(models.QuizResult).where(models.QuizResult.user_id == user_id)
        if quiz_id is not None:
            stmt = stmt.where(models.QuizResult.quiz_id == quiz_id)
        stmt = stmt.order_by(models.QuizResult.completed_at.desc(), models.QuizResult.id.desc())
        return _paginate(self.session, stmt, page, limit)

    def count_feedback(self, result_id: int) -> int:
        stmt = select(func.count(models.QuestionFeedback.id)).where(
            models.QuestionFeedback.quiz_result_id == result_id
        )
        return int(self.session.exec(stmt).one())

    def add_feedback(self, feedback: models.QuestionFeedback) -> models.QuestionFeedback:
        self.session.add(feedback)
        self.session.commit()
        self.session.refresh(feedback)
        return feedback


class AdaptiveProfileRepository:
    """Storage for per-user adaptive profiles."""
    def __init__(self, session: Session):
        self.session = session

    def get_by_user(self, user_id: int) -> Optional[models.AdaptiveProfile]:
        stmt = select(models.AdaptiveProfile).where(models.AdaptiveProfile.user_id == user_id)
        return self.session.exec(stmt).first()

    def create(self, profile: models.AdaptiveProfile) -> models.AdaptiveProfile:
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def save(self, profile: models.AdaptiveProfile) -> models.AdaptiveProfile:
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def list(
        self, page: int = 1, limit: int = 10, current_level: Optional[str] = None
    ) -> Tuple[List[models.AdaptiveProfile], int]:
        stmt = select(models.AdaptiveProfile)
        if current_level:
            stmt = stmt.where(models.AdaptiveProfile.current_level == current_level)
        stmt = stmt.order_by(models.AdaptiveProfile.created_at.desc(), models.AdaptiveProfile.id.desc())
        return _paginate(self.session, stmt, page, limit)
