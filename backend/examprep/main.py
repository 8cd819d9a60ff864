"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the assessment attempt and
adaptive feedback backend. Controllers are intentionally thin: they accept
requests, delegate to services, and return JSON responses. Service errors
are translated into `{status, message, code}` bodies by the exception
handlers registered below.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- GET /quizzes/{quiz_id}
- POST /sessions, GET /sessions/active, GET /sessions/{id},
  POST /sessions/{id}/answers, POST /sessions/{id}/finalize,
  POST /sessions/{id}/abandon, POST /sessions/sweep
- GET /results/{id}, GET /results/user/{user_id}, POST /results/{id}/feedback
- POST /hints, GET /hints/me, GET /hints/me/analytics,
  GET /hints/user/{user_id}, GET /hints/user/{user_id}/analytics,
  GET /hints/question/{question_id}/stats, GET /hints/needing-better-hints,
  GET /hints/summary, POST /hints/bulk-delete,
  GET|PUT|DELETE /hints/{id}
- POST /adaptive-learning, GET /adaptive-learning,
  GET|PUT /adaptive-learning/user/{user_id},
  POST /adaptive-learning/user/{user_id}/adjust
"""

import json
import logging
import math
import time
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models, repositories, schemas, services
from .auth import get_current_user, require_admin
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import ServiceError

app = FastAPI(title="Assessment Attempt & Adaptive Feedback API")
logger = logging.getLogger("examprep.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

# Wide-open CORS keeps local HTML testers working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

_HTTP_CODES = {400: "bad_request", 401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}


class RequestLogger(logging.LoggerAdapter):
    """Prefix every message with the request id."""
    def process(self, msg, kwargs):
        return f"[{self.extra['request_id']}] {msg}", kwargs


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    request.state.logger = RequestLogger(logging.getLogger("examprep.services"), {"request_id": req_id})
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = {"status": exc.status_code, "message": str(exc.detail), "code": _HTTP_CODES.get(exc.status_code, "http_error")}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    body = {"status": 422, "message": "request validation failed", "code": "validation_error", "details": details}
    return JSONResponse(status_code=422, content=body)


def request_logger(request: Request) -> logging.LoggerAdapter:
    """Per-request logger handed to services."""
    return request.state.logger


def _pagination(page: int, limit: int, total: int) -> schemas.Pagination:
    return schemas.Pagination(
        current_page=page,
        total_pages=math.ceil(total / limit) if total else 0,
        total_items=total,
        items_per_page=limit,
    )


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


# --- auth -----------------------------------------------------------------

@app.post('/auth/register')
def register(payload: schemas.RegisterIn, db: Session = Depends(get_session), log=Depends(request_logger)):
    """Register a new user (idempotent).

    Returns existing user if the username already exists to make the
    operation idempotent (useful for automation/tests).
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username, 'role': existing.role}
    user = services.AuthService(db, logger=log).register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username, 'role': user.role}


@app.post('/auth/login', response_model=schemas.TokenOut)
def login(payload: schemas.RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token.

    The token carries `user_id`, `username` and `role`.
    """
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


# --- quizzes and attempt sessions -----------------------------------------

@app.get('/quizzes/{quiz_id}', response_model=schemas.QuizOut)
def get_quiz(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return a quiz with its questions (without correct answers)."""
    repo = repositories.QuizRepository(db)
    quiz = repo.get(quiz_id)
    if quiz is None:
        raise HTTPException(status_code=404, detail='quiz not found')
    questions = [
        schemas.QuestionOut(
            id=q.id,
            question_text=q.question_text,
            question_type=q.question_type,
            options=q.options or [],
            difficulty=q.difficulty,
            points=q.points,
            total_steps=len(q.steps or []),
        )
        for q in repo.questions_for(quiz)
    ]
    return schemas.QuizOut(
        id=quiz.id,
        title=quiz.title,
        difficulty=quiz.difficulty,
        max_attempts=quiz.max_attempts,
        cooldown_minutes=quiz.cooldown_minutes,
        questions=questions,
    )


@app.post('/sessions', response_model=schemas.SessionOut, status_code=201)
def start_session(
    payload: schemas.SessionStartIn,
    response: Response,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Start an attempt, or resume the caller's in-progress one (200)."""
    device = payload.device_info.model_dump(exclude_none=True, by_alias=True) if payload.device_info else None
    attempt, created = services.AttemptService(db, logger=log).start(user, payload.quiz_id, device)
    if not created:
        response.status_code = 200
    return schemas.SessionOut.model_validate(attempt)


@app.get('/sessions/active', response_model=List[schemas.SessionOut])
def list_active_sessions(
    db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return [schemas.SessionOut.model_validate(s) for s in services.AttemptService(db, logger=log).list_active(user)]


@app.post('/sessions/sweep', response_model=schemas.SweepOut)
def sweep_sessions(
    idle_minutes: Optional[int] = Query(None, alias="idleMinutes", ge=1),
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_admin),
    log=Depends(request_logger),
):
    """Abandon idle in-progress sessions (scheduler entry point)."""
    minutes = idle_minutes or settings.SESSION_IDLE_MINUTES
    count = services.AttemptService(db, logger=log).abandon_idle_sessions(minutes)
    return schemas.SweepOut(abandoned=count, idle_minutes=minutes)


@app.get('/sessions/{session_id}', response_model=schemas.SessionOut)
def get_attempt(
    session_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return schemas.SessionOut.model_validate(services.AttemptService(db, logger=log).get(user, session_id))


@app.post('/sessions/{session_id}/answers', response_model=schemas.SessionOut)
def submit_answer(
    session_id: str,
    payload: schemas.AnswerIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Record an answer; terminal sessions reject it with `invalid_state`."""
    attempt = services.AttemptService(db, logger=log).submit_answer(
        user, session_id, payload.question_id, payload.selected_answer, payload.time_spent_seconds
    )
    return schemas.SessionOut.model_validate(attempt)


@app.post('/sessions/{session_id}/finalize', response_model=schemas.ResultOut, status_code=201)
def finalize_session(
    session_id: str,
    response: Response,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Score the attempt. Replays return the stored result with 200."""
    result, created = services.AttemptService(db, logger=log).finalize(user, session_id)
    if not created:
        response.status_code = 200
    return schemas.ResultOut.model_validate(result)


@app.post('/sessions/{session_id}/abandon', response_model=schemas.SessionOut)
def abandon_session(
    session_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return schemas.SessionOut.model_validate(services.AttemptService(db, logger=log).abandon(user, session_id))


# --- results --------------------------------------------------------------

@app.get('/results/user/{user_id}', response_model=schemas.ResultPageOut)
def list_results(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    quiz_id: Optional[int] = Query(None, alias="quizId"),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    rows, total = services.ResultService(db, logger=log).list_for_user(user, user_id, page, limit, quiz_id)
    return schemas.ResultPageOut(
        results=[schemas.ResultOut.model_validate(r) for r in rows],
        pagination=_pagination(page, limit, total),
    )


@app.get('/results/{result_id}', response_model=schemas.ResultOut)
def get_result(
    result_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return schemas.ResultOut.model_validate(services.ResultService(db, logger=log).get(user, result_id))


@app.post('/results/{result_id}/feedback', response_model=schemas.ResultOut, status_code=201)
def add_result_feedback(
    result_id: int,
    payload: schemas.QuestionFeedbackIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Append a question feedback comment (rating 0-5) to a result."""
    result = services.ResultService(db, logger=log).add_feedback(
        user, result_id, payload.rating, payload.comments, payload.question_id
    )
    return schemas.ResultOut.model_validate(result)


# --- hint ledger ----------------------------------------------------------

@app.post('/hints', response_model=schemas.HintOut, status_code=201)
def record_hint(
    payload: schemas.HintRecordIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Record a hint reveal, merging into the (user, question, session) entry."""
    entry, _ = services.HintService(db, logger=log).record(
        user,
        payload.question_id,
        user_id=payload.user_id,
        session_id=payload.session_id,
        quiz_id=payload.quiz_id,
        step_number=payload.step_number,
        hint_type=payload.hint_type if "hint_type" in payload.model_fields_set else None,
        time_spent=payload.time_spent_on_hint,
        points_deducted=payload.points_deducted,
        device_info=payload.device_info.model_dump(exclude_none=True, by_alias=True) if payload.device_info else None,
        context=payload.context.model_dump(exclude_none=True, by_alias=True) if payload.context else None,
    )
    return schemas.HintOut.model_validate(entry)


def _hint_page(db, user, user_id, page, limit, question_id, quiz_id, hint_type, start_date, end_date, log):
    rows, total = services.HintService(db, logger=log).history(
        user,
        user_id,
        page=page,
        limit=limit,
        question_id=question_id,
        quiz_id=quiz_id,
        hint_type=hint_type,
        start_date=start_date,
        end_date=end_date,
    )
    return schemas.HintPageOut(
        hint_usages=[schemas.HintOut.model_validate(r) for r in rows],
        pagination=_pagination(page, limit, total),
    )


@app.get('/hints/me', response_model=schemas.HintPageOut)
def my_hints(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    question_id: Optional[int] = Query(None, alias="questionId"),
    quiz_id: Optional[int] = Query(None, alias="quizId"),
    hint_type: Optional[schemas.HintType] = Query(None, alias="hintType"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    return _hint_page(db, user, user.id, page, limit, question_id, quiz_id, hint_type, start_date, end_date, log)


@app.get('/hints/me/analytics', response_model=schemas.UserHintAnalyticsOut)
def my_hint_analytics(
    db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return services.AnalyticsService(db, logger=log).user_analytics(user, user.id)


@app.get('/hints/needing-better-hints', response_model=List[schemas.FlaggedQuestionOut])
def questions_needing_better_hints(
    db: Session = Depends(get_session), admin: models.User = Depends(require_admin), log=Depends(request_logger)
):
    """Questions whose hints are heavily used, deep and slow (admin)."""
    return services.AnalyticsService(db, logger=log).flagged_questions()


@app.get('/hints/summary', response_model=List[schemas.HintSummaryOut])
def hint_summary(
    group_by: str = Query("day", alias="groupBy"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_admin),
    log=Depends(request_logger),
):
    """Ledger totals grouped by day, week or month (admin)."""
    return services.AnalyticsService(db, logger=log).summary(group_by, start_date, end_date)


@app.post('/hints/bulk-delete', response_model=schemas.BulkDeleteOut)
def bulk_delete_hints(
    payload: schemas.BulkDeleteIn,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_admin),
    log=Depends(request_logger),
):
    count = services.HintService(db, logger=log).bulk_delete(payload.hint_usage_ids)
    return schemas.BulkDeleteOut(deleted_count=count)


@app.get('/hints/user/{user_id}', response_model=schemas.HintPageOut)
def user_hints(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    question_id: Optional[int] = Query(None, alias="questionId"),
    quiz_id: Optional[int] = Query(None, alias="quizId"),
    hint_type: Optional[schemas.HintType] = Query(None, alias="hintType"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Hint history for a user (self or admin)."""
    return _hint_page(db, user, user_id, page, limit, question_id, quiz_id, hint_type, start_date, end_date, log)


@app.get('/hints/user/{user_id}/analytics', response_model=schemas.UserHintAnalyticsOut)
def user_hint_analytics(
    user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return services.AnalyticsService(db, logger=log).user_analytics(user, user_id)


@app.get('/hints/question/{question_id}/stats', response_model=schemas.QuestionHintStatsOut)
def question_hint_stats(
    question_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return services.AnalyticsService(db, logger=log).question_stats(question_id)


@app.get('/hints/{hint_id}', response_model=schemas.HintOut)
def get_hint(
    hint_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return schemas.HintOut.model_validate(services.HintService(db, logger=log).get(user, hint_id))


@app.put('/hints/{hint_id}', response_model=schemas.HintOut)
def update_hint(
    hint_id: int,
    payload: schemas.HintUpdateIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Owner-or-admin update; running totals may only grow."""
    entry = services.HintService(db, logger=log).update(
        user,
        hint_id,
        steps_viewed=payload.steps_viewed,
        hint_type=payload.hint_type,
        points_deducted=payload.points_deducted,
        time_spent=payload.time_spent_on_hint,
        context=payload.context.model_dump(exclude_none=True, by_alias=True) if payload.context else None,
    )
    return schemas.HintOut.model_validate(entry)


@app.post('/hints/{hint_id}/steps', response_model=schemas.HintOut)
def add_hint_step(
    hint_id: int,
    payload: schemas.HintStepIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    entry = services.HintService(db, logger=log).add_step(user, hint_id, payload.step_number)
    return schemas.HintOut.model_validate(entry)


@app.delete('/hints/{hint_id}', status_code=204)
def delete_hint(
    hint_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    services.HintService(db, logger=log).delete(user, hint_id)
    return Response(status_code=204)


# --- adaptive profiles ----------------------------------------------------

def _rules(rules):
    return [r.model_dump() for r in rules] if rules is not None else None


def _content(refs):
    return [c.model_dump() for c in refs] if refs is not None else None


@app.post('/adaptive-learning', response_model=schemas.AdaptiveProfileOut, status_code=201)
def create_adaptive_profile(
    payload: schemas.AdaptiveProfileIn,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_admin),
    log=Depends(request_logger),
):
    """Create a user's adaptive profile (admin)."""
    profile = services.AdaptiveService(db, logger=log).create(
        payload.user_id, payload.current_level, _rules(payload.adjustment_rules), _content(payload.recommended_content)
    )
    return schemas.AdaptiveProfileOut.model_validate(profile)


@app.get('/adaptive-learning', response_model=schemas.AdaptiveProfilePageOut)
def list_adaptive_profiles(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_level: Optional[schemas.Level] = Query(None, alias="currentLevel"),
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_admin),
    log=Depends(request_logger),
):
    rows, total = services.AdaptiveService(db, logger=log).list(page, limit, current_level)
    return schemas.AdaptiveProfilePageOut(
        profiles=[schemas.AdaptiveProfileOut.model_validate(p) for p in rows],
        pagination=_pagination(page, limit, total),
    )


@app.get('/adaptive-learning/user/{user_id}', response_model=schemas.AdaptiveProfileOut)
def get_adaptive_profile(
    user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user), log=Depends(request_logger)
):
    return schemas.AdaptiveProfileOut.model_validate(services.AdaptiveService(db, logger=log).get(user, user_id))


@app.put('/adaptive-learning/user/{user_id}', response_model=schemas.AdaptiveProfileOut)
def update_adaptive_profile(
    user_id: int,
    payload: schemas.AdaptiveProfileUpdateIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    profile = services.AdaptiveService(db, logger=log).update(
        user,
        user_id,
        current_level=payload.current_level,
        rules=_rules(payload.adjustment_rules),
        recommended=_content(payload.recommended_content),
    )
    return schemas.AdaptiveProfileOut.model_validate(profile)


@app.post('/adaptive-learning/user/{user_id}/adjust', response_model=schemas.AdjustmentOut)
def adjust_adaptive_profile(
    user_id: int,
    payload: Optional[schemas.PerformanceSampleIn] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    log=Depends(request_logger),
):
    """Evaluate the profile's rules against recent performance.

    An optional body supplies an extra metric sample that is appended to
    the window before evaluation.
    """
    sample = payload.model_dump(by_alias=True) if payload else None
    profile, outcome = services.AdaptiveService(db, logger=log).adjust(user, user_id, sample)
    return schemas.AdjustmentOut(
        profile=schemas.AdaptiveProfileOut.model_validate(profile),
        previous_level=outcome.previous_level,
        fired_rules=outcome.fired,
        averages=outcome.averages,
    )
