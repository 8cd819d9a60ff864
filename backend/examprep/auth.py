"""Authentication helpers and FastAPI security dependencies.

This module provides utilities to decode JWT tokens, a FastAPI
dependency `get_current_user` that validates the bearer token and
returns the corresponding `User` model instance from the database, and
the ownership checks shared by the hint, result and adaptive surfaces.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies; ownership checks raise `Forbidden`
so services can call them too.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from .config import settings
from .database import engine
from .errors import Forbidden
from . import models, repositories

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)) -> models.User:
    """FastAPI dependency that returns the authenticated user.

    The role is always read from the database so a demoted admin loses
    access without waiting for their token to expire.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    with Session(engine) as session:
        user = repositories.UserRepository(session).get(user_id)
        if not user:
            raise HTTPException(status_code=401, detail='user not found')
        return user


def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    """Dependency for privileged endpoints."""
    if not user.is_admin:
        raise Forbidden("admin privileges required")
    return user


def ensure_self_or_admin(actor: models.User, user_id: int) -> None:
    """Raise `Forbidden` unless `actor` is `user_id` or an admin."""
    if actor.is_admin or actor.id == user_id:
        return
    raise Forbidden("not permitted")
