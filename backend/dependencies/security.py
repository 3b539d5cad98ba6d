"""JWT/OAuth2 utilities and reusable dependencies."""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel

from backend.services.pos.constants import ROLE_PRIORITY
from backend.settings import Settings


DEFAULT_SECRET = "change-me-in-prod-change-me-in-prod"
DEFAULT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "120"))

logger = logging.getLogger(__name__)


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class AuthenticatedUser(BaseModel):
    """User context extracted from a JWT access token."""

    id: int
    username: str
    role: str


def _is_production_env() -> bool:
    env = (os.getenv("APP_ENV") or os.getenv("ENV") or "development").lower()
    return env in {"prod", "production", "staging"}


def _load_secrets(settings: Settings) -> list[str]:
    secrets = list(settings.jwt_secret_keys)
    if not secrets:
        if _is_production_env() and not settings.allow_insecure_jwt_default:
            raise RuntimeError("JWT_SECRET_KEY missing: refusing to start in a sensitive environment")
        logger.warning("Using default JWT secret; set JWT_SECRET_KEY/JWT_SECRET_KEYS in production")
        secrets = [DEFAULT_SECRET]

    for value in secrets:
        if len(value) < 32:
            raise RuntimeError("JWT secret too short (<32 characters). Generate a stronger key.")
    return secrets


_SECRET_KEYS = _load_secrets(Settings.load())


def _get_algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", DEFAULT_ALGORITHM)


def create_access_token(claims: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Serialize the provided claims into a signed JWT with rotation-friendly claims."""

    payload = claims.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload.update({"exp": expire, "jti": uuid.uuid4().hex})
    return jwt.encode(payload, _SECRET_KEYS[0], algorithm=_get_algorithm())


def _decode_token(token: str) -> dict[str, Any]:
    last_error: Exception | None = None
    for secret in _SECRET_KEYS:
        try:
            return jwt.decode(token, secret, algorithms=[_get_algorithm()])
        except jwt.ExpiredSignatureError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token expired",
                headers={"WWW-Authenticate": "Bearer"},
            ) from exc
        except jwt.InvalidTokenError as exc:
            last_error = exc
            continue

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid token",
        headers={"WWW-Authenticate": "Bearer"},
    ) from last_error


def _user_from_token(token: str) -> AuthenticatedUser:
    payload = _decode_token(token)
    try:
        user_id = int(payload["sub"])
        username = str(payload["username"])
        role = str(payload["role"]).lower()
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing required claims",
        ) from exc

    if role not in ROLE_PRIORITY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown role in token",
        )
    return AuthenticatedUser(id=user_id, username=username, role=role)


def get_current_user(token: str = Depends(oauth2_scheme)) -> AuthenticatedUser:
    return _user_from_token(token)


def get_optional_user(token: str | None = Depends(optional_oauth2_scheme)) -> AuthenticatedUser | None:
    """Guest checkout: no token means an anonymous caller, a bad token is still rejected."""

    if not token:
        return None
    return _user_from_token(token)


def require_roles(*roles: str) -> Callable[[AuthenticatedUser], AuthenticatedUser]:
    allowed = {role.lower() for role in roles} or set(ROLE_PRIORITY)

    def _checker(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this resource",
            )
        return user

    return _checker


def require_min_role(minimum: str) -> Callable[[AuthenticatedUser], AuthenticatedUser]:
    """Role hierarchy check: customer < staff < manager < admin."""

    threshold = ROLE_PRIORITY[minimum]
    return require_roles(*(role for role, rank in ROLE_PRIORITY.items() if rank >= threshold))
