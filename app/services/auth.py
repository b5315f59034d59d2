from __future__ import annotations

import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.models.user import UserRole


bearer = HTTPBearer(auto_error=False)


@dataclass(slots=True)
class AuthUser:
    user_id: uuid.UUID
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in UserRole.ADMINS


def _decode_token(token: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "algorithms": [settings.jwt_algorithm],
        "leeway": settings.jwt_exp_leeway_seconds,
    }

    if settings.jwt_audience:
        kwargs["audience"] = settings.jwt_audience
    else:
        kwargs["options"] = {"verify_aud": False}

    if settings.jwt_issuer:
        kwargs["issuer"] = settings.jwt_issuer

    try:
        payload = jwt.decode(token, settings.jwt_secret, **kwargs)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    return payload


def _parse_payload(payload: dict[str, Any]) -> AuthUser:
    raw_id = payload.get("user_id") or payload.get("sub")
    try:
        user_id = uuid.UUID(str(raw_id))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Invalid user id claim") from exc

    role = str(payload.get("role") or UserRole.USER).strip().upper()
    if role not in UserRole.ALL:
        role = UserRole.USER

    return AuthUser(
        user_id=user_id,
        email=str(payload.get("email") or "").strip().lower(),
        role=role,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> AuthUser:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return _parse_payload(_decode_token(credentials.credentials))


def require_role(user: AuthUser, allowed: set[str] | frozenset[str]) -> None:
    if user.role not in allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


def require_roles(*roles: str) -> Callable[..., Coroutine[Any, Any, AuthUser]]:
    allowed = frozenset(roles)

    async def _dependency(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        require_role(user, allowed)
        return user

    return _dependency


require_admin = require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN)
