from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jwt
from jwt.exceptions import InvalidTokenError

from s2p_control.core.config import Settings
from s2p_control.core.errors import AuthenticationError

ROLE_ADMIN = "admin"
ROLE_PARTNER = "partner"
ROLE_MANAGER = "manager"
ROLE_USER = "user"
KNOWN_ROLES: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_PARTNER, ROLE_MANAGER, ROLE_USER})


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    role: str


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Unauthorized")
    token = authorization[len("Bearer ") :].strip()
    if token == "":
        raise AuthenticationError("Unauthorized")
    return token


def decode_access_token(token: str, *, settings: Settings) -> dict[str, Any]:
    if not settings.supabase_jwt_secret:
        raise AuthenticationError("Unauthorized", details="Token verification is not configured")
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except InvalidTokenError as exc:
        raise AuthenticationError("Unauthorized") from exc


def resolve_user_id(authorization: str | None, *, settings: Settings) -> str:
    claims = decode_access_token(extract_bearer_token(authorization), settings=settings)
    subject = claims.get("sub")
    if not isinstance(subject, str) or subject.strip() == "":
        raise AuthenticationError("Unauthorized")
    return subject
