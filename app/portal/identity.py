"""
Session identity: the small signed token that travels with every request.

A token is a plain dict ``{"sub": user id, "email": ..., "role": ...}``. It is
kept in the Flask session cookie for browser clients and handed out as a
bearer string for API clients. Role lookups against the database are
best-effort: a failing lookup never fails the request, it is reported through
``TokenResult.error`` and the caller decides what to do with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import current_app
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from app.portal.models import User

logger = logging.getLogger(__name__)

_TOKEN_SALT = "portal-session-token"


@dataclass(frozen=True)
class AuthError:
    code: str  # "lookup_failed" | "user_missing"
    message: str


@dataclass(frozen=True)
class TokenResult:
    token: dict[str, Any]
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _default_role() -> str:
    return current_app.config.get("DEFAULT_ROLE") or "CLIENT"


def issue_token(
    s: Session,
    *,
    user_id: int | None = None,
    email: str | None = None,
    role_hint: str | None = None,
) -> TokenResult:
    """Build the token for an initial sign-in."""
    token: dict[str, Any] = {
        "sub": user_id,
        "email": (email or "").strip().lower() or None,
        "role": (role_hint or _default_role()).upper(),
    }
    try:
        user: User | None = None
        if user_id is not None:
            user = s.get(User, int(user_id))
        elif token["email"]:
            user = s.query(User).filter(User.email == token["email"]).one_or_none()
        if user is not None:
            token["sub"] = user.id
            token["email"] = user.email
            token["role"] = user.role or token["role"]
    except Exception as e:
        logger.warning("issue_token: role lookup failed (sub=%s): %s", user_id, e)
        return TokenResult(token=token, error=AuthError("lookup_failed", str(e)))
    return TokenResult(token=token)


def refresh_token(s: Session, token: dict[str, Any]) -> TokenResult:
    """
    Refresh the role on a subsequent request. Never raises: on a lookup error the
    existing role is kept and the error is returned alongside the token.
    """
    refreshed = dict(token)
    if not refreshed.get("role"):
        refreshed["role"] = _default_role()
    sub = refreshed.get("sub")
    if sub is None:
        return TokenResult(token=refreshed, error=AuthError("user_missing", "Token has no subject"))
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        return TokenResult(token=refreshed, error=AuthError("user_missing", f"Bad token subject {sub!r}"))
    try:
        user = s.get(User, user_id)
    except Exception as e:
        logger.warning("refresh_token: role lookup failed (sub=%s): %s", sub, e)
        return TokenResult(token=refreshed, error=AuthError("lookup_failed", str(e)))
    if user is None or not user.is_active:
        return TokenResult(token=refreshed, error=AuthError("user_missing", f"User {sub} not found or inactive"))
    refreshed["role"] = user.role or refreshed["role"]
    refreshed["email"] = user.email
    return TokenResult(token=refreshed)


def handle_sign_in(s: Session, email: str, provider: str) -> bool:
    """
    Sign-in hook. Promotes the configured admin email on Google sign-in.
    Always returns True; promotion failures are logged and ignored.
    """
    admin_email = (current_app.config.get("ADMIN_EMAIL") or "").strip().lower()
    email = (email or "").strip().lower()
    if not admin_email or email != admin_email or provider != "google":
        return True
    try:
        user = s.query(User).filter(User.email == email).one_or_none()
        if user is not None and user.role != "ADMIN":
            user.role = "ADMIN"
            user.updated_at = datetime.utcnow()
            s.flush()
            logger.info("Promoted %s to ADMIN on %s sign-in", email, provider)
    except Exception:
        logger.exception("Admin promotion failed for %s", email)
    return True


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=_TOKEN_SALT)


def encode_token(token: dict[str, Any]) -> str:
    return _serializer().dumps(token)


def decode_token(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    max_age = int(current_app.config.get("TOKEN_MAX_AGE_SECONDS") or 0) or None
    try:
        data = _serializer().loads(raw, max_age=max_age)
    except BadSignature:
        return None
    return data if isinstance(data, dict) else None
