"""
Role policy table and the route guards built on it.

Every role-gated route names a policy key; the roles allowed for that key live
here and nowhere else.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.portal.errors import json_error
from app.portal.models import User

ROLES = (
    "ADMIN",
    "CEO",
    "CFO",
    "STAFF",
    "FRONTEND",
    "BACKEND",
    "OUTREACH",
    "DESIGNER",
    "DEV",
    "BOARD",
    "ALUMNI",
    "COMMUNITY",
    "CLIENT",
    "USER",
)

_STAFF_ROLES = ("ADMIN", "CEO", "CFO", "STAFF", "FRONTEND", "BACKEND", "OUTREACH", "DESIGNER", "DEV")

POLICIES: dict[str, frozenset[str]] = {
    "admin.access": frozenset(_STAFF_ROLES),
    "tasks.manage": frozenset(r for r in _STAFF_ROLES if r != "CFO"),
    "billing.manage": frozenset({"ADMIN", "CEO", "CFO", "STAFF"}),
    "content.manage": frozenset({"ADMIN", "CEO", "STAFF"}),
    "board.access": frozenset({"ADMIN", "CEO", "CFO", "BOARD"}),
    "community.access": frozenset({"ADMIN", "CEO", "CFO", "BOARD", "ALUMNI", "COMMUNITY"}),
}

_ROLE_LABELS = {
    "ADMIN": "Administrator",
    "CEO": "Chief Executive",
    "CFO": "Chief Financial Officer",
    "STAFF": "Staff",
    "FRONTEND": "Frontend Developer",
    "BACKEND": "Backend Developer",
    "OUTREACH": "Outreach",
    "DESIGNER": "Designer",
    "DEV": "Developer",
    "BOARD": "Board Member",
    "ALUMNI": "Alumni",
    "COMMUNITY": "Community Member",
    "CLIENT": "Client",
    "USER": "User",
}


def _role_of(user_or_role: User | str | None) -> str | None:
    if user_or_role is None:
        return None
    if isinstance(user_or_role, str):
        return user_or_role.upper()
    if not user_or_role.is_active:
        return None
    return (user_or_role.role or "").upper()


def user_has_permission(user_or_role: User | str | None, policy_key: str) -> bool:
    role = _role_of(user_or_role)
    if not role:
        return False
    allowed = POLICIES.get(policy_key)
    if allowed is None:
        raise KeyError(f"Unknown policy: {policy_key}")
    return role in allowed


def dashboard_url(role: str | None) -> str:
    role = (role or "").upper()
    if role in POLICIES["admin.access"]:
        return "/admin"
    if role == "BOARD":
        return "/board"
    if role in ("ALUMNI", "COMMUNITY"):
        return "/community"
    return "/client"


def role_display(role: str | None) -> str:
    return _ROLE_LABELS.get((role or "").upper(), "User")


def current_user() -> User | None:
    u: User | None = getattr(g, "current_user", None)
    if not u or not u.is_active:
        return None
    return u


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if current_user() is None:
            return json_error("Unauthorized", 401)
        return fn(*args, **kwargs)

    return wrapped


def require_policy(policy_key: str, *, forbidden_message: str = "Forbidden") -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    if policy_key not in POLICIES:
        raise KeyError(f"Unknown policy: {policy_key}")

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = current_user()
            if user is None:
                return json_error("Unauthorized", 401)
            if not user_has_permission(user, policy_key):
                g.missing_permission = policy_key
                return json_error(forbidden_message, 403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
