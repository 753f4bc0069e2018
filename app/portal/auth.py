from __future__ import annotations

import re
import uuid
from datetime import datetime

import requests
from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.portal.audit import record_event
from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.identity import decode_token, encode_token, handle_sign_in, issue_token, refresh_token
from app.portal.models import User
from app.portal.rbac import dashboard_url, require_login, role_display
from app.portal.security import RateLimiter, client_key, ensure_csrf_token

bp = Blueprint("auth", __name__)

login_limiter = RateLimiter(limit=5, window_seconds=300)
signup_limiter = RateLimiter(limit=5, window_seconds=3600)

_GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
_PASSWORD_NUMBER = re.compile(r"\d")
_PASSWORD_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def _token_from_request() -> dict | None:
    header = request.headers.get("Authorization") or ""
    if header.startswith("Bearer "):
        return decode_token(header[len("Bearer "):].strip())
    raw = session.get("token")
    return raw if isinstance(raw, dict) else None


def _cached_principal(s, token: dict) -> User | None:
    """
    User for a request whose role refresh failed. Retries the row once; if the
    database is still unreachable, a detached User carrying the token's role stands in.
    """
    try:
        user_id = int(token["sub"])
    except (TypeError, ValueError):
        return None
    try:
        s.rollback()
        user = s.get(User, user_id)
    except Exception as e:
        current_app.logger.error("load_current_user DB error (using token role): %s", e)
        return User(id=user_id, email=token.get("email") or "", role=token["role"], is_active=True)
    if user is None or not user.is_active:
        return None
    return user


def load_current_user() -> None:
    """
    Loads g.token / g.current_user from the bearer token or the session cookie.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.token = None
    g.current_user = None

    token = _token_from_request()
    if not token:
        return

    s = db_session()
    result = refresh_token(s, token)
    if result.error is not None:
        if result.error.code == "user_missing":
            session.pop("token", None)
            return
        current_app.logger.warning(
            "Session refresh fell back to cached role (request_id=%s): %s", g.request_id, result.error.message
        )
        g.token = result.token
        g.current_user = _cached_principal(s, result.token)
        return

    g.token = result.token
    if "token" in session:
        session["token"] = result.token
    g.current_user = s.get(User, int(result.token["sub"]))


def _start_session(user: User, token: dict) -> str:
    session["token"] = token
    session.permanent = True
    g.token = token
    g.current_user = user
    return encode_token(token)


def _session_payload(user: User, token: dict) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": token.get("role") or user.role,
        "roleLabel": role_display(token.get("role") or user.role),
        "dashboardUrl": dashboard_url(token.get("role") or user.role),
    }


def validate_password(password: str) -> str | None:
    if len(password) < 8:
        return "Password must be at least 8 characters"
    if not _PASSWORD_NUMBER.search(password) or not _PASSWORD_SPECIAL.search(password):
        return "Password must include at least 1 number and 1 special character"
    return None


@bp.post("/signup")
def signup():
    if signup_limiter.hit(client_key(request)):
        return json_error("Too many signup attempts. Please try again later.", 429)

    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()
    if not email or not password or not name:
        return json_error("Missing required fields", 400)

    problem = validate_password(password)
    if problem:
        return json_error(problem, 400)

    s = db_session()
    if s.query(User).filter(User.email == email).one_or_none() is not None:
        return json_error("Email already in use", 409)

    now = datetime.utcnow()
    user = User(
        email=email,
        name=name,
        password_hash=generate_password_hash(password),
        role=current_app.config.get("DEFAULT_ROLE") or "CLIENT",
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.signup", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"success": True, "message": "Account created successfully", "user": user.to_public()}), 201


@bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    ip = client_key(request)

    if login_limiter.hit(ip):
        return json_error("Too many login attempts. Please wait 5 minutes.", 429)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not user.password_hash or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        return json_error("Invalid credentials", 401)

    handle_sign_in(s, user.email, "credentials")
    result = issue_token(s, user_id=user.id, email=user.email)
    login_limiter.reset(ip)
    raw = _start_session(user, result.token)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"user": _session_payload(user, result.token), "token": raw})


def verify_google_id_token(id_token: str, client_id: str) -> dict | None:
    """Check a Google id_token against the tokeninfo endpoint. Returns claims or None."""
    try:
        resp = requests.get(_GOOGLE_TOKENINFO_URL, params={"id_token": id_token}, timeout=10)
    except requests.RequestException as e:
        current_app.logger.warning("Google tokeninfo request failed: %s", e)
        return None
    if resp.status_code != 200:
        return None
    claims = resp.json()
    if claims.get("aud") != client_id:
        return None
    if str(claims.get("email_verified")).lower() != "true" or not claims.get("email"):
        return None
    return claims


@bp.post("/google")
def google_sign_in():
    client_id = current_app.config.get("GOOGLE_CLIENT_ID")
    if not client_id:
        return json_error("Google sign-in is not configured", 503)

    data = request.get_json(silent=True) or {}
    id_token = (data.get("id_token") or data.get("idToken") or "").strip()
    if not id_token:
        return json_error("Missing required fields", 400)

    claims = verify_google_id_token(id_token, client_id)
    if claims is None:
        return json_error("Invalid Google credential", 401)

    email = claims["email"].strip().lower()
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    now = datetime.utcnow()
    if user is None:
        user = User(
            email=email,
            name=claims.get("name"),
            password_hash=None,
            role=current_app.config.get("DEFAULT_ROLE") or "CLIENT",
            is_active=True,
            email_verified_at=now,
            created_at=now,
            updated_at=now,
        )
        s.add(user)
        s.flush()
        record_event(s, actor=user, action="auth.signup", entity_type="User", entity_id=str(user.id), metadata={"provider": "google"})
    elif not user.is_active:
        return json_error("Invalid Google credential", 401)

    handle_sign_in(s, email, "google")
    result = issue_token(s, user_id=user.id, email=email)
    raw = _start_session(user, result.token)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id), metadata={"provider": "google"})
    s.commit()
    return jsonify({"user": _session_payload(user, result.token), "token": raw})


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("token", None)
    return jsonify({"success": True})


@bp.get("/session")
@require_login
def get_session():
    return jsonify({"user": _session_payload(g.current_user, g.token or {}), "csrfToken": ensure_csrf_token()})


@bp.post("/refresh-session")
@require_login
def refresh_session():
    s = db_session()
    result = refresh_token(s, g.token or {"sub": g.current_user.id})
    if result.error is not None:
        current_app.logger.warning("refresh-session fallback (request_id=%s): %s", g.request_id, result.error.message)
    raw = _start_session(g.current_user, result.token)
    return jsonify({"user": _session_payload(g.current_user, result.token), "token": raw, "refreshed": result.ok})
