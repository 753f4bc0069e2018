import secrets
from datetime import datetime, timedelta

from flask import Request, session


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    return bool(token and token == session.get("csrf_token"))


def has_bearer_token(req: Request) -> bool:
    return (req.headers.get("Authorization") or "").startswith("Bearer ")


class RateLimiter:
    """
    In-process sliding window limiter keyed by client (usually the remote ip).
    Per worker process; good enough to blunt form abuse.
    """

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self._hits: dict[str, list[datetime]] = {}
        self.sweep_threshold = 1024

    def _prune(self, key: str, now: datetime) -> list[datetime]:
        cutoff = now - self.window
        hits = [t for t in self._hits.get(key, ()) if t > cutoff]
        if hits:
            self._hits[key] = hits
        else:
            self._hits.pop(key, None)
        return hits

    def is_limited(self, key: str) -> bool:
        return len(self._prune(key, datetime.utcnow())) >= self.limit

    def hit(self, key: str) -> bool:
        """Record an attempt; returns True when the caller is over the limit."""
        now = datetime.utcnow()
        if len(self._hits) >= self.sweep_threshold:
            for stale in list(self._hits):
                self._prune(stale, now)
        hits = self._prune(key, now)
        if len(hits) >= self.limit:
            return True
        hits.append(now)
        self._hits[key] = hits
        return False

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


def client_key(req: Request) -> str:
    # X-Forwarded-For is only honoured through ProxyFix (TRUSTED_PROXY_COUNT), which rewrites remote_addr.
    return req.remote_addr or "unknown"
