from __future__ import annotations

from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """Raised from handlers or services; rendered as {"error": message}."""

    def __init__(self, message: str, status: int = 400, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.extra = extra


def json_error(message: str, status: int = 400, **extra: Any):
    body: dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status


_DEFAULT_MESSAGES = {
    400: "Bad request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not found",
    405: "Method not allowed",
    413: "File too large. Maximum size is 25MB.",
}


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        return json_error(e.message, e.status, **e.extra)

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        status = e.code or 500
        if status >= 500:
            return _err_500(e)
        return json_error(_DEFAULT_MESSAGES.get(status, e.name), status)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return json_error("Internal server error", 500)
