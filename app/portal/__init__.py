import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request, session
from werkzeug.middleware.proxy_fix import ProxyFix

from app.portal.auth import bp as auth_bp, load_current_user
from app.portal.config import load_config
from app.portal.db import init_db, teardown_db_session
from app.portal.errors import json_error, register_error_handlers
from app.portal.modules.billing.routes import admin_bp as billing_admin_bp, webhooks_bp
from app.portal.modules.billing.service import init_stripe
from app.portal.modules.blog.routes import bp as blog_bp
from app.portal.modules.change_requests.admin import bp as change_requests_admin_bp
from app.portal.modules.change_requests.client import bp as change_requests_client_bp
from app.portal.modules.donations.routes import admin_bp as donations_admin_bp, public_bp as donations_bp
from app.portal.modules.hours.admin import bp as hours_admin_bp
from app.portal.modules.hours.client import bp as hours_client_bp
from app.portal.modules.invoices.admin import bp as invoices_admin_bp
from app.portal.modules.invoices.client import bp as invoices_client_bp
from app.portal.modules.meetings.routes import admin_bp as meetings_admin_bp, public_bp as meetings_bp
from app.portal.modules.newsletter.routes import admin_bp as newsletter_admin_bp, public_bp as newsletter_bp
from app.portal.modules.project_requests.admin import bp as project_requests_admin_bp
from app.portal.modules.project_requests.client import bp as project_requests_client_bp
from app.portal.modules.projects.admin import bp as projects_admin_bp
from app.portal.modules.projects.client import bp as projects_client_bp
from app.portal.modules.recordings.routes import bp as recordings_admin_bp
from app.portal.modules.tasks.admin import bp as tasks_admin_bp
from app.portal.modules.tasks.client import bp as tasks_client_bp, notifications_bp
from app.portal.routes import bp as routes_bp

_UNTRACKED_PREFIXES = ("/health", "/healthz")
_CSRF_EXEMPT_BLUEPRINTS = ("auth", "webhooks")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(seconds=app.config["TOKEN_MAX_AGE_SECONDS"])
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    if app.config["TRUSTED_PROXY_COUNT"]:
        hops = app.config["TRUSTED_PROXY_COUNT"]
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)  # type: ignore[method-assign]

    from app.portal.security import has_bearer_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            return None
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        # Only cookie sessions ride along automatically; bearer and anonymous calls can't be forged.
        if has_bearer_token(request) or "token" not in session:
            return None
        if request.blueprint in _CSRF_EXEMPT_BLUEPRINTS:
            return None
        if not validate_csrf(request):
            return json_error("CSRF token missing or invalid.", 400)
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if hasattr(os, "register_at_fork"):

        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    init_stripe(app)
    if not app.config.get("EMAIL_ENABLED"):
        app.logger.info("RESEND_API_KEY not set; outbound email is disabled")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(webhooks_bp, url_prefix="/api/webhooks")

    # Staff
    for bp in (
        projects_admin_bp,
        hours_admin_bp,
        change_requests_admin_bp,
        project_requests_admin_bp,
        tasks_admin_bp,
        invoices_admin_bp,
        billing_admin_bp,
        newsletter_admin_bp,
        meetings_admin_bp,
        donations_admin_bp,
        recordings_admin_bp,
    ):
        app.register_blueprint(bp, url_prefix="/api/admin")

    # Client portal
    for bp in (
        projects_client_bp,
        hours_client_bp,
        change_requests_client_bp,
        project_requests_client_bp,
        tasks_client_bp,
        invoices_client_bp,
    ):
        app.register_blueprint(bp, url_prefix="/api/client")

    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")
    app.register_blueprint(blog_bp, url_prefix="/api/blog")
    app.register_blueprint(newsletter_bp, url_prefix="/api/newsletter")
    app.register_blueprint(meetings_bp, url_prefix="/api/meetings")
    app.register_blueprint(donations_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(_UNTRACKED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)
    register_error_handlers(app)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
