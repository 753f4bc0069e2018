import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str

    storage_backend: str
    local_storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    default_role: str
    admin_email: str
    google_client_id: str
    token_max_age_seconds: int

    resend_api_key: str
    resend_from_email: str
    staff_notify_email: str

    openai_api_key: str
    openai_transcribe_model: str
    openai_summary_model: str

    stripe_secret_key: str
    stripe_webhook_secret: str

    newsletter_batch_size: int
    newsletter_batch_delay_seconds: float

    trusted_proxy_count: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///portal.db"),
        app_url=_getenv("APP_URL", "http://localhost:5000"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        local_storage_root=_getenv("LOCAL_STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        default_role=_getenv("DEFAULT_ROLE", "CLIENT").upper(),
        admin_email=_getenv("ADMIN_EMAIL", "").lower(),
        google_client_id=_getenv("GOOGLE_CLIENT_ID", ""),
        token_max_age_seconds=_getenv_int("TOKEN_MAX_AGE_SECONDS", 30 * 24 * 3600),
        resend_api_key=_getenv("RESEND_API_KEY", ""),
        resend_from_email=_getenv("RESEND_FROM_EMAIL", "Studio <noreply@example.com>"),
        staff_notify_email=_getenv("STAFF_NOTIFY_EMAIL", ""),
        openai_api_key=_getenv("OPENAI_API_KEY", ""),
        openai_transcribe_model=_getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1"),
        openai_summary_model=_getenv("OPENAI_SUMMARY_MODEL", "gpt-4o-mini"),
        stripe_secret_key=_getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=_getenv("STRIPE_WEBHOOK_SECRET", ""),
        newsletter_batch_size=_getenv_int("NEWSLETTER_BATCH_SIZE", 50),
        newsletter_batch_delay_seconds=_getenv_float("NEWSLETTER_BATCH_DELAY_SECONDS", 1.0),
        trusted_proxy_count=_getenv_int("TRUSTED_PROXY_COUNT", 0),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url.rstrip("/"),
        "STORAGE_BACKEND": s.storage_backend,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # identity
        "DEFAULT_ROLE": s.default_role,
        "ADMIN_EMAIL": s.admin_email,
        "GOOGLE_CLIENT_ID": s.google_client_id,
        "TOKEN_MAX_AGE_SECONDS": s.token_max_age_seconds,
        # providers (an API key switches the provider on)
        "RESEND_API_KEY": s.resend_api_key,
        "RESEND_FROM_EMAIL": s.resend_from_email,
        "STAFF_NOTIFY_EMAIL": s.staff_notify_email,
        "EMAIL_ENABLED": bool(s.resend_api_key),
        "OPENAI_API_KEY": s.openai_api_key,
        "OPENAI_TRANSCRIBE_MODEL": s.openai_transcribe_model,
        "OPENAI_SUMMARY_MODEL": s.openai_summary_model,
        "TRANSCRIPTION_ENABLED": bool(s.openai_api_key),
        "STRIPE_SECRET_KEY": s.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": s.stripe_webhook_secret,
        "PAYMENTS_ENABLED": bool(s.stripe_secret_key),
        "NEWSLETTER_BATCH_SIZE": min(100, max(1, s.newsletter_batch_size)),
        "NEWSLETTER_BATCH_DELAY_SECONDS": max(0.0, s.newsletter_batch_delay_seconds),
        # hops of X-Forwarded-For to trust; 0 keys rate limits on the socket address
        "TRUSTED_PROXY_COUNT": max(0, s.trusted_proxy_count),
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
