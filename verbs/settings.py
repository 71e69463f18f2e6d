from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional


def _opt(name: str) -> Optional[str]:
    # empty env vars count as unset
    value = os.environ.get(name, "").strip()
    return value or None


# ----------------------------
# Config
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str
    site_url: str = "http://localhost:4321"

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    blob_token: Optional[str] = None
    blob_api_url: str = "https://blob.vercel-storage.com"

    resend_api_key: Optional[str] = None
    resend_audience_id: Optional[str] = None
    email_from: str = "VERBS <tickets@verbsaroundthe.world>"
    newsletter_from: str = "VERBS <hello@verbsaroundthe.world>"
    verification_secret: str = "dev-verification-secret"

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    ratelimit_backend: str = "memory"  # 'memory' | 'redis'
    ratelimit_max: int = 5
    ratelimit_window_seconds: int = 60 * 60
    redis_url: str = "redis://127.0.0.1:6379"

    log_level: str = "INFO"
    log_format: str = "json"  # 'json' | 'console'

    @property
    def base_url(self) -> str:
        return self.site_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = _opt("DATABASE_URL")
        if database_url is None:
            raise RuntimeError("DATABASE_URL is required")
        return cls(
            database_url=database_url,
            site_url=os.environ.get("PUBLIC_SITE_URL", cls.site_url),
            stripe_secret_key=_opt("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_opt("STRIPE_WEBHOOK_SECRET"),
            blob_token=_opt("BLOB_READ_WRITE_TOKEN"),
            blob_api_url=os.environ.get("BLOB_API_URL", cls.blob_api_url),
            resend_api_key=_opt("RESEND_API_KEY"),
            resend_audience_id=_opt("RESEND_AUDIENCE_ID"),
            email_from=os.environ.get("EMAIL_FROM", cls.email_from),
            newsletter_from=os.environ.get(
                "NEWSLETTER_FROM", cls.newsletter_from
            ),
            verification_secret=os.environ.get(
                "VERIFICATION_SECRET", cls.verification_secret
            ),
            session_secret=os.environ.get(
                "SESSION_SECRET", cls.session_secret
            ),
            admin_username=os.environ.get(
                "ADMIN_USERNAME", cls.admin_username
            ),
            admin_password=os.environ.get(
                "ADMIN_PASSWORD", cls.admin_password
            ),
            ratelimit_backend=os.environ.get(
                "RATELIMIT_BACKEND", cls.ratelimit_backend
            ).lower(),
            ratelimit_max=int(
                os.environ.get("RATELIMIT_MAX", cls.ratelimit_max)
            ),
            ratelimit_window_seconds=int(
                os.environ.get(
                    "RATELIMIT_WINDOW_SECONDS", cls.ratelimit_window_seconds
                )
            ),
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
            log_format=os.environ.get("LOG_FORMAT", cls.log_format).lower(),
        )
