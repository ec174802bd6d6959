import os
from functools import lru_cache


def parse_duration(value: str, default_seconds: int) -> int:
    """Parse durations like ``7d`` or ``12h`` into seconds."""
    value = (value or "").strip().lower()
    if len(value) < 2 or not value[:-1].isdigit():
        return default_seconds
    amount = int(value[:-1])
    if value.endswith("d"):
        return amount * 24 * 3600
    if value.endswith("h"):
        return amount * 3600
    return default_seconds


class Settings:
    def __init__(
        self,
        environment: str,
        timezone: str,
        jwt_secret: str,
        jwt_expires_secs: int,
        jwt_refresh_grace_secs: int,
        state_secret: str,
        google_client_id: str,
        google_client_secret: str,
        google_redirect_uri: str,
        frontend_url: str,
        allowed_origins: list[str],
        telegram_bot_token: str,
        telegram_bot_username: str,
        telegram_webhook_secret: str,
        http_timeout_secs: float,
    ) -> None:
        self.environment = environment
        self.timezone = timezone
        self.jwt_secret = jwt_secret
        self.jwt_expires_secs = jwt_expires_secs
        self.jwt_refresh_grace_secs = jwt_refresh_grace_secs
        self.state_secret = state_secret
        self.google_client_id = google_client_id
        self.google_client_secret = google_client_secret
        self.google_redirect_uri = google_redirect_uri
        self.frontend_url = frontend_url
        self.allowed_origins = allowed_origins
        self.telegram_bot_token = telegram_bot_token
        self.telegram_bot_username = telegram_bot_username
        self.telegram_webhook_secret = telegram_webhook_secret
        self.http_timeout_secs = http_timeout_secs

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    week = 7 * 24 * 3600
    origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
    return Settings(
        environment=os.getenv("BUDGET_ENV", "development"),
        timezone=os.getenv("BUDGET_TIMEZONE", "UTC"),
        jwt_secret=os.getenv(
            "JWT_SECRET",
            "d1c8a3f09e2b47d6a5c4e3f2b1a09c8d7e6f5a4b3c2d1e0f9a8b7c6d5e4f3a2b",
        ),
        jwt_expires_secs=parse_duration(os.getenv("JWT_EXPIRES_IN", "7d"), week),
        jwt_refresh_grace_secs=parse_duration(
            os.getenv("JWT_REFRESH_GRACE", "30d"), 30 * 24 * 3600
        ),
        state_secret=os.getenv(
            "STATE_SECRET",
            "0f3e1c9b8a7d6e5f4a3b2c1d0e9f8a7b6c5d4e3f2a1b0c9d8e7f6a5b4c3d2e1f",
        ),
        google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
        google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
        google_redirect_uri=os.getenv(
            "GOOGLE_REDIRECT_URI",
            "http://localhost:5000/api/v1/auth/google/callback",
        ),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
        allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        telegram_bot_username=os.getenv("TELEGRAM_BOT_USERNAME", ""),
        telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET", ""),
        http_timeout_secs=float(os.getenv("HTTP_TIMEOUT_SECS", "10")),
    )
