"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./greia_platform.db"

    # Auth / JWT (tokens are issued by the identity service; we only verify)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_currency: str = "gbp"
    stripe_payout_payment_method: str = ""
    payment_gateway_timeout_seconds: float = 20.0

    # Payment monitor
    payment_sync_interval_minutes: int = 15
    payment_sync_stale_minutes: int = 60

    # AI moderation
    gemini_api_key: str = ""
    moderation_model: str = "gemini-3-flash-preview"
    moderation_ai_threshold: float = 0.7
    classifier_timeout_seconds: float = 30.0
    moderation_batch_size: int = 10

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
