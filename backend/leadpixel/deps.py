"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "https://app.trafficai.io,http://localhost:3000"

    # Redis / arq
    REDIS_URL: str = "redis://localhost:6379/0"
    ARQ_QUEUE_NAME: str = "arq:queue"

    # Identity webhook shared secret. The `webhook_api_key` app setting wins when present.
    WEBHOOK_API_KEY: Optional[str] = None

    # Third-party enrichment API
    ENRICHMENT_API_URL: str = "https://api.trafficai.io"
    ENRICHMENT_TIMEOUT_SECONDS: float = 10.0
    ENRICHMENT_MAX_CONCURRENCY: int = 10

    # Visitors API polling
    VISITORS_API_TIMEOUT_SECONDS: float = 30.0
    VISITORS_API_SYNC_MINUTES: str = "0,15,30,45"

    SESSION_TIMEOUT_MINUTES: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.BACKEND_CORS_ORIGINS.split(",") if o.strip()]

    @property
    def visitors_api_sync_minutes(self) -> set[int]:
        return {int(m) for m in self.VISITORS_API_SYNC_MINUTES.split(",") if m.strip()}


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
