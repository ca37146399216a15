"""Typed settings for the assessment service.

Values come from the environment (or a local `.env`) and are exposed through a
cached `get_settings()` accessor so every component shares one instance.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed settings model loaded from env / .env.

    Notes:
        - `DOCUMENT_STORE_DSN` selects the store: `memory://` for an in-process
          store, otherwise any SQLAlchemy async URL (sqlite+aiosqlite, postgresql+asyncpg).
        - Grading and flagging thresholds are tunable per deployment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        protected_namespaces=()
    )

    ENV: Literal["dev", "staging", "prod"] = Field(default="dev", description="Deployment environment")
    SERVICE_NAME: str = Field(default="assessment", description="Service name")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    DOCUMENT_STORE_DSN: str = Field(
        default="sqlite+aiosqlite:///./assessment.db",
        description="Document store DSN ('memory://' or an SQLAlchemy async URL)",
    )
    KAFKA_BOOTSTRAP: Optional[str] = Field(default=None, description="Kafka bootstrap servers; events are only logged when unset")

    HINT_PENALTY_PER_HINT: float = Field(default=0.1, ge=0, le=1, description="Fraction of points lost per hint")
    HINT_PENALTY_CAP: float = Field(default=0.3, ge=0, le=1, description="Maximum fraction lost to hints")

    FLAG_HIGH_SEVERITY: int = Field(default=1, ge=1, description="High-severity violations that flag an attempt")
    FLAG_MEDIUM_SEVERITY: int = Field(default=3, ge=1, description="Medium-severity violations that flag an attempt")
    FLAG_TOTAL_VIOLATIONS: int = Field(default=5, ge=1, description="Total violations that flag an attempt")

    RECENT_ATTEMPTS_LIMIT: int = Field(default=10, ge=1)
    WRITE_RETRY_LIMIT: int = Field(default=3, ge=1, description="Retries for revision-guarded writes")

    @model_validator(mode="after")
    def penalty_cap_covers_single_hint(self) -> "Settings":
        if self.HINT_PENALTY_CAP < self.HINT_PENALTY_PER_HINT:
            raise ValueError("HINT_PENALTY_CAP must be >= HINT_PENALTY_PER_HINT.")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Return a cached singleton `Settings` instance."""
    return Settings()
