"""Engine configuration."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatmem.core.errors import ConfigurationError


class Settings(BaseSettings):
    # Storage
    database_url: str = "sqlite+aiosqlite:///./chatmem.db"

    # Persona identity
    agent_name: str = "Саня"
    agent_aliases: list[str] = ["саня", "шура", "александр", "санек"]
    bot_denylist: list[str] = [r"\bбот\w*", r"\bbot\b"]

    # Behaviour
    activity_level: float = Field(0.3, ge=0.0, le=1.0)
    active_hours: list[int] = list(range(9, 24))
    active_days: list[int] = list(range(7))  # 0 = Sunday
    timezone: str = "UTC"
    schedule_dampening: float = Field(0.3, ge=0.0, le=1.0)
    ai_mode: Literal["patterns_only", "ai_only", "hybrid"] = "hybrid"
    random_seed: int | None = None

    # Memory
    memory_days: int = Field(30, ge=1, le=365)
    short_term_limit: int = Field(25, ge=1, le=500)
    context_relevance_threshold: float = Field(0.7, ge=0.0, le=1.0)
    group_window: int = Field(50, ge=5, le=50)
    profile_window: int = Field(100, ge=5, le=100)
    event_retention_days: int = Field(90, ge=1)

    # Generation collaborator (OpenAI-compatible)
    llm_api_key: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    generation_timeout: float = Field(30.0, gt=0)

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="CHATMEM_", env_file=".env", extra="ignore")

    @field_validator("active_hours")
    @classmethod
    def _check_hours(cls, v: list[int]) -> list[int]:
        if any(h < 0 or h > 23 for h in v):
            raise ValueError("active_hours must be within 0..23")
        return v

    @field_validator("active_days")
    @classmethod
    def _check_days(cls, v: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("active_days must be within 0..6 (0 = Sunday)")
        return v

    @field_validator("agent_aliases")
    @classmethod
    def _lower_aliases(cls, v: list[str]) -> list[str]:
        return [a.lower() for a in v if a.strip()]

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {v!r}") from e
        return v


def load_settings(**overrides) -> Settings:
    """Build settings, turning validation errors into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@lru_cache
def get_settings() -> Settings:
    return load_settings()
