"""Configuration management for the equivalence ledger service."""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=("../../.env", "../.env", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    environment: str = "development"
    log_level: str = "info"

    # Supabase
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""

    # Quantity solver (remote balancing service)
    solver_url: str = "http://localhost:8000/api/balance"
    solver_timeout_seconds: float = 15.0
    solver_max_scale: float | None = 4.0  # Upper bound = base quantity * max scale
    solver_zero_floor: float = 0.1  # Quantities below this are reported as 0
    solver_anchor_weight: float = 0.05  # Pull toward the recipe as written
    solver_api_key: str | None = None  # X-API-Key for the solver; falls back to pi_api_key

    # Equivalence ledger
    pending_timeout_minutes: int = 5
    sweep_interval_minutes: int = 5

    # Avoid-class verdict order (highest priority first)
    avoid_priority: list[str] = Field(
        default_factory=lambda: [
            "condition_avoid",
            "sensitivity",
            "non_preferred",
            "individual_restriction",
        ]
    )

    # Cron
    cron_secret: str | None = None

    # API Security
    pi_api_key: str | None = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
