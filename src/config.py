"""
config.py

Runtime settings for the dispatch engine, read from the environment
(prefix DISPATCH_) or an optional .env file.
"""

from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Maintenance Request Lifecycle & Dispatch Engine"
    log_level: str = "INFO"

    # Optional JSON file overriding the built-in transition table
    transition_table_path: Optional[str] = None

    # Bounded reload-and-retry attempts on optimistic-lock conflicts
    transition_max_attempts: int = 3

    # Read-mostly caches (SLA policies, provider roster)
    cache_ttl_seconds: float = 30.0

    # Thread pool size for asynchronous subscriber fan-out
    notification_workers: int = 4

    # SLA dashboard "at risk" thresholds
    sla_at_risk_minutes_accept: int = 60
    sla_at_risk_minutes_arrive: int = 60
    sla_at_risk_minutes_complete: int = 120

    # Provider matching
    available_provider_statuses: List[str] = ["online", "available"]
    respect_service_radius: bool = True

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, v):
        if v is None or v == "":
            return "INFO"
        return str(v).upper()

    @field_validator("transition_max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("transition_max_attempts must be at least 1")
        return v


settings = Settings()
