"""Configuration management for the installment engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv

from bnpl_engine.policies import (
    DiscountPolicy,
    EngineConfig,
    PlanPolicy,
    ReconciliationPolicy,
    RetryPolicy,
)


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    webhook_secret: str | None
    host: str
    port: int
    debug: bool
    log_level: str

    # Policy overrides
    installment_interval_days: int
    retry_max_attempts: int
    retry_backoff_hours: tuple[int, ...]
    retry_grace_days: int
    early_payment_rate: Decimal
    early_payment_window_days: int
    processing_cost_floor: int
    quote_validity_minutes: int
    requires_action_timeout_minutes: int
    confirm_timeout_seconds: int

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        backoff = os.getenv("BNPL_RETRY_BACKOFF_HOURS", "24,72,168")

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./bnpl_engine.db"),
            webhook_secret=os.getenv("GATEWAY_WEBHOOK_SECRET") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            installment_interval_days=int(os.getenv("BNPL_INSTALLMENT_INTERVAL_DAYS", "14")),
            retry_max_attempts=int(os.getenv("BNPL_RETRY_MAX_ATTEMPTS", "3")),
            retry_backoff_hours=tuple(int(part) for part in backoff.split(",") if part.strip()),
            retry_grace_days=int(os.getenv("BNPL_RETRY_GRACE_DAYS", "7")),
            early_payment_rate=Decimal(os.getenv("BNPL_EARLY_PAYMENT_RATE", "0.05")),
            early_payment_window_days=int(os.getenv("BNPL_EARLY_PAYMENT_WINDOW_DAYS", "30")),
            processing_cost_floor=int(os.getenv("BNPL_PROCESSING_COST_FLOOR", "0")),
            quote_validity_minutes=int(os.getenv("BNPL_QUOTE_VALIDITY_MINUTES", "15")),
            requires_action_timeout_minutes=int(os.getenv("BNPL_REQUIRES_ACTION_TIMEOUT_MINUTES", "30")),
            confirm_timeout_seconds=int(os.getenv("BNPL_CONFIRM_TIMEOUT_SECONDS", "30")),
        )

    def engine_config(self) -> EngineConfig:
        """Build the engine policies from these settings."""
        return EngineConfig(
            plan=PlanPolicy(interval=timedelta(days=self.installment_interval_days)),
            retry=RetryPolicy(
                max_attempts=self.retry_max_attempts,
                backoff=tuple(timedelta(hours=h) for h in self.retry_backoff_hours),
                grace_period=timedelta(days=self.retry_grace_days),
            ),
            discount=DiscountPolicy(
                rate=self.early_payment_rate,
                normalization_window_days=self.early_payment_window_days,
                processing_cost_floor=self.processing_cost_floor,
                quote_validity=timedelta(minutes=self.quote_validity_minutes),
            ),
            reconciliation=ReconciliationPolicy(
                requires_action_timeout=timedelta(minutes=self.requires_action_timeout_minutes),
                confirm_timeout=timedelta(seconds=self.confirm_timeout_seconds),
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()


def validate_production_config(settings: Settings) -> list[str]:
    """
    Validate that settings are safe for production.

    Returns a list of warnings/errors. Empty list = safe.
    """
    issues: list[str] = []

    if not settings.webhook_secret:
        issues.append("CRITICAL: GATEWAY_WEBHOOK_SECRET is not set. Webhooks cannot be verified.")

    if settings.database_url.startswith("sqlite"):
        issues.append("WARNING: SQLite database configured. Use PostgreSQL in production.")

    if settings.debug:
        issues.append("WARNING: DEBUG is enabled")

    return issues
