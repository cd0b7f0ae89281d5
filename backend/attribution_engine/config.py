"""Process settings and per-tenant attribution configuration.

WHAT:
    - `Settings`: process-wide configuration loaded from env / .env
    - `AttributionConfig`: per-tenant knobs (lookback window, half-life,
      retry budget, forwarding rate limit) passed explicitly into the
      calculator, pipeline and sweeper

WHY:
    Attribution parameters are never read from module globals. Each tenant's
    config is loaded once per invocation and threaded through, which keeps
    the calculator pure and lets tests pin exact values.

REFERENCES:
    - attribution_engine/models.py (AttributionSettings row)
    - attribution_engine/services/attribution_calculator.py (consumer)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session


MAX_LOOKBACK_DAYS = 90
DEFAULT_PLATFORMS = ("meta", "ga4")


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # Shared secret for the internal trigger/reporting API
    INTERNAL_API_KEY: Optional[str] = None

    # Forwarding credentials (fallback when no per-tenant connection exists)
    META_GRAPH_API_VERSION: str = "v18.0"
    META_PIXEL_ID: Optional[str] = None
    META_CAPI_ACCESS_TOKEN: Optional[str] = None
    META_CAPI_TEST_EVENT_CODE: Optional[str] = None
    GA4_MEASUREMENT_ID: Optional[str] = None
    GA4_API_SECRET: Optional[str] = None

    # Comma separated, e.g. "meta,ga4"
    FORWARDING_PLATFORMS: str = ",".join(DEFAULT_PLATFORMS)

    # Shared by every job in a worker process (and every request in an API process)
    FORWARD_PLATFORM_CONCURRENCY: int = 4
    # Default per-tenant token bucket; tenants may override in attribution_settings
    FORWARD_RATE_LIMIT_PER_SECOND: float = 5.0
    FORWARD_RATE_LIMIT_BURST: int = 10

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def forwarding_platforms(self) -> Tuple[str, ...]:
        return tuple(p.strip() for p in self.FORWARDING_PLATFORMS.split(",") if p.strip())


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@dataclass
class AttributionConfig:
    """
    Per-tenant attribution configuration.

    Attributes:
        lookback_days: Attribution window before conversion time (1..90)
        half_life_days: Time-decay half-life
        position_first/middle/last: Position-based weights (must sum to 1)
        max_attempts: Sweeper re-drives before quarantine
        freshness_threshold_minutes: Ingestion-lag grace for zero-touchpoint conversions
        lease_timeout_seconds: Claim lease before a processing row counts as abandoned
        recalculation_days: Default range of the recalculation sweep
        sweep_batch_size: Max conversions handled per sweep
        platforms: Ad platforms to forward purchase events to
        forward_max_retries: HTTP attempts per forward for transient failures
        rate_limit_per_second / rate_limit_burst: Per-tenant token bucket

    The per-platform concurrency cap is process-wide
    (`Settings.FORWARD_PLATFORM_CONCURRENCY`), not part of this config.
    """

    lookback_days: int = 30
    half_life_days: float = 7.0
    position_first: float = 0.4
    position_middle: float = 0.2
    position_last: float = 0.4
    max_attempts: int = 5
    freshness_threshold_minutes: int = 120
    lease_timeout_seconds: int = 300
    recalculation_days: int = 3
    sweep_batch_size: int = 100
    platforms: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_PLATFORMS)
    forward_max_retries: int = 3
    rate_limit_per_second: float = 5.0
    rate_limit_burst: int = 10

    def __post_init__(self) -> None:
        self.lookback_days = max(1, min(int(self.lookback_days), MAX_LOOKBACK_DAYS))
        if self.half_life_days <= 0:
            raise ValueError("half_life_days must be positive")
        weights = round(self.position_first + self.position_middle + self.position_last, 9)
        if weights != 1:
            raise ValueError(f"position weights must sum to 1, got {weights}")
        self.platforms = tuple(self.platforms)

    @property
    def lookback(self) -> timedelta:
        return timedelta(days=self.lookback_days)

    @property
    def half_life(self) -> timedelta:
        return timedelta(days=self.half_life_days)

    @property
    def freshness_threshold(self) -> timedelta:
        return timedelta(minutes=self.freshness_threshold_minutes)

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.lease_timeout_seconds)

    @property
    def window_label(self) -> str:
        return f"{self.lookback_days}d"


def load_tenant_config(db: Session, tenant_id: str, settings: Optional[Settings] = None) -> AttributionConfig:
    """Build the tenant's AttributionConfig from its settings row.

    Falls back to defaults (the process-wide platform list and rate limit)
    when the tenant has no row or leaves a column empty.
    """
    from attribution_engine.models import AttributionSettings

    settings = settings or get_settings()
    row = db.query(AttributionSettings).filter(
        AttributionSettings.tenant_id == tenant_id,
    ).first()

    if row is None:
        return AttributionConfig(
            platforms=settings.forwarding_platforms,
            rate_limit_per_second=settings.FORWARD_RATE_LIMIT_PER_SECOND,
            rate_limit_burst=settings.FORWARD_RATE_LIMIT_BURST,
        )

    return AttributionConfig(
        lookback_days=row.lookback_days,
        half_life_days=float(row.half_life_days),
        position_first=float(row.position_first),
        position_middle=float(row.position_middle),
        position_last=float(row.position_last),
        max_attempts=row.max_attempts,
        freshness_threshold_minutes=row.freshness_threshold_minutes,
        lease_timeout_seconds=row.lease_timeout_seconds,
        recalculation_days=row.recalculation_days,
        sweep_batch_size=row.sweep_batch_size,
        forward_max_retries=row.forward_max_retries,
        platforms=tuple(row.platforms) if row.platforms is not None else settings.forwarding_platforms,
        rate_limit_per_second=(
            float(row.rate_limit_per_second)
            if row.rate_limit_per_second is not None
            else settings.FORWARD_RATE_LIMIT_PER_SECOND
        ),
        rate_limit_burst=row.rate_limit_burst if row.rate_limit_burst is not None else settings.FORWARD_RATE_LIMIT_BURST,
    )
