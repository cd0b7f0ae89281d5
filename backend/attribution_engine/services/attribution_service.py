"""
Attribution Service
===================

WHAT:
    Public entry points of the attribution engine, keyed by tenant:
    - record_touchpoint / record_conversion (ingestion)
    - process_conversion (pipeline trigger)
    - run_reconciliation_sweep (scheduled re-drive / recalculation)
    - get_attribution / get_conversion_status (read side)

WHY:
    Routers and arq jobs should not know how the store, resolver,
    dispatcher, pipeline and sweeper are wired together. This class builds
    them per call from the tenant's persisted config.

    The service itself is cheap and short-lived (one per job or request).
    `limits` is not: callers pass the process-wide `ForwardingLimits` so
    concurrency caps and tenant rate limits hold across conversions.

REFERENCES:
    - attribution_engine/routers/attribution.py
    - attribution_engine/workers/arq_worker.py
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from attribution_engine.config import AttributionConfig, Settings, get_settings, load_tenant_config
from attribution_engine.models import AttributionResult, Conversion, ConversionStatusEnum, Touchpoint
from attribution_engine.services.alerts import AlertSink, SentryAlertSink
from attribution_engine.services.conversion_pipeline import ConversionPipeline, PipelineResult
from attribution_engine.services.credentials import CredentialResolver, SettingsCredentialResolver
from attribution_engine.services.forwarding import ForwardingDispatcher
from attribution_engine.services.identity_resolver import IdentityResolver
from attribution_engine.services.platforms.base import PurchaseEventClient
from attribution_engine.services.platforms.ga4 import GA4MeasurementClient
from attribution_engine.services.platforms.meta_capi import MetaCAPIClient
from attribution_engine.services.rate_limiter import ForwardingLimits
from attribution_engine.services.reconciliation import ReconciliationSweeper, SweepMode, SweepReport
from attribution_engine.store import TenantDataStore
from attribution_engine.telemetry import set_tenant_context
from attribution_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


def default_clients(settings: Optional[Settings] = None) -> Dict[str, PurchaseEventClient]:
    settings = settings or get_settings()
    return {
        "meta": MetaCAPIClient(api_version=settings.META_GRAPH_API_VERSION),
        "ga4": GA4MeasurementClient(),
    }


class AttributionService:
    """
    Facade over the attribution engine for one database session.

    Usage:
        service = AttributionService(db)
        conversion, _ = service.record_conversion("shop-1", order_id="1001", revenue_cents=10000, occurred_at=now)
        status = await service.process_conversion("shop-1", conversion.id)
    """

    def __init__(
        self,
        db: Session,
        credentials: Optional[CredentialResolver] = None,
        clients: Optional[Dict[str, PurchaseEventClient]] = None,
        alert_sink: Optional[AlertSink] = None,
        limits: Optional[ForwardingLimits] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.credentials = credentials or SettingsCredentialResolver(self.settings)
        self.clients = clients if clients is not None else default_clients(self.settings)
        self.alert_sink = alert_sink or SentryAlertSink()
        self.limits = limits
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def store(self, tenant_id: str) -> TenantDataStore:
        return TenantDataStore(self.db, tenant_id)

    def config(self, tenant_id: str) -> AttributionConfig:
        return load_tenant_config(self.db, tenant_id, self.settings)

    def pipeline(self, tenant_id: str) -> ConversionPipeline:
        store = self.store(tenant_id)
        config = self.config(tenant_id)
        if self.limits is None:
            self.limits = ForwardingLimits.from_settings(self.settings)
        dispatcher = ForwardingDispatcher(
            store=store,
            credentials=self.credentials,
            clients=self.clients,
            config=config,
            limits=self.limits,
            sleep=self.sleep,
            clock=self.clock,
        )
        return ConversionPipeline(
            store=store,
            config=config,
            dispatcher=dispatcher,
            identity_resolver=IdentityResolver(store),
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record_touchpoint(self, tenant_id: str, visitor_id: str, occurred_at: datetime, **fields: Any) -> Touchpoint:
        """Append a touchpoint. Touchpoints are immutable once written."""
        return self.store(tenant_id).add_touchpoint(visitor_id=visitor_id, occurred_at=occurred_at, **fields)

    def record_conversion(
        self,
        tenant_id: str,
        order_id: str,
        revenue_cents: int,
        occurred_at: datetime,
        **fields: Any,
    ) -> Tuple[Conversion, bool]:
        """Idempotent upsert by order id. Returns (conversion, created)."""
        if revenue_cents < 0:
            raise ValueError("revenue_cents must be >= 0")
        return self.store(tenant_id).upsert_conversion(
            order_id=order_id,
            revenue_cents=revenue_cents,
            occurred_at=occurred_at,
            **fields,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def run_pipeline(
        self,
        tenant_id: str,
        conversion_id,
        weight_overrides: Optional[Mapping[str, float]] = None,
    ) -> PipelineResult:
        set_tenant_context(tenant_id)
        return await self.pipeline(tenant_id).process(conversion_id, weight_overrides=weight_overrides)

    async def process_conversion(
        self,
        tenant_id: str,
        conversion_id,
        weight_overrides: Optional[Mapping[str, float]] = None,
    ) -> ConversionStatusEnum:
        """Run the pipeline once and return the conversion's status."""
        result = await self.run_pipeline(tenant_id, conversion_id, weight_overrides)
        return result.status

    async def run_reconciliation_sweep(
        self,
        tenant_id: str,
        mode: SweepMode = SweepMode.stuck,
        date_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> SweepReport:
        set_tenant_context(tenant_id)
        pipeline = self.pipeline(tenant_id)
        sweeper = ReconciliationSweeper(
            store=pipeline.store,
            config=pipeline.config,
            pipeline=pipeline,
            alert_sink=self.alert_sink,
            clock=self.clock,
        )
        return await sweeper.run(mode, date_range)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_attribution(self, tenant_id: str, conversion_id, model) -> Optional[AttributionResult]:
        store = self.store(tenant_id)
        store.require_conversion(conversion_id)
        return store.get_result(conversion_id, model)

    def get_conversion_status(self, tenant_id: str, conversion_id) -> Dict[str, Any]:
        store = self.store(tenant_id)
        conversion = store.require_conversion(conversion_id)
        return {
            "conversion_id": str(conversion.id),
            "order_id": conversion.order_id,
            "status": conversion.status,
            "attempts": conversion.attempts,
            "last_error": conversion.last_error,
            "requires_review": bool(conversion.requires_review),
            "attributed_at": conversion.attributed_at,
            "forwarding": [
                {
                    "platform": record.platform,
                    "status": record.status,
                    "attempts": record.attempts,
                    "last_attempt_at": record.last_attempt_at,
                    "last_error": record.last_error,
                }
                for record in store.list_forwarding_records(conversion.id)
            ],
        }
