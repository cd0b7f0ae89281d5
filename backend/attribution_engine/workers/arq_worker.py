"""ARQ async worker - attribution job processor.

WHAT:
    Runs the attribution pipeline and the reconciliation sweeps:
    - process_conversion_job: one conversion through the pipeline
    - reconciliation_sweep_job: one tenant, one sweep mode
    - scheduled_stuck_sweep (hourly, :30) and scheduled_recalculation
      (daily, 04:00 UTC) fan out sweep jobs for every active tenant

WHY:
    - The pipeline's forwarding step is network-bound; ARQ keeps it off the
      request path
    - Sweeps are tenant-scoped jobs so one tenant's backlog never blocks others

USAGE:
    # Start worker
    arq attribution_engine.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - attribution_engine/services/attribution_service.py
    - attribution_engine/services/reconciliation.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict

from arq import cron

from attribution_engine.config import MAX_LOOKBACK_DAYS, get_settings
from attribution_engine.database import SessionLocal
from attribution_engine.exceptions import ConversionNotFoundError
from attribution_engine.services.attribution_service import AttributionService
from attribution_engine.services.rate_limiter import ForwardingLimits
from attribution_engine.services.reconciliation import SweepMode
from attribution_engine.store import list_active_tenants
from attribution_engine.telemetry import capture_exception, init_sentry
from attribution_engine.utils.time import utcnow
from attribution_engine.workers.arq_enqueue import (
    QUEUE_NAME,
    enqueue_reconciliation_sweep,
    get_redis_settings,
)

logger = logging.getLogger(__name__)


# =============================================================================
# JOBS
# =============================================================================

async def process_conversion_job(ctx: Dict, tenant_id: str, conversion_id: str) -> Dict:
    """Run the pipeline for one conversion.

    Returns:
        Dict with success flag and the pipeline result
    """
    logger.info("[ARQ] Processing conversion %s for tenant %s", conversion_id, tenant_id)

    db = SessionLocal()
    try:
        service = AttributionService(db, limits=ctx.get("forwarding_limits"))
        result = await service.run_pipeline(tenant_id, conversion_id)
        return {"success": True, **result.to_dict()}

    except ConversionNotFoundError as e:
        logger.warning("[ARQ] %s", e.message)
        return {"success": False, "error": e.message}

    except Exception as e:
        logger.exception("[ARQ] Process job failed for %s: %s", conversion_id, e)
        capture_exception(e, extra={
            "operation": "process_conversion_job",
            "tenant_id": tenant_id,
            "conversion_id": conversion_id,
        })
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def reconciliation_sweep_job(ctx: Dict, tenant_id: str, mode: str = SweepMode.stuck.value) -> Dict:
    """Run one reconciliation sweep for one tenant."""
    logger.info("[ARQ] Starting %s sweep for tenant %s", mode, tenant_id)

    db = SessionLocal()
    try:
        service = AttributionService(db, limits=ctx.get("forwarding_limits"))
        report = await service.run_reconciliation_sweep(tenant_id, SweepMode(mode))
        return {"success": True, **report.to_dict()}

    except Exception as e:
        logger.exception("[ARQ] %s sweep failed for tenant %s: %s", mode, tenant_id, e)
        capture_exception(e, extra={
            "operation": "reconciliation_sweep_job",
            "tenant_id": tenant_id,
            "mode": mode,
        })
        return {"success": False, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# SCHEDULED JOBS - hourly stuck sweep, daily recalculation
# =============================================================================

async def _fan_out(mode: SweepMode, since: datetime, job_key: str) -> Dict:
    db = SessionLocal()
    try:
        tenants = list_active_tenants(db, since)
    finally:
        db.close()

    logger.info("[ARQ] Found %d tenants for %s sweep", len(tenants), mode.value)

    results = await asyncio.gather(
        *[enqueue_reconciliation_sweep(tenant_id, mode.value, job_key=job_key) for tenant_id in tenants],
        return_exceptions=True,
    )
    enqueued = sum(1 for r in results if isinstance(r, dict) and r.get("job_id"))
    failed = sum(1 for r in results if isinstance(r, BaseException))

    logger.info(
        "[ARQ] %s sweep: %d enqueued, %d skipped, %d failed",
        mode.value, enqueued, len(results) - enqueued - failed, failed,
    )
    return {"tenants": len(tenants), "enqueued": enqueued, "failed": failed}


async def scheduled_stuck_sweep(ctx: Dict) -> Dict:
    """Scheduled job: re-drive stuck conversions for all active tenants.

    WHEN:
        Hourly at :30.
    """
    logger.info("[ARQ] Starting scheduled stuck sweep")
    now = utcnow()
    try:
        return await _fan_out(SweepMode.stuck, now - timedelta(days=1), now.strftime("%Y%m%d%H"))
    except Exception as e:
        logger.exception("[ARQ] Scheduled stuck sweep failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_stuck_sweep"})
        return {"error": str(e)}


async def scheduled_recalculation(ctx: Dict) -> Dict:
    """Scheduled job: recalculate recent attributions for late touchpoints.

    WHEN:
        Daily at 04:00 UTC.
    """
    logger.info("[ARQ] Starting scheduled recalculation")
    now = utcnow()
    try:
        return await _fan_out(
            SweepMode.recalculate,
            now - timedelta(days=MAX_LOOKBACK_DAYS),
            now.strftime("%Y%m%d"),
        )
    except Exception as e:
        logger.exception("[ARQ] Scheduled recalculation failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_recalculation"})
        return {"error": str(e)}


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize Sentry and the limits shared by all jobs."""
    init_sentry()
    ctx["forwarding_limits"] = ForwardingLimits.from_settings(get_settings())
    logger.info("[ARQ] Attribution worker starting up (queue=%s)", QUEUE_NAME)
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[ARQ] Worker shutting down: %d jobs processed, uptime %s", ctx.get("jobs_processed", 0), uptime)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: conversions processed concurrently
    - job_timeout=300: matches the default claim lease
    - retry_jobs=False: retries belong to the sweeper, which counts attempts
    """

    functions = [
        process_conversion_job,
        reconciliation_sweep_job,
        scheduled_stuck_sweep,
        scheduled_recalculation,
    ]

    cron_jobs = [
        cron(scheduled_stuck_sweep, minute=30, run_at_startup=False),
        cron(scheduled_recalculation, hour=4, minute=0, run_at_startup=False),
    ]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 300
    keep_result = 3600
    retry_jobs = False
    health_check_interval = 30

    queue_name = QUEUE_NAME
