"""
Reconciliation Sweeper
======================

WHAT:
    Scheduled, tenant-scoped sweep with two modes:
    - stuck: re-drive conversions left pending (past the freshness
      threshold), unattributed, forward_failed, or processing with an
      abandoned lease; quarantine them once attempts are exhausted
    - recalculate: recompute results of attributed conversions in a recent
      date range to absorb late touchpoints or config changes

WHY:
    The pipeline is triggered per order event. Anything that missed its
    window (ingestion lag, platform outage, crashed worker) needs a feedback
    loop that eventually ends in either `attributed` or `quarantined`.

HOW:
    Each candidate goes through the same claim as the pipeline, so sweeps
    never race new processing. One bad conversion never stops the batch:
    errors are counted and the sweep moves on.

REFERENCES:
    - attribution_engine/services/conversion_pipeline.py
    - attribution_engine/workers/arq_worker.py (cron triggers)
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from attribution_engine.config import AttributionConfig
from attribution_engine.models import Conversion, ConversionStatusEnum
from attribution_engine.services.alerts import AlertSink
from attribution_engine.services.conversion_pipeline import ConversionPipeline
from attribution_engine.store import TenantDataStore
from attribution_engine.telemetry import capture_exception
from attribution_engine.utils.time import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


class SweepMode(str, enum.Enum):
    stuck = "stuck"
    recalculate = "recalculate"


@dataclass
class SweepReport:
    """Counts for one sweep run."""

    tenant_id: str
    mode: SweepMode
    scanned: int = 0
    redriven: int = 0
    recalculated: int = 0
    quarantined: int = 0
    skipped: int = 0
    errors: int = 0
    statuses: Dict[str, int] = field(default_factory=dict)
    error_details: List[Dict[str, str]] = field(default_factory=list)

    def count_status(self, status: ConversionStatusEnum) -> None:
        self.statuses[status.value] = self.statuses.get(status.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "mode": self.mode.value,
            "scanned": self.scanned,
            "redriven": self.redriven,
            "recalculated": self.recalculated,
            "quarantined": self.quarantined,
            "skipped": self.skipped,
            "errors": self.errors,
            "statuses": dict(self.statuses),
            "error_details": list(self.error_details),
        }


class ReconciliationSweeper:
    """
    Re-drive and recalculate conversions for one tenant.

    Usage:
        sweeper = ReconciliationSweeper(store, config, pipeline, SentryAlertSink())
        report = await sweeper.run(SweepMode.stuck)
    """

    def __init__(
        self,
        store: TenantDataStore,
        config: AttributionConfig,
        pipeline: ConversionPipeline,
        alert_sink: AlertSink,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config
        self.pipeline = pipeline
        self.alert_sink = alert_sink
        self.clock = clock

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    async def run(
        self,
        mode: SweepMode = SweepMode.stuck,
        date_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> SweepReport:
        """Run one sweep.

        Parameters:
            mode: stuck or recalculate
            date_range: (start, end) for recalculate; defaults to the last
                `recalculation_days` days. Ignored in stuck mode.
        """
        mode = SweepMode(mode)
        report = SweepReport(tenant_id=self.tenant_id, mode=mode)

        logger.info(f"[SWEEPER] Starting {mode.value} sweep", extra={"tenant_id": self.tenant_id})
        if mode == SweepMode.stuck:
            await self._sweep_stuck(report)
        else:
            await self._sweep_recalculate(report, date_range)

        logger.info(
            f"[SWEEPER] Finished {mode.value} sweep",
            extra={"tenant_id": self.tenant_id, **{k: v for k, v in report.to_dict().items() if k != "error_details"}},
        )
        return report

    # ------------------------------------------------------------------

    async def _sweep_stuck(self, report: SweepReport) -> None:
        now = self.clock()
        candidates = self.store.stuck_candidates(now, self.config.freshness_threshold, self.config.sweep_batch_size)
        report.scanned = len(candidates)

        for conversion in candidates:
            conversion_id = conversion.id
            try:
                if (
                    conversion.attempts >= self.config.max_attempts
                    and conversion.status != ConversionStatusEnum.processing.value
                ):
                    self._quarantine(conversion, now, report)
                    continue

                result = await self.pipeline.process(conversion_id, count_attempt=True)
                if result.claimed:
                    report.redriven += 1
                else:
                    report.skipped += 1
                report.count_status(result.status)

            except Exception as e:
                self.store.db.rollback()
                report.errors += 1
                report.error_details.append({"conversion_id": str(conversion_id), "error": str(e)})
                logger.exception(
                    f"[SWEEPER] Failed to re-drive conversion: {e}",
                    extra={"tenant_id": self.tenant_id, "conversion_id": str(conversion_id)},
                )
                capture_exception(e, extra={"tenant_id": self.tenant_id, "conversion_id": str(conversion_id)})

    def _quarantine(self, conversion: Conversion, now: datetime, report: SweepReport) -> None:
        previous_status = conversion.status
        reason = (
            f"Quarantined after {conversion.attempts} attempts in {previous_status}"
            + (f": {conversion.last_error}" if conversion.last_error else "")
        )
        if not self.store.quarantine(conversion.id, now, reason):
            # Another sweep got there first (and alerted)
            report.skipped += 1
            return

        report.quarantined += 1
        report.count_status(ConversionStatusEnum.quarantined)
        logger.warning(
            "[SWEEPER] Conversion quarantined",
            extra={
                "tenant_id": self.tenant_id,
                "conversion_id": str(conversion.id),
                "order_id": conversion.order_id,
                "previous_status": previous_status,
            },
        )
        self.alert_sink.send(
            self.tenant_id,
            "critical",
            f"Conversion for order {conversion.order_id} quarantined after "
            f"{conversion.attempts} attempts ({previous_status}) and needs manual review",
            conversion_id=str(conversion.id),
            order_id=conversion.order_id,
        )

    async def _sweep_recalculate(
        self,
        report: SweepReport,
        date_range: Optional[Tuple[datetime, datetime]],
    ) -> None:
        if date_range is None:
            end = self.clock()
            start = end - timedelta(days=self.config.recalculation_days)
        else:
            start, end = (as_naive_utc(d) for d in date_range)
            if start >= end:
                raise ValueError("date_range start must be before end")

        candidates = self.store.attributed_between(start, end, self.config.sweep_batch_size)
        report.scanned = len(candidates)

        for conversion in candidates:
            conversion_id = conversion.id
            try:
                result = await self.pipeline.recalculate(conversion_id)
                if result.claimed:
                    report.recalculated += 1
                else:
                    report.skipped += 1
                report.count_status(result.status)
            except Exception as e:
                self.store.db.rollback()
                report.errors += 1
                report.error_details.append({"conversion_id": str(conversion_id), "error": str(e)})
                logger.exception(
                    f"[SWEEPER] Failed to recalculate conversion: {e}",
                    extra={"tenant_id": self.tenant_id, "conversion_id": str(conversion_id)},
                )
                capture_exception(e, extra={"tenant_id": self.tenant_id, "conversion_id": str(conversion_id)})
