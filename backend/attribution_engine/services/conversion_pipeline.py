"""
Conversion Pipeline
===================

WHAT:
    Drives one conversion through attribution and forwarding:
    0. Claim the row (conditional update with a lease)
    1. Resolve the buyer's identity and load touchpoints inside the window
    2. Compute every attribution model
    3. Persist results and stamp `attributed_at` in one transaction
    4. Forward the purchase to each configured platform

WHY:
    Every step re-reads persisted state before acting, so a crash or a
    cancelled run resumes at the right step on the next invocation:
    - `attributed_at` set -> results are valid, skip straight to forwarding
    - ForwardingRecord `sent` -> that platform is skipped

STATUS OUTCOMES:
    no touchpoints, conversion younger than freshness threshold -> pending
    no touchpoints after the threshold                          -> unattributed
    all platforms sent / skipped_duplicate                      -> attributed
    any platform failed                                          -> forward_failed
    allocation invariant / integrity violation                  -> stays processing,
                                                                    requires_review
    recalculation finds no eligible touchpoint                  -> unattributed,
                                                                    results withdrawn

REFERENCES:
    - attribution_engine/services/attribution_calculator.py
    - attribution_engine/services/forwarding.py
    - attribution_engine/services/conversion_state.py
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from attribution_engine.config import AttributionConfig
from attribution_engine.exceptions import AllocationInvariantError, DuplicateConversionError
from attribution_engine.models import Conversion, ConversionStatusEnum
from attribution_engine.services import attribution_calculator
from attribution_engine.services.conversion_state import PROCESSABLE_STATUSES, TERMINAL_STATUSES
from attribution_engine.services.forwarding import ForwardingDispatcher, ForwardOutcome
from attribution_engine.services.identity_resolver import IdentityResolver
from attribution_engine.store import TenantDataStore
from attribution_engine.telemetry import capture_exception
from attribution_engine.utils.time import utcnow

logger = logging.getLogger(__name__)

# Data-integrity faults: never retried, never silently terminal
INVARIANT_ERRORS = (AllocationInvariantError, DuplicateConversionError, IntegrityError)

FORWARD_OK = (ForwardOutcome.sent, ForwardOutcome.skipped_duplicate)


@dataclass
class PipelineResult:
    """
    Outcome of one pipeline invocation.

    Attributes:
        conversion_id: Conversion processed
        status: Status after the run
        claimed: False when another run held the lease or the status was final
        models: Models persisted during this run
        forwarding: platform -> ForwardOutcome value
        error: Error recorded on the conversion, if any
    """

    conversion_id: str
    status: ConversionStatusEnum
    claimed: bool = True
    models: List[str] = field(default_factory=list)
    forwarding: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversion_id": self.conversion_id,
            "status": self.status.value,
            "claimed": self.claimed,
            "models": self.models,
            "forwarding": self.forwarding,
            "error": self.error,
        }


class ConversionPipeline:
    """
    Attribution pipeline for one tenant.

    Usage:
        pipeline = ConversionPipeline(store, config, dispatcher)
        result = await pipeline.process(conversion_id)
        result.status  # ConversionStatusEnum.attributed
    """

    def __init__(
        self,
        store: TenantDataStore,
        config: AttributionConfig,
        dispatcher: ForwardingDispatcher,
        identity_resolver: Optional[IdentityResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config
        self.dispatcher = dispatcher
        self.identity_resolver = identity_resolver or IdentityResolver(store)
        self.clock = clock

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process(
        self,
        conversion_id,
        count_attempt: bool = False,
        weight_overrides: Optional[Mapping[str, float]] = None,
    ) -> PipelineResult:
        """Run the pipeline for one conversion.

        Parameters:
            conversion_id: Conversion to process
            count_attempt: Increment `attempts` with the claim (sweeper re-drives)
            weight_overrides: Optional touchpoint_id -> weight for `data_driven`

        Returns:
            PipelineResult with the status the conversion ended in
        """
        conversion = self.store.require_conversion(conversion_id)
        log_extra = {"tenant_id": self.tenant_id, "conversion_id": str(conversion.id), "order_id": conversion.order_id}

        if conversion.requires_review or ConversionStatusEnum(conversion.status) in TERMINAL_STATUSES:
            logger.debug(f"[PIPELINE] Nothing to do ({conversion.status})", extra=log_extra)
            return self._unclaimed(conversion)

        now = self.clock()
        claimed = self.store.claim_conversion(
            conversion.id,
            now,
            self.config.lease_timeout,
            PROCESSABLE_STATUSES,
            count_attempt=count_attempt,
        )
        self.store.db.refresh(conversion)
        if not claimed:
            logger.info(f"[PIPELINE] Conversion not claimable ({conversion.status}), skipping", extra=log_extra)
            return self._unclaimed(conversion)

        result = PipelineResult(conversion_id=str(conversion.id), status=ConversionStatusEnum.processing)
        try:
            if conversion.attributed_at is None:
                outcome = self._attribute(conversion, now, weight_overrides, result)
                if outcome is not None:
                    self.store.release_conversion(conversion, outcome, self.clock())
                    result.status = outcome
                    return result
            else:
                logger.info("[PIPELINE] Results already persisted, resuming at forwarding", extra=log_extra)

            result.forwarding = await self._forward(conversion)
            failed = sorted(p for p, outcome in result.forwarding.items() if ForwardOutcome(outcome) not in FORWARD_OK)
            final = ConversionStatusEnum.forward_failed if failed else ConversionStatusEnum.attributed
            result.error = f"Forwarding failed for: {', '.join(failed)}" if failed else None
            self.store.release_conversion(conversion, final, self.clock(), error=result.error)
            result.status = final

            logger.info(
                f"[PIPELINE] Conversion {final.value}",
                extra={**log_extra, "forwarding": result.forwarding, "attempts": conversion.attempts},
            )
            return result

        except INVARIANT_ERRORS as e:
            return self._flag_for_review(conversion, e, result, log_extra)

        except Exception as e:
            logger.exception(f"[PIPELINE] Unexpected error: {e}", extra=log_extra)
            capture_exception(e, extra=log_extra)
            fallback = ConversionStatusEnum.forward_failed if conversion.attributed_at else ConversionStatusEnum.pending
            self._release_after_error(conversion, fallback, str(e), log_extra)
            raise

    async def recalculate(
        self,
        conversion_id,
        weight_overrides: Optional[Mapping[str, float]] = None,
    ) -> PipelineResult:
        """Recompute results of an attributed conversion (late touchpoints, config change).

        Claims the row like `process`, so it is safe next to new processing.
        Does not forward again. Results with no eligible touchpoint left are
        withdrawn and the conversion goes back to `unattributed`.
        """
        conversion = self.store.require_conversion(conversion_id)
        log_extra = {"tenant_id": self.tenant_id, "conversion_id": str(conversion.id), "order_id": conversion.order_id}

        now = self.clock()
        claimed = self.store.claim_conversion(
            conversion.id,
            now,
            self.config.lease_timeout,
            (ConversionStatusEnum.attributed,),
            reclaim_abandoned=False,
        )
        self.store.db.refresh(conversion)
        if not claimed:
            logger.info(f"[PIPELINE] Recalculation skipped ({conversion.status})", extra=log_extra)
            return self._unclaimed(conversion)

        result = PipelineResult(conversion_id=str(conversion.id), status=ConversionStatusEnum.processing)
        try:
            touchpoints = self._load_touchpoints(conversion, now)
            results = attribution_calculator.compute(touchpoints, conversion, self.config, weight_overrides)
            if not results:
                logger.warning("[PIPELINE] No eligible touchpoints on recalculation, withdrawing results", extra=log_extra)
                self.store.withdraw_attribution(
                    conversion, self.clock(), "No eligible touchpoints in window on recalculation",
                )
                result.status = ConversionStatusEnum.unattributed
                result.error = conversion.last_error
                return result

            self.store.save_attribution(conversion, results, now)
            result.models = [r.model.value for r in results]
            self.store.release_conversion(conversion, ConversionStatusEnum.attributed, self.clock())
            result.status = ConversionStatusEnum.attributed
            return result

        except INVARIANT_ERRORS as e:
            return self._flag_for_review(conversion, e, result, log_extra)

        except Exception as e:
            logger.exception(f"[PIPELINE] Recalculation failed: {e}", extra=log_extra)
            capture_exception(e, extra=log_extra)
            self._release_after_error(conversion, ConversionStatusEnum.attributed, str(e), log_extra)
            raise

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _load_touchpoints(self, conversion: Conversion, now: datetime) -> List[Any]:
        identity = self.identity_resolver.resolve_for_conversion(
            conversion.visitor_id,
            customer_id=conversion.customer_id,
            email_hash=conversion.email_hash,
            now=now,
        )
        if identity is None:
            return []
        window_end = conversion.occurred_at
        window_start = window_end - self.config.lookback
        return self.store.touchpoints_for_visitors(identity.visitor_ids, window_start, window_end)

    def _attribute(
        self,
        conversion: Conversion,
        now: datetime,
        weight_overrides: Optional[Mapping[str, float]],
        result: PipelineResult,
    ) -> Optional[ConversionStatusEnum]:
        """Steps 1-3. Returns the status to release with when there is nothing to attribute."""
        log_extra = {"tenant_id": self.tenant_id, "conversion_id": str(conversion.id)}

        touchpoints = self._load_touchpoints(conversion, now)
        results = attribution_calculator.compute(touchpoints, conversion, self.config, weight_overrides)

        if not results:
            age = now - conversion.occurred_at
            if age < self.config.freshness_threshold:
                logger.info(
                    "[PIPELINE] No touchpoints yet, waiting for ingestion",
                    extra={**log_extra, "age_seconds": int(age.total_seconds())},
                )
                return ConversionStatusEnum.pending
            logger.info("[PIPELINE] No touchpoints in window, unattributed", extra=log_extra)
            return ConversionStatusEnum.unattributed

        self.store.save_attribution(conversion, results, now)
        result.models = [r.model.value for r in results]
        logger.info(
            f"[PIPELINE] Attributed across {results[0].total_touchpoints} touchpoint(s)",
            extra={**log_extra, "models": result.models},
        )
        return None

    async def _forward(self, conversion: Conversion) -> Dict[str, str]:
        """Step 4: forward to every configured platform concurrently."""
        platforms: Sequence[str] = list(self.config.platforms)
        if not platforms:
            return {}

        outcomes = await asyncio.gather(
            *[self.dispatcher.forward(conversion, platform) for platform in platforms],
            return_exceptions=True,
        )

        forwarding: Dict[str, str] = {}
        for platform, outcome in zip(platforms, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(
                    f"[PIPELINE] Forwarding to {platform} crashed: {outcome}",
                    extra={"tenant_id": self.tenant_id, "conversion_id": str(conversion.id)},
                )
                capture_exception(outcome, extra={"tenant_id": self.tenant_id, "platform": platform})
                forwarding[platform] = ForwardOutcome.failed.value
            else:
                forwarding[platform] = ForwardOutcome(outcome).value
        return forwarding

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _flag_for_review(
        self,
        conversion: Conversion,
        error: Exception,
        result: PipelineResult,
        log_extra: Dict[str, Any],
    ) -> PipelineResult:
        logger.exception(
            f"[PIPELINE] Invariant violation, leaving conversion for manual review: {error}",
            extra={**log_extra, "revenue_cents": conversion.revenue_cents, "attempts": conversion.attempts},
        )
        capture_exception(error, extra=log_extra)
        self.store.flag_for_review(conversion.id, f"{type(error).__name__}: {error}", self.clock())
        result.status = ConversionStatusEnum.processing
        result.error = str(error)
        return result

    def _release_after_error(
        self,
        conversion: Conversion,
        status: ConversionStatusEnum,
        error: str,
        log_extra: Dict[str, Any],
    ) -> None:
        try:
            self.store.db.rollback()
            self.store.release_conversion(conversion, status, self.clock(), error=error)
        except Exception as release_error:
            # Lease expiry hands the row to the sweeper
            logger.error(f"[PIPELINE] Could not release conversion: {release_error}", extra=log_extra)

    def _unclaimed(self, conversion: Conversion) -> PipelineResult:
        return PipelineResult(
            conversion_id=str(conversion.id),
            status=ConversionStatusEnum(conversion.status),
            claimed=False,
            error=conversion.last_error,
        )
