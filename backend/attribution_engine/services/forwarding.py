"""
Forwarding Dispatcher
=====================

WHAT:
    Delivers an attributed conversion's purchase event to an ad platform at
    most once per (order, platform), with persisted retry state.

WHY:
    Pipeline runs are at-least-once (retries, sweeps, overlapping triggers).
    Platforms double count purchases they receive twice, so every send is
    guarded twice:
    1. Locally: a `sent` ForwardingRecord for the dedupe key short-circuits
       to `skipped_duplicate` without calling the API
    2. Remotely: the dedupe key is the platform's own event id (Meta
       `event_id`, GA4 `transaction_id`), so a send that races the local
       check is dropped by the platform

HOW:
    - Transient errors (timeouts, 429, 5xx) retried with exponential backoff
      and jitter, honoring Retry-After, capped at 30s per wait
    - Permanent errors (other 4xx, ReauthRequired) recorded as failed and not
      retried automatically
    - Each attempt (slot acquire, HTTP call, `sent` record) runs as one
      shielded task under the platform semaphore and the tenant's token
      bucket, so cancelling the caller neither frees the slot early nor
      loses the record of an accepted send

REFERENCES:
    - attribution_engine/services/platforms/ (wire formats)
    - attribution_engine/services/rate_limiter.py
    - attribution_engine/services/conversion_pipeline.py (caller)
"""

import asyncio
import enum
import hashlib
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional

from attribution_engine.config import AttributionConfig
from attribution_engine.exceptions import (
    PermanentForwardingError,
    ReauthRequired,
    TransientForwardingError,
)
from attribution_engine.models import AttributionModelEnum, Conversion, ForwardingStatusEnum
from attribution_engine.services.credentials import CredentialResolver
from attribution_engine.services.platforms.base import PurchaseEvent, PurchaseEventClient
from attribution_engine.services.rate_limiter import ForwardingLimits
from attribution_engine.store import TenantDataStore
from attribution_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 30.0


class ForwardOutcome(str, enum.Enum):
    sent = "sent"
    failed = "failed"
    skipped_duplicate = "skipped_duplicate"


def build_dedupe_key(order_id: str, platform: str) -> str:
    """Deterministic dedupe key for an order on a platform (sha256 hex)."""
    return hashlib.sha256(f"{order_id}:{platform}".encode("utf-8")).hexdigest()


def backoff_delay(attempt: int, retry_after: Optional[float] = None, jitter: float = 0.0) -> float:
    """Seconds to wait before retry number `attempt` (1-based)."""
    if retry_after is not None:
        delay = float(retry_after)
    else:
        delay = BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)) * (1 + jitter)
    return min(delay, BACKOFF_CAP_SECONDS)


class ForwardingDispatcher:
    """
    Send purchase events for one tenant.

    Usage:
        dispatcher = ForwardingDispatcher(
            store=store,
            credentials=SettingsCredentialResolver(),
            clients={"meta": MetaCAPIClient(), "ga4": GA4MeasurementClient()},
            config=config,
        )
        outcome = await dispatcher.forward(conversion, "meta")
    """

    def __init__(
        self,
        store: TenantDataStore,
        credentials: CredentialResolver,
        clients: Dict[str, PurchaseEventClient],
        config: AttributionConfig,
        limits: Optional[ForwardingLimits] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], Any] = utcnow,
        jitter: Callable[[], float] = random.random,
    ):
        self.store = store
        self.credentials = credentials
        self.clients = clients
        self.config = config
        self.limits = limits or ForwardingLimits()
        self._sleep = sleep
        self._clock = clock
        self._jitter = jitter

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    async def forward(self, conversion: Conversion, platform: str) -> ForwardOutcome:
        """Forward one conversion to one platform.

        Returns:
            sent: The platform accepted the event now
            skipped_duplicate: Already sent earlier; nothing was called
            failed: Permanent rejection, missing credentials, or transient
                errors that outlived the retry budget
        """
        dedupe_key = build_dedupe_key(conversion.order_id, platform)
        log_extra = {
            "tenant_id": self.tenant_id,
            "conversion_id": str(conversion.id),
            "order_id": conversion.order_id,
            "platform": platform,
        }

        if self.store.is_sent(dedupe_key):
            logger.info("[FORWARD] Already sent, skipping duplicate", extra=log_extra)
            return ForwardOutcome.skipped_duplicate

        record = self.store.get_forwarding_record(conversion.id, platform)
        if record is not None and record.status == ForwardingStatusEnum.failed.value and not record.retryable:
            logger.info(
                "[FORWARD] Permanently failed earlier, not retrying",
                extra={**log_extra, "last_error": record.last_error},
            )
            return ForwardOutcome.failed

        client = self.clients.get(platform)
        if client is None:
            return self._fail(conversion, platform, dedupe_key, 0, f"No client for platform {platform}", False, log_extra)

        try:
            credential = await self.credentials.resolve(self.tenant_id, platform)
        except ReauthRequired as e:
            return self._fail(conversion, platform, dedupe_key, 0, e.message, False, log_extra)

        event = self.build_event(conversion, dedupe_key)

        attempt = 0
        while True:
            attempt += 1
            send = asyncio.ensure_future(
                self._send_and_record(conversion, platform, dedupe_key, client, event, credential, attempt)
            )
            try:
                # Cancellation detaches the caller; slot, request and record finish together
                await asyncio.shield(send)
                break
            except asyncio.CancelledError:
                send.add_done_callback(lambda task: self._log_detached_send(task, log_extra))
                raise
            except TransientForwardingError as e:
                if attempt >= self.config.forward_max_retries:
                    return self._fail(conversion, platform, dedupe_key, attempt, e.message, True, log_extra)
                delay = backoff_delay(attempt, e.retry_after, self._jitter())
                logger.warning(
                    f"[FORWARD] Transient error (attempt {attempt}/{self.config.forward_max_retries}), "
                    f"retrying in {delay:.1f}s: {e.message}",
                    extra=log_extra,
                )
                await self._sleep(delay)
            except PermanentForwardingError as e:
                return self._fail(conversion, platform, dedupe_key, attempt, e.message, False, log_extra)

        logger.info("[FORWARD] Sent purchase event", extra={**log_extra, "attempts": attempt})
        return ForwardOutcome.sent

    async def _send_and_record(
        self,
        conversion: Conversion,
        platform: str,
        dedupe_key: str,
        client: PurchaseEventClient,
        event: PurchaseEvent,
        credential: Any,
        attempt: int,
    ) -> Any:
        """One send under the platform slot; a success is recorded before the slot is released."""
        async with self.limits.slot(
            self.tenant_id,
            platform,
            rate_per_second=self.config.rate_limit_per_second,
            burst=self.config.rate_limit_burst,
        ):
            response = await client.send_purchase(event, credential)
            self.store.record_forward_attempt(
                conversion,
                platform,
                dedupe_key,
                ForwardingStatusEnum.sent,
                now=self._clock(),
                attempts=attempt,
                response=response if isinstance(response, dict) else None,
            )
        return response

    def _log_detached_send(self, task: "asyncio.Future[Any]", log_extra: Dict[str, Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            logger.info("[FORWARD] Sent purchase event after caller was cancelled", extra=log_extra)
        else:
            logger.warning(f"[FORWARD] Send finished after cancellation with error: {error}", extra=log_extra)

    def build_event(self, conversion: Conversion, dedupe_key: str) -> PurchaseEvent:
        """Purchase payload from the conversion and its last-touch result.

        Platforms attribute last-touch by convention, so the value and the
        click ids come from the last-touch allocation.
        """
        value_minor = conversion.revenue_cents
        click_ids: Dict[str, str] = {}
        channel = campaign = source_url = None

        result = self.store.get_result(conversion.id, AttributionModelEnum.last_touch)
        if result is not None and result.allocations:
            value_minor = sum(int(a["revenue_cents"]) for a in result.allocations)
            touchpoint = self.store.get_touchpoint(result.allocations[-1]["touchpoint_id"])
            if touchpoint is not None:
                click_ids.update(touchpoint.click_ids or {})
                channel = touchpoint.channel
                campaign = touchpoint.campaign
                source_url = touchpoint.source_url

        # Click ids reported with the order win over the touchpoint's
        click_ids.update({k: v for k, v in (conversion.click_ids or {}).items() if v})

        return PurchaseEvent(
            event_id=dedupe_key,
            order_id=conversion.order_id,
            value_minor=value_minor,
            currency=conversion.currency,
            occurred_at=conversion.occurred_at,
            client_id=conversion.visitor_id,
            email_hash=conversion.email_hash,
            customer_id=conversion.customer_id,
            click_ids=click_ids,
            channel=channel,
            campaign=campaign,
            source_url=source_url,
        )

    def _fail(
        self,
        conversion: Conversion,
        platform: str,
        dedupe_key: str,
        attempts: int,
        error: str,
        retryable: bool,
        log_extra: Dict[str, Any],
    ) -> ForwardOutcome:
        self.store.record_forward_attempt(
            conversion,
            platform,
            dedupe_key,
            ForwardingStatusEnum.failed,
            now=self._clock(),
            attempts=attempts,
            error=error,
            retryable=retryable,
        )
        logger.warning(
            f"[FORWARD] {'Retryable' if retryable else 'Permanent'} failure: {error}",
            extra={**log_extra, "attempts": attempts},
        )
        return ForwardOutcome.failed
