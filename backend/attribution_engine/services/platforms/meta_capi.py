"""Meta Conversions API (CAPI) client.

WHAT:
    Sends server-side Purchase events to Meta for attributed conversions.

WHY:
    - Server-side events survive ad blockers and iOS tracking limits
    - Deduplication with the browser pixel and with our own retries via
      `event_id`: Meta drops a second event with the same id

HOW:
    POST https://graph.facebook.com/{version}/{pixel_id}/events
    `event_id` carries the dispatcher's dedupe key. Email arrives already
    SHA256-hashed; customer ids are hashed here.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - attribution_engine/services/forwarding.py (caller)
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional

import httpx

from attribution_engine.config import get_settings
from attribution_engine.services.platforms.base import (
    PurchaseEvent,
    PurchaseEventClient,
    raise_for_platform_status,
)

logger = logging.getLogger(__name__)


class MetaCAPIClient(PurchaseEventClient):
    """Client for Meta's Conversions API.

    Usage:
        ```python
        client = MetaCAPIClient()
        credential = PlatformCredential(platform="meta", token="EAAB...", account_id="123456")
        await client.send_purchase(event, credential)
        ```
    """

    platform = "meta"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        api_version: Optional[str] = None,
        timeout: float = 30.0,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.api_version = api_version or get_settings().META_GRAPH_API_VERSION

    def events_url(self, pixel_id: str) -> str:
        return f"https://graph.facebook.com/{self.api_version}/{pixel_id}/events"

    async def send_purchase(self, event: PurchaseEvent, credential: Any) -> Dict[str, Any]:
        """Send a Purchase event.

        IMPORTANT - Deduplication:
            `event.event_id` is the deterministic dedupe key. Sending the same
            conversion twice produces the same event_id and Meta keeps one.

        Returns:
            Dict with events_received and fbtrace_id

        Raises:
            TransientForwardingError: timeout, network error, 429, 5xx
            PermanentForwardingError: auth or payload rejected
        """
        payload = {
            "data": [self.build_event(event)],
            "access_token": credential.token,
        }
        test_event_code = (credential.extra or {}).get("test_event_code")
        if test_event_code:
            payload["test_event_code"] = test_event_code

        return await self._send(credential.account_id, payload)

    def build_event(self, event: PurchaseEvent) -> Dict[str, Any]:
        """Build a single Purchase event payload.

        WHAT: Constructs the event object with hashed user data
        WHY: Meta requires specific format with SHA256-hashed PII
        """
        user_data: Dict[str, Any] = {}

        if event.email_hash:
            user_data["em"] = [event.email_hash.lower()]

        if event.customer_id:
            user_data["external_id"] = [self._sha256_hash(str(event.customer_id))]

        fbclid = event.click_ids.get("fbclid")
        if fbclid:
            # fbc format: fb.1.{creation_time_ms}.{fbclid}
            user_data["fbc"] = f"fb.1.{event.event_time * 1000}.{fbclid}"

        custom_data: Dict[str, Any] = {
            "value": float(event.value),
            "currency": event.currency.upper(),
            "order_id": event.order_id,
        }

        payload = {
            "event_name": "Purchase",
            "event_time": event.event_time,
            "event_id": event.event_id,  # CRITICAL for deduplication
            "action_source": "website",
            "user_data": user_data,
            "custom_data": custom_data,
        }
        if event.source_url:
            payload["event_source_url"] = event.source_url
        return payload

    async def _send(self, pixel_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        events: List[Dict[str, Any]] = payload["data"]
        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {pixel_id}",
            extra={
                "event_ids": [e["event_id"] for e in events],
                "test_mode": "test_event_code" in payload,
            },
        )

        response = await self._post(self.events_url(pixel_id), json=payload)
        if response.status_code != 200:
            logger.error(
                f"[META_CAPI] API error: {response.status_code}",
                extra={"response": response.text[:500]},
            )
        raise_for_platform_status(self.platform, response)

        result = response.json() if response.text else {}
        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={"fbtrace_id": result.get("fbtrace_id", "")},
        )
        return result

    @staticmethod
    def _sha256_hash(value: str) -> str:
        """SHA256 of the normalized value (Meta requires hashed PII)."""
        return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()
