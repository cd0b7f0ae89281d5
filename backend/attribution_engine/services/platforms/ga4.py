"""GA4 Measurement Protocol client.

WHAT:
    Sends `purchase` events to Google Analytics 4 for attributed conversions.

HOW:
    POST https://www.google-analytics.com/mp/collect?measurement_id=...&api_secret=...
    `transaction_id` carries the dispatcher's dedupe key; GA4 drops repeated
    purchases with the same transaction id.

NOTE:
    The collect endpoint answers 2xx even for malformed payloads. Use
    `validate=True` (debug endpoint) during setup to see validation messages.

REFERENCES:
    - https://developers.google.com/analytics/devguides/collection/protocol/ga4
"""

import logging
from typing import Any, Dict, Optional

import httpx

from attribution_engine.services.platforms.base import (
    PurchaseEvent,
    PurchaseEventClient,
    raise_for_platform_status,
)

logger = logging.getLogger(__name__)

GA4_COLLECT_URL = "https://www.google-analytics.com/mp/collect"
GA4_DEBUG_URL = "https://www.google-analytics.com/debug/mp/collect"


class GA4MeasurementClient(PurchaseEventClient):
    """Client for the GA4 Measurement Protocol."""

    platform = "ga4"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        validate: bool = False,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.url = GA4_DEBUG_URL if validate else GA4_COLLECT_URL

    def build_payload(self, event: PurchaseEvent) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "transaction_id": event.event_id,
            "value": float(event.value),
            "currency": event.currency.upper(),
        }
        if event.campaign:
            params["campaign"] = event.campaign
        if event.channel:
            params["source"] = event.channel

        payload: Dict[str, Any] = {
            # client_id is required; fall back to the order so the hit is accepted
            "client_id": event.client_id or f"order.{event.order_id}",
            "timestamp_micros": event.event_time * 1_000_000,
            "non_personalized_ads": False,
            "events": [{"name": "purchase", "params": params}],
        }
        if event.customer_id:
            payload["user_id"] = str(event.customer_id)
        return payload

    async def send_purchase(self, event: PurchaseEvent, credential: Any) -> Dict[str, Any]:
        """Send a purchase event.

        Raises:
            TransientForwardingError: timeout, network error, 429, 5xx
            PermanentForwardingError: 4xx (bad secret / measurement id)
        """
        payload = self.build_payload(event)
        logger.info(
            f"[GA4] Sending purchase to {credential.account_id}",
            extra={"transaction_id": event.event_id},
        )

        response = await self._post(
            self.url,
            params={"measurement_id": credential.account_id, "api_secret": credential.token},
            json=payload,
        )
        raise_for_platform_status(self.platform, response)

        try:
            result = response.json() if response.text else {}
        except ValueError:
            result = {}
        logger.info("[GA4] Success", extra={"transaction_id": event.event_id, "status_code": response.status_code})
        return {"status_code": response.status_code, **(result if isinstance(result, dict) else {})}
