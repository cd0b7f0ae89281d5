"""Shared pieces for ad-platform purchase clients.

WHAT:
    - `PurchaseEvent`: platform-neutral purchase payload built by the dispatcher
    - `minor_to_major`: integer minor units -> Decimal major units (ISO 4217)
    - `raise_for_platform_status`: maps HTTP outcomes to transient/permanent errors
    - `PurchaseEventClient`: interface implemented by each platform client

WHY:
    Every platform wants the same facts (event id, value, currency, click ids)
    in a different shape. The dispatcher only deals with this module; the
    platform modules only deal with their wire format.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from attribution_engine.exceptions import PermanentForwardingError, TransientForwardingError
from attribution_engine.utils.time import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


# ISO 4217 minor-unit exponents that differ from the default of 2
CURRENCY_EXPONENTS: Dict[str, int] = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "UYI": 0, "VND": 0, "VUV": 0,
    "XAF": 0, "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
    "CLF": 4, "UYW": 4,
}


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get((currency or "").upper(), 2)


def minor_to_major(amount_minor: int, currency: str) -> Decimal:
    """Convert minor units to the decimal major-unit value platforms expect.

    Example:
        minor_to_major(10000, "USD") -> Decimal("100.00")
        minor_to_major(1500, "JPY") -> Decimal("1500")
    """
    exponent = currency_exponent(currency)
    return Decimal(int(amount_minor)).scaleb(-exponent)


@dataclass(frozen=True)
class PurchaseEvent:
    """One purchase to report to an ad platform."""

    event_id: str  # Deterministic dedupe key, sent as the platform's event id
    order_id: str
    value_minor: int
    currency: str
    occurred_at: datetime
    client_id: Optional[str] = None
    email_hash: Optional[str] = None
    customer_id: Optional[str] = None
    click_ids: Dict[str, str] = field(default_factory=dict)
    channel: Optional[str] = None
    campaign: Optional[str] = None
    source_url: Optional[str] = None

    @property
    def value(self) -> Decimal:
        return minor_to_major(self.value_minor, self.currency)

    @property
    def event_time(self) -> int:
        return int((as_naive_utc(self.occurred_at) - datetime(1970, 1, 1)).total_seconds())


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = as_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None
    return max(0.0, (retry_at - utcnow()).total_seconds())


def raise_for_platform_status(platform: str, response: httpx.Response) -> None:
    """Raise the forwarding error matching an unsuccessful response.

    - 2xx: returns
    - 429 / 5xx: TransientForwardingError (with Retry-After when given)
    - other 4xx: PermanentForwardingError (auth, validation)
    """
    status_code = response.status_code
    if 200 <= status_code < 300:
        return

    try:
        error_data = response.json() if response.text else {}
    except ValueError:
        error_data = {}
    error = error_data.get("error") if isinstance(error_data, dict) else None
    error_message = error.get("message") if isinstance(error, dict) else None
    error_message = error_message or response.text[:500] or response.reason_phrase

    if status_code == 429 or status_code >= 500:
        raise TransientForwardingError(
            f"{platform} error {status_code}: {error_message}",
            platform=platform,
            status_code=status_code,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )

    raise PermanentForwardingError(
        f"{platform} rejected event ({status_code}): {error_message}",
        platform=platform,
        status_code=status_code,
    )


class PurchaseEventClient(ABC):
    """
    Sends purchase events to one ad platform.

    Implementations raise TransientForwardingError / PermanentForwardingError
    and never retry themselves; the dispatcher owns retries.
    """

    platform: str = ""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._http_client = http_client
        self.timeout = timeout

    @abstractmethod
    async def send_purchase(self, event: PurchaseEvent, credential: Any) -> Dict[str, Any]:
        """Send one purchase. Returns the platform's response payload."""

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.post(url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.post(url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientForwardingError(f"{self.platform} timeout: {e}", platform=self.platform)
        except httpx.RequestError as e:
            raise TransientForwardingError(f"{self.platform} network error: {e}", platform=self.platform)
