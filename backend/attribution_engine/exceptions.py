"""
Attribution Engine Exceptions
=============================

Custom exception types for the attribution pipeline and forwarding.

WHY THIS FILE EXISTS
--------------------
The pipeline has four failure classes that must be handled differently:
- Transient (timeouts, 429, 5xx): retried with backoff, bounded
- Data absence (no touchpoints): NOT an exception, a normal outcome
- Permanent external (401, rejected payload): parked, surfaced via alerts
- Invariant violation (allocation mismatch, duplicate order): logged with
  full context, conversion left for manual review

RELATED FILES
-------------
- attribution_engine/services/forwarding.py: Raises forwarding errors
- attribution_engine/services/attribution_calculator.py: Raises AllocationInvariantError
- attribution_engine/services/conversion_pipeline.py: Catches and classifies
"""

from typing import Optional


class AttributionEngineError(Exception):
    """
    Base exception for all attribution engine errors.

    USAGE:
        try:
            status = await service.process_conversion(tenant_id, conversion_id)
        except AttributionEngineError as e:
            logger.error(f"[PIPELINE] {e}")
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConversionNotFoundError(AttributionEngineError):
    """Raised when a conversion id does not exist for the tenant."""

    def __init__(self, tenant_id: str, conversion_id: str):
        self.tenant_id = tenant_id
        self.conversion_id = conversion_id
        super().__init__(f"Conversion {conversion_id} not found for tenant {tenant_id}")


class InvalidTransitionError(AttributionEngineError):
    """Raised when a conversion status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal conversion transition {current} -> {target}")


class AllocationInvariantError(AttributionEngineError):
    """
    Credit or revenue allocation does not add up.

    WHAT:
        Raised when credit fractions do not sum to 1 or allocated cents do
        not sum to the conversion revenue.

    RECOVERY:
        None automatic. The conversion is flagged for manual review.
    """

    def __init__(self, model: str, message: str):
        self.model = model
        super().__init__(f"[{model}] {message}")


class DuplicateConversionError(AttributionEngineError):
    """Raised when a second conversion row for the same order cannot be reconciled."""

    def __init__(self, tenant_id: str, order_id: str):
        self.tenant_id = tenant_id
        self.order_id = order_id
        super().__init__(f"Duplicate conversion for order {order_id} in tenant {tenant_id}")


class ForwardingError(AttributionEngineError):
    """
    Base exception for ad platform forwarding errors.

    ATTRIBUTES:
        platform: Which platform rejected the event (meta, ga4)
        status_code: HTTP status if the platform answered
    """

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.platform = platform
        self.status_code = status_code
        super().__init__(message)


class TransientForwardingError(ForwardingError):
    """
    Temporary failure - retry with backoff.

    Raised for timeouts, network errors, 429 and 5xx responses.
    `retry_after` carries the platform's Retry-After hint in seconds.
    """

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, platform, status_code)


class PermanentForwardingError(ForwardingError):
    """Platform rejected the event (auth, validation). Never retried automatically."""


class ReauthRequired(PermanentForwardingError):
    """
    OAuth credential is missing or revoked - user action required.

    RECOVERY:
        User must reconnect the ad platform; the conversion stays parked
        in forward_failed until then.
    """

    def __init__(self, tenant_id: str, platform: str, message: Optional[str] = None):
        self.tenant_id = tenant_id
        if message is None:
            message = f"{platform} connection for tenant {tenant_id} needs to be re-authorized"
        super().__init__(message, platform=platform, status_code=None)
