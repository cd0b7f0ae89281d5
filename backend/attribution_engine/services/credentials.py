"""Credential resolution for ad platforms.

WHAT:
    `CredentialResolver` is the seam to the OAuth/connection layer: given a
    tenant and a platform it returns a usable credential or raises
    `ReauthRequired`. `SettingsCredentialResolver` serves single-tenant and
    development setups from environment settings.

WHY:
    Token acquisition and refresh live outside the attribution engine. The
    dispatcher only needs "a valid token, or a signal that a human must
    reconnect the account".
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from attribution_engine.config import Settings, get_settings
from attribution_engine.exceptions import ReauthRequired

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformCredential:
    """Everything a platform client needs to authenticate one send.

    Attributes:
        platform: "meta" or "ga4"
        token: Bearer/access token (Meta) or API secret (GA4)
        account_id: Pixel id (Meta) or measurement id (GA4)
        extra: Platform specific options (e.g. Meta test_event_code)
    """

    platform: str
    token: str
    account_id: str
    extra: Dict[str, str] = field(default_factory=dict)


class CredentialResolver(ABC):
    """Resolve a platform credential for a tenant."""

    @abstractmethod
    async def resolve(self, tenant_id: str, platform: str) -> PlatformCredential:
        """Return a valid credential.

        Raises:
            ReauthRequired: The connection is missing or revoked.
        """


class SettingsCredentialResolver(CredentialResolver):
    """
    Credentials from process settings (env / .env).

    Configuration:
        META_PIXEL_ID + META_CAPI_ACCESS_TOKEN (+ META_CAPI_TEST_EVENT_CODE)
        GA4_MEASUREMENT_ID + GA4_API_SECRET
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def resolve(self, tenant_id: str, platform: str) -> PlatformCredential:
        if platform == "meta":
            if not (self.settings.META_PIXEL_ID and self.settings.META_CAPI_ACCESS_TOKEN):
                raise ReauthRequired(tenant_id, platform, "No Meta pixel id / CAPI access token configured")
            extra = {}
            if self.settings.META_CAPI_TEST_EVENT_CODE:
                extra["test_event_code"] = self.settings.META_CAPI_TEST_EVENT_CODE
            return PlatformCredential(
                platform=platform,
                token=self.settings.META_CAPI_ACCESS_TOKEN,
                account_id=self.settings.META_PIXEL_ID,
                extra=extra,
            )

        if platform == "ga4":
            if not (self.settings.GA4_MEASUREMENT_ID and self.settings.GA4_API_SECRET):
                raise ReauthRequired(tenant_id, platform, "No GA4 measurement id / API secret configured")
            return PlatformCredential(
                platform=platform,
                token=self.settings.GA4_API_SECRET,
                account_id=self.settings.GA4_MEASUREMENT_ID,
            )

        raise ReauthRequired(tenant_id, platform, f"Unsupported platform: {platform}")
