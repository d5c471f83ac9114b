"""
Provider subscription client interface.

All providers expose the same four operations even though their wire
formats differ; the reconciliation engine only ever talks to this interface.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from mailhooks.accounts.models import EmailAccountModel, utcnow
from mailhooks.config import Settings, settings as default_settings
from mailhooks.errors import ProviderError, ProviderNotFoundError, ProviderTransientError

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"(\.\d{6})\d+")


@dataclass
class SubscriptionInfo:
    subscription_id: str
    expiry: Optional[datetime] = None
    notification_url: Optional[str] = None
    cursor: Optional[str] = None


class SubscriptionClient(ABC):
    provider: str = ""

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.clock = clock
        self.http = http_client or httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS)

    @abstractmethod
    def create(self, account: EmailAccountModel, token: str) -> SubscriptionInfo:
        """Register a push subscription keyed by ``account.routing_key``."""

    @abstractmethod
    def renew(self, account: EmailAccountModel, token: str) -> Optional[SubscriptionInfo]:
        """Extend the subscription; ``None`` when the provider no longer has it."""

    @abstractmethod
    def delete(self, account: EmailAccountModel, token: str) -> bool:
        """Remove the subscription. Already-gone counts as success."""

    @abstractmethod
    def renewal_due(self, account: EmailAccountModel, now: datetime) -> bool:
        """Whether a watching account should be renewed on this tick."""

    def validate(self, account: EmailAccountModel) -> bool:
        """Check that the notification endpoint answers its health probe.

        Read-only: no provider state and no account state is touched.
        """
        if not account.notification_url:
            return False
        url = account.notification_url.rstrip("/") + "/health"
        try:
            response = self.http.get(url, timeout=self.config.PROVIDER_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            logger.warning("Endpoint validation failed for %s (%s): %s", account.email, url, e)
            return False
        if response.status_code != 200:
            logger.warning("Endpoint validation for %s returned %s", account.email, response.status_code)
            return False
        return True

    # ── transport ────────────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        url: str,
        token: str,
        account: EmailAccountModel,
        **kwargs,
    ) -> httpx.Response:
        """Send an authenticated request, mapping failures to the error taxonomy."""
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        context = {"account_id": account.id, "provider": self.provider}
        try:
            response = self.http.request(
                method,
                url,
                headers=headers,
                timeout=self.config.PROVIDER_TIMEOUT_SECONDS,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"{method} {url} timed out", **context) from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"{method} {url} failed: {e}", **context) from e

        status = response.status_code
        if status < 300:
            return response
        message = f"{method} {url} returned {status}: {response.text[:300]}"
        if status == 404:
            raise ProviderNotFoundError(message, status_code=status, **context)
        if status == 429 or status >= 500:
            raise ProviderTransientError(message, status_code=status, **context)
        raise ProviderError(message, status_code=status, **context)


def parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 from a provider (``Z`` suffix, up to 7 fraction digits) -> naive UTC."""
    if not value:
        return None
    text = _FRACTION.sub(r"\1", value.strip()).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_provider_datetime(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"
