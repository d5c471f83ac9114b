"""
Provider subscription clients, selected once per account by provider.
"""
from __future__ import annotations

from typing import Dict, Iterator, Optional

import httpx

from mailhooks.accounts.models import EmailAccountModel
from mailhooks.config import Settings, settings as default_settings
from mailhooks.errors import ProviderError
from mailhooks.subscriptions.providers.base import SubscriptionClient, SubscriptionInfo
from mailhooks.subscriptions.providers.gmail import GmailSubscriptionClient
from mailhooks.subscriptions.providers.outlook import OutlookSubscriptionClient

__all__ = [
    "GmailSubscriptionClient",
    "OutlookSubscriptionClient",
    "ProviderRegistry",
    "SubscriptionClient",
    "SubscriptionInfo",
]


class ProviderRegistry:
    def __init__(self, clients: Dict[str, SubscriptionClient]):
        self._clients = dict(clients)

    @classmethod
    def from_settings(
        cls,
        config: Settings = default_settings,
        http_client: Optional[httpx.Client] = None,
    ) -> "ProviderRegistry":
        http_client = http_client or httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS)
        return cls({
            "gmail": GmailSubscriptionClient(http_client=http_client, config=config),
            "outlook": OutlookSubscriptionClient(http_client=http_client, config=config),
        })

    def get(self, provider: str) -> SubscriptionClient:
        try:
            return self._clients[provider]
        except KeyError:
            raise ProviderError(f"unsupported provider {provider!r}", provider=provider) from None

    def for_account(self, account: EmailAccountModel) -> SubscriptionClient:
        return self.get(account.provider)

    def __iter__(self) -> Iterator[SubscriptionClient]:
        return iter(self._clients.values())
