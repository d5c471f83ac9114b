"""
Microsoft Graph webhook subscriptions
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from mailhooks.accounts.models import EmailAccountModel
from mailhooks.errors import ProviderError, ProviderNotFoundError
from mailhooks.subscriptions.providers.base import (
    SubscriptionClient,
    SubscriptionInfo,
    format_provider_datetime,
    parse_provider_datetime,
)

logger = logging.getLogger(__name__)


class OutlookSubscriptionClient(SubscriptionClient):
    provider = "outlook"

    def notification_url(self, routing_key: str) -> str:
        return f"{self.config.OUTLOOK_WEBHOOK_URL.rstrip('/')}/{routing_key}"

    def _new_expiry(self) -> datetime:
        return self.clock() + timedelta(hours=self.config.OUTLOOK_SUBSCRIPTION_HOURS)

    def create(self, account: EmailAccountModel, token: str) -> SubscriptionInfo:
        if not account.routing_key:
            raise ProviderError("account has no routing key", account_id=account.id, provider=self.provider)

        notification_url = self.notification_url(account.routing_key)
        payload = {
            "changeType": self.config.OUTLOOK_CHANGE_TYPES,
            "notificationUrl": notification_url,
            "resource": self.config.OUTLOOK_RESOURCE,
            "expirationDateTime": format_provider_datetime(self._new_expiry()),
            "clientState": account.routing_key,
        }
        logger.info("Creating Graph subscription for %s -> %s", account.email, notification_url)
        response = self._request("POST", f"{self.config.GRAPH_API_URL}/subscriptions", token, account, json=payload)

        body = response.json()
        if not body.get("id"):
            raise ProviderError("Graph returned a subscription without id", account_id=account.id, provider=self.provider)
        return SubscriptionInfo(
            subscription_id=body["id"],
            expiry=parse_provider_datetime(body.get("expirationDateTime")),
            notification_url=notification_url,
        )

    def renew(self, account: EmailAccountModel, token: str) -> Optional[SubscriptionInfo]:
        if not account.subscription_id:
            return None
        new_expiry = self._new_expiry()
        try:
            response = self._request(
                "PATCH",
                f"{self.config.GRAPH_API_URL}/subscriptions/{account.subscription_id}",
                token,
                account,
                json={"expirationDateTime": format_provider_datetime(new_expiry)},
            )
        except ProviderNotFoundError:
            logger.info("Graph subscription %s for %s no longer exists", account.subscription_id, account.email)
            return None

        body = response.json() if response.content else {}
        return SubscriptionInfo(
            subscription_id=account.subscription_id,
            expiry=parse_provider_datetime(body.get("expirationDateTime")) or new_expiry,
            notification_url=account.notification_url,
        )

    def delete(self, account: EmailAccountModel, token: str) -> bool:
        if not account.subscription_id:
            return True
        try:
            self._request(
                "DELETE",
                f"{self.config.GRAPH_API_URL}/subscriptions/{account.subscription_id}",
                token,
                account,
            )
        except ProviderNotFoundError:
            logger.info("Graph subscription %s already gone for %s", account.subscription_id, account.email)
        return True

    def renewal_due(self, account: EmailAccountModel, now: datetime) -> bool:
        if account.subscription_expiry is None:
            return True
        window = timedelta(hours=self.config.OUTLOOK_RENEWAL_WINDOW_HOURS)
        return account.subscription_expiry - now <= window
