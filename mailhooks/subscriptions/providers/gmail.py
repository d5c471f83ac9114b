"""
Gmail push notifications: users.watch over a per-account Pub/Sub topic.

Each account gets its own topic ``gmail-sync-{key}`` and a push subscription
``gmail-sync-{key}-webhook`` delivering to the Gmail webhook endpoint. The
topic path is what gets stored as the account's subscription id. Gmail does
not hand back a renewable subscription, so "renew" means re-issuing
``users.watch`` against the existing topic.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import google_auth_httplib2
import httplib2
from google.api_core import exceptions as gcp_exceptions
from google.auth import exceptions as google_auth_exceptions
from google.cloud import pubsub_v1
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError

from mailhooks.accounts.models import EmailAccountModel
from mailhooks.errors import ProviderError, ProviderNotFoundError, ProviderTransientError
from mailhooks.subscriptions.identity import (
    gmail_subscription_name,
    gmail_topic_name,
    key_from_gmail_subscription,
)
from mailhooks.subscriptions.providers.base import SubscriptionClient, SubscriptionInfo

logger = logging.getLogger(__name__)

# Gmail publishes watch notifications as this service account
GMAIL_PUSH_PUBLISHER = "serviceAccount:gmail-api-push@system.gserviceaccount.com"

_TRANSIENT_GCP_ERRORS = (
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.TooManyRequests,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.RetryError,
)


class GmailSubscriptionClient(SubscriptionClient):
    provider = "gmail"

    def __init__(
        self,
        publisher=None,
        subscriber=None,
        gmail_service_factory: Optional[Callable[[str], Resource]] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._publisher = publisher
        self._subscriber = subscriber
        self.gmail_service_factory = gmail_service_factory or self._build_gmail_service

    # Pub/Sub clients pick up application default credentials, so only build
    # them when first needed
    @property
    def publisher(self):
        if self._publisher is None:
            self._publisher = pubsub_v1.PublisherClient()
        return self._publisher

    @property
    def subscriber(self):
        if self._subscriber is None:
            self._subscriber = pubsub_v1.SubscriberClient()
        return self._subscriber

    @property
    def project_path(self) -> str:
        return f"projects/{self.config.GOOGLE_CLOUD_PROJECT}"

    def topic_path(self, routing_key: str) -> str:
        return f"{self.project_path}/topics/{gmail_topic_name(routing_key)}"

    def subscription_path(self, routing_key: str) -> str:
        return f"{self.project_path}/subscriptions/{gmail_subscription_name(routing_key)}"

    # ── subscription lifecycle ───────────────────────────────────────────

    def create(self, account: EmailAccountModel, token: str) -> SubscriptionInfo:
        if not account.routing_key:
            raise ProviderError("account has no routing key", account_id=account.id, provider=self.provider)

        topic = self.topic_path(account.routing_key)
        self._ensure_topic(account, topic)
        self._ensure_push_subscription(account, topic, self.subscription_path(account.routing_key))

        body = self._watch(account, token, topic)
        logger.info("Gmail watch started for %s on %s (historyId %s)", account.email, topic, body.get("historyId"))
        return SubscriptionInfo(
            subscription_id=topic,
            expiry=None,
            notification_url=self.config.GMAIL_WEBHOOK_URL,
            cursor=str(body["historyId"]) if body.get("historyId") else None,
        )

    def renew(self, account: EmailAccountModel, token: str) -> Optional[SubscriptionInfo]:
        if not account.routing_key:
            return None
        topic = self.topic_path(account.routing_key)
        try:
            self._call(account, self.publisher.get_topic, request={"topic": topic})
            self._call(
                account,
                self.subscriber.get_subscription,
                request={"subscription": self.subscription_path(account.routing_key)},
            )
        except ProviderNotFoundError:
            logger.info("Pub/Sub resources for %s are gone; watch must be recreated", account.email)
            return None

        self._watch(account, token, topic)
        return SubscriptionInfo(
            subscription_id=topic,
            expiry=None,
            notification_url=account.notification_url or self.config.GMAIL_WEBHOOK_URL,
        )

    def delete(self, account: EmailAccountModel, token: str) -> bool:
        try:
            self._execute(account, self.gmail_service_factory(token).users().stop(userId="me"))
        except ProviderNotFoundError:
            pass

        if account.routing_key:
            self._delete_pubsub(account, account.routing_key)
        logger.info("Gmail watch stopped for %s", account.email)
        return True

    def renewal_due(self, account: EmailAccountModel, now: datetime) -> bool:
        if account.last_renewed_at is None:
            return True
        interval = timedelta(hours=self.config.GMAIL_REWATCH_INTERVAL_HOURS)
        return now - account.last_renewed_at >= interval

    # ── remote sweep ─────────────────────────────────────────────────────

    def list_remote_subscriptions(self) -> List[str]:
        """Full paths of every ``gmail-sync-*-webhook`` push subscription in the project."""
        try:
            subscriptions = self.subscriber.list_subscriptions(
                request={"project": self.project_path},
                timeout=self.config.PROVIDER_TIMEOUT_SECONDS,
            )
            return [s.name for s in subscriptions if key_from_gmail_subscription(s.name)]
        except _TRANSIENT_GCP_ERRORS as e:
            raise ProviderTransientError(f"listing subscriptions failed: {e}", provider=self.provider) from e
        except gcp_exceptions.GoogleAPICallError as e:
            raise ProviderError(f"listing subscriptions failed: {e}", provider=self.provider) from e

    def delete_remote_subscription(self, name: str) -> bool:
        """Delete an orphaned push subscription and its topic by subscription path."""
        routing_key = key_from_gmail_subscription(name)
        if routing_key is None:
            raise ValueError(f"not a gmail-sync subscription: {name}")
        self._delete_pubsub(None, routing_key)
        logger.info("Deleted orphaned Gmail push subscription %s", name)
        return True

    # ── helpers ──────────────────────────────────────────────────────────

    def _build_gmail_service(self, token: str) -> Resource:
        """Gmail API resource acting with the account's bearer token."""
        http = google_auth_httplib2.AuthorizedHttp(
            Credentials(token=token),
            http=httplib2.Http(timeout=self.config.PROVIDER_TIMEOUT_SECONDS),
        )
        return build("gmail", "v1", http=http, cache_discovery=False)

    def _watch(self, account: EmailAccountModel, token: str, topic: str) -> dict:
        request = self.gmail_service_factory(token).users().watch(
            userId="me",
            body={
                "topicName": topic,
                "labelIds": list(self.config.GMAIL_LABEL_IDS),
                "labelFilterBehavior": "INCLUDE",
            },
        )
        return self._execute(account, request) or {}

    def _execute(self, account: EmailAccountModel, request):
        """Run a Gmail API request, mapping failures to the error taxonomy."""
        context = {"account_id": account.id, "provider": self.provider}
        try:
            return request.execute()
        except HttpError as e:
            status = int(e.resp.status)
            message = f"Gmail API returned {status}: {e.reason}"
            if status == 404:
                raise ProviderNotFoundError(message, status_code=status, **context) from e
            if status == 429 or status >= 500:
                raise ProviderTransientError(message, status_code=status, **context) from e
            raise ProviderError(message, status_code=status, **context) from e
        except google_auth_exceptions.RefreshError as e:
            raise ProviderError(f"Gmail rejected the access token: {e}", status_code=401, **context) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise ProviderTransientError(f"Gmail API unreachable: {e}", **context) from e

    def _ensure_topic(self, account: EmailAccountModel, topic: str) -> None:
        try:
            self._call(account, self.publisher.create_topic, request={"name": topic})
        except gcp_exceptions.AlreadyExists:
            logger.debug("Topic %s already exists", topic)
            return

        policy = self._call(account, self.publisher.get_iam_policy, request={"resource": topic})
        policy.bindings.add(role="roles/pubsub.publisher", members=[GMAIL_PUSH_PUBLISHER])
        self._call(account, self.publisher.set_iam_policy, request={"resource": topic, "policy": policy})
        logger.info("Created topic %s", topic)

    def _ensure_push_subscription(self, account: EmailAccountModel, topic: str, subscription: str) -> None:
        try:
            self._call(
                account,
                self.subscriber.create_subscription,
                request={
                    "name": subscription,
                    "topic": topic,
                    "push_config": {"push_endpoint": self.config.GMAIL_WEBHOOK_URL},
                    "ack_deadline_seconds": 60,
                },
            )
            logger.info("Created push subscription %s", subscription)
        except gcp_exceptions.AlreadyExists:
            logger.debug("Push subscription %s already exists", subscription)

    def _delete_pubsub(self, account: Optional[EmailAccountModel], routing_key: str) -> None:
        try:
            self._call(
                account,
                self.subscriber.delete_subscription,
                request={"subscription": self.subscription_path(routing_key)},
            )
        except ProviderNotFoundError:
            pass
        try:
            self._call(account, self.publisher.delete_topic, request={"topic": self.topic_path(routing_key)})
        except ProviderNotFoundError:
            pass

    def _call(self, account: Optional[EmailAccountModel], method, **kwargs):
        """Invoke a Pub/Sub admin call, mapping Google API errors to ours.

        ``AlreadyExists`` is left alone so callers can treat it as success.
        """
        context = {
            "account_id": account.id if account is not None else None,
            "provider": self.provider,
        }
        try:
            return method(timeout=self.config.PROVIDER_TIMEOUT_SECONDS, **kwargs)
        except gcp_exceptions.AlreadyExists:
            raise
        except gcp_exceptions.NotFound as e:
            raise ProviderNotFoundError(str(e), status_code=404, **context) from e
        except _TRANSIENT_GCP_ERRORS as e:
            raise ProviderTransientError(str(e), **context) from e
        except gcp_exceptions.GoogleAPICallError as e:
            raise ProviderError(str(e), status_code=getattr(e, "code", None), **context) from e
