"""
Inbound push notification routing.

Decodes a provider delivery, resolves it to the owning account and hands
the account to the sync collaborator. Deliveries that match no account are
acknowledged anyway so the provider does not keep retrying them; the
cleanup pass removes the subscriptions they came from.

The router keeps no state between deliveries. A redelivered notification is
dispatched again and the sync collaborator is expected to tolerate that.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mailhooks.accounts.models import EmailAccountModel, utcnow
from mailhooks.accounts.store import AccountStore
from mailhooks.config import Settings, settings as default_settings
from mailhooks.errors import PayloadDecodeError
from mailhooks.subscriptions.identity import key_from_gmail_subscription
from mailhooks.subscriptions.sync import SyncCollaborator, SyncResult

logger = logging.getLogger(__name__)

DISPATCHED = "dispatched"
ORPHANED = "orphaned"
IGNORED = "ignored"


@dataclass
class Dispatch:
    account: EmailAccountModel
    cursor: Optional[str] = None


@dataclass
class RouteResult:
    provider: str
    dispatches: List[Dispatch] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.dispatches:
            return DISPATCHED
        if self.orphaned:
            return ORPHANED
        return IGNORED

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "dispatched": len(self.dispatches),
            "orphaned": len(self.orphaned),
            "ignored": len(self.ignored),
        }


@dataclass
class GmailNotification:
    routing_key: Optional[str]
    email: Optional[str]
    history_id: Optional[str]


class NotificationRouter:
    def __init__(
        self,
        store: AccountStore,
        collaborator: SyncCollaborator,
        config: Settings = default_settings,
    ):
        self.store = store
        self.collaborator = collaborator
        self.config = config

    # ── Gmail ────────────────────────────────────────────────────────────

    @staticmethod
    def decode_gmail(envelope: Any) -> GmailNotification:
        """Pub/Sub push envelope -> routing key, mailbox address and historyId."""
        if not isinstance(envelope, dict) or not isinstance(envelope.get("message"), dict):
            raise PayloadDecodeError("Pub/Sub envelope has no message", provider="gmail")
        data = envelope["message"].get("data")
        if not isinstance(data, str) or not data:
            raise PayloadDecodeError("Pub/Sub message has no data", provider="gmail")

        try:
            payload = json.loads(base64.b64decode(data, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise PayloadDecodeError(f"message data is not base64 JSON: {e}", provider="gmail") from e
        if not isinstance(payload, dict):
            raise PayloadDecodeError("message data is not a JSON object", provider="gmail")

        email = payload.get("emailAddress")
        history_id = payload.get("historyId")
        routing_key = key_from_gmail_subscription(envelope.get("subscription"))
        if not email and not routing_key:
            raise PayloadDecodeError("notification carries neither emailAddress nor a known subscription", provider="gmail")
        if history_id is not None and not str(history_id).isdigit():
            raise PayloadDecodeError(f"invalid historyId {history_id!r}", provider="gmail")

        return GmailNotification(
            routing_key=routing_key,
            email=str(email).strip().lower() if email else None,
            history_id=str(history_id) if history_id is not None else None,
        )

    def handle_gmail(self, envelope: Any) -> RouteResult:
        notification = self.decode_gmail(envelope)
        result = RouteResult(provider="gmail")

        account = None
        if notification.routing_key:
            account = self.store.find_by_routing_key("gmail", notification.routing_key)
            if account is not None and notification.email and account.email != notification.email:
                logger.warning(
                    "Gmail subscription key %s belongs to %s, not %s; routing by address",
                    notification.routing_key, account.email, notification.email,
                )
                account = None
        if account is None and notification.email:
            account = self.store.find_by_email("gmail", notification.email)

        correlation = notification.routing_key or notification.email
        self._route(result, account, correlation, notification.history_id)
        return result

    # ── Outlook ──────────────────────────────────────────────────────────

    @staticmethod
    def decode_outlook(payload: Any, path_key: Optional[str] = None) -> List[str]:
        """Graph change notification batch -> one routing key per change."""
        if not isinstance(payload, dict) or not isinstance(payload.get("value"), list) or not payload["value"]:
            raise PayloadDecodeError("Graph notification has no value array", provider="outlook")

        keys = []
        for change in payload["value"]:
            if not isinstance(change, dict):
                raise PayloadDecodeError("Graph change is not an object", provider="outlook")
            key = change.get("clientState") or path_key
            if not key or not isinstance(key, str):
                raise PayloadDecodeError("Graph change carries no clientState", provider="outlook")
            keys.append(key)
        return keys

    def handle_outlook(self, payload: Any, path_key: Optional[str] = None) -> RouteResult:
        keys = self.decode_outlook(payload, path_key)
        result = RouteResult(provider="outlook")

        # A batch often carries several changes for one mailbox; sync it once
        for key in dict.fromkeys(keys):
            account = self.store.find_by_routing_key("outlook", key)
            self._route(result, account, key, None)
        return result

    # ── routing and dispatch ─────────────────────────────────────────────

    def _route(
        self,
        result: RouteResult,
        account: Optional[EmailAccountModel],
        correlation: Optional[str],
        cursor: Optional[str],
    ) -> None:
        if account is None:
            logger.warning("Orphaned %s notification for %s: no matching account", result.provider, correlation)
            result.orphaned.append(correlation or "")
            return
        if not account.is_active or not account.has_credential:
            logger.info(
                "Ignoring %s notification for %s: account %s",
                result.provider, account.email, "inactive" if not account.is_active else "has no credentials",
            )
            result.ignored.append(account.id)
            return
        if any(d.account.id == account.id for d in result.dispatches):
            return
        result.dispatches.append(Dispatch(account=account, cursor=cursor))

    def dispatch(self, item: Dispatch) -> SyncResult:
        account = item.account
        try:
            outcome = self.collaborator.sync_account(account, item.cursor)
        except Exception as e:
            logger.error("Sync of %s raised: %s", account.email, e, exc_info=True)
            outcome = SyncResult(success=False, error=str(e))

        if not outcome.success:
            logger.warning("Sync of %s failed: %s", account.email, outcome.error)
            return outcome

        if item.cursor:
            self.store.advance_cursor(account.id, item.cursor)
        else:
            self.store.update_sync_state(account.id, {"last_sync_at": utcnow()})
        logger.info("Synced %s: %d messages processed", account.email, outcome.processed_count)
        return outcome

    def dispatch_all(self, result: RouteResult) -> bool:
        """Run every dispatch of a delivery; True when all of them succeeded."""
        outcomes = [self.dispatch(item) for item in result.dispatches]
        return all(o.success for o in outcomes)
