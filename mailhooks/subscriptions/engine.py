"""
Reconciliation engine.

Walks every account and drives its push subscription towards the desired
state: active accounts with credentials are watching, everything else holds
no sync state. One pass is a "tick"; the scheduler runs ticks periodically
and a slower cleanup pass repairs what ticks never look at (orphans left by
deactivation, routing-key collisions, remote Pub/Sub leftovers).

Per-account failures are turned into an ``AccountOutcome`` and logged; they
never abort the tick.
"""
from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from mailhooks.accounts.models import EmailAccountModel, utcnow
from mailhooks.accounts.store import AccountStore
from mailhooks.config import Settings, settings as default_settings
from mailhooks.errors import (
    CollisionError,
    CredentialError,
    MailhooksError,
    ProviderError,
)
from mailhooks.subscriptions.credentials import CredentialResolver
from mailhooks.subscriptions.identity import (
    assign_routing_key,
    email_prefix,
    find_collisions,
    key_from_gmail_subscription,
)
from mailhooks.subscriptions.providers import ProviderRegistry, SubscriptionClient, SubscriptionInfo

logger = logging.getLogger(__name__)

CLEANED = "cleaned"
SKIPPED = "skipped"
CREDENTIAL_ERROR = "credential_error"
CREATED = "created"
RENEWED = "renewed"
RECREATED = "recreated"
FAILED = "failed"
VALIDATED = "validated"
UNCHANGED = "unchanged"


@dataclass
class AccountOutcome:
    account_id: str
    email: str
    provider: str
    outcome: str
    detail: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def of(
        cls, account: EmailAccountModel, outcome: str, detail: Optional[str] = None, kind: Optional[str] = None
    ) -> "AccountOutcome":
        return cls(account.id, account.email, account.provider, outcome, detail, kind)


@dataclass
class TickReport:
    kind: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[AccountOutcome] = field(default_factory=list)
    remote_orphans: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        return dict(Counter(o.outcome for o in self.outcomes))

    def add(self, outcome: AccountOutcome) -> None:
        self.outcomes.append(outcome)


class ReconciliationEngine:
    def __init__(
        self,
        store: AccountStore,
        resolver: CredentialResolver,
        registry: ProviderRegistry,
        config: Settings = default_settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.registry = registry
        self.config = config
        self.sleep = sleep
        self.clock = clock

    # ── single account ───────────────────────────────────────────────────

    def reconcile_account(self, account: EmailAccountModel) -> AccountOutcome:
        """Run one state-machine step for ``account``; never raises for provider failures."""
        try:
            return self._reconcile(account)
        except CollisionError as e:
            logger.error("Routing key collision for %s needs manual attention: %s", account.email, e.message)
            self.store.record_failure(account.id, f"{e.kind}: {e.message}")
            return AccountOutcome.of(account, FAILED, e.message, kind=e.kind)
        except MailhooksError as e:
            logger.warning("Reconciliation of %s failed (%s): %s", account.email, e.kind, e.message)
            self.store.record_failure(account.id, f"{e.kind}: {e.message}")
            return AccountOutcome.of(account, FAILED, e.message, kind=e.kind)

    def _reconcile(self, account: EmailAccountModel) -> AccountOutcome:
        now = self.clock()
        client = self.registry.for_account(account)

        if not account.is_active:
            if not account.has_subscription:
                return AccountOutcome.of(account, SKIPPED, "inactive")
            return self._clean(account, client, reason="account inactive", drop_routing_key=True)

        if not account.has_credential:
            if account.has_subscription:
                logger.info("Clearing sync state of %s: no credentials", account.email)
                self.store.clear_sync_state(account.id)
                return AccountOutcome.of(account, CLEANED, "no credentials")
            return AccountOutcome.of(account, SKIPPED, "no credentials")

        try:
            token = self.resolver.resolve(account)
        except CredentialError as e:
            return self._credential_failure(account, e)

        if not account.is_watching or not account.subscription_id or self._expired(account, now):
            return self._create(
                account, client, token, now, CREATED, delete_existing=bool(account.subscription_id)
            )

        if client.renewal_due(account, now):
            return self._renew(account, client, token, now)

        if self._validation_due(account, now):
            return self._validate(account, client, token, now)

        if account.consecutive_failures:
            self.store.record_success(account.id)
        return AccountOutcome.of(account, UNCHANGED)

    # ── transitions ──────────────────────────────────────────────────────

    def _create(
        self,
        account: EmailAccountModel,
        client: SubscriptionClient,
        token: str,
        now: datetime,
        outcome: str,
        delete_existing: bool = False,
    ) -> AccountOutcome:
        expected_id = account.subscription_id
        if expected_id:
            if delete_existing:
                logger.info("Removing stale subscription %s for %s before recreating", expected_id, account.email)
                client.delete(account, token)
            # The old subscription no longer exists remotely, so stop claiming it
            if not self.store.clear_sync_state(account.id, precondition={"subscription_id": expected_id}):
                return AccountOutcome.of(account, FAILED, "sync state changed concurrently")
            expected_id = None

        self._ensure_routing_key(account)
        info = client.create(account, token)

        fields = {
            "subscription_id": info.subscription_id,
            "subscription_expiry": info.expiry,
            "notification_url": info.notification_url,
            "is_watching": True,
            "last_renewed_at": now,
            "last_validated_at": now,
            "last_error": None,
            "consecutive_failures": 0,
        }
        if info.cursor and not account.history_cursor:
            fields["history_cursor"] = info.cursor

        if not self.store.update_sync_state(account.id, fields, precondition={"subscription_id": expected_id}):
            self._discard_lost_create(account, client, token, info)
            return AccountOutcome.of(account, FAILED, "sync state changed concurrently")

        logger.info(
            "Subscription %s for %s (%s): %s, expires %s",
            outcome, account.email, account.provider, info.subscription_id, info.expiry,
        )
        return AccountOutcome.of(account, outcome, info.subscription_id)

    def _renew(
        self, account: EmailAccountModel, client: SubscriptionClient, token: str, now: datetime
    ) -> AccountOutcome:
        expected_id = account.subscription_id
        info = client.renew(account, token)
        if not info:
            logger.info("Subscription %s for %s is gone; recreating", expected_id, account.email)
            return self._create(account, client, token, now, RECREATED)

        fields = {
            "subscription_expiry": info.expiry,
            "is_watching": True,
            "last_renewed_at": now,
            "last_error": None,
            "consecutive_failures": 0,
        }
        if info.notification_url:
            fields["notification_url"] = info.notification_url
        if not self.store.update_sync_state(account.id, fields, precondition={"subscription_id": expected_id}):
            return AccountOutcome.of(account, FAILED, "sync state changed concurrently")

        logger.info("Renewed subscription for %s until %s", account.email, info.expiry)
        return AccountOutcome.of(account, RENEWED, expected_id)

    def _validate(
        self, account: EmailAccountModel, client: SubscriptionClient, token: str, now: datetime
    ) -> AccountOutcome:
        if client.validate(account):
            self.store.update_sync_state(
                account.id,
                {"last_validated_at": now},
                precondition={"subscription_id": account.subscription_id},
            )
            return AccountOutcome.of(account, VALIDATED)

        logger.warning("Notification endpoint for %s failed validation; recreating", account.email)
        return self._create(account, client, token, now, RECREATED, delete_existing=True)

    def _clean(
        self,
        account: EmailAccountModel,
        client: SubscriptionClient,
        reason: str,
        drop_routing_key: bool = False,
    ) -> AccountOutcome:
        """Best-effort remote delete, then clear local sync state regardless."""
        try:
            token = self.resolver.resolve(account)
            client.delete(account, token)
        except (CredentialError, ProviderError) as e:
            logger.warning(
                "Remote delete for %s failed (%s); clearing local state anyway: %s",
                account.email, e.kind, e.message,
            )
        self.store.clear_sync_state(account.id, drop_routing_key=drop_routing_key)
        logger.info("Cleaned sync state of %s (%s)", account.email, reason)
        return AccountOutcome.of(account, CLEANED, reason)

    def _credential_failure(self, account: EmailAccountModel, error: CredentialError) -> AccountOutcome:
        failures = self.store.record_failure(account.id, f"{error.kind}: {error.message}")
        if failures >= self.config.CREDENTIAL_FAILURE_ALERT_TICKS:
            logger.error(
                "Credentials for %s have failed %d consecutive ticks (%s): %s",
                account.email, failures, error.kind, error.message,
            )
        else:
            logger.warning("Credential error for %s (%s): %s", account.email, error.kind, error.message)
        return AccountOutcome.of(account, CREDENTIAL_ERROR, error.message, kind=error.kind)

    # ── helpers ──────────────────────────────────────────────────────────

    def _ensure_routing_key(self, account: EmailAccountModel) -> str:
        taken = self.store.routing_keys_in_use(account.provider, exclude_id=account.id)
        if account.routing_key in taken:
            # Another account registered this key while ours held no subscription
            logger.warning(
                "Stored routing key %s of %s is held by another account; deriving a new one",
                account.routing_key, account.email,
            )
            self.store.update_sync_state(
                account.id, {"routing_key": None}, precondition={"routing_key": account.routing_key}
            )
            account.routing_key = None

        key = assign_routing_key(account, taken)
        if key == account.routing_key:
            return key
        if key != email_prefix(account.email):
            logger.info("Routing key for %s falls back to hashed form %s", account.email, key)

        if not self.store.update_sync_state(account.id, {"routing_key": key}, precondition={"routing_key": None}):
            current = self.store.get(account.id)
            key = current.routing_key if current and current.routing_key else key
        account.routing_key = key
        return key

    def _discard_lost_create(
        self,
        account: EmailAccountModel,
        client: SubscriptionClient,
        token: str,
        info: SubscriptionInfo,
    ) -> None:
        current = self.store.get(account.id)
        if current is not None and current.subscription_id == info.subscription_id:
            return
        logger.warning(
            "Lost sync-state race for %s; deleting just-created subscription %s",
            account.email, info.subscription_id,
        )
        created = _remote_view(account, info)
        try:
            client.delete(created, token)
        except ProviderError as e:
            logger.error("Could not delete subscription %s for %s: %s", info.subscription_id, account.email, e.message)

    def _expired(self, account: EmailAccountModel, now: datetime) -> bool:
        return account.subscription_expiry is not None and account.subscription_expiry <= now

    def _validation_due(self, account: EmailAccountModel, now: datetime) -> bool:
        if account.last_validated_at is None:
            return True
        return now - account.last_validated_at >= timedelta(hours=self.config.VALIDATE_INTERVAL_HOURS)

    # ── passes ───────────────────────────────────────────────────────────

    def run_tick(self) -> TickReport:
        """Reconcile every account once, sequentially."""
        report = TickReport(kind="reconcile", started_at=self.clock())
        accounts = self.store.all_accounts()
        logger.info("Reconciliation tick over %d accounts", len(accounts))

        for index, account in enumerate(accounts):
            if index and self.config.RECONCILE_ACCOUNT_DELAY_SECONDS > 0:
                self.sleep(self.config.RECONCILE_ACCOUNT_DELAY_SECONDS)
            try:
                report.add(self.reconcile_account(account))
            except Exception as e:
                logger.error("Unexpected error reconciling %s: %s", account.email, e, exc_info=True)
                report.add(AccountOutcome.of(account, FAILED, str(e)))

        report.finished_at = self.clock()
        logger.info("Reconciliation tick finished: %s", report.counts)
        return report

    def run_cleanup(self, dry_run: bool = False) -> TickReport:
        """Deep pass: inactive holders, routing-key collisions, remote Gmail orphans."""
        report = TickReport(kind="cleanup", started_at=self.clock(), dry_run=dry_run)

        for account in self.store.accounts_with_subscription():
            if account.is_active:
                continue
            if dry_run:
                report.add(AccountOutcome.of(account, CLEANED, "would clean: account inactive"))
                continue
            report.add(self._safe(
                account,
                lambda a=account: self._clean(
                    a, self.registry.for_account(a), "account inactive", drop_routing_key=True
                ),
            ))

        for account in find_collisions(self.store.find(is_active=True)):
            if dry_run:
                report.add(AccountOutcome.of(account, CLEANED, f"would clean: routing key {account.routing_key} collides"))
                continue
            logger.warning("Routing key %s of %s collides with an earlier account", account.routing_key, account.email)
            report.add(self._safe(
                account,
                lambda a=account: self._clean(
                    a, self.registry.for_account(a), "routing key collision", drop_routing_key=True
                ),
            ))

        report.remote_orphans = self._sweep_gmail_orphans(dry_run)
        report.finished_at = self.clock()
        logger.info(
            "Cleanup finished%s: %s, %d remote orphans",
            " (dry run)" if dry_run else "", report.counts, len(report.remote_orphans),
        )
        return report

    def _sweep_gmail_orphans(self, dry_run: bool) -> List[str]:
        if not self.config.GOOGLE_CLOUD_PROJECT:
            return []
        client = self.registry.get("gmail")
        try:
            remote = client.list_remote_subscriptions()
        except ProviderError as e:
            logger.warning("Could not list Gmail push subscriptions: %s", e.message)
            return []

        live_keys = {
            a.routing_key for a in self.store.find(provider="gmail", is_active=True) if a.routing_key
        }
        orphans = [name for name in remote if key_from_gmail_subscription(name) not in live_keys]
        for name in orphans:
            if dry_run:
                logger.info("Would delete orphaned Gmail push subscription %s", name)
                continue
            try:
                client.delete_remote_subscription(name)
            except ProviderError as e:
                logger.warning("Could not delete orphaned subscription %s: %s", name, e.message)
        return orphans

    def _safe(self, account: EmailAccountModel, step: Callable[[], AccountOutcome]) -> AccountOutcome:
        try:
            return step()
        except Exception as e:
            logger.error("Cleanup of %s failed: %s", account.email, e, exc_info=True)
            return AccountOutcome.of(account, FAILED, str(e))

    # ── administrative helpers ───────────────────────────────────────────

    def reconcile_one(self, account_id: str) -> Optional[AccountOutcome]:
        account = self.store.get(account_id)
        if account is None:
            return None
        return self.reconcile_account(account)

    def missing_subscriptions(self) -> List[EmailAccountModel]:
        """Active accounts with credentials that are not currently watching."""
        return [
            a for a in self.store.find(is_active=True)
            if a.has_credential and not (a.is_watching and a.subscription_id)
        ]

    def force_renew_all(self) -> TickReport:
        """Renew every watching account now, regardless of renewal windows."""
        report = TickReport(kind="renew_all", started_at=self.clock())
        accounts = [a for a in self.store.find(is_active=True, is_watching=True) if a.has_credential]

        for index, account in enumerate(accounts):
            if index and self.config.RECONCILE_ACCOUNT_DELAY_SECONDS > 0:
                self.sleep(self.config.RECONCILE_ACCOUNT_DELAY_SECONDS)
            report.add(self._force_renew(account))

        report.finished_at = self.clock()
        logger.info("Force renewal finished: %s", report.counts)
        return report

    def _force_renew(self, account: EmailAccountModel) -> AccountOutcome:
        try:
            token = self.resolver.resolve(account)
        except CredentialError as e:
            return self._credential_failure(account, e)
        try:
            return self._renew(account, self.registry.for_account(account), token, self.clock())
        except MailhooksError as e:
            logger.warning("Forced renewal of %s failed (%s): %s", account.email, e.kind, e.message)
            self.store.record_failure(account.id, f"{e.kind}: {e.message}")
            return AccountOutcome.of(account, FAILED, e.message, kind=e.kind)

    def status(self) -> List[EmailAccountModel]:
        return self.store.all_accounts()


def _remote_view(account: EmailAccountModel, info: SubscriptionInfo) -> EmailAccountModel:
    """Transient copy of ``account`` describing a subscription that was never stored."""
    return EmailAccountModel(
        id=account.id,
        email=account.email,
        provider=account.provider,
        routing_key=account.routing_key,
        subscription_id=info.subscription_id,
        notification_url=info.notification_url,
    )
