"""
Reconciliation engine: per-account state machine, ticks and cleanup.
"""
import logging
from datetime import datetime, timedelta

import httpx

from mailhooks.accounts.models import EmailAccountModel
from mailhooks.errors import ProviderError, ProviderTransientError
from mailhooks.subscriptions.credentials import CredentialResolver
from mailhooks.subscriptions.engine import ReconciliationEngine

from conftest import NOW, TEST_SETTINGS

WATCHING = dict(
    subscription_id="sub-0",
    routing_key="a",
    is_watching=True,
    notification_url="https://hooks.test/api/webhooks/outlook/a",
    last_renewed_at=NOW - timedelta(hours=1),
    last_validated_at=NOW - timedelta(hours=1),
)


class TestCreate:
    def test_scenario_a_first_subscription(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com")

        outcome = engine.reconcile_account(account)

        assert outcome.outcome == "created"
        assert outlook_client.count("create") == 1
        stored = store.get(account.id)
        assert stored.subscription_id == "sub-1"
        assert stored.subscription_expiry == NOW + timedelta(hours=72)
        assert stored.is_watching is True
        assert stored.routing_key == "a"

    def test_gmail_create_seeds_cursor(self, engine, make_account, gmail_client, store):
        account = make_account("me@gmail.com", provider="gmail")
        assert engine.reconcile_account(account).outcome == "created"
        stored = store.get(account.id)
        assert stored.subscription_expiry is None
        assert stored.history_cursor == "100"

    def test_prefix_taken_falls_back_to_hash(self, engine, make_account, store):
        make_account("alice@x.com", routing_key="alice")
        second = make_account("alice@y.com")

        engine.reconcile_account(second)

        key = store.get(second.id).routing_key
        assert key != "alice"
        assert len(key) == 12

    def test_inactive_holder_still_reserves_its_key(self, engine, make_account, store):
        make_account("alice@x.com", is_active=False, **dict(WATCHING, routing_key="alice"))
        newcomer = make_account("alice@y.com")

        engine.reconcile_account(newcomer)

        assert store.get(newcomer.id).routing_key != "alice"

    def test_create_failure_leaves_no_subscription(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com")
        outlook_client.create_error = ProviderTransientError("Graph unavailable", status_code=503)

        outcome = engine.reconcile_account(account)

        assert outcome.outcome == "failed"
        assert outcome.kind == "provider_transient"
        stored = store.get(account.id)
        assert stored.subscription_id is None
        assert stored.is_watching is False
        assert stored.consecutive_failures == 1

    def test_expired_subscription_is_replaced(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW - timedelta(hours=1)))

        assert engine.reconcile_account(account).outcome == "created"
        assert outlook_client.count("delete") == 1
        assert outlook_client.count("create") == 1
        assert store.get(account.id).subscription_id == "sub-1"

    def test_routing_key_is_stable_across_recreation(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, routing_key="legacy7",
                                                 subscription_expiry=NOW + timedelta(hours=2)))
        outlook_client.renew_result = "gone"

        engine.reconcile_account(account)

        assert store.get(account.id).routing_key == "legacy7"


class TestRenew:
    def test_renewal_inside_window(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=2)))

        assert engine.reconcile_account(account).outcome == "renewed"
        assert outlook_client.count("renew") == 1
        assert outlook_client.count("create") == 0
        stored = store.get(account.id)
        assert stored.subscription_id == "sub-0"
        assert stored.subscription_expiry == NOW + timedelta(hours=72)

    def test_scenario_b_renewal_fallback(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=2)))
        outlook_client.renew_result = "gone"

        outcome = engine.reconcile_account(account)

        assert outcome.outcome == "recreated"
        assert outlook_client.count("renew") == 1
        assert outlook_client.count("create") == 1
        assert store.get(account.id).subscription_id == "sub-1"

    def test_gone_subscription_is_forgotten_when_create_fails(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=2)))
        outlook_client.renew_result = "gone"
        outlook_client.create_error = ProviderTransientError("Graph unavailable", status_code=503)

        assert engine.reconcile_account(account).outcome == "failed"
        stored = store.get(account.id)
        assert stored.subscription_id is None
        assert stored.is_watching is False

    def test_transient_renewal_failure_keeps_state(self, engine, make_account, outlook_client, store):
        expiry = NOW + timedelta(hours=2)
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=expiry))
        outlook_client.renew_result = ProviderTransientError("timeout")

        assert engine.reconcile_account(account).outcome == "failed"
        assert outlook_client.count("create") == 0
        stored = store.get(account.id)
        assert stored.subscription_id == "sub-0"
        assert stored.subscription_expiry == expiry
        assert stored.is_watching is True

    def test_gmail_rewatch_is_daily(self, engine, make_account, gmail_client):
        fresh = make_account("fresh@gmail.com", provider="gmail",
                             **dict(WATCHING, routing_key="fresh", last_renewed_at=NOW - timedelta(hours=3)))
        stale = make_account("stale@gmail.com", provider="gmail",
                             **dict(WATCHING, routing_key="stale", last_renewed_at=NOW - timedelta(hours=30)))

        assert engine.reconcile_account(fresh).outcome == "unchanged"
        assert engine.reconcile_account(stale).outcome == "renewed"
        assert gmail_client.count("renew") == 1

    def test_force_renew_all(self, engine, make_account, outlook_client):
        make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=60)))
        make_account("b@x.com", **dict(WATCHING, routing_key="b", subscription_expiry=NOW + timedelta(hours=60)))
        make_account("c@x.com")

        report = engine.force_renew_all()

        assert report.counts == {"renewed": 2}
        assert outlook_client.count("renew") == 2


class TestValidate:
    def test_validation_stamps_timestamp(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=60),
                                                 last_validated_at=NOW - timedelta(hours=7)))

        assert engine.reconcile_account(account).outcome == "validated"
        assert store.get(account.id).last_validated_at == NOW

    def test_failed_validation_recreates(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=60),
                                                 last_validated_at=NOW - timedelta(hours=7)))
        outlook_client.valid = False

        assert engine.reconcile_account(account).outcome == "recreated"
        assert outlook_client.count("delete") == 1
        assert outlook_client.count("create") == 1
        assert store.get(account.id).subscription_id == "sub-1"

    def test_failed_recreate_leaves_account_unwatched(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=60),
                                                 last_validated_at=NOW - timedelta(hours=7)))
        outlook_client.valid = False
        outlook_client.create_error = ProviderTransientError("Graph unavailable", status_code=503)

        outcome = engine.reconcile_account(account)

        assert outcome.outcome == "failed"
        assert outlook_client.count("delete") == 1
        stored = store.get(account.id)
        assert stored.subscription_id is None
        assert stored.is_watching is False
        assert stored.routing_key == "a"

        outlook_client.create_error = None
        outlook_client.valid = True
        assert engine.reconcile_one(account.id).outcome == "created"
        assert store.get(account.id).subscription_id == "sub-1"

    def test_recently_validated_is_unchanged(self, engine, make_account, outlook_client):
        account = make_account("a@x.com", **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=60)))
        assert engine.reconcile_account(account).outcome == "unchanged"
        assert outlook_client.calls == []


class TestCleaning:
    def test_inactive_account_is_cleaned(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", is_active=False,
                               **dict(WATCHING, subscription_expiry=NOW + timedelta(hours=60)))

        assert engine.reconcile_account(account).outcome == "cleaned"
        assert outlook_client.count("delete") == 1
        stored = store.get(account.id)
        assert stored.subscription_id is None
        assert stored.is_watching is False
        assert stored.routing_key is None

    def test_remote_delete_failure_still_clears(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", is_active=False, **WATCHING)

        def refuse(account, token):
            raise ProviderError("forbidden", status_code=403)

        outlook_client.delete = refuse

        assert engine.reconcile_account(account).outcome == "cleaned"
        assert store.get(account.id).subscription_id is None

    def test_lost_credentials_clear_state(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", access_token=None, refresh_token=None, **WATCHING)

        assert engine.reconcile_account(account).outcome == "cleaned"
        assert outlook_client.calls == []
        assert store.get(account.id).is_watching is False

    def test_no_credentials_no_state_is_skipped(self, engine, make_account, outlook_client):
        account = make_account("a@x.com", access_token=None, refresh_token=None)
        assert engine.reconcile_account(account).outcome == "skipped"
        assert outlook_client.calls == []

    def test_no_orphans_after_tick(self, engine, make_account, store):
        make_account("a@x.com", is_active=False, **WATCHING)
        make_account("b@x.com", is_active=False, **dict(WATCHING, routing_key="b", subscription_id="sub-9"))
        make_account("c@x.com")

        report = engine.run_tick()

        assert report.counts == {"cleaned": 2, "created": 1}
        for account in store.find(is_active=False):
            assert account.is_watching is False
            assert account.subscription_id is None


class TestRoutingKeyOwnership:
    def test_reactivated_account_does_not_reclaim_key(self, engine, make_account, store):
        first = make_account("alice@x.com")
        engine.reconcile_account(first)
        assert store.get(first.id).routing_key == "alice"

        store.set_active(first.id, False)
        assert engine.reconcile_one(first.id).outcome == "cleaned"

        second = make_account("alice@y.com")
        engine.reconcile_one(second.id)
        assert store.get(second.id).routing_key == "alice"

        make_account("alice@x.com")
        assert engine.reconcile_one(first.id).outcome == "created"

        assert store.get(second.id).routing_key == "alice"
        assert store.get(first.id).routing_key not in (None, "alice")
        assert store.find_by_routing_key("outlook", "alice").id == second.id

    def test_stored_key_held_by_another_account_is_replaced(self, engine, make_account, outlook_client, store):
        holder = make_account("alice@y.com", **dict(WATCHING, routing_key="alice",
                                                    subscription_expiry=NOW + timedelta(hours=60)))
        returning = make_account("alice@x.com", routing_key="alice")

        assert engine.reconcile_account(returning).outcome == "created"

        key = store.get(returning.id).routing_key
        assert key not in (None, "alice")
        assert len(key) == 12
        assert store.get(holder.id).routing_key == "alice"
        assert outlook_client.count("create") == 1


class TestCredentialFailures:
    def _engine(self, store, cipher, registry, status):
        http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(status)))
        resolver = CredentialResolver(store, cipher, http_client=http, config=TEST_SETTINGS, clock=lambda: NOW)
        return ReconciliationEngine(store, resolver, registry, config=TEST_SETTINGS,
                                    sleep=lambda seconds: None, clock=lambda: NOW)

    def _expired_account(self, store, make_account):
        account = make_account("a@x.com")
        store.update_credentials(account.id, account.access_token, None, NOW - timedelta(hours=1))
        return store.get(account.id)

    def test_credential_error_outcome(self, store, cipher, registry, make_account, outlook_client):
        engine = self._engine(store, cipher, registry, 400)
        account = self._expired_account(store, make_account)

        outcome = engine.reconcile_account(account)

        assert outcome.outcome == "credential_error"
        assert outcome.kind == "provider_rejected"
        assert outlook_client.calls == []
        assert store.get(account.id).consecutive_failures == 1

    def test_escalates_after_repeated_ticks(self, store, cipher, registry, make_account, caplog):
        engine = self._engine(store, cipher, registry, 503)
        account = self._expired_account(store, make_account)

        with caplog.at_level(logging.WARNING, logger="mailhooks.subscriptions.engine"):
            for _ in range(3):
                engine.reconcile_one(account.id)

        levels = [r.levelno for r in caplog.records if "Credential" in r.getMessage()]
        assert levels == [logging.WARNING, logging.WARNING, logging.ERROR]

    def test_success_resets_counter(self, engine, make_account, store):
        account = make_account("a@x.com")
        store.record_failure(account.id, "refresh_failed: earlier")
        engine.reconcile_one(account.id)
        assert store.get(account.id).consecutive_failures == 0


class TestConcurrentWrites:
    def test_lost_race_deletes_new_subscription(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com")
        real_create = outlook_client.create

        def create_then_race(acc, token):
            info = real_create(acc, token)
            # Another worker stored a subscription meanwhile
            store.update_sync_state(acc.id, {"subscription_id": "sub-other", "is_watching": True})
            return info

        outlook_client.create = create_then_race

        outcome = engine.reconcile_account(account)

        assert outcome.outcome == "failed"
        assert outlook_client.count("delete") == 1
        assert store.get(account.id).subscription_id == "sub-other"


class TestTick:
    def test_errors_never_escape(self, engine, make_account, outlook_client):
        make_account("a@x.com")
        make_account("b@x.com")
        outlook_client.create_error = RuntimeError("bug in client")

        report = engine.run_tick()

        assert report.counts == {"failed": 2}

    def test_delay_between_accounts(self, store, resolver, registry, make_account):
        sleeps = []
        config = TEST_SETTINGS.model_copy(update={"RECONCILE_ACCOUNT_DELAY_SECONDS": 1.5})
        engine = ReconciliationEngine(store, resolver, registry, config=config,
                                      sleep=sleeps.append, clock=lambda: NOW)
        for email in ("a@x.com", "b@x.com", "c@x.com"):
            make_account(email)

        engine.run_tick()

        assert sleeps == [1.5, 1.5]

    def test_missing_subscriptions(self, engine, make_account):
        make_account("a@x.com")
        make_account("b@x.com", **dict(WATCHING, routing_key="b"))
        make_account("c@x.com", access_token=None, refresh_token=None)

        assert [a.email for a in engine.missing_subscriptions()] == ["a@x.com"]


class TestCleanup:
    def _set_created(self, db, account_id, created_at):
        db.query(EmailAccountModel).filter(EmailAccountModel.id == account_id).update({"created_at": created_at})
        db.commit()

    def test_inactive_holders_are_cleaned(self, engine, make_account, outlook_client, store):
        account = make_account("a@x.com", is_active=False, **WATCHING)

        report = engine.run_cleanup()

        assert report.counts == {"cleaned": 1}
        assert store.get(account.id).subscription_id is None

    def test_collision_repair_keeps_first(self, engine, make_account, outlook_client, store, db):
        first = make_account("alice@x.com", **dict(WATCHING, routing_key="alice"))
        second = make_account("alice@y.com", **dict(WATCHING, routing_key="alice", subscription_id="sub-7"))
        self._set_created(db, first.id, datetime(2026, 1, 1))
        self._set_created(db, second.id, datetime(2026, 2, 1))

        report = engine.run_cleanup()

        assert [o.account_id for o in report.outcomes] == [second.id]
        assert store.get(first.id).routing_key == "alice"
        assert store.get(second.id).routing_key is None

        engine.reconcile_one(second.id)
        key = store.get(second.id).routing_key
        assert key not in (None, "alice")

    def test_gmail_remote_orphans(self, engine, make_account, gmail_client):
        make_account("live@gmail.com", provider="gmail", **dict(WATCHING, routing_key="live"))
        gmail_client.remote = [
            "projects/test-project/subscriptions/gmail-sync-live-webhook",
            "projects/test-project/subscriptions/gmail-sync-gone-webhook",
        ]

        report = engine.run_cleanup()

        assert report.remote_orphans == ["projects/test-project/subscriptions/gmail-sync-gone-webhook"]
        assert gmail_client.remote == ["projects/test-project/subscriptions/gmail-sync-live-webhook"]

    def test_dry_run_changes_nothing(self, engine, make_account, gmail_client, outlook_client, store):
        account = make_account("a@x.com", is_active=False, **WATCHING)
        gmail_client.remote = ["projects/test-project/subscriptions/gmail-sync-gone-webhook"]

        report = engine.run_cleanup(dry_run=True)

        assert report.dry_run is True
        assert report.counts == {"cleaned": 1}
        assert report.remote_orphans == ["projects/test-project/subscriptions/gmail-sync-gone-webhook"]
        assert gmail_client.remote == ["projects/test-project/subscriptions/gmail-sync-gone-webhook"]
        assert outlook_client.calls == []
        assert store.get(account.id).subscription_id == "sub-0"
