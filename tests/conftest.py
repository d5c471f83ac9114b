"""
Shared pytest fixtures: in-memory SQLite, fake provider clients + FastAPI TestClient.
"""
import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from cryptography.fernet import Fernet  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from mailhooks.accounts.models import EmailAccountModel  # noqa: E402, F401  register model
from mailhooks.accounts.store import AccountStore  # noqa: E402
from mailhooks.config import Settings  # noqa: E402
from mailhooks.database import Base  # noqa: E402
from mailhooks.dependencies import (  # noqa: E402
    get_account_store,
    get_engine,
    get_notification_router,
    get_provider_registry,
    get_scheduler,
    get_sync_collaborator,
    get_token_cipher,
)
from mailhooks.main import app  # noqa: E402
from mailhooks.subscriptions.credentials import CredentialResolver, TokenCipher  # noqa: E402
from mailhooks.subscriptions.engine import ReconciliationEngine  # noqa: E402
from mailhooks.subscriptions.notifications import NotificationRouter  # noqa: E402
from mailhooks.subscriptions.providers import ProviderRegistry, SubscriptionClient, SubscriptionInfo  # noqa: E402
from mailhooks.subscriptions.scheduler import ReconciliationScheduler  # noqa: E402
from mailhooks.subscriptions.sync import SyncResult  # noqa: E402

NOW = datetime(2026, 10, 18, 12, 0, 0)

TEST_SETTINGS = Settings(
    RECONCILE_ACCOUNT_DELAY_SECONDS=0,
    GOOGLE_CLOUD_PROJECT="test-project",
    GOOGLE_CLIENT_ID="test-client",
    GOOGLE_CLIENT_SECRET="test-secret",
    OUTLOOK_SUBSCRIPTION_HOURS=72,
    OUTLOOK_RENEWAL_WINDOW_HOURS=12,
    GMAIL_REWATCH_INTERVAL_HOURS=24,
    VALIDATE_INTERVAL_HOURS=6,
    CREDENTIAL_FAILURE_ALERT_TICKS=3,
)

# StaticPool ensures all connections share the same in-memory database
_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_Session = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=_ENGINE)


class FakeSubscriptionClient(SubscriptionClient):
    """Records every provider call; behaviour is steered through attributes."""

    def __init__(self, provider, config=TEST_SETTINGS):
        self.provider = provider
        self.config = config
        self.clock = lambda: NOW
        self.calls = []
        self.created = 0
        self.renew_result = "ok"  # "ok", "gone" or an exception to raise
        self.create_error = None
        self.valid = True
        self.remote = []

    def count(self, op):
        return sum(1 for name, _ in self.calls if name == op)

    def create(self, account, token):
        self.calls.append(("create", account.id))
        if self.create_error is not None:
            raise self.create_error
        self.created += 1
        gmail = self.provider == "gmail"
        return SubscriptionInfo(
            subscription_id=f"sub-{self.created}",
            expiry=None if gmail else NOW + timedelta(hours=self.config.OUTLOOK_SUBSCRIPTION_HOURS),
            notification_url=f"https://hooks.test/api/webhooks/{self.provider}/{account.routing_key}",
            cursor="100" if gmail else None,
        )

    def renew(self, account, token):
        self.calls.append(("renew", account.id))
        if isinstance(self.renew_result, Exception):
            raise self.renew_result
        if self.renew_result == "gone":
            return None
        return SubscriptionInfo(
            subscription_id=account.subscription_id,
            expiry=None if self.provider == "gmail" else NOW + timedelta(hours=72),
            notification_url=account.notification_url,
        )

    def delete(self, account, token):
        self.calls.append(("delete", account.id))
        return True

    def validate(self, account):
        self.calls.append(("validate", account.id))
        return self.valid

    def renewal_due(self, account, now):
        if self.provider == "gmail":
            return account.last_renewed_at is None or now - account.last_renewed_at >= timedelta(hours=24)
        return account.subscription_expiry is None or account.subscription_expiry - now <= timedelta(hours=12)

    def list_remote_subscriptions(self):
        return list(self.remote)

    def delete_remote_subscription(self, name):
        self.calls.append(("delete_remote", name))
        self.remote.remove(name)
        return True


class RecordingCollaborator:
    def __init__(self, success=True):
        self.success = success
        self.calls = []

    def sync_account(self, account, cursor=None):
        self.calls.append((account.email, cursor))
        if self.success:
            return SyncResult(success=True, processed_count=1)
        return SyncResult(success=False, error="mailbox fetch failed")


@pytest.fixture(autouse=True)
def _reset_tables():
    Base.metadata.create_all(bind=_ENGINE)
    yield
    Base.metadata.drop_all(bind=_ENGINE)


@pytest.fixture()
def db():
    session = _Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store():
    return AccountStore(_Session)


@pytest.fixture()
def cipher():
    return TokenCipher(Fernet.generate_key())


@pytest.fixture()
def make_account(store, cipher):
    """Create an account with encrypted tokens, then apply sync-state fields."""
    def _make(email, provider="outlook", access_token="access", refresh_token="refresh",
              is_active=True, **sync_state):
        account = store.upsert_account(
            email=email,
            provider=provider,
            access_token=cipher.encrypt(access_token) if access_token else None,
            refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=None,
        )
        if sync_state:
            assert store.update_sync_state(account.id, sync_state)
        if not is_active:
            store.set_active(account.id, False)
        return store.get(account.id)
    return _make


@pytest.fixture()
def outlook_client():
    return FakeSubscriptionClient("outlook")


@pytest.fixture()
def gmail_client():
    return FakeSubscriptionClient("gmail")


@pytest.fixture()
def registry(gmail_client, outlook_client):
    return ProviderRegistry({"gmail": gmail_client, "outlook": outlook_client})


@pytest.fixture()
def resolver(store, cipher):
    return CredentialResolver(store, cipher, config=TEST_SETTINGS, clock=lambda: NOW)


@pytest.fixture()
def engine(store, resolver, registry):
    return ReconciliationEngine(
        store, resolver, registry, config=TEST_SETTINGS, sleep=lambda seconds: None, clock=lambda: NOW
    )


@pytest.fixture()
def collaborator():
    return RecordingCollaborator()


@pytest.fixture()
def notification_router(store, collaborator):
    return NotificationRouter(store, collaborator, config=TEST_SETTINGS)


@pytest.fixture()
def scheduler(engine):
    scheduler = ReconciliationScheduler(engine, config=TEST_SETTINGS)
    yield scheduler
    scheduler.stop(timeout=1)


@pytest.fixture()
def client(store, cipher, registry, collaborator, engine, notification_router, scheduler):
    app.dependency_overrides[get_account_store] = lambda: store
    app.dependency_overrides[get_token_cipher] = lambda: cipher
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.dependency_overrides[get_sync_collaborator] = lambda: collaborator
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_notification_router] = lambda: notification_router
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
