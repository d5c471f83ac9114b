"""
FastAPI dependency providers (override these in tests via app.dependency_overrides)
"""
from __future__ import annotations

from functools import lru_cache

import httpx
from fastapi import Depends, HTTPException, Request
from google.auth.transport.requests import Request as GoogleRequestsTransport

from mailhooks.accounts.store import AccountStore
from mailhooks.config import settings
from mailhooks.database import SessionLocal
from mailhooks.subscriptions.credentials import CredentialResolver, TokenCipher
from mailhooks.subscriptions.engine import ReconciliationEngine
from mailhooks.subscriptions.notifications import NotificationRouter
from mailhooks.subscriptions.providers import ProviderRegistry
from mailhooks.subscriptions.scheduler import ReconciliationScheduler
from mailhooks.subscriptions.sync import LoggingSyncCollaborator, SyncCollaborator


@lru_cache
def get_http_client() -> httpx.Client:
    return httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)


@lru_cache
def get_google_request() -> GoogleRequestsTransport:
    return GoogleRequestsTransport()


@lru_cache
def get_token_cipher() -> TokenCipher:
    return TokenCipher.from_settings(settings)


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    return ProviderRegistry.from_settings(settings, http_client=get_http_client())


@lru_cache
def get_sync_collaborator() -> SyncCollaborator:
    return LoggingSyncCollaborator()


def get_account_store() -> AccountStore:
    return AccountStore(SessionLocal)


def get_credential_resolver(
    store: AccountStore = Depends(get_account_store),
    cipher: TokenCipher = Depends(get_token_cipher),
) -> CredentialResolver:
    return CredentialResolver(
        store, cipher, http_client=get_http_client(), google_request=get_google_request(), config=settings
    )


def get_engine(
    store: AccountStore = Depends(get_account_store),
    resolver: CredentialResolver = Depends(get_credential_resolver),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> ReconciliationEngine:
    return ReconciliationEngine(store, resolver, registry, config=settings)


def get_notification_router(
    store: AccountStore = Depends(get_account_store),
    collaborator: SyncCollaborator = Depends(get_sync_collaborator),
) -> NotificationRouter:
    return NotificationRouter(store, collaborator, config=settings)


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialised")
    return scheduler


def build_engine() -> ReconciliationEngine:
    """Engine wired to the process-wide database and clients, for the scheduler."""
    store = AccountStore(SessionLocal)
    resolver = CredentialResolver(
        store,
        get_token_cipher(),
        http_client=get_http_client(),
        google_request=get_google_request(),
        config=settings,
    )
    return ReconciliationEngine(store, resolver, get_provider_registry(), config=settings)
