"""
OAuth credential resolution.

Tokens are stored Fernet-encrypted. ``CredentialResolver.resolve`` hands back
a plaintext bearer token that is valid for at least the refresh skew,
refreshing it through the provider's token endpoint and persisting the new
token first when needed. Nothing is cached: callers resolve again for every
account on every tick.
"""
from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

import httpx
from cryptography.fernet import Fernet, InvalidToken
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import Request as GoogleRequest
from google.auth.transport.requests import Request as GoogleRequestsTransport
from google.oauth2.credentials import Credentials

from mailhooks.accounts.models import EmailAccountModel, utcnow
from mailhooks.accounts.store import AccountStore
from mailhooks.config import Settings, settings as default_settings
from mailhooks.errors import (
    NoCredentialError,
    ProviderRejectedError,
    RefreshFailedError,
)

logger = logging.getLogger(__name__)

OUTLOOK_SCOPES = "offline_access https://graph.microsoft.com/Mail.Read"

# Token endpoint errors that only a new consent can fix
REJECTED_GRANT_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})

RefreshedToken = Tuple[str, Optional[str], Optional[datetime]]


class TokenCipher:
    """Symmetric encryption for tokens at rest."""

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, config: Settings) -> "TokenCipher":
        key = config.TOKEN_ENCRYPTION_KEY
        if not key:
            # Tokens written with a throwaway key are unreadable after restart
            logger.warning("TOKEN_ENCRYPTION_KEY not set; using an ephemeral key")
            key = Fernet.generate_key()
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode()).decode()


class CredentialResolver:
    def __init__(
        self,
        store: AccountStore,
        cipher: TokenCipher,
        http_client: Optional[httpx.Client] = None,
        google_request: Optional[GoogleRequest] = None,
        config: Settings = default_settings,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.cipher = cipher
        self.config = config
        self.clock = clock
        self.http = http_client or httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS)
        self.google_request = google_request or GoogleRequestsTransport()

    def resolve(self, account: EmailAccountModel) -> str:
        """Return a usable access token or raise a ``CredentialError``."""
        if not account.has_credential:
            raise NoCredentialError(
                "account has no OAuth tokens", account_id=account.id, provider=account.provider
            )

        if account.access_token and not self._expiring(account):
            try:
                return self.cipher.decrypt(account.access_token)
            except InvalidToken:
                raise NoCredentialError(
                    "stored access token cannot be decrypted",
                    account_id=account.id,
                    provider=account.provider,
                )

        return self._refresh(account)

    def _expiring(self, account: EmailAccountModel) -> bool:
        if account.token_expires_at is None:
            return False
        skew = timedelta(seconds=self.config.TOKEN_REFRESH_SKEW_SECONDS)
        return self.clock() >= account.token_expires_at - skew

    def _refresh(self, account: EmailAccountModel) -> str:
        if not account.refresh_token:
            raise RefreshFailedError(
                "access token expired and no refresh token stored",
                account_id=account.id,
                provider=account.provider,
            )
        try:
            refresh_token = self.cipher.decrypt(account.refresh_token)
        except InvalidToken:
            raise NoCredentialError(
                "stored refresh token cannot be decrypted",
                account_id=account.id,
                provider=account.provider,
            )

        logger.info("Refreshing %s token for %s", account.provider, account.email)
        if account.provider == "gmail":
            access_token, new_refresh, expires_at = self._refresh_google(account, refresh_token)
        elif account.provider == "outlook":
            access_token, new_refresh, expires_at = self._refresh_microsoft(account, refresh_token)
        else:
            raise RefreshFailedError(
                f"unknown provider {account.provider!r}", account_id=account.id, provider=account.provider
            )

        self.store.update_credentials(
            account.id,
            access_token=self.cipher.encrypt(access_token),
            refresh_token=self.cipher.encrypt(new_refresh) if new_refresh else None,
            expires_at=expires_at,
        )
        logger.info("Refreshed %s token for %s (expires %s)", account.provider, account.email, expires_at)
        return access_token

    def _refresh_google(self, account: EmailAccountModel, refresh_token: str) -> RefreshedToken:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.config.GOOGLE_TOKEN_URL,
            client_id=self.config.GOOGLE_CLIENT_ID,
            client_secret=self.config.GOOGLE_CLIENT_SECRET,
        )
        request = functools.partial(self.google_request, timeout=self.config.PROVIDER_TIMEOUT_SECONDS)
        try:
            credentials.refresh(request)
        except google_auth_exceptions.RefreshError as e:
            response = e.args[1] if len(e.args) > 1 else None
            if isinstance(response, dict) and response.get("error") in REJECTED_GRANT_ERRORS:
                raise ProviderRejectedError(
                    f"refresh rejected: {e.args[0]}", account_id=account.id, provider=account.provider
                ) from e
            raise RefreshFailedError(
                f"token refresh failed: {e.args[0] if e.args else e}",
                account_id=account.id,
                provider=account.provider,
            ) from e
        except google_auth_exceptions.TransportError as e:
            raise RefreshFailedError(
                f"token endpoint unreachable: {e}", account_id=account.id, provider=account.provider
            ) from e

        # Google hands back the same refresh token unless it rotated
        rotated = credentials.refresh_token if credentials.refresh_token != refresh_token else None
        return credentials.token, rotated, credentials.expiry

    def _refresh_microsoft(self, account: EmailAccountModel, refresh_token: str) -> RefreshedToken:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.MICROSOFT_CLIENT_ID,
            "client_secret": self.config.MICROSOFT_CLIENT_SECRET,
            "scope": OUTLOOK_SCOPES,
        }
        try:
            response = self.http.post(self.config.microsoft_token_url, data=form)
        except httpx.HTTPError as e:
            raise RefreshFailedError(
                f"token endpoint unreachable: {e}", account_id=account.id, provider=account.provider
            ) from e

        if response.status_code in (400, 401):
            raise ProviderRejectedError(
                f"refresh rejected: {response.status_code} {response.text[:200]}",
                account_id=account.id,
                provider=account.provider,
            )
        if response.status_code >= 300:
            raise RefreshFailedError(
                f"token endpoint returned {response.status_code}",
                account_id=account.id,
                provider=account.provider,
            )

        try:
            body = response.json()
            access_token = body["access_token"]
        except (ValueError, KeyError) as e:
            raise RefreshFailedError(
                "token endpoint returned no access_token", account_id=account.id, provider=account.provider
            ) from e

        expires_at = None
        if body.get("expires_in"):
            expires_at = self.clock() + timedelta(seconds=int(body["expires_in"]))
        return access_token, body.get("refresh_token"), expires_at
