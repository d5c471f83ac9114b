"""
Error taxonomy for subscription management.

Provider clients and the credential resolver convert transport and API
failures into these types, so the reconciliation engine and the webhook
router only ever see this module's exceptions.
"""
from __future__ import annotations

from typing import Optional


class MailhooksError(Exception):
    """Base class for every error raised by the subscription core."""

    kind = "error"

    def __init__(
        self,
        message: str,
        account_id: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.account_id = account_id
        self.provider = provider

    def to_detail(self) -> dict:
        """Structured payload for administrative error responses."""
        return {
            "kind": self.kind,
            "message": self.message,
            "account_id": self.account_id,
            "provider": self.provider,
        }


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialError(MailhooksError):
    kind = "credential_error"


class NoCredentialError(CredentialError):
    kind = "no_credential"


class RefreshFailedError(CredentialError):
    kind = "refresh_failed"


class ProviderRejectedError(CredentialError):
    """The OAuth token endpoint refused the refresh token (e.g. invalid_grant)."""
    kind = "provider_rejected"


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------

class ProviderError(MailhooksError):
    """Non-retryable provider failure."""
    kind = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["status_code"] = self.status_code
        return detail


class ProviderTransientError(ProviderError):
    """Timeout, transport failure, 5xx or rate limiting: retry next tick."""
    kind = "provider_transient"


class ProviderNotFoundError(ProviderError):
    kind = "provider_not_found"


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

class PayloadDecodeError(MailhooksError):
    kind = "payload_decode_error"


class CollisionError(MailhooksError):
    """Even the hashed routing key is already taken; needs manual attention."""
    kind = "routing_key_collision"
