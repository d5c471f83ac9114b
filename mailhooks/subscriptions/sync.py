"""
Interface to the message sync service.

The router hands an account (and, for Gmail, the notification's historyId)
to a collaborator; fetching and processing the messages is that
collaborator's business.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from mailhooks.accounts.models import EmailAccountModel

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    success: bool
    processed_count: int = 0
    error: Optional[str] = None


class SyncCollaborator(Protocol):
    def sync_account(self, account: EmailAccountModel, cursor: Optional[str] = None) -> SyncResult:
        ...


class LoggingSyncCollaborator:
    """Default collaborator: records the request and reports success."""

    def sync_account(self, account: EmailAccountModel, cursor: Optional[str] = None) -> SyncResult:
        logger.info("Sync requested for %s (%s), cursor=%s", account.email, account.provider, cursor)
        return SyncResult(success=True, processed_count=0)
