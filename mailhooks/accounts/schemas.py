"""
Account and sync-status schemas
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


class EmailAccountCreate(BaseModel):
    """Connect a mailbox"""
    email: str
    provider: Literal["gmail", "outlook"]
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None


class EmailAccountResponse(BaseModel):
    """Mailbox as exposed to the admin surface (no tokens)"""
    id: str
    email: str
    provider: str
    is_active: bool
    has_credential: bool
    created_at: datetime


class SyncStatusResponse(BaseModel):
    """Per-account subscription state"""
    account_id: str
    email: str
    provider: str
    is_active: bool
    is_watching: bool
    subscription_id: Optional[str] = None
    routing_key: Optional[str] = None
    subscription_expiry: Optional[datetime] = None
    notification_url: Optional[str] = None
    last_validated_at: Optional[datetime] = None
    last_renewed_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    history_cursor: Optional[str] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0


class AccountOutcomeResponse(BaseModel):
    account_id: str
    email: str
    provider: str
    outcome: str
    detail: Optional[str] = None
    kind: Optional[str] = None


class TickReportResponse(BaseModel):
    """Result of one reconciliation or cleanup pass"""
    kind: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    counts: dict[str, int] = Field(default_factory=dict)
    outcomes: list[AccountOutcomeResponse] = Field(default_factory=list)
    remote_orphans: list[str] = Field(default_factory=list)
    dry_run: bool = False


class JobStatusResponse(BaseModel):
    name: str
    interval_seconds: float
    running: bool
    in_flight: bool
    runs: int
    skipped: int
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None


class SchedulerStatusResponse(BaseModel):
    started: bool
    jobs: list[JobStatusResponse]
