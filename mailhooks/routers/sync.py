"""
Subscription administration API router
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from mailhooks.accounts.models import EmailAccountModel
from mailhooks.accounts.schemas import (
    AccountOutcomeResponse,
    SchedulerStatusResponse,
    SyncStatusResponse,
    TickReportResponse,
)
from mailhooks.dependencies import get_engine, get_scheduler
from mailhooks.subscriptions.engine import (
    CREDENTIAL_ERROR,
    FAILED,
    AccountOutcome,
    ReconciliationEngine,
    TickReport,
)
from mailhooks.subscriptions.scheduler import ReconciliationScheduler

logger = logging.getLogger(__name__)
router = APIRouter()


def transform_sync_status(model: EmailAccountModel) -> SyncStatusResponse:
    return SyncStatusResponse(
        account_id=model.id,
        email=model.email,
        provider=model.provider,
        is_active=model.is_active,
        is_watching=model.is_watching,
        subscription_id=model.subscription_id,
        routing_key=model.routing_key,
        subscription_expiry=model.subscription_expiry,
        notification_url=model.notification_url,
        last_validated_at=model.last_validated_at,
        last_renewed_at=model.last_renewed_at,
        last_sync_at=model.last_sync_at,
        history_cursor=model.history_cursor,
        last_error=model.last_error,
        consecutive_failures=model.consecutive_failures or 0,
    )


def transform_outcome(outcome: AccountOutcome) -> AccountOutcomeResponse:
    return AccountOutcomeResponse(
        account_id=outcome.account_id,
        email=outcome.email,
        provider=outcome.provider,
        outcome=outcome.outcome,
        detail=outcome.detail,
        kind=outcome.kind,
    )


def transform_report(report: TickReport) -> TickReportResponse:
    return TickReportResponse(
        kind=report.kind,
        started_at=report.started_at,
        finished_at=report.finished_at,
        counts=report.counts,
        outcomes=[transform_outcome(o) for o in report.outcomes],
        remote_orphans=report.remote_orphans,
        dry_run=report.dry_run,
    )


# ── POST /api/sync/accounts/{account_id}/reconcile ──────────────────────────
@router.post("/sync/accounts/{account_id}/reconcile", response_model=AccountOutcomeResponse)
def reconcile_account(account_id: str, engine: ReconciliationEngine = Depends(get_engine)):
    """Run one reconciliation step for a single account now"""
    outcome = engine.reconcile_one(account_id)
    if outcome is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    if outcome.outcome in (FAILED, CREDENTIAL_ERROR):
        raise HTTPException(
            status_code=502,
            detail={
                "kind": outcome.kind or outcome.outcome,
                "message": outcome.detail,
                "account_id": outcome.account_id,
                "provider": outcome.provider,
            },
        )
    logger.info("Reconciled %s: %s", outcome.email, outcome.outcome)
    return transform_outcome(outcome)


# ── GET /api/sync/missing ───────────────────────────────────────────────────
@router.get("/sync/missing", response_model=List[SyncStatusResponse])
def list_missing_subscriptions(engine: ReconciliationEngine = Depends(get_engine)):
    """Active accounts with credentials that are not watching"""
    return [transform_sync_status(a) for a in engine.missing_subscriptions()]


# ── POST /api/sync/renew-all ────────────────────────────────────────────────
@router.post("/sync/renew-all", response_model=TickReportResponse)
def renew_all_subscriptions(engine: ReconciliationEngine = Depends(get_engine)):
    return transform_report(engine.force_renew_all())


# ── GET /api/sync/status ────────────────────────────────────────────────────
@router.get("/sync/status", response_model=List[SyncStatusResponse])
def sync_status(engine: ReconciliationEngine = Depends(get_engine)):
    return [transform_sync_status(a) for a in engine.status()]


# ── POST /api/sync/cleanup ──────────────────────────────────────────────────
@router.post("/sync/cleanup", response_model=TickReportResponse)
def run_cleanup(
    dry_run: bool = Query(False, description="Report what would be cleaned without touching anything"),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return transform_report(engine.run_cleanup(dry_run=dry_run))


# ── Scheduler ───────────────────────────────────────────────────────────────
@router.get("/sync/scheduler", response_model=SchedulerStatusResponse)
def scheduler_status(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.post("/sync/scheduler/start", response_model=SchedulerStatusResponse)
def start_scheduler(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    scheduler.start()
    return scheduler.status()


@router.post("/sync/scheduler/stop", response_model=SchedulerStatusResponse)
def stop_scheduler(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    scheduler.stop()
    return scheduler.status()


@router.post("/sync/scheduler/jobs/{name}/run", response_model=TickReportResponse)
def run_scheduler_job(name: str, scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    """Run a scheduled job now; 409 while the same job is already running"""
    if name not in scheduler.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job {name}")
    report = scheduler.trigger(name)
    if report is None:
        raise HTTPException(status_code=409, detail=f"Job {name} is already running or failed")
    return transform_report(report)
