"""
Provider push notification endpoints
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from mailhooks.dependencies import get_notification_router
from mailhooks.errors import PayloadDecodeError
from mailhooks.subscriptions.notifications import NotificationRouter, RouteResult

logger = logging.getLogger(__name__)
router = APIRouter()


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body is not JSON")


async def respond(
    result: RouteResult,
    notifications: NotificationRouter,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """200 when nothing is dispatched; otherwise 202 and sync in the background,
    or, with inline dispatch, 200/500 mirroring the sync outcome."""
    body = result.summary()
    if not result.dispatches:
        return JSONResponse(status_code=200, content=body)

    if notifications.config.WEBHOOK_INLINE_DISPATCH:
        ok = await run_in_threadpool(notifications.dispatch_all, result)
        body["synced"] = ok
        return JSONResponse(status_code=200 if ok else 500, content=body)

    background_tasks.add_task(notifications.dispatch_all, result)
    return JSONResponse(status_code=202, content=body)


# ── Health probes (GET <notification_url>/health) ───────────────────────────
@router.get("/webhooks/gmail/health")
def gmail_webhook_health():
    return {"status": "healthy", "provider": "gmail"}


@router.get("/webhooks/outlook/health")
def outlook_webhook_health():
    return {"status": "healthy", "provider": "outlook"}


@router.get("/webhooks/outlook/{routing_key}/health")
def outlook_routed_webhook_health(routing_key: str):
    return {"status": "healthy", "provider": "outlook", "routing_key": routing_key}


# ── POST /api/webhooks/gmail ────────────────────────────────────────────────
@router.post("/webhooks/gmail")
async def gmail_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    notifications: NotificationRouter = Depends(get_notification_router),
):
    """Pub/Sub push delivery of a Gmail watch notification"""
    envelope = await read_json(request)
    try:
        result = await run_in_threadpool(notifications.handle_gmail, envelope)
    except PayloadDecodeError as e:
        logger.warning("Rejected Gmail notification: %s", e.message)
        raise HTTPException(status_code=400, detail=e.to_detail())
    return await respond(result, notifications, background_tasks)


# ── GET|POST /api/webhooks/outlook[/{routing_key}] ──────────────────────────
async def handle_outlook(
    request: Request,
    background_tasks: BackgroundTasks,
    notifications: NotificationRouter,
    routing_key: Optional[str] = None,
):
    # Graph proves endpoint ownership by sending validationToken and
    # expecting it echoed back verbatim
    validation_token = request.query_params.get("validationToken")
    if validation_token is not None:
        logger.info("Answering Graph validation request")
        return PlainTextResponse(content=validation_token, status_code=200)

    if request.method == "GET":
        return {"status": "ok"}

    payload = await read_json(request)
    try:
        result = await run_in_threadpool(notifications.handle_outlook, payload, routing_key)
    except PayloadDecodeError as e:
        logger.warning("Rejected Outlook notification: %s", e.message)
        raise HTTPException(status_code=400, detail=e.to_detail())
    return await respond(result, notifications, background_tasks)


@router.api_route("/webhooks/outlook", methods=["GET", "POST"])
async def outlook_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    notifications: NotificationRouter = Depends(get_notification_router),
):
    return await handle_outlook(request, background_tasks, notifications)


@router.api_route("/webhooks/outlook/{routing_key}", methods=["GET", "POST"])
async def outlook_routed_webhook(
    routing_key: str,
    request: Request,
    background_tasks: BackgroundTasks,
    notifications: NotificationRouter = Depends(get_notification_router),
):
    return await handle_outlook(request, background_tasks, notifications, routing_key)
