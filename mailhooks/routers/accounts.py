"""
Connected mailbox API router
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from mailhooks.accounts.models import EmailAccountModel, utcnow
from mailhooks.accounts.schemas import EmailAccountCreate, EmailAccountResponse
from mailhooks.accounts.store import AccountStore
from mailhooks.dependencies import get_account_store, get_token_cipher
from mailhooks.subscriptions.credentials import TokenCipher

logger = logging.getLogger(__name__)
router = APIRouter()


def transform_email_account(model: EmailAccountModel) -> EmailAccountResponse:
    """EmailAccountModel -> EmailAccountResponse (tokens never leave the store)"""
    return EmailAccountResponse(
        id=model.id,
        email=model.email,
        provider=model.provider,
        is_active=model.is_active,
        has_credential=model.has_credential,
        created_at=model.created_at or utcnow(),
    )


# ── POST /api/accounts ──────────────────────────────────────────────────────
@router.post("/accounts", response_model=EmailAccountResponse)
def connect_email_account(
    req: EmailAccountCreate,
    store: AccountStore = Depends(get_account_store),
    cipher: TokenCipher = Depends(get_token_cipher),
):
    """Connect a mailbox, or reconnect an existing one with fresh tokens"""
    existing = store.find_by_email(req.provider, req.email)
    if existing is None and store.find(email=req.email.strip().lower()):
        raise HTTPException(status_code=409, detail=f"{req.email} is connected with another provider")

    account = store.upsert_account(
        email=req.email,
        provider=req.provider,
        access_token=cipher.encrypt(req.access_token) if req.access_token else None,
        refresh_token=cipher.encrypt(req.refresh_token) if req.refresh_token else None,
        token_expires_at=req.token_expires_at,
    )
    logger.info("Connected email account: %s (%s)", account.email, account.provider)
    return transform_email_account(account)


# ── GET /api/accounts ───────────────────────────────────────────────────────
@router.get("/accounts", response_model=List[EmailAccountResponse])
def list_email_accounts(store: AccountStore = Depends(get_account_store)):
    """All connected mailboxes, oldest first"""
    accounts = store.all_accounts()
    logger.info("Returning %d email accounts", len(accounts))
    return [transform_email_account(a) for a in accounts]


# ── GET /api/accounts/{account_id} ──────────────────────────────────────────
@router.get("/accounts/{account_id}", response_model=EmailAccountResponse)
def get_email_account(account_id: str, store: AccountStore = Depends(get_account_store)):
    account = store.get(account_id)
    if account is None:
        logger.warning("Email account not found: %s", account_id)
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return transform_email_account(account)


# ── POST /api/accounts/{account_id}/deactivate ──────────────────────────────
@router.post("/accounts/{account_id}/deactivate", response_model=EmailAccountResponse)
def deactivate_email_account(account_id: str, store: AccountStore = Depends(get_account_store)):
    """Disconnect a mailbox; its subscription is removed on the next reconciliation"""
    account = store.set_active(account_id, False)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    logger.info("Deactivated email account: %s", account.email)
    return transform_email_account(account)
