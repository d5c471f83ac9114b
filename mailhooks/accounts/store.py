"""
Account store: the persistence seam the subscription core talks to.

Every write to sync state goes through ``update_sync_state`` which issues a
single ``UPDATE ... WHERE`` statement, so a precondition check and the write
happen atomically in the database.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from mailhooks.accounts.models import EmailAccountModel, utcnow

logger = logging.getLogger(__name__)

SYNC_STATE_FIELDS = frozenset({
    "subscription_id",
    "routing_key",
    "subscription_expiry",
    "notification_url",
    "is_watching",
    "last_validated_at",
    "last_renewed_at",
    "history_cursor",
    "last_sync_at",
    "last_error",
    "consecutive_failures",
})

_CLEARED_STATE = {
    "subscription_id": None,
    "subscription_expiry": None,
    "notification_url": None,
    "is_watching": False,
    "last_renewed_at": None,
}


class AccountStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ── reads ────────────────────────────────────────────────────────────

    def get(self, account_id: str) -> Optional[EmailAccountModel]:
        with self._session_factory() as session:
            return session.get(EmailAccountModel, account_id)

    def find(self, **filters: Any) -> List[EmailAccountModel]:
        """Accounts matching every ``column=value`` filter, oldest first."""
        with self._session_factory() as session:
            query = session.query(EmailAccountModel).filter_by(**filters)
            return query.order_by(EmailAccountModel.created_at, EmailAccountModel.id).all()

    def find_by_routing_key(self, provider: str, routing_key: str) -> Optional[EmailAccountModel]:
        with self._session_factory() as session:
            return (
                session.query(EmailAccountModel)
                .filter(
                    EmailAccountModel.provider == provider,
                    EmailAccountModel.routing_key == routing_key,
                )
                .order_by(EmailAccountModel.is_active.desc(), EmailAccountModel.created_at)
                .first()
            )

    def find_by_email(self, provider: str, email: str) -> Optional[EmailAccountModel]:
        with self._session_factory() as session:
            return (
                session.query(EmailAccountModel)
                .filter(
                    EmailAccountModel.provider == provider,
                    EmailAccountModel.email == email.strip().lower(),
                )
                .first()
            )

    def routing_keys_in_use(self, provider: str, exclude_id: Optional[str] = None) -> set[str]:
        """Routing keys held by active accounts of one provider.

        An inactive account still holding a subscription keeps its key
        reserved until cleanup has removed the remote registration.
        """
        with self._session_factory() as session:
            query = session.query(EmailAccountModel.routing_key).filter(
                EmailAccountModel.provider == provider,
                EmailAccountModel.is_active.is_(True) | EmailAccountModel.subscription_id.isnot(None),
                EmailAccountModel.routing_key.isnot(None),
            )
            if exclude_id:
                query = query.filter(EmailAccountModel.id != exclude_id)
            return {row[0] for row in query.all()}

    def accounts_with_subscription(self) -> List[EmailAccountModel]:
        with self._session_factory() as session:
            return (
                session.query(EmailAccountModel)
                .filter(
                    (EmailAccountModel.subscription_id.isnot(None))
                    | (EmailAccountModel.is_watching.is_(True))
                )
                .order_by(EmailAccountModel.created_at)
                .all()
            )

    # ── conditional writes ───────────────────────────────────────────────

    def update_sync_state(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        precondition: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Write sync-state ``fields`` iff every ``precondition`` column still holds.

        A precondition value of ``None`` means the column must be NULL.
        Returns whether a row was updated.
        """
        unknown = set(fields) - SYNC_STATE_FIELDS
        if unknown:
            raise ValueError(f"not sync-state fields: {sorted(unknown)}")

        stmt = update(EmailAccountModel).where(EmailAccountModel.id == account_id)
        for column_name, expected in (precondition or {}).items():
            column = getattr(EmailAccountModel, column_name)
            stmt = stmt.where(column.is_(None) if expected is None else column == expected)
        stmt = stmt.values(**dict(fields), updated_at=utcnow())

        with self._session_factory() as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            matched = result.rowcount == 1

        if not matched:
            logger.info("Conditional sync-state update skipped for %s (precondition %s)", account_id, precondition)
        return matched

    def clear_sync_state(
        self,
        account_id: str,
        precondition: Optional[Mapping[str, Any]] = None,
        drop_routing_key: bool = False,
    ) -> bool:
        fields = dict(_CLEARED_STATE)
        if drop_routing_key:
            fields["routing_key"] = None
        return self.update_sync_state(account_id, fields, precondition)

    def advance_cursor(self, account_id: str, history_id: str) -> bool:
        """Move the Gmail cursor forward to ``history_id``; never backwards."""
        for _ in range(3):
            account = self.get(account_id)
            if account is None:
                return False
            current = account.history_cursor
            if current is not None and _as_int(current) >= _as_int(history_id):
                return False
            if self.update_sync_state(
                account_id,
                {"history_cursor": history_id, "last_sync_at": utcnow()},
                precondition={"history_cursor": current},
            ):
                return True
        return False

    def record_failure(self, account_id: str, message: str) -> int:
        """Bump the consecutive failure counter; returns the new count."""
        stmt = (
            update(EmailAccountModel)
            .where(EmailAccountModel.id == account_id)
            .values(
                consecutive_failures=EmailAccountModel.consecutive_failures + 1,
                last_error=message[:2000],
                updated_at=utcnow(),
            )
        )
        with self._session_factory() as session:
            session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
            account = session.get(EmailAccountModel, account_id)
            return account.consecutive_failures if account else 0

    def record_success(self, account_id: str) -> None:
        self.update_sync_state(account_id, {"consecutive_failures": 0, "last_error": None})

    # ── credentials and lifecycle ────────────────────────────────────────

    def update_credentials(
        self,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        values: dict[str, Any] = {
            "access_token": access_token,
            "token_expires_at": expires_at,
            "updated_at": utcnow(),
        }
        # Providers only sometimes rotate the refresh token
        if refresh_token:
            values["refresh_token"] = refresh_token
        stmt = update(EmailAccountModel).where(EmailAccountModel.id == account_id).values(**values)
        with self._session_factory() as session:
            session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()

    def upsert_account(
        self,
        email: str,
        provider: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        user_id: str = "default_user",
    ) -> EmailAccountModel:
        """Connect a mailbox, or reconnect and reactivate an existing one."""
        email = email.strip().lower()
        with self._session_factory() as session:
            existing = session.query(EmailAccountModel).filter(EmailAccountModel.email == email).first()
            if existing:
                existing.access_token = access_token
                existing.refresh_token = refresh_token
                existing.token_expires_at = token_expires_at
                existing.is_active = True
                existing.consecutive_failures = 0
                existing.last_error = None
                session.commit()
                return existing

            account = EmailAccountModel(
                id=str(uuid.uuid4()),
                user_id=user_id,
                email=email,
                provider=provider,
                routing_nonce=secrets.token_hex(8),
                access_token=access_token,
                refresh_token=refresh_token,
                token_expires_at=token_expires_at,
                is_active=True,
            )
            session.add(account)
            session.commit()
            logger.info("Created email account: %s (%s)", email, provider)
            return account

    def set_active(self, account_id: str, active: bool) -> Optional[EmailAccountModel]:
        with self._session_factory() as session:
            account = session.get(EmailAccountModel, account_id)
            if account is None:
                return None
            account.is_active = active
            session.commit()
            return account

    def all_accounts(self, ids: Optional[Iterable[str]] = None) -> List[EmailAccountModel]:
        with self._session_factory() as session:
            query = session.query(EmailAccountModel)
            if ids is not None:
                query = query.filter(EmailAccountModel.id.in_(list(ids)))
            return query.order_by(EmailAccountModel.created_at, EmailAccountModel.id).all()


def _as_int(history_id: str) -> int:
    try:
        return int(history_id)
    except (TypeError, ValueError):
        return -1
