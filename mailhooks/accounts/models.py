"""
Email account model (OAuth credentials + push subscription state)
"""
from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer
from datetime import datetime, timezone
from mailhooks.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EmailAccountModel(Base):
    """Connected mailbox"""
    __tablename__ = "email_accounts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False, unique=True)
    provider = Column(String, nullable=False)  # gmail, outlook
    # Random per-account salt for the hashed routing key, fixed at creation
    routing_nonce = Column(String, nullable=False)

    # Fernet-encrypted tokens
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)
    is_active = Column(Boolean, default=True, nullable=False)

    # Sync state, written only by the reconciliation engine and the webhook router
    subscription_id = Column(String)  # Graph subscription id / Pub/Sub topic path
    routing_key = Column(String, index=True)
    subscription_expiry = Column(DateTime)  # NULL for Gmail watches
    notification_url = Column(String)
    is_watching = Column(Boolean, default=False, nullable=False)
    last_validated_at = Column(DateTime)
    last_renewed_at = Column(DateTime)
    history_cursor = Column(String)  # Gmail historyId
    last_sync_at = Column(DateTime)
    last_error = Column(Text)
    consecutive_failures = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def has_credential(self) -> bool:
        return bool(self.access_token or self.refresh_token)

    @property
    def has_subscription(self) -> bool:
        return bool(self.subscription_id or self.is_watching)

    def __repr__(self):
        return f"<EmailAccount(id={self.id}, email={self.email}, provider={self.provider})>"
