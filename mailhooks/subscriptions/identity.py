"""
Routing keys: the value registered with a provider (Graph ``clientState``,
Gmail Pub/Sub topic/subscription name) that lets an inbound notification be
routed back to the account owning it.

The preferred key is the normalized local part of the email address. When
that is empty or already held by another account of the same provider, a
hashed key derived from the account id and its per-account nonce is used
instead. Both forms are pure functions of stored account fields, so deriving
twice yields the same key.
"""
from __future__ import annotations

import hashlib
import re
from collections import defaultdict
from typing import Iterable, List, Optional

from mailhooks.accounts.models import EmailAccountModel
from mailhooks.errors import CollisionError

GMAIL_PREFIX = "gmail-sync-"
GMAIL_SUBSCRIPTION_SUFFIX = "-webhook"
HASH_LENGTH = 12

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_GMAIL_SUBSCRIPTION = re.compile(r"(?:^|/)gmail-sync-([a-z0-9]+)-webhook$")


def email_prefix(email: str) -> str:
    """``"John.Doe+shop@x.com"`` -> ``"johndoeshop"``"""
    local_part = (email or "").split("@", 1)[0]
    return _NON_ALNUM.sub("", local_part.lower())


def hashed_key(account: EmailAccountModel) -> str:
    data = f"{email_prefix(account.email)}-{account.id}-{account.routing_nonce}"
    return hashlib.sha256(data.encode()).hexdigest()[:HASH_LENGTH]


def derive_routing_key(account: EmailAccountModel, taken: Iterable[str] = ()) -> str:
    """Prefix form unless it is empty or taken, then the hashed form."""
    taken = set(taken)
    prefix = email_prefix(account.email)
    if prefix and prefix not in taken:
        return prefix
    fallback = hashed_key(account)
    if fallback in taken:
        raise CollisionError(
            f"hashed routing key {fallback} is already in use",
            account_id=account.id,
            provider=account.provider,
        )
    return fallback


def assign_routing_key(account: EmailAccountModel, taken: Iterable[str] = ()) -> str:
    """Keep a stored key for the life of the account; derive one otherwise."""
    if account.routing_key:
        return account.routing_key
    return derive_routing_key(account, taken)


def find_collisions(accounts: Iterable[EmailAccountModel]) -> List[EmailAccountModel]:
    """Later-created accounts sharing a routing key with an earlier one.

    Only active, watching accounts count; keys are compared per provider and
    the first-created holder keeps its key.
    """
    groups: dict[tuple[str, str], list[EmailAccountModel]] = defaultdict(list)
    for account in accounts:
        if account.is_active and account.is_watching and account.routing_key:
            groups[(account.provider, account.routing_key)].append(account)

    losers = []
    for holders in groups.values():
        holders.sort(key=lambda a: (a.created_at, a.id))
        losers.extend(holders[1:])
    return losers


# ---------------------------------------------------------------------------
# Gmail Pub/Sub naming
# ---------------------------------------------------------------------------

def gmail_topic_name(routing_key: str) -> str:
    return f"{GMAIL_PREFIX}{routing_key}"


def gmail_subscription_name(routing_key: str) -> str:
    return f"{GMAIL_PREFIX}{routing_key}{GMAIL_SUBSCRIPTION_SUFFIX}"


def key_from_gmail_subscription(subscription: Optional[str]) -> Optional[str]:
    """``projects/p/subscriptions/gmail-sync-abc-webhook`` -> ``"abc"``"""
    if not subscription:
        return None
    match = _GMAIL_SUBSCRIPTION.search(subscription)
    return match.group(1) if match else None
