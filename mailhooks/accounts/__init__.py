"""
Connected mailbox accounts and their persistence
"""
from mailhooks.accounts.models import EmailAccountModel  # noqa: F401
