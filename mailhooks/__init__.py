"""
mailhooks: push subscription lifecycle for connected Gmail and Outlook mailboxes.
"""
