"""Inbound communication ingestion for the CRM.

Pulls replies from IMAP mailboxes and the SMS provider into the record store,
deduplicated across restarts and overlapping scans.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
