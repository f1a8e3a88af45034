"""Turn IMAP FETCH responses into :class:`RawMessage` candidates."""

from __future__ import annotations

import logging
from datetime import datetime
from email.parser import BytesHeaderParser
from email.policy import default as email_policy
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any, Dict, List, Optional

from ..models import Channel, RawMessage
from .connection_manager import ImapConnection

logger = logging.getLogger(__name__)

_HEADER_PARSER = BytesHeaderParser(policy=email_policy)


def provider_id_for(uidvalidity: int, uid: int) -> str:
    """UIDs are only stable within one UIDVALIDITY epoch."""
    return f"{uidvalidity}:{uid}"


def _header(headers: Any, name: str) -> Optional[str]:
    try:
        value = headers.get(name)
    except Exception as exc:  # noqa: BLE001 - malformed encoded words
        logger.debug(f"Undecodable {name} header: {exc}")
        return None
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def _envelope_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def to_raw_message(
    account_key: str,
    uidvalidity: int,
    data: Dict[bytes, Any],
) -> Optional[RawMessage]:
    """Build a candidate from one FETCH entry, or ``None`` if it has no UID."""
    uid = data.get(b"UID")
    if uid is None:
        return None
    body = data.get(b"BODY[]") or b""
    if isinstance(body, str):
        body = body.encode("utf-8", errors="replace")

    headers = _HEADER_PARSER.parsebytes(body)
    sender = parseaddr(_header(headers, "From") or "")[1]
    recipient = parseaddr(_header(headers, "To") or "")[1] or None
    internal_date = data.get(b"INTERNALDATE")

    return RawMessage(
        channel=Channel.EMAIL,
        account_key=account_key,
        provider_id=provider_id_for(uidvalidity, int(uid)),
        sender=sender,
        recipient=recipient,
        body=body,
        subject=_header(headers, "Subject"),
        declared_at=internal_date if isinstance(internal_date, datetime) else None,
        envelope_date=_envelope_date(_header(headers, "Date")),
        content_type=_header(headers, "Content-Type"),
        hints={"uid": int(uid)},
    )


class MessageReader:
    """Catch-up fetch of the most recent messages in a folder."""

    def __init__(self, window: int = 20) -> None:
        self.window = window

    def read_recent(self, connection: ImapConnection) -> List[RawMessage]:
        """Blocking; returns candidates oldest first."""
        response = connection.fetch_recent(self.window)
        messages: List[RawMessage] = []
        for seq in sorted(response):
            raw = to_raw_message(connection.account.key, connection.uidvalidity, response[seq])
            if raw is None:
                logger.debug(f"Skipping FETCH entry {seq} without UID")
                continue
            messages.append(raw)
        messages.sort(key=lambda raw: raw.hints["uid"])
        return messages


__all__ = ["MessageReader", "provider_id_for", "to_raw_message"]
