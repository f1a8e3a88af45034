"""Inbound versus outbound classification.

The SMS provider does not reliably say which way a message went, so the rules
below are an explicit heuristic. Outbound messages from this system always
leave from an alphanumeric sender name, which is what the final digit-count
fallback relies on.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional

from ..configuration.settings import IdentitySettings
from .models import Channel, RawMessage
from .resolver import canonical_email

INBOUND_TYPES = frozenset({"received", "inbound", "mo"})
OUTBOUND_TYPES = frozenset({"sent", "mt", "outbound"})
INBOUND_DIRECTIONS = frozenset({"inbound", "mo"})
OUTBOUND_DIRECTIONS = frozenset({"outbound", "mt"})
OUTBOUND_STATUS_TYPES = frozenset({"accepted", "sent", "delivered", "submitted"})
DEFAULT_MIN_SENDER_DIGITS = 7

_NON_DIGITS = re.compile(r"\D")


def _lower(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


def _status_type(hints: Mapping[str, Any]) -> str:
    status = hints.get("status")
    if isinstance(status, Mapping):
        return _lower(status.get("type"))
    return ""


def is_inbound_sms(
    hints: Mapping[str, Any],
    sender: Optional[str],
    body: Optional[str],
    *,
    min_sender_digits: int = DEFAULT_MIN_SENDER_DIGITS,
) -> bool:
    """Decide whether an SMS payload is a reply sent to us.

    Rules, first match wins:

    * ``type`` in received/inbound/mo -> inbound
    * ``direction`` inbound/mo or containing "in" -> inbound
    * ``type`` in sent/mt/outbound -> outbound
    * ``status.type`` accepted/sent/delivered/submitted -> outbound
    * ``direction`` outbound/mt or containing "out" -> outbound
    * a recipient is present, there is text and the sender is not numeric -> outbound
    * sender has at least ``min_sender_digits`` digits and there is text -> inbound
    * otherwise outbound
    """
    msg_type = _lower(hints.get("type") or hints.get("messageType"))
    direction = _lower(hints.get("direction") or hints.get("messageDirection"))

    if msg_type in INBOUND_TYPES:
        return True
    if direction in INBOUND_DIRECTIONS or "in" in direction:
        return True
    if msg_type in OUTBOUND_TYPES:
        return False
    if _status_type(hints) in OUTBOUND_STATUS_TYPES:
        return False
    if direction in OUTBOUND_DIRECTIONS or "out" in direction:
        return False

    has_text = bool(body and str(body).strip())
    sender_digits = _NON_DIGITS.sub("", sender or "")
    sender_looks_numeric = len(sender_digits) >= min_sender_digits
    if hints.get("to") and has_text and not sender_looks_numeric:
        return False
    return sender_looks_numeric and has_text


def is_inbound_email(sender: Optional[str], own_identifiers: Iterable[str]) -> bool:
    """Mail is inbound unless it was sent from one of our own addresses."""
    address = canonical_email(sender or "")
    if not address:
        return False
    own = {canonical_email(item) for item in own_identifiers if item}
    return address not in own


def classify(
    raw: RawMessage,
    identity: Optional[IdentitySettings] = None,
    *,
    own_identifiers: Optional[Iterable[str]] = None,
) -> bool:
    """Return ``True`` when ``raw`` is a genuinely inbound message."""
    identity = identity or IdentitySettings()
    if raw.channel == Channel.EMAIL:
        identifiers = own_identifiers if own_identifiers is not None else identity.own_identifiers
        return is_inbound_email(raw.sender, identifiers)

    body = raw.body.decode("utf-8", errors="replace") if isinstance(raw.body, bytes) else raw.body
    hints = dict(raw.hints)
    if raw.recipient and "to" not in hints:
        hints["to"] = raw.recipient
    return is_inbound_sms(hints, raw.sender, body, min_sender_digits=identity.min_sender_digits)


__all__ = [
    "DEFAULT_MIN_SENDER_DIGITS",
    "classify",
    "is_inbound_email",
    "is_inbound_sms",
]
