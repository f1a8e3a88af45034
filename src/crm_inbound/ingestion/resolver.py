"""Sender identifier canonicalisation and correspondent lookup."""

from __future__ import annotations

import logging
import re
from email.utils import parseaddr
from typing import TYPE_CHECKING, Optional

from .models import Channel, Correspondent

if TYPE_CHECKING:
    from .record_store import RecordStore

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def canonical_email(value: str) -> str:
    """Lower-cased bare address (``"Jo <JO@X.COM>"`` -> ``"jo@x.com"``)."""
    _, address = parseaddr(value or "")
    address = (address or value or "").strip()
    return address.lower()


def canonical_phone(value: str, default_country_code: str = "44") -> str:
    """Digits-only international form.

    ``+44 7700 900123``, ``0044 7700 900123`` and ``07700 900123`` all map to
    ``447700900123``. Numbers already carrying a country code are kept.
    """
    raw = (value or "").strip()
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return ""
    if raw.startswith("+"):
        return digits
    if digits.startswith("00"):
        return digits[2:]
    if digits.startswith("0"):
        return default_country_code + digits[1:]
    return digits


def canonical_identifier(value: str, channel: Channel, default_country_code: str = "44") -> str:
    if channel == Channel.EMAIL:
        return canonical_email(value)
    return canonical_phone(value, default_country_code)


class CorrespondentResolver:
    """Map a sender identifier to an existing correspondent record.

    Exact match on the canonical identifier only. A miss returns ``None``; the
    resolver never creates records.
    """

    def __init__(self, record_store: "RecordStore", *, default_country_code: str = "44") -> None:
        self._record_store = record_store
        self._default_country_code = default_country_code

    def canonicalize(self, identifier: str, channel: Channel) -> str:
        return canonical_identifier(identifier, channel, self._default_country_code)

    async def resolve(self, identifier: str, channel: Channel) -> Optional[Correspondent]:
        canonical = self.canonicalize(identifier, channel)
        if not canonical:
            return None
        correspondent = await self._record_store.find_correspondent_by_identifier(canonical, channel)
        if correspondent is None:
            logger.debug("No correspondent for identifier", extra={"channel": channel.value})
        return correspondent


__all__ = [
    "CorrespondentResolver",
    "canonical_email",
    "canonical_identifier",
    "canonical_phone",
]
