"""Deduplication store and poll-cursor bookkeeping.

Three independent strategies decide whether a message was already ingested,
checked in this order:

1. provider id exact match within the account scope
2. content hash against the last N hashes for the same correspondent
3. constructed key from ``(sender, rounded timestamp, body prefix)``

A message is new only if all three miss. Records live in a
:class:`~crm_inbound.ingestion.state_store.KeyValueStore` and are mirrored in
memory after :meth:`DedupStore.load`; the in-memory check-and-reserve in
:meth:`DedupStore.claim` never touches storage.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..configuration.settings import DedupSettings
from ..errors import DuplicateDetected
from .models import Channel, DedupRecord, NormalizedMessage, PollCursor, ensure_utc, utcnow
from .state_store import KeyValueStore

logger = logging.getLogger(__name__)

DEDUP_NAMESPACE = "dedup"
CURSOR_NAMESPACE = "cursor"


class DedupStrategy(str, Enum):
    PROVIDER_ID = "provider_id"
    CONTENT_HASH = "content_hash"
    CONSTRUCTED_KEY = "constructed_key"


@dataclass(frozen=True)
class DedupCandidate:
    """Everything the store needs to judge and record one message."""

    scope: str
    channel: Channel
    correspondent_id: str
    dedup_key: str
    content_hash: str
    timestamp: datetime
    provider_id: Optional[str] = None

    @classmethod
    def from_message(cls, message: NormalizedMessage) -> "DedupCandidate":
        return cls(
            scope=message.scope,
            channel=message.channel,
            correspondent_id=message.correspondent_id,
            dedup_key=message.dedup_key,
            content_hash=message.content_hash,
            timestamp=message.timestamp,
            provider_id=message.provider_id,
        )

    @property
    def history_key(self) -> Tuple[str, str]:
        return (self.channel.value, self.correspondent_id)


@dataclass(frozen=True)
class DedupVerdict:
    """Which strategy recognised a duplicate."""

    strategy: DedupStrategy
    key: str

    def as_error(self) -> DuplicateDetected:
        return DuplicateDetected(self.strategy.value, self.key)


def round_timestamp(timestamp: datetime, seconds: int) -> datetime:
    """Floor ``timestamp`` (as UTC) to a multiple of ``seconds``."""
    timestamp = ensure_utc(timestamp)
    epoch = int(timestamp.timestamp())
    return datetime.fromtimestamp(epoch - epoch % seconds, tz=timezone.utc)


def build_dedup_key(
    channel: Channel,
    sender: str,
    timestamp: datetime,
    body: str,
    *,
    rounding_seconds: int = 60,
    prefix_chars: int = 200,
) -> str:
    """Deterministic key for providers without stable ids or framing."""
    rounded = round_timestamp(timestamp, rounding_seconds)
    material = f"{sender}|{rounded.isoformat()}|{body[:prefix_chars]}"
    digest = hashlib.sha1(material.encode("utf-8")).hexdigest()
    return f"{channel.value}_{digest}"


class DedupStore:
    """Persisted set of already-ingested messages."""

    def __init__(self, kv: KeyValueStore, settings: Optional[DedupSettings] = None) -> None:
        self._kv = kv
        self._settings = settings or DedupSettings()
        self._lock = threading.Lock()
        self._loaded = False
        self._records: Dict[str, DedupRecord] = {}
        self._provider_index: Dict[Tuple[str, str], str] = {}
        self._hash_history: Dict[Tuple[str, str], Deque[str]] = {}
        self._pending: Dict[str, DedupCandidate] = {}

    @property
    def settings(self) -> DedupSettings:
        return self._settings

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self) -> int:
        return len(self._records)

    def load(self) -> int:
        """Load persisted records. Must run before the first poll cycle."""
        records: List[DedupRecord] = []
        for key, payload in self._kv.items(DEDUP_NAMESPACE):
            try:
                records.append(DedupRecord.model_validate(payload))
            except ValidationError as exc:
                logger.warning(f"Dropping unreadable dedup record {key}: {exc}")
        records.sort(key=lambda record: record.recorded_at)

        with self._lock:
            self._records.clear()
            self._provider_index.clear()
            self._hash_history.clear()
            for record in records:
                self._index(record)
            self._loaded = True

        logger.info(
            "Dedup store loaded",
            extra={"records": len(records), "providers": len(self._provider_index)},
        )
        return len(records)

    def seen(self, candidate: DedupCandidate) -> Optional[DedupVerdict]:
        """Return the first strategy that recognises ``candidate``, if any."""
        self._require_loaded()
        with self._lock:
            return self._check(candidate)

    def is_duplicate(self, candidate: DedupCandidate) -> bool:
        return self.seen(candidate) is not None

    def claim(self, candidate: DedupCandidate) -> Optional[DedupVerdict]:
        """Atomically check ``candidate`` and reserve it if new.

        Returns the duplicate verdict, or ``None`` when the caller now owns the
        reservation and must follow up with :meth:`record` or :meth:`release`.
        """
        self._require_loaded()
        with self._lock:
            verdict = self._check(candidate)
            if verdict is None:
                self._pending[candidate.dedup_key] = candidate
            return verdict

    def record(self, candidate: DedupCandidate) -> DedupRecord:
        """Mark ``candidate`` as ingested, drop its reservation and persist it.

        The in-memory index is updated before the write, so a failed write
        still prevents a second ingestion within this process.
        """
        self._require_loaded()
        record = DedupRecord(
            dedup_key=candidate.dedup_key,
            scope=candidate.scope,
            channel=candidate.channel,
            correspondent_id=candidate.correspondent_id,
            provider_id=candidate.provider_id,
            content_hash=candidate.content_hash,
            timestamp=candidate.timestamp,
        )
        with self._lock:
            self._index(record)
            self._pending.pop(candidate.dedup_key, None)
        self._kv.put(DEDUP_NAMESPACE, record.dedup_key, record.model_dump(mode="json"))
        return record

    def release(self, candidate: DedupCandidate) -> None:
        with self._lock:
            self._pending.pop(candidate.dedup_key, None)

    def compact(self, now: Optional[datetime] = None) -> int:
        """Drop records ingested longer ago than the retention window."""
        cutoff = ensure_utc(now or utcnow()) - timedelta(days=self._settings.retention_days)
        with self._lock:
            stale = [
                key for key, record in self._records.items() if ensure_utc(record.recorded_at) < cutoff
            ]
            if not stale:
                return 0
            for key in stale:
                del self._records[key]
            survivors = sorted(self._records.values(), key=lambda record: record.recorded_at)
            self._records.clear()
            self._provider_index.clear()
            self._hash_history.clear()
            for record in survivors:
                self._index(record)
        removed = self._kv.delete_many(DEDUP_NAMESPACE, stale)
        logger.info("Compacted dedup records", extra={"removed": len(stale), "deleted_rows": removed})
        return len(stale)

    # -- internals ----------------------------------------------------------

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError("DedupStore.load() must run before messages are checked")

    def _index(self, record: DedupRecord) -> None:
        self._records[record.dedup_key] = record
        if record.provider_id:
            self._provider_index[(record.scope, record.provider_id)] = record.dedup_key
        history = self._hash_history.get((record.channel.value, record.correspondent_id))
        if history is None:
            history = deque(maxlen=self._settings.hash_history_size)
            self._hash_history[(record.channel.value, record.correspondent_id)] = history
        history.append(record.content_hash)

    def _check(self, candidate: DedupCandidate) -> Optional[DedupVerdict]:
        pending = list(self._pending.values())

        if candidate.provider_id:
            if (candidate.scope, candidate.provider_id) in self._provider_index or any(
                item.scope == candidate.scope and item.provider_id == candidate.provider_id
                for item in pending
            ):
                return DedupVerdict(DedupStrategy.PROVIDER_ID, candidate.provider_id)

        history = self._hash_history.get(candidate.history_key)
        if (history is not None and candidate.content_hash in history) or any(
            item.history_key == candidate.history_key and item.content_hash == candidate.content_hash
            for item in pending
        ):
            return DedupVerdict(DedupStrategy.CONTENT_HASH, candidate.content_hash)

        if candidate.dedup_key in self._records or candidate.dedup_key in self._pending:
            return DedupVerdict(DedupStrategy.CONSTRUCTED_KEY, candidate.dedup_key)
        return None


class CursorStore:
    """Per-scope watermark plus recent provider ids."""

    def __init__(self, kv: KeyValueStore, settings: Optional[DedupSettings] = None) -> None:
        self._kv = kv
        self._settings = settings or DedupSettings()
        self._lock = threading.Lock()
        self._cursors: Dict[str, PollCursor] = {}

    def load(self) -> int:
        loaded: Dict[str, PollCursor] = {}
        for scope, payload in self._kv.items(CURSOR_NAMESPACE):
            try:
                loaded[scope] = PollCursor.model_validate(payload)
            except ValidationError as exc:
                logger.warning(f"Resetting unreadable cursor {scope}: {exc}")
        with self._lock:
            self._cursors = loaded
        return len(loaded)

    def cursor(self, scope: str) -> PollCursor:
        """Copy of the cursor for ``scope`` (empty if never advanced)."""
        with self._lock:
            current = self._cursors.get(scope)
            if current is None:
                return PollCursor(scope=scope)
            return current.model_copy(deep=True)

    def scopes(self) -> List[str]:
        with self._lock:
            return sorted(self._cursors)

    def has_seen(self, scope: str, provider_id: Optional[str]) -> bool:
        with self._lock:
            current = self._cursors.get(scope)
            return current is not None and current.has_seen(provider_id)

    def advance(self, scope: str, *, provider_id: Optional[str], timestamp: datetime) -> PollCursor:
        with self._lock:
            current = self._cursors.setdefault(scope, PollCursor(scope=scope))
            current.advance(
                provider_id=provider_id,
                timestamp=timestamp,
                limit=self._settings.recent_id_limit,
            )
            # written under the lock so snapshots land in order
            self._kv.put(CURSOR_NAMESPACE, scope, current.model_dump(mode="json"))
            return current.model_copy(deep=True)

    def compact(self, now: Optional[datetime] = None) -> int:
        cutoff = ensure_utc(now or utcnow()) - timedelta(days=self._settings.retention_days)
        removed = 0
        with self._lock:
            for scope, current in self._cursors.items():
                dropped = current.compact(cutoff)
                if dropped:
                    removed += dropped
                    self._kv.put(CURSOR_NAMESPACE, scope, current.model_dump(mode="json"))
        return removed


__all__ = [
    "CURSOR_NAMESPACE",
    "CursorStore",
    "DEDUP_NAMESPACE",
    "DedupCandidate",
    "DedupStore",
    "DedupStrategy",
    "DedupVerdict",
    "build_dedup_key",
    "round_timestamp",
]
