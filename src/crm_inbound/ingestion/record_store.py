"""Record-store interface consumed by the resolver and the pipeline.

The pipeline only needs three calls: a case-insensitive exact lookup of a
correspondent by canonical identifier, a message insert, and an append-only
interaction-history write. Two adapters ship with the package: an in-memory
store for tests and embedding, and a SQLite store used by the CLI.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import PersistenceFailure
from .models import Channel, Correspondent, NormalizedMessage, utcnow
from .resolver import canonical_email, canonical_phone

SUMMARY_CHARS = 150

_ACTIONS = {
    Channel.EMAIL: "EMAIL_RECEIVED",
    Channel.SMS: "SMS_RECEIVED",
}


class InteractionEntry(BaseModel):
    """One append-only entry in a correspondent's history."""

    action: str
    timestamp: str = Field(..., description="ISO-8601 message timestamp")
    channel: Channel
    subject: Optional[str] = None
    summary: str = Field(..., description="First characters of the body")
    direction: str = Field(default="received")
    read: bool = Field(default=False)


def summarize(body: str, limit: int = SUMMARY_CHARS) -> str:
    if len(body) <= limit:
        return body
    return body[:limit] + "..."


def build_interaction(message: NormalizedMessage) -> InteractionEntry:
    return InteractionEntry(
        action=_ACTIONS[message.channel],
        timestamp=message.timestamp.isoformat(),
        channel=message.channel,
        subject=message.subject,
        summary=summarize(message.body),
    )


class RecordStore(Protocol):
    async def find_correspondent_by_identifier(
        self, identifier: str, channel: Channel
    ) -> Optional[Correspondent]:
        ...

    async def persist_message(self, message: NormalizedMessage) -> str:
        ...

    async def append_interaction(self, correspondent_id: str, entry: InteractionEntry) -> None:
        ...


class InMemoryRecordStore:
    """Dictionary-backed :class:`RecordStore`."""

    def __init__(self, *, default_country_code: str = "44") -> None:
        self._default_country_code = default_country_code
        self.correspondents: Dict[str, Correspondent] = {}
        self.messages: Dict[str, NormalizedMessage] = {}
        self.interactions: Dict[str, List[InteractionEntry]] = {}
        self._by_email: Dict[str, str] = {}
        self._by_phone: Dict[str, str] = {}
        self._by_dedup_key: Dict[str, str] = {}

    def add_correspondent(self, correspondent: Correspondent) -> None:
        self.correspondents[correspondent.id] = correspondent
        if correspondent.email:
            self._by_email[canonical_email(correspondent.email)] = correspondent.id
        if correspondent.phone:
            phone = canonical_phone(correspondent.phone, self._default_country_code)
            if phone:
                self._by_phone[phone] = correspondent.id

    async def find_correspondent_by_identifier(
        self, identifier: str, channel: Channel
    ) -> Optional[Correspondent]:
        index = self._by_email if channel == Channel.EMAIL else self._by_phone
        correspondent_id = index.get(identifier.lower())
        return self.correspondents.get(correspondent_id) if correspondent_id else None

    async def persist_message(self, message: NormalizedMessage) -> str:
        existing = self._by_dedup_key.get(message.dedup_key)
        if existing is not None:
            return existing
        message_id = str(uuid.uuid4())
        self.messages[message_id] = message
        self._by_dedup_key[message.dedup_key] = message_id
        return message_id

    async def append_interaction(self, correspondent_id: str, entry: InteractionEntry) -> None:
        self.interactions.setdefault(correspondent_id, []).append(entry)


SCHEMA = """
CREATE TABLE IF NOT EXISTS correspondents (
    id TEXT PRIMARY KEY,
    name TEXT,
    email TEXT,
    phone TEXT,
    owner_id TEXT,
    email_canonical TEXT,
    phone_canonical TEXT
);

CREATE INDEX IF NOT EXISTS idx_correspondents_email ON correspondents(email_canonical);
CREATE INDEX IF NOT EXISTS idx_correspondents_phone ON correspondents(phone_canonical);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    correspondent_id TEXT NOT NULL,
    channel TEXT NOT NULL,
    sender TEXT NOT NULL,
    subject TEXT,
    content TEXT NOT NULL,
    provider_id TEXT,
    dedup_key TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'received',
    sent_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    read_status INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_correspondent ON messages(correspondent_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_dedup_key ON messages(dedup_key);

CREATE TABLE IF NOT EXISTS interactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    correspondent_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_interactions_correspondent ON interactions(correspondent_id);
"""


class SqliteRecordStore:
    """SQLite-backed :class:`RecordStore` used by the bundled service."""

    def __init__(self, path: Path, *, default_country_code: str = "44") -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._default_country_code = default_country_code
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    def add_correspondent(self, correspondent: Correspondent) -> None:
        email = canonical_email(correspondent.email) if correspondent.email else None
        phone = (
            canonical_phone(correspondent.phone, self._default_country_code)
            if correspondent.phone
            else None
        )
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO correspondents(id, name, email, phone, owner_id, email_canonical, phone_canonical)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    email=excluded.email,
                    phone=excluded.phone,
                    owner_id=excluded.owner_id,
                    email_canonical=excluded.email_canonical,
                    phone_canonical=excluded.phone_canonical
                """,
                (
                    correspondent.id,
                    correspondent.name,
                    correspondent.email,
                    correspondent.phone,
                    correspondent.owner_id,
                    email,
                    phone or None,
                ),
            )

    async def find_correspondent_by_identifier(
        self, identifier: str, channel: Channel
    ) -> Optional[Correspondent]:
        return await asyncio.to_thread(self._find, identifier, channel)

    async def persist_message(self, message: NormalizedMessage) -> str:
        return await asyncio.to_thread(self._insert_message, message)

    async def append_interaction(self, correspondent_id: str, entry: InteractionEntry) -> None:
        await asyncio.to_thread(self._insert_interaction, correspondent_id, entry)

    def history(self, correspondent_id: str) -> List[InteractionEntry]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM interactions WHERE correspondent_id = ? ORDER BY seq",
                (correspondent_id,),
            ).fetchall()
        return [InteractionEntry.model_validate_json(row[0]) for row in rows]

    def message_count(self, correspondent_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM messages"
        params: tuple = ()
        if correspondent_id is not None:
            query += " WHERE correspondent_id = ?"
            params = (correspondent_id,)
        with self._lock:
            return int(self._conn.execute(query, params).fetchone()[0])

    def _find(self, identifier: str, channel: Channel) -> Optional[Correspondent]:
        column = "email_canonical" if channel == Channel.EMAIL else "phone_canonical"
        with self._lock:
            row = self._conn.execute(
                f"SELECT id, name, email, phone, owner_id FROM correspondents "
                f"WHERE lower({column}) = lower(?) LIMIT 1",
                (identifier,),
            ).fetchone()
        if row is None:
            return None
        return Correspondent(id=row[0], name=row[1], email=row[2], phone=row[3], owner_id=row[4])

    def _insert_message(self, message: NormalizedMessage) -> str:
        """Insert ``message`` once per dedup key and return its row id."""
        message_id = str(uuid.uuid4())
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO messages(
                        id, correspondent_id, channel, sender, subject, content,
                        provider_id, dedup_key, sent_at, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(dedup_key) DO NOTHING
                    """,
                    (
                        message_id,
                        message.correspondent_id,
                        message.channel.value,
                        message.sender,
                        message.subject,
                        message.body,
                        message.provider_id,
                        message.dedup_key,
                        message.timestamp.isoformat(),
                        utcnow().isoformat(),
                    ),
                )
                row = self._conn.execute(
                    "SELECT id FROM messages WHERE dedup_key = ?", (message.dedup_key,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Message insert failed: {exc}") from exc
        return row[0]

    def _insert_interaction(self, correspondent_id: str, entry: InteractionEntry) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO interactions(correspondent_id, payload, created_at) VALUES (?, ?, ?)",
                    (correspondent_id, entry.model_dump_json(), utcnow().isoformat()),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"History append failed: {exc}") from exc


__all__ = [
    "InMemoryRecordStore",
    "InteractionEntry",
    "RecordStore",
    "SUMMARY_CHARS",
    "SqliteRecordStore",
    "build_interaction",
    "summarize",
]
