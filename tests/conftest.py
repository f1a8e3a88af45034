"""Shared fixtures for the ingestion test-suite."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from crm_inbound.configuration.settings import DedupSettings, IdentitySettings
from crm_inbound.ingestion.dedup import CursorStore, DedupStore
from crm_inbound.ingestion.events import EventEmitter, InMemoryEventBus
from crm_inbound.ingestion.models import Correspondent
from crm_inbound.ingestion.pipeline import IngestionPipeline
from crm_inbound.ingestion.record_store import InMemoryRecordStore
from crm_inbound.ingestion.state_store import MemoryKeyValueStore

OWN_ADDRESS = "bookings@ourcrm.test"


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    store.add_correspondent(
        Correspondent(
            id="lead-1",
            name="Jane Doe",
            email="Jane.Doe@example.com",
            phone="07700 900123",
            owner_id="booker-7",
        )
    )
    store.add_correspondent(
        Correspondent(id="lead-2", name="Sam Smith", email="sam@example.org", phone="+44 7700 900456")
    )
    return store


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def pipeline_factory(kv, record_store, bus) -> Callable[..., IngestionPipeline]:
    def _build(**overrides: Any) -> IngestionPipeline:
        settings = overrides.pop("dedup_settings", DedupSettings())
        store = overrides.pop("kv", kv)
        return IngestionPipeline(
            record_store=overrides.pop("record_store", record_store),
            dedup=DedupStore(store, settings),
            cursors=CursorStore(store, settings),
            emitter=overrides.pop("emitter", EventEmitter(bus.publish)),
            identity=IdentitySettings(own_identifiers=[OWN_ADDRESS]),
            **overrides,
        )

    return _build


@pytest.fixture
def pipeline(pipeline_factory) -> IngestionPipeline:
    built = pipeline_factory()
    built.load()
    return built


@pytest.fixture
def make_email() -> Callable[..., bytes]:
    def _build(
        *,
        sender: str = "Jane Doe <jane.doe@example.com>",
        to: str = OWN_ADDRESS,
        subject: str = "Re: Your booking",
        body: str = "Hello, yes please book me in.",
        html: Optional[str] = None,
        date: str = "Tue, 01 Jan 2030 10:00:00 +0000",
    ) -> bytes:
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = date
        msg.set_content(body)
        if html is not None:
            msg.add_alternative(html, subtype="html")
        return bytes(msg)

    return _build


class StubImapClient:
    """Blocking IMAPClient look-alike driven by the tests."""

    def __init__(self, messages: Optional[List[Tuple[int, datetime, bytes]]] = None) -> None:
        self.messages: List[Tuple[int, datetime, bytes]] = list(messages or [])
        self.idle_responses: List[List[Any]] = []
        self.use_uid = True
        self.normalise_times = True
        self.login_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.logged_in = False
        self.logged_out = False
        self.was_shutdown = False
        self.readonly: Optional[bool] = None
        self.fetch_ranges: List[str] = []
        self.idle_done_calls = 0

    def add_message(self, uid: int, body: bytes, internal_date: Optional[datetime] = None) -> None:
        self.messages.append((uid, internal_date or datetime.now(timezone.utc), body))

    def login(self, username: str, password: str) -> bytes:
        if self.login_error is not None:
            raise self.login_error
        self.logged_in = True
        return b"OK"

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self.readonly = readonly
        return {b"UIDVALIDITY": 42, b"EXISTS": len(self.messages)}

    def folder_status(self, folder: str, what: Any = None) -> Dict[bytes, int]:
        if self.status_error is not None:
            raise self.status_error
        return {b"MESSAGES": len(self.messages)}

    def fetch(self, messages: str, data: Any) -> Dict[int, Dict[bytes, Any]]:
        assert self.use_uid is False, "catch-up fetch must use sequence numbers"
        if self.fetch_error is not None:
            raise self.fetch_error
        self.fetch_ranges.append(messages)
        start, end = (int(part) for part in messages.split(":"))
        response = {}
        for seq in range(start, end + 1):
            uid, internal_date, body = self.messages[seq - 1]
            response[seq] = {b"SEQ": seq, b"UID": uid, b"INTERNALDATE": internal_date, b"BODY[]": body}
        return response

    def idle(self) -> None:
        return None

    def idle_check(self, timeout: Optional[float] = None) -> List[Any]:
        if self.idle_responses:
            return self.idle_responses.pop(0)
        time.sleep(min(timeout or 0.01, 0.01))
        return []

    def idle_done(self) -> Tuple[bytes, List[Any]]:
        self.idle_done_calls += 1
        return (b"OK", [])

    def logout(self) -> bytes:
        self.logged_out = True
        return b"BYE"

    def shutdown(self) -> None:
        self.was_shutdown = True


@pytest.fixture
def stub_client_class():
    return StubImapClient


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_for_condition():
    return wait_until
