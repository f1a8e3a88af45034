from __future__ import annotations

from datetime import datetime, timezone

import pytest

from crm_inbound.errors import PersistenceFailure
from crm_inbound.ingestion.models import Channel, Correspondent, NormalizedMessage
from crm_inbound.ingestion.record_store import (
    SUMMARY_CHARS,
    InMemoryRecordStore,
    SqliteRecordStore,
    build_interaction,
    summarize,
)


def make_message(body: str = "Yes please book me in", channel: Channel = Channel.EMAIL) -> NormalizedMessage:
    return NormalizedMessage(
        channel=channel,
        account_key="primary",
        sender="jane.doe@example.com",
        correspondent_id="lead-1",
        body=body,
        subject="Re: Booking" if channel == Channel.EMAIL else None,
        timestamp=datetime(2030, 1, 1, 10, 0, tzinfo=timezone.utc),
        provider_id="42:1",
        content_hash="h",
        dedup_key="email_k",
    )


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteRecordStore(tmp_path / "records.db")
    store.add_correspondent(
        Correspondent(id="lead-1", name="Jane", email="Jane.Doe@Example.com", phone="07700 900123")
    )
    yield store
    store.close()


def test_summarize_truncates_with_ellipsis():
    assert summarize("short") == "short"
    long_body = "a" * 200
    assert summarize(long_body) == "a" * SUMMARY_CHARS + "..."


def test_build_interaction_for_email_and_sms():
    entry = build_interaction(make_message())
    assert entry.action == "EMAIL_RECEIVED"
    assert entry.direction == "received"
    assert entry.read is False
    assert entry.subject == "Re: Booking"
    assert entry.timestamp == "2030-01-01T10:00:00+00:00"
    assert build_interaction(make_message(channel=Channel.SMS)).action == "SMS_RECEIVED"


@pytest.mark.asyncio
async def test_sqlite_lookup_by_canonical_identifier(sqlite_store):
    by_email = await sqlite_store.find_correspondent_by_identifier("jane.doe@example.com", Channel.EMAIL)
    by_phone = await sqlite_store.find_correspondent_by_identifier("447700900123", Channel.SMS)
    assert by_email.id == "lead-1"
    assert by_phone.id == "lead-1"
    assert await sqlite_store.find_correspondent_by_identifier("nobody@example.com", Channel.EMAIL) is None


@pytest.mark.asyncio
async def test_sqlite_persist_and_history_order(sqlite_store):
    message_id = await sqlite_store.persist_message(make_message())
    assert message_id
    await sqlite_store.append_interaction("lead-1", build_interaction(make_message("first reply")))
    await sqlite_store.append_interaction("lead-1", build_interaction(make_message("second reply")))
    history = sqlite_store.history("lead-1")
    assert [entry.summary for entry in history] == ["first reply", "second reply"]
    assert sqlite_store.message_count() == 1
    assert sqlite_store.message_count("lead-2") == 0


@pytest.mark.asyncio
async def test_sqlite_persist_is_idempotent_per_dedup_key(sqlite_store):
    first = await sqlite_store.persist_message(make_message())
    again = await sqlite_store.persist_message(make_message())
    assert again == first
    assert sqlite_store.message_count() == 1


@pytest.mark.asyncio
async def test_memory_persist_is_idempotent_per_dedup_key():
    store = InMemoryRecordStore()
    first = await store.persist_message(make_message())
    assert await store.persist_message(make_message()) == first
    assert list(store.messages) == [first]


@pytest.mark.asyncio
async def test_sqlite_write_errors_become_persistence_failures(tmp_path):
    store = SqliteRecordStore(tmp_path / "records.db")
    store.close()
    with pytest.raises(PersistenceFailure):
        await store.persist_message(make_message())
    with pytest.raises(PersistenceFailure):
        await store.append_interaction("lead-1", build_interaction(make_message()))
