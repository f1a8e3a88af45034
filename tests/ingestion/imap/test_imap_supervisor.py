"""State-machine tests for the IMAP supervisor, driven by a stub client."""

from __future__ import annotations

from typing import List

import pytest
from imapclient.exceptions import LoginError

from crm_inbound.configuration.settings import ImapAccountSettings, ImapTimingSettings
from crm_inbound.errors import ChannelConnectionError, ChannelDisabled
from crm_inbound.ingestion.imap.connection_manager import ImapConnection
from crm_inbound.ingestion.imap.supervisor import ImapSupervisor, SupervisorState

ACCOUNT = ImapAccountSettings(key="primary", username="bookings@ourcrm.test", password="app-password")


def fast_timing(**overrides) -> ImapTimingSettings:
    values = dict(
        idle_timeout_seconds=0.01,
        heartbeat_interval_seconds=0.05,
        backup_scan_interval_seconds=60,
        max_reconnect_attempts=3,
        reconnect_base_delay_seconds=0,
        reconnect_max_delay_seconds=0,
        rate_limited_delay_seconds=0,
        auth_failure_delay_seconds=0,
        shutdown_grace_seconds=1,
    )
    values.update(overrides)
    return ImapTimingSettings(**values)


class ClientQueue:
    """Hands out a fresh stub client per connection attempt."""

    def __init__(self, client_class, prepared=None) -> None:
        self.client_class = client_class
        self.prepared: List = list(prepared or [])
        self.created: List = []

    def __call__(self, account: ImapAccountSettings) -> ImapConnection:
        def make_client():
            client = self.prepared.pop(0) if self.prepared else self.client_class()
            self.created.append(client)
            return client

        return ImapConnection(account, client_factory=make_client)


@pytest.mark.asyncio
async def test_catch_up_scan_on_connect(pipeline, record_store, stub_client_class, make_email, wait_for_condition):
    client = stub_client_class()
    client.add_message(1, make_email(body="First reply about the booking"))
    client.add_message(2, make_email(body="Second reply with more detail"))
    supervisor = ImapSupervisor(
        ACCOUNT, pipeline, timing=fast_timing(), connection_factory=ClientQueue(stub_client_class, [client])
    )

    await supervisor.start()
    try:
        await wait_for_condition(lambda: len(record_store.messages) == 2)
        await wait_for_condition(lambda: supervisor.state == SupervisorState.IDLE_WAITING)
        assert client.readonly is True
        assert supervisor.last_report.ingested == 2
        assert pipeline.cursor("email:primary").has_seen("42:2")
    finally:
        await supervisor.stop()

    assert supervisor.state == SupervisorState.STOPPED
    assert client.logged_out


@pytest.mark.asyncio
async def test_exists_push_triggers_scan(pipeline, record_store, stub_client_class, make_email, wait_for_condition):
    client = stub_client_class()
    supervisor = ImapSupervisor(
        ACCOUNT, pipeline, timing=fast_timing(), connection_factory=ClientQueue(stub_client_class, [client])
    )
    await supervisor.start()
    try:
        await wait_for_condition(lambda: supervisor.state == SupervisorState.IDLE_WAITING)
        assert record_store.messages == {}

        client.add_message(5, make_email(body="Just replying to confirm"))
        client.idle_responses.append([(1, b"EXISTS")])
        await wait_for_condition(lambda: len(record_store.messages) == 1)
        message = next(iter(record_store.messages.values()))
        assert message.provider_id == "42:5"
        assert message.body == "Just replying to confirm"
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_rescans_do_not_duplicate(pipeline, record_store, stub_client_class, make_email, wait_for_condition):
    client = stub_client_class()
    client.add_message(1, make_email(body="Only one reply here"))
    supervisor = ImapSupervisor(
        ACCOUNT, pipeline, timing=fast_timing(), connection_factory=ClientQueue(stub_client_class, [client])
    )
    await supervisor.start()
    try:
        await wait_for_condition(lambda: supervisor.state == SupervisorState.IDLE_WAITING)
        report = await supervisor.scan("manual")
        assert report.fetched == 1
        assert report.ingested == 0
        assert len(record_store.messages) == 1
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_backup_scan_picks_up_missed_mail(
    pipeline, record_store, stub_client_class, make_email, wait_for_condition
):
    client = stub_client_class()
    supervisor = ImapSupervisor(
        ACCOUNT,
        pipeline,
        timing=fast_timing(backup_scan_interval_seconds=0.05),
        connection_factory=ClientQueue(stub_client_class, [client]),
    )
    await supervisor.start()
    try:
        await wait_for_condition(lambda: supervisor.state == SupervisorState.IDLE_WAITING)
        client.add_message(9, make_email(body="Missed by IDLE entirely"))
        await wait_for_condition(lambda: len(record_store.messages) == 1)
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_heartbeat_failure_reconnects(pipeline, stub_client_class, wait_for_condition):
    clients = ClientQueue(stub_client_class)
    supervisor = ImapSupervisor(ACCOUNT, pipeline, timing=fast_timing(), connection_factory=clients)
    await supervisor.start()
    try:
        await wait_for_condition(lambda: supervisor.state == SupervisorState.IDLE_WAITING)
        first = clients.created[0]
        first.status_error = OSError("socket closed by server")

        await wait_for_condition(lambda: len(clients.created) >= 2)
        await wait_for_condition(lambda: supervisor.state == SupervisorState.IDLE_WAITING)
        assert first.logged_out
        await wait_for_condition(lambda: supervisor.attempts == 0)
        assert supervisor.connect_calls >= 2
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_repeated_failures_disable_supervisor(pipeline):
    calls = []

    def refuse(account):
        def make_client():
            calls.append(1)
            raise ConnectionRefusedError("connection refused")

        return ImapConnection(account, client_factory=make_client)

    supervisor = ImapSupervisor(ACCOUNT, pipeline, timing=fast_timing(), connection_factory=refuse)
    await supervisor.start()
    try:
        assert await supervisor.wait_disabled(timeout=3)
        assert supervisor.state == SupervisorState.DISABLED
        assert supervisor.connect_calls == 3
        assert len(calls) == 3
        assert "connection refused" in supervisor.last_error
    finally:
        await supervisor.stop()

    assert supervisor.state == SupervisorState.DISABLED
    with pytest.raises(ChannelDisabled):
        await supervisor.start()


@pytest.mark.asyncio
async def test_login_then_failing_fetch_still_disables(pipeline, stub_client_class, make_email):
    def broken_fetch_client():
        client = stub_client_class()
        client.add_message(1, make_email(body="Never fetched successfully"))
        client.fetch_error = OSError("connection reset during FETCH")
        return client

    clients = ClientQueue(stub_client_class, [broken_fetch_client() for _ in range(3)])
    supervisor = ImapSupervisor(
        ACCOUNT,
        pipeline,
        timing=fast_timing(heartbeat_interval_seconds=60),
        connection_factory=clients,
    )
    await supervisor.start()
    try:
        assert await supervisor.wait_disabled(timeout=3)
        assert supervisor.connect_calls == 3
        assert all(client.logged_in for client in clients.created)
        assert "FETCH" in supervisor.last_error
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_authentication_failures_also_count(pipeline, stub_client_class):
    def rejecting_client():
        client = stub_client_class()
        client.login_error = LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        return client

    clients = ClientQueue(stub_client_class, [rejecting_client() for _ in range(3)])
    supervisor = ImapSupervisor(ACCOUNT, pipeline, timing=fast_timing(), connection_factory=clients)
    await supervisor.start()
    try:
        assert await supervisor.wait_disabled(timeout=3)
        assert supervisor.connect_calls == 3
        assert supervisor.last_error.startswith("AuthenticationFailed")
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_stop_during_backoff_is_prompt(pipeline, wait_for_condition):
    def refuse(account):
        def make_client():
            raise ConnectionRefusedError("connection refused")

        return ImapConnection(account, client_factory=make_client)

    supervisor = ImapSupervisor(
        ACCOUNT,
        pipeline,
        timing=fast_timing(reconnect_base_delay_seconds=30, reconnect_max_delay_seconds=30),
        connection_factory=refuse,
    )
    await supervisor.start()
    await wait_for_condition(lambda: supervisor.attempts == 1)
    await supervisor.stop(grace=1)
    assert supervisor.state == SupervisorState.STOPPED
    assert supervisor.connect_calls == 1
    assert not supervisor.is_running


@pytest.mark.asyncio
async def test_scan_requires_connection(pipeline):
    supervisor = ImapSupervisor(ACCOUNT, pipeline, timing=fast_timing())
    with pytest.raises(ChannelConnectionError):
        await supervisor.scan("manual")
    assert supervisor.status()["state"] == "disconnected"
