"""Connection supervisor for one IMAP mailbox.

State machine::

    DISCONNECTED -> CONNECTING -> AUTHENTICATED -> IDLE_WAITING <-> IDLE_WOKEN
          ^              |              |                 |
          +--------------+--------------+-----------------+   (any error)

Entering AUTHENTICATED runs a catch-up scan of the last K messages. An
``EXISTS`` push during IDLE runs the same scan. A heartbeat STATUS call and
the IDLE loop share the session; whichever fails first tears the session down
and schedules a reconnect. A backup scan runs on its own long interval for
the supervisor's whole lifetime. Reconnects are bounded: once
``max_reconnect_attempts`` consecutive failures have happened the supervisor
moves to DISABLED and stays there until restarted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ...configuration.settings import ImapAccountSettings, ImapTimingSettings
from ...errors import ChannelConnectionError, ChannelDisabled
from ..models import BatchReport, Channel, scope_for, utcnow
from ..pipeline import IngestionPipeline
from .connection_manager import ImapConnection, ReconnectPolicy, classify_failure
from .message_reader import MessageReader

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[ImapAccountSettings], ImapConnection]


class SupervisorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    IDLE_WAITING = "idle_waiting"
    IDLE_WOKEN = "idle_woken"
    STOPPED = "stopped"
    DISABLED = "disabled"


CONNECTED_STATES = frozenset(
    {SupervisorState.AUTHENTICATED, SupervisorState.IDLE_WAITING, SupervisorState.IDLE_WOKEN}
)


class ImapSupervisor:
    """Own one long-lived mailbox session and feed new mail to the pipeline."""

    def __init__(
        self,
        account: ImapAccountSettings,
        pipeline: IngestionPipeline,
        *,
        timing: Optional[ImapTimingSettings] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        reader: Optional[MessageReader] = None,
    ) -> None:
        self.account = account
        self.scope = scope_for(Channel.EMAIL, account.key)
        self._pipeline = pipeline
        self._timing = timing or ImapTimingSettings()
        self._policy = ReconnectPolicy.from_settings(self._timing)
        self._connection_factory = connection_factory or self._default_connection
        self._reader = reader or MessageReader(self._timing.catch_up_window)

        self.state = SupervisorState.DISCONNECTED
        self.attempts = 0
        self.connect_calls = 0
        self.last_error: Optional[str] = None
        self.last_report: Optional[BatchReport] = None
        self.last_scan_at: Optional[datetime] = None

        self._connection: Optional[ImapConnection] = None
        self._stop_event = asyncio.Event()
        self._disabled_event = asyncio.Event()
        self._scan_lock = asyncio.Lock()
        self._main_task: Optional[asyncio.Task[None]] = None
        self._backup_task: Optional[asyncio.Task[None]] = None

    # -- lifecycle ----------------------------------------------------------

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def is_running(self) -> bool:
        return self._main_task is not None and not self._main_task.done()

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError(f"IMAP supervisor {self.account.key} already running")
        if self.state == SupervisorState.DISABLED:
            raise ChannelDisabled(f"IMAP supervisor {self.account.key} is disabled; restart required")

        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._main_task = loop.create_task(self._run(), name=f"imap:{self.account.key}")
        self._backup_task = loop.create_task(self._backup_loop(), name=f"imap-backup:{self.account.key}")
        logger.info(f"IMAP supervisor started for {self.account.label}", extra={"account": self.account.key})

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop timers now and give the session ``grace`` seconds to log out."""
        grace = self._timing.shutdown_grace_seconds if grace is None else grace
        self._stop_event.set()

        if self._backup_task is not None:
            self._backup_task.cancel()
            await asyncio.gather(self._backup_task, return_exceptions=True)
            self._backup_task = None

        if self._main_task is not None:
            done, _ = await asyncio.wait({self._main_task}, timeout=grace)
            if not done:
                logger.warning(
                    f"IMAP supervisor {self.account.key} did not close within {grace}s; forcing",
                    extra={"account": self.account.key},
                )
                self._main_task.cancel()
                if self._connection is not None:
                    self._connection.abort()
                    self._connection = None
            await asyncio.gather(self._main_task, return_exceptions=True)
            self._main_task = None

        if self.state != SupervisorState.DISABLED:
            self._set_state(SupervisorState.STOPPED)

    async def wait_disabled(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._disabled_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "account": self.account.label,
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "last_report": self.last_report.model_dump() if self.last_report else None,
        }

    # -- scanning -----------------------------------------------------------

    async def scan(self, reason: str) -> BatchReport:
        """Fetch the last K messages and push them through the pipeline.

        Fetch errors propagate so the caller can treat them as connection
        failures; per-message errors are contained by the pipeline.
        """
        async with self._scan_lock:
            connection = self._connection
            if connection is None:
                raise ChannelConnectionError(f"IMAP supervisor {self.account.key} is not connected")
            raws = await asyncio.to_thread(self._reader.read_recent, connection)
            report = await self._pipeline.ingest_batch(raws, scope=self.scope)
            self.last_report = report
            self.last_scan_at = utcnow()
        logger.debug(
            f"{reason} scan for {self.account.key}: {report.fetched} fetched, {report.ingested} ingested",
            extra={"account": self.account.key, "reason": reason},
        )
        return report

    # -- internals ----------------------------------------------------------

    def _default_connection(self, account: ImapAccountSettings) -> ImapConnection:
        return ImapConnection(account, timeout=self._timing.connection_timeout_seconds)

    def _set_state(self, state: SupervisorState) -> None:
        if state != self.state:
            logger.debug(
                f"IMAP {self.account.key}: {self.state.value} -> {state.value}",
                extra={"account": self.account.key},
            )
        self.state = state

    def _open(self) -> ImapConnection:
        connection = self._connection_factory(self.account)
        connection.open()
        return connection

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                self._set_state(SupervisorState.CONNECTING)
                self.connect_calls += 1
                try:
                    connection = await asyncio.to_thread(self._open)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001 - every failure goes through backoff
                    if not await self._handle_failure(exc):
                        break
                    continue

                self._connection = connection
                self._set_state(SupervisorState.AUTHENTICATED)
                try:
                    await self.scan("catch-up")
                    await self._session(connection)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    await self._teardown()
                    if not await self._handle_failure(exc):
                        break
                    continue
                await self._teardown()
        finally:
            if self._connection is not None and not self._stop_event.is_set():
                self._connection.abort()
                self._connection = None

    async def _session(self, connection: ImapConnection) -> None:
        """Run IDLE and heartbeat together until one fails or stop is requested."""
        loop = asyncio.get_running_loop()
        idle_task = loop.create_task(self._idle_loop(connection))
        heartbeat_task = loop.create_task(self._heartbeat_loop(connection))
        stop_task = loop.create_task(self._stop_event.wait())
        tasks = {idle_task, heartbeat_task, stop_task}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in (heartbeat_task, idle_task):
            if task in done and not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]

    async def _idle_loop(self, connection: ImapConnection) -> None:
        while not self._stop_event.is_set():
            self._set_state(SupervisorState.IDLE_WAITING)
            woke = await asyncio.to_thread(connection.idle_wait, self._timing.idle_timeout_seconds)
            if woke and not self._stop_event.is_set():
                self._set_state(SupervisorState.IDLE_WOKEN)
                logger.info(f"New mail announced for {self.account.key}", extra={"account": self.account.key})
                await self.scan("idle")

    async def _heartbeat_loop(self, connection: ImapConnection) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._timing.heartbeat_interval_seconds
                )
                return
            except asyncio.TimeoutError:
                pass
            count = await asyncio.to_thread(connection.heartbeat)
            if self.attempts:
                # counter resets only once a session survives a full heartbeat interval
                logger.info(
                    f"IMAP {self.account.key} connection stable again",
                    extra={"account": self.account.key},
                )
                self.attempts = 0
                self.last_error = None
            logger.debug(
                f"Heartbeat ok for {self.account.key} ({count} messages)",
                extra={"account": self.account.key},
            )

    async def _backup_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._timing.backup_scan_interval_seconds
                )
                return
            except asyncio.TimeoutError:
                pass
            if self.state == SupervisorState.DISABLED:
                return
            if self.state not in CONNECTED_STATES or self._connection is None:
                logger.debug(f"Backup scan skipped for {self.account.key}: not connected")
                continue
            try:
                await self.scan("backup")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - heartbeat owns reconnects
                logger.warning(
                    f"Backup scan failed for {self.account.key}: {exc}",
                    extra={"account": self.account.key},
                )

    async def _teardown(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await asyncio.to_thread(connection.close)
        if self.state in CONNECTED_STATES:
            self._set_state(SupervisorState.DISCONNECTED)

    async def _handle_failure(self, exc: BaseException) -> bool:
        """Record a failure; return ``True`` to reconnect, ``False`` to stop."""
        kind = classify_failure(exc)
        self.attempts += 1
        self.last_error = f"{type(exc).__name__}: {exc}"

        if self._policy.exhausted(self.attempts):
            self._set_state(SupervisorState.DISABLED)
            self._disabled_event.set()
            logger.error(
                f"IMAP supervisor {self.account.key} disabled after {self.attempts} failed attempts; "
                f"restart required. Last error: {exc}",
                extra={"account": self.account.key, "failure": kind.value},
            )
            return False

        self._set_state(SupervisorState.DISCONNECTED)
        delay = self._policy.calculate_delay(self.attempts, kind)
        logger.warning(
            f"IMAP {self.account.key} connection error ({kind.value}), reconnecting in {delay:.0f}s "
            f"(attempt {self.attempts}/{self._policy.max_attempts}): {exc}",
            extra={"account": self.account.key, "failure": kind.value},
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False


__all__ = ["CONNECTED_STATES", "ImapSupervisor", "SupervisorState"]
