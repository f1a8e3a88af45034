"""Top-level owner of every channel supervisor.

Builds one IMAP supervisor per configured mailbox and one SMS poller, loads
the dedup state before any of them runs, schedules periodic compaction with
APScheduler, and shuts everything down with a bounded grace period.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .configuration.settings import InboundSettings
from .ingestion.dedup import CursorStore, DedupStore
from .ingestion.events import EventEmitter, Publisher
from .ingestion.imap.supervisor import ConnectionFactory, ImapSupervisor
from .ingestion.pipeline import IngestionPipeline
from .ingestion.record_store import RecordStore
from .ingestion.sms.client import BulkSmsClient
from .ingestion.sms.poller import SmsPollSupervisor
from .ingestion.state_store import KeyValueStore, SqliteKeyValueStore

logger = logging.getLogger(__name__)

COMPACTION_JOB_ID = "state-compaction"
EVENT_DRAIN_SECONDS = 5.0


class InboundOrchestrator:
    """Start, watch and stop all inbound channel supervisors."""

    def __init__(
        self,
        *,
        settings: InboundSettings,
        pipeline: IngestionPipeline,
        imap_supervisors: Optional[List[ImapSupervisor]] = None,
        sms_pollers: Optional[List[SmsPollSupervisor]] = None,
        state_store: Optional[KeyValueStore] = None,
    ) -> None:
        self._settings = settings
        self._pipeline = pipeline
        self._imap_supervisors = list(imap_supervisors or [])
        self._sms_pollers = list(sms_pollers or [])
        self._state_store = state_store
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: InboundSettings,
        *,
        record_store: RecordStore,
        publisher: Optional[Publisher] = None,
        state_store: Optional[KeyValueStore] = None,
        imap_connection_factory: Optional[ConnectionFactory] = None,
        sms_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "InboundOrchestrator":
        state_store = state_store or SqliteKeyValueStore(settings.state_path)
        pipeline = IngestionPipeline(
            record_store=record_store,
            dedup=DedupStore(state_store, settings.dedup),
            cursors=CursorStore(state_store, settings.dedup),
            emitter=EventEmitter(publisher),
            identity=settings.identity,
            own_identifiers=settings.own_identifiers(),
        )

        imap_supervisors: List[ImapSupervisor] = []
        for account in settings.imap_accounts:
            if not account.enabled:
                logger.info(f"IMAP account {account.key} disabled in settings")
                continue
            if not account.is_configured:
                logger.warning(f"Skipping IMAP account {account.key}: account not configured")
                continue
            imap_supervisors.append(
                ImapSupervisor(
                    account,
                    pipeline,
                    timing=settings.imap,
                    connection_factory=imap_connection_factory,
                )
            )

        sms_pollers: List[SmsPollSupervisor] = []
        if settings.sms is not None and settings.sms.enabled:
            if settings.sms.is_configured:
                client = BulkSmsClient(settings.sms, transport=sms_transport)
                sms_pollers.append(SmsPollSupervisor(client=client, pipeline=pipeline))
            else:
                logger.warning("Skipping SMS poller: credentials not configured")

        return cls(
            settings=settings,
            pipeline=pipeline,
            imap_supervisors=imap_supervisors,
            sms_pollers=sms_pollers,
            state_store=state_store,
        )

    @property
    def pipeline(self) -> IngestionPipeline:
        return self._pipeline

    @property
    def imap_supervisors(self) -> List[ImapSupervisor]:
        return list(self._imap_supervisors)

    @property
    def sms_pollers(self) -> List[SmsPollSupervisor]:
        return list(self._sms_pollers)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler

    async def start(self) -> None:
        if self._running:
            return

        # dedup records must be in memory before the first scan
        await asyncio.to_thread(self._pipeline.load)

        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self.run_compaction,
            trigger=IntervalTrigger(seconds=self._settings.dedup.compaction_interval_seconds),
            id=COMPACTION_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()

        for supervisor in self._imap_supervisors:
            await supervisor.start()
        for poller in self._sms_pollers:
            await poller.start()

        self._running = True
        logger.info(
            "Inbound orchestrator started",
            extra={"imap_accounts": len(self._imap_supervisors), "sms_pollers": len(self._sms_pollers)},
        )

    async def shutdown(self) -> None:
        if not self._running:
            return
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        grace = self._settings.imap.shutdown_grace_seconds
        results = await asyncio.gather(
            *(supervisor.stop(grace) for supervisor in self._imap_supervisors),
            *(poller.stop(grace) for poller in self._sms_pollers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Supervisor failed to stop cleanly", exc_info=result)

        await self._pipeline.emitter.drain(timeout=EVENT_DRAIN_SECONDS)
        if self._state_store is not None:
            self._state_store.close()

        self._running = False
        logger.info("Inbound orchestrator stopped")

    async def run_compaction(self) -> Dict[str, int]:
        removed = await asyncio.to_thread(self._pipeline.compact)
        if any(removed.values()):
            logger.info("State compaction removed entries", extra=removed)
        return removed

    def status(self) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        for supervisor in self._imap_supervisors:
            entries.append({"channel": "email", **supervisor.status()})
        for poller in self._sms_pollers:
            entries.append({"channel": "sms", **poller.status()})
        return entries


__all__ = ["InboundOrchestrator"]
