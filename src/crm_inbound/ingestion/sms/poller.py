"""Fixed-interval poll of the SMS provider.

There is no session to manage: each cycle is one bounded HTTP call, and any
failure is logged and left for the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ...errors import AuthenticationFailed, ChannelConnectionError, ProviderRateLimited
from ..models import BatchReport, Channel, scope_for, utcnow
from ..pipeline import IngestionPipeline
from .client import BulkSmsClient

logger = logging.getLogger(__name__)


class SmsPollSupervisor:
    """Poll the provider for replies and feed them to the pipeline."""

    def __init__(
        self,
        *,
        client: BulkSmsClient,
        pipeline: IngestionPipeline,
        poll_interval: Optional[float] = None,
        page_size: Optional[int] = None,
    ):
        """Initialize the poller.

        Args:
            client: Provider client used for each cycle
            pipeline: Shared ingestion pipeline
            poll_interval: Seconds between cycles (defaults to the provider settings)
            page_size: Messages requested per cycle (defaults to the provider settings)
        """
        self.client = client
        self.scope = scope_for(Channel.SMS, client.account_key)
        self.poll_interval = poll_interval or client.settings.poll_interval_seconds
        self.page_size = page_size or client.settings.page_size
        self._pipeline = pipeline
        self._stop_event = asyncio.Event()
        self._poll_task: Optional[asyncio.Task[None]] = None

        self.cycles = 0
        self.failed_cycles = 0
        self.last_error: Optional[str] = None
        self.last_report: Optional[BatchReport] = None
        self.last_poll_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        """Start polling."""
        if self.is_running:
            raise RuntimeError("SMS poller already running")

        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._poll_task = loop.create_task(self._poll_loop(), name=f"sms:{self.client.account_key}")
        logger.info(
            f"SMS poller started (every {self.poll_interval:.0f}s)",
            extra={"account": self.client.account_key},
        )

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop polling, letting an in-flight cycle finish within ``grace``."""
        self._stop_event.set()
        if self._poll_task is None:
            return
        done, _ = await asyncio.wait({self._poll_task}, timeout=grace)
        if not done:
            self._poll_task.cancel()
        await asyncio.gather(self._poll_task, return_exceptions=True)
        self._poll_task = None

    def status(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "state": "running" if self.is_running else "stopped",
            "cycles": self.cycles,
            "failed_cycles": self.failed_cycles,
            "last_error": self.last_error,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "last_report": self.last_report.model_dump() if self.last_report else None,
        }

    async def poll_once(self) -> Optional[BatchReport]:
        """Run one cycle; returns ``None`` when the provider call failed."""
        self.cycles += 1
        self.last_poll_at = utcnow()
        try:
            raws = await self.client.list_recent(self.page_size)
        except ProviderRateLimited as exc:
            self._record_failure(exc)
            logger.warning(f"SMS poll rate limited, waiting for next tick: {exc}")
            return None
        except AuthenticationFailed as exc:
            self._record_failure(exc)
            logger.error(f"SMS poll rejected: {exc}")
            return None
        except ChannelConnectionError as exc:
            self._record_failure(exc)
            logger.warning(f"SMS poll failed: {exc}")
            return None

        # provider returns newest first; ingest in arrival order
        raws.reverse()
        report = await self._pipeline.ingest_batch(raws, scope=self.scope)
        self.last_report = report
        self.last_error = None
        return report

    def _record_failure(self, exc: Exception) -> None:
        self.failed_cycles += 1
        self.last_error = f"{type(exc).__name__}: {exc}"

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._record_failure(exc)
                logger.error(f"SMS polling error: {exc}", exc_info=exc)

            # Wait for next poll interval or stop signal
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


__all__ = ["SmsPollSupervisor"]
