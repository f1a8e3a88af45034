"""Shared ingestion pipeline used by every channel supervisor.

Per candidate::

    classify -> cursor check -> resolve -> normalize -> dedup claim
             -> persist message -> append history -> record dedup + cursor
             -> emit event

Dedup and cursor state are only written after both record-store writes
succeed, so a persistence failure leaves the message eligible for the next
scan. Every failure is caught here and reported as an outcome; nothing
propagates into a supervisor loop.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from ..configuration.settings import DedupSettings, IdentitySettings
from ..errors import NoMatchingCorrespondent, PersistenceFailure
from .classifier import classify
from .dedup import CursorStore, DedupCandidate, DedupStore, build_dedup_key
from .events import EventEmitter, MessageSummary
from .models import (
    BatchReport,
    Channel,
    IngestOutcome,
    NormalizedMessage,
    PollCursor,
    RawMessage,
    SkipReason,
)
from .normalizer import ContentNormalizer, content_hash
from .record_store import RecordStore, build_interaction
from .resolver import CorrespondentResolver

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 60


class IngestionPipeline:
    """Owns all writes to dedup records and poll cursors."""

    def __init__(
        self,
        *,
        record_store: RecordStore,
        dedup: DedupStore,
        cursors: CursorStore,
        emitter: Optional[EventEmitter] = None,
        normalizer: Optional[ContentNormalizer] = None,
        identity: Optional[IdentitySettings] = None,
        own_identifiers: Optional[Iterable[str]] = None,
    ) -> None:
        self._record_store = record_store
        self._dedup = dedup
        self._cursors = cursors
        self._emitter = emitter or EventEmitter()
        self._normalizer = normalizer or ContentNormalizer()
        self._identity = identity or IdentitySettings()
        self._own_identifiers: List[str] = list(
            own_identifiers if own_identifiers is not None else self._identity.own_identifiers
        )
        self._resolver = CorrespondentResolver(
            record_store, default_country_code=self._identity.default_country_code
        )

    @property
    def dedup_settings(self) -> DedupSettings:
        return self._dedup.settings

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    def load(self) -> None:
        """Load dedup records and cursors; call before any supervisor starts."""
        records = self._dedup.load()
        cursors = self._cursors.load()
        logger.info("Ingestion state loaded", extra={"dedup_records": records, "cursors": cursors})

    def cursor(self, scope: str) -> PollCursor:
        return self._cursors.cursor(scope)

    def compact(self, now: Optional[datetime] = None) -> Dict[str, int]:
        removed = {
            "dedup_records": self._dedup.compact(now),
            "cursor_ids": self._cursors.compact(now),
        }
        logger.debug("Compaction finished", extra=removed)
        return removed

    async def ingest(self, raw: RawMessage) -> IngestOutcome:
        try:
            return await self._ingest(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - one bad message must not halt a batch
            logger.exception(
                "Unexpected ingestion failure",
                extra={"scope": raw.scope, "provider_id": raw.provider_id},
            )
            return IngestOutcome.failed(raw, f"{type(exc).__name__}: {exc}")

    async def ingest_batch(self, raws: Sequence[RawMessage], *, scope: str) -> BatchReport:
        report = BatchReport(scope=scope, fetched=len(raws))
        for raw in raws:
            report.add(await self.ingest(raw))
        if report.ingested or report.failed:
            logger.info(
                f"Batch for {scope}: {report.ingested} ingested, "
                f"{report.skipped} skipped, {report.failed} failed",
                extra={"scope": scope, "skip_reasons": report.skip_reasons},
            )
        else:
            logger.debug(
                f"Batch for {scope}: nothing new ({report.fetched} fetched)",
                extra={"scope": scope, "skip_reasons": report.skip_reasons},
            )
        return report

    async def _ingest(self, raw: RawMessage) -> IngestOutcome:
        extra = {"scope": raw.scope, "provider_id": raw.provider_id}

        if not classify(raw, self._identity, own_identifiers=self._own_identifiers):
            logger.debug("Skipping outbound message", extra=extra)
            return IngestOutcome.skipped(raw, SkipReason.OUTBOUND)

        if self._cursors.has_seen(raw.scope, raw.provider_id):
            logger.debug("Skipping recently processed provider id", extra=extra)
            return IngestOutcome.skipped(raw, SkipReason.DUPLICATE, "recent provider id")

        timestamp = raw.effective_timestamp()

        correspondent = await self._resolver.resolve(raw.sender, raw.channel)
        if correspondent is None:
            miss = NoMatchingCorrespondent(raw.sender)
            logger.info(str(miss), extra=extra)
            return IngestOutcome.skipped(raw, SkipReason.NO_CORRESPONDENT, str(miss))
        extra["correspondent_id"] = correspondent.id

        content = self._normalizer.normalize(
            raw.body, channel=raw.channel, content_type=raw.content_type
        )
        sender = self._resolver.canonicalize(raw.sender, raw.channel)
        settings = self._dedup.settings
        message = NormalizedMessage(
            channel=raw.channel,
            account_key=raw.account_key,
            sender=sender,
            correspondent_id=correspondent.id,
            body=content.body,
            subject=(raw.subject or content.subject) if raw.channel == Channel.EMAIL else None,
            timestamp=timestamp,
            provider_id=raw.provider_id,
            content_hash=content_hash(content.body),
            dedup_key=build_dedup_key(
                raw.channel,
                sender,
                timestamp,
                content.body,
                rounding_seconds=settings.timestamp_rounding_seconds,
                prefix_chars=settings.body_prefix_chars,
            ),
        )

        candidate = DedupCandidate.from_message(message)
        verdict = self._dedup.claim(candidate)
        if verdict is not None:
            logger.debug(str(verdict.as_error()), extra=extra)
            return IngestOutcome.skipped(raw, SkipReason.DUPLICATE, verdict.strategy.value)

        try:
            message_id = await self._record_store.persist_message(message)
            await self._record_store.append_interaction(correspondent.id, build_interaction(message))
        except asyncio.CancelledError:
            self._dedup.release(candidate)
            raise
        except Exception as exc:  # noqa: BLE001 - any store error is a persistence failure
            self._dedup.release(candidate)
            failure = exc if isinstance(exc, PersistenceFailure) else PersistenceFailure(str(exc))
            logger.error(f"Persisting message failed: {failure}", exc_info=True, extra=extra)
            return IngestOutcome.failed(raw, f"persistence: {failure}")

        try:
            self._dedup.record(candidate)
            self._cursors.advance(raw.scope, provider_id=raw.provider_id, timestamp=timestamp)
        except Exception:  # noqa: BLE001 - message is stored; state write is retried next time
            logger.error("Recording ingestion state failed", exc_info=True, extra=extra)

        self._emitter.emit(raw.channel, correspondent, MessageSummary.from_message(message, message_id))
        logger.info(f"Ingested {raw.channel.value} message", extra={**extra, "message_id": message_id})
        logger.debug(f"Ingested body preview: {message.body[:PREVIEW_CHARS]!r}", extra=extra)
        return IngestOutcome.ingested(message, message_id)


__all__ = ["IngestionPipeline"]
