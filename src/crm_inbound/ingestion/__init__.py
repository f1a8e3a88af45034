"""Inbound message ingestion: normalizer, dedup, resolver, pipeline and channels."""

from .dedup import CursorStore, DedupCandidate, DedupStore, DedupStrategy, DedupVerdict, build_dedup_key
from .events import EventEmitter, InMemoryEventBus, MessageSummary
from .models import (
    BatchReport,
    Channel,
    Correspondent,
    DedupRecord,
    IngestOutcome,
    IngestStatus,
    NormalizedMessage,
    PollCursor,
    RawMessage,
    SkipReason,
)
from .normalizer import NO_CONTENT_SENTINEL, ContentNormalizer, NormalizedContent, content_hash
from .pipeline import IngestionPipeline
from .record_store import InMemoryRecordStore, InteractionEntry, RecordStore, SqliteRecordStore
from .resolver import CorrespondentResolver, canonical_email, canonical_phone
from .state_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore

__all__ = [
    "BatchReport",
    "Channel",
    "ContentNormalizer",
    "Correspondent",
    "CorrespondentResolver",
    "CursorStore",
    "DedupCandidate",
    "DedupRecord",
    "DedupStore",
    "DedupStrategy",
    "DedupVerdict",
    "EventEmitter",
    "InMemoryEventBus",
    "InMemoryRecordStore",
    "IngestOutcome",
    "IngestStatus",
    "IngestionPipeline",
    "InteractionEntry",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "MessageSummary",
    "NO_CONTENT_SENTINEL",
    "NormalizedContent",
    "NormalizedMessage",
    "PollCursor",
    "RawMessage",
    "RecordStore",
    "SkipReason",
    "SqliteKeyValueStore",
    "SqliteRecordStore",
    "build_dedup_key",
    "canonical_email",
    "canonical_phone",
    "content_hash",
]
