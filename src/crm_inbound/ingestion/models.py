"""Data models shared by the ingestion pipeline and both channel supervisors."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Channel(str, Enum):
    """Inbound communication channel."""

    EMAIL = "email"
    SMS = "sms"


def scope_for(channel: Channel, account_key: str) -> str:
    """Dedup/cursor scope string for one account on one channel."""
    return f"{channel.value}:{account_key}"


# ---------------------------------------------------------------------------
# Provider-side models
# ---------------------------------------------------------------------------


class RawMessage(BaseModel):
    """One unit fetched from a provider, alive for a single ingestion pass."""

    channel: Channel = Field(..., description="Channel the message arrived on")
    account_key: str = Field(..., description="Configured account the message came from")
    provider_id: Optional[str] = Field(
        default=None, description="Provider-native identifier, when supplied"
    )
    sender: str = Field(default="", description="Sender identifier in provider format")
    recipient: Optional[str] = Field(default=None, description="Recipient identifier")
    body: Union[bytes, str] = Field(default=b"", description="Raw body payload")
    subject: Optional[str] = Field(default=None, description="Envelope subject (email)")
    declared_at: Optional[datetime] = Field(
        default=None, description="Provider internal timestamp"
    )
    envelope_date: Optional[datetime] = Field(
        default=None, description="Date claimed by the message itself"
    )
    content_type: Optional[str] = Field(
        default=None, description="Content-type hint for the normalizer"
    )
    hints: Dict[str, Any] = Field(
        default_factory=dict, description="Provider-specific direction/type hints"
    )

    @property
    def scope(self) -> str:
        return scope_for(self.channel, self.account_key)

    def effective_timestamp(self, fallback: Optional[datetime] = None) -> datetime:
        """Best available timestamp: internal date, envelope date, wall clock."""
        for candidate in (self.declared_at, self.envelope_date):
            if candidate is not None:
                return ensure_utc(candidate)
        return ensure_utc(fallback) if fallback else utcnow()


class Correspondent(BaseModel):
    """Record in the external store that a sender resolves to."""

    id: str = Field(..., description="Record identifier")
    name: Optional[str] = Field(default=None, description="Display name")
    email: Optional[str] = Field(default=None, description="Contact email address")
    phone: Optional[str] = Field(default=None, description="Contact phone number")
    owner_id: Optional[str] = Field(
        default=None, description="User who owns the record, for event routing"
    )


class NormalizedMessage(BaseModel):
    """Output of normalization, ready to persist."""

    channel: Channel
    account_key: str
    sender: str = Field(..., description="Canonicalized sender identifier")
    correspondent_id: str
    body: str = Field(..., min_length=1, description="Plain-text reply body")
    subject: Optional[str] = None
    timestamp: datetime = Field(..., description="Effective message timestamp (UTC)")
    provider_id: Optional[str] = None
    content_hash: str
    dedup_key: str

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:  # type: ignore[override]
        return ensure_utc(value)

    @property
    def scope(self) -> str:
        return scope_for(self.channel, self.account_key)


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------


class DedupRecord(BaseModel):
    """Persisted "already ingested" entry."""

    dedup_key: str
    scope: str
    channel: Channel
    correspondent_id: str
    provider_id: Optional[str] = None
    content_hash: str
    timestamp: datetime = Field(..., description="Effective message timestamp")
    recorded_at: datetime = Field(default_factory=utcnow)


class PollCursor(BaseModel):
    """Per-scope watermark plus a bounded set of recently processed IDs."""

    scope: str
    watermark: Optional[datetime] = Field(
        default=None, description="Latest processed message timestamp"
    )
    recent_ids: Dict[str, datetime] = Field(
        default_factory=dict, description="provider id -> time it was processed"
    )
    updated_at: Optional[datetime] = None

    def has_seen(self, provider_id: Optional[str]) -> bool:
        return bool(provider_id) and provider_id in self.recent_ids

    def advance(
        self,
        *,
        provider_id: Optional[str],
        timestamp: datetime,
        limit: int,
    ) -> None:
        timestamp = ensure_utc(timestamp)
        if self.watermark is None or timestamp > self.watermark:
            self.watermark = timestamp
        if provider_id:
            self.recent_ids[provider_id] = utcnow()
            if len(self.recent_ids) > limit:
                # keep the newest ``limit`` entries
                ordered = sorted(self.recent_ids.items(), key=lambda item: item[1])
                self.recent_ids = dict(ordered[-limit:])
        self.updated_at = utcnow()

    def compact(self, cutoff: datetime) -> int:
        stale = [key for key, seen_at in self.recent_ids.items() if seen_at < cutoff]
        for key in stale:
            del self.recent_ids[key]
        return len(stale)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class IngestStatus(str, Enum):
    INGESTED = "ingested"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    OUTBOUND = "outbound"
    NO_CORRESPONDENT = "no-correspondent"
    DUPLICATE = "duplicate"


class IngestOutcome(BaseModel):
    """Result of pushing one RawMessage through the pipeline."""

    status: IngestStatus
    scope: str
    provider_id: Optional[str] = None
    reason: Optional[SkipReason] = None
    detail: Optional[str] = None
    message: Optional[NormalizedMessage] = None
    message_id: Optional[str] = None

    @classmethod
    def ingested(cls, message: NormalizedMessage, message_id: str) -> "IngestOutcome":
        return cls(
            status=IngestStatus.INGESTED,
            scope=message.scope,
            provider_id=message.provider_id,
            message=message,
            message_id=message_id,
        )

    @classmethod
    def skipped(
        cls, raw: RawMessage, reason: SkipReason, detail: Optional[str] = None
    ) -> "IngestOutcome":
        return cls(
            status=IngestStatus.SKIPPED,
            scope=raw.scope,
            provider_id=raw.provider_id,
            reason=reason,
            detail=detail,
        )

    @classmethod
    def failed(cls, raw: RawMessage, detail: str) -> "IngestOutcome":
        return cls(
            status=IngestStatus.FAILED,
            scope=raw.scope,
            provider_id=raw.provider_id,
            detail=detail,
        )


class BatchReport(BaseModel):
    """Tally of one scan or poll cycle."""

    scope: str
    fetched: int = 0
    ingested: int = 0
    skipped: int = 0
    failed: int = 0
    skip_reasons: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)

    def add(self, outcome: IngestOutcome) -> None:
        if outcome.status == IngestStatus.INGESTED:
            self.ingested += 1
        elif outcome.status == IngestStatus.SKIPPED:
            self.skipped += 1
            reason = outcome.reason.value if outcome.reason else "unknown"
            self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1
        else:
            self.failed += 1
            if outcome.detail:
                self.errors.append(outcome.detail)

    @property
    def processed(self) -> int:
        return self.ingested + self.skipped + self.failed


__all__ = [
    "BatchReport",
    "Channel",
    "Correspondent",
    "DedupRecord",
    "IngestOutcome",
    "IngestStatus",
    "NormalizedMessage",
    "PollCursor",
    "RawMessage",
    "SkipReason",
    "ensure_utc",
    "scope_for",
    "utcnow",
]
