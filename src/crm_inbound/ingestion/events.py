"""Fire-and-forget "message received" notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import BaseModel

from .models import Channel, Correspondent, NormalizedMessage

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
Publisher = Callable[[str, Payload], Union[None, Awaitable[None]]]
Subscriber = Callable[[str, Payload], None]

TOPIC_MESSAGE_RECEIVED = "message_received"
TOPIC_LEAD_UPDATED = "lead_updated"
CHANNEL_TOPICS = {
    Channel.EMAIL: "email_received",
    Channel.SMS: "sms_received",
}
CONTENT_PREVIEW_CHARS = 120
ADMIN_ROOM = "admins"


class MessageSummary(BaseModel):
    """What subscribers learn about a freshly ingested message."""

    message_id: str
    subject: Optional[str] = None
    body: str
    timestamp: str

    @classmethod
    def from_message(cls, message: NormalizedMessage, message_id: str) -> "MessageSummary":
        return cls(
            message_id=message_id,
            subject=message.subject,
            body=message.body,
            timestamp=message.timestamp.isoformat(),
        )


def rooms_for(correspondent: Correspondent) -> List[str]:
    rooms = []
    if correspondent.owner_id:
        rooms.append(f"user_{correspondent.owner_id}")
    rooms.append(ADMIN_ROOM)
    return rooms


def build_payload(channel: Channel, correspondent: Correspondent, summary: MessageSummary) -> Payload:
    return {
        "messageId": summary.message_id,
        "correspondentId": correspondent.id,
        "correspondentName": correspondent.name,
        "channel": channel.value,
        "direction": "received",
        "subject": summary.subject,
        "content": summary.subject or summary.body[:CONTENT_PREVIEW_CHARS],
        "body": summary.body,
        "timestamp": summary.timestamp,
        "rooms": rooms_for(correspondent),
    }


class EventEmitter:
    """Publish notifications without ever failing the caller.

    Synchronous publishers are called inline inside ``try``; coroutine
    publishers are scheduled as tasks and their failures only logged.
    """

    def __init__(self, publisher: Optional[Publisher] = None) -> None:
        self._publisher = publisher
        self._pending: Set["asyncio.Task[Any]"] = set()

    def emit(self, channel: Channel, correspondent: Correspondent, summary: MessageSummary) -> None:
        publisher = self._publisher
        if publisher is None:
            return
        payload = build_payload(channel, correspondent, summary)
        topics: List[Tuple[str, Payload]] = [
            (CHANNEL_TOPICS[channel], payload),
            (TOPIC_MESSAGE_RECEIVED, payload),
            (
                TOPIC_LEAD_UPDATED,
                {
                    "type": "LEAD_UPDATED",
                    "data": {"correspondentId": correspondent.id},
                    "rooms": payload["rooms"],
                },
            ),
        ]
        for topic, body in topics:
            self._publish(publisher, topic, body)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for scheduled coroutine publishes (used on shutdown)."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)

    def _publish(self, publisher: Publisher, topic: str, payload: Payload) -> None:
        try:
            result = publisher(topic, payload)
        except Exception as exc:  # noqa: BLE001 - publishing is best effort
            logger.warning(f"Event publish failed for {topic}: {exc}")
            return
        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            logger.warning(f"No running loop to publish {topic}: {exc}")
            if inspect.iscoroutine(result):
                result.close()
            return
        task = asyncio.ensure_future(result, loop=loop)
        self._pending.add(task)
        task.add_done_callback(lambda done: self._finish(topic, done))

    def _finish(self, topic: str, task: "asyncio.Task[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Event publish failed for {topic}: {exc}")


class InMemoryEventBus:
    """In-process topic bus; subscribers are plain callables."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self.published: List[Tuple[str, Payload]] = []

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        if callback in self._subscribers.get(topic, []):
            self._subscribers[topic].remove(callback)

    def publish(self, topic: str, payload: Payload) -> None:
        self.published.append((topic, payload))
        for callback in list(self._subscribers.get(topic, [])):
            try:
                callback(topic, payload)
            except Exception:  # noqa: BLE001 - one subscriber must not break others
                logger.exception(f"Subscriber for {topic} raised")

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.published]


__all__ = [
    "CHANNEL_TOPICS",
    "EventEmitter",
    "InMemoryEventBus",
    "MessageSummary",
    "Publisher",
    "TOPIC_LEAD_UPDATED",
    "TOPIC_MESSAGE_RECEIVED",
    "build_payload",
    "rooms_for",
]
