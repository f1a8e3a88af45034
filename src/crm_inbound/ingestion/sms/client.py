"""REST client for the SMS provider's "list messages" endpoint (BulkSMS v1)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ...configuration.settings import SmsProviderSettings
from ...errors import AuthenticationFailed, ChannelConnectionError, ProviderRateLimited
from ..models import Channel, RawMessage

logger = logging.getLogger(__name__)

ID_FIELDS = ("id", "messageId", "message_id", "uuid")
SENDER_FIELDS = ("from", "msisdn", "sender")
TEXT_FIELDS = ("text", "message", "body", "content", "msg", "sms")
TIMESTAMP_FIELDS = ("timestamp", "createdAt", "created_at", "updatedAt", "receivedAt", "date", "time")


def _first(item: Mapping[str, Any], fields: tuple) -> Any:
    for name in fields:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


def _address(value: Any) -> str:
    """Addresses come either as plain strings or ``{"address": ...}`` objects."""
    if isinstance(value, Mapping):
        value = value.get("address") or value.get("phoneNumber") or value.get("number")
    return str(value).strip() if value is not None else ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def message_timestamp(item: Mapping[str, Any]) -> Optional[datetime]:
    candidates = [item.get(name) for name in TIMESTAMP_FIELDS]
    submission = item.get("submission")
    if isinstance(submission, Mapping):
        candidates.insert(5, submission.get("date"))
    for candidate in candidates:
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return parsed
    return None


def to_raw_message(item: Mapping[str, Any], account_key: str) -> RawMessage:
    """Map one provider object onto a pipeline candidate."""
    provider_id = _first(item, ID_FIELDS)
    text = _first(item, TEXT_FIELDS)
    recipient = _address(item.get("to")) or None
    return RawMessage(
        channel=Channel.SMS,
        account_key=account_key,
        provider_id=str(provider_id).strip() if provider_id is not None else None,
        sender=_address(_first(item, SENDER_FIELDS)),
        recipient=recipient,
        body=str(text) if text is not None else "",
        declared_at=message_timestamp(item),
        content_type="text/plain",
        hints=dict(item),
    )


def extract_items(payload: Any) -> List[Dict[str, Any]]:
    """Accept a bare list, ``{"data": [...]}`` or ``{"resources": [...]}``."""
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, Mapping):
        items = payload.get("data") or payload.get("resources") or []
    else:
        items = []
    return [item for item in items if isinstance(item, Mapping)]


class BulkSmsClient:
    """Client for the BulkSMS JSON REST API.

    Example:
        client = BulkSmsClient(settings)
        messages = await client.list_recent(limit=20)
    """

    def __init__(
        self,
        settings: SmsProviderSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self.headers = {"Accept": "application/json", "Content-Type": "application/json"}

    @property
    def account_key(self) -> str:
        return self.settings.key

    def _auth(self) -> httpx.BasicAuth:
        if not self.settings.is_configured:
            raise AuthenticationFailed("SMS provider credentials are not configured")
        password = self.settings.password.get_secret_value()  # type: ignore[union-attr]
        return httpx.BasicAuth(self.settings.username or "", password)

    async def list_recent(self, limit: Optional[int] = None) -> List[RawMessage]:
        """Fetch the newest received messages, newest first as the provider sorts them."""
        params = {
            "filter": "type==RECEIVED",
            "sortOrder": "DESCENDING",
            "limit": limit or self.settings.page_size,
        }
        auth = self._auth()
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    f"{self.settings.base_url}/messages",
                    params=params,
                    headers=self.headers,
                    auth=auth,
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise self._status_error(exc.response) from exc
        except httpx.HTTPError as exc:
            raise ChannelConnectionError(f"SMS provider request failed: {exc}") from exc
        except ValueError as exc:
            raise ChannelConnectionError(f"SMS provider returned invalid JSON: {exc}") from exc

        items = extract_items(payload)
        logger.debug(f"SMS provider returned {len(items)} messages", extra={"account": self.account_key})
        return [to_raw_message(item, self.account_key) for item in items]

    @staticmethod
    def _status_error(response: httpx.Response) -> ChannelConnectionError:
        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after else None
            except ValueError:
                delay = None
            return ProviderRateLimited("SMS provider rate limited the poll", retry_after=delay)
        if status in (401, 403):
            return AuthenticationFailed(f"SMS provider rejected credentials (HTTP {status})")
        return ChannelConnectionError(f"SMS provider returned HTTP {status}")


__all__ = ["BulkSmsClient", "extract_items", "message_timestamp", "parse_timestamp", "to_raw_message"]
