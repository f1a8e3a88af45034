"""IMAP connection handling for the mailbox supervisor.

Every method on :class:`ImapConnection` is blocking and serialised through a
thread lock, so the supervisor can call them from worker threads while the
IDLE wait, the heartbeat and scans share one session. TLS is mandatory.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from ...configuration.settings import ImapAccountSettings, ImapTimingSettings
from ...errors import AuthenticationFailed, ChannelConnectionError, ProviderRateLimited

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Any]

_RATE_LIMIT_MARKERS = ("too many simultaneous connections", "too many connections", "throttl")
_AUTH_MARKERS = ("authenticationfailed", "authentication", "invalid credentials", "login failed")


class FailureKind(str, Enum):
    """How a connection failure should be retried."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, ProviderRateLimited):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, (AuthenticationFailed, LoginError)):
        return FailureKind.AUTHENTICATION
    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    if any(marker in message for marker in _AUTH_MARKERS):
        return FailureKind.AUTHENTICATION
    return FailureKind.TRANSIENT


@dataclass
class ReconnectPolicy:
    """Bounded reconnect schedule.

    Transient failures back off exponentially from ``base_delay`` up to
    ``max_delay``. Rate limiting and rejected credentials get their own fixed
    delays because an immediate retry is certain to fail again.
    """

    max_attempts: int = 10
    base_delay: float = 5.0
    max_delay: float = 60.0
    rate_limited_delay: float = 120.0
    auth_failure_delay: float = 300.0

    @classmethod
    def from_settings(cls, timing: ImapTimingSettings) -> "ReconnectPolicy":
        return cls(
            max_attempts=timing.max_reconnect_attempts,
            base_delay=timing.reconnect_base_delay_seconds,
            max_delay=timing.reconnect_max_delay_seconds,
            rate_limited_delay=timing.rate_limited_delay_seconds,
            auth_failure_delay=timing.auth_failure_delay_seconds,
        )

    def calculate_delay(self, attempt: int, kind: FailureKind = FailureKind.TRANSIENT) -> float:
        if kind == FailureKind.RATE_LIMITED:
            return self.rate_limited_delay
        if kind == FailureKind.AUTHENTICATION:
            return self.auth_failure_delay
        return min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def has_new_mail(responses: Optional[Iterable[Any]]) -> bool:
    """True when any untagged IDLE response reports ``EXISTS``."""
    for response in responses or ():
        items = response if isinstance(response, (tuple, list)) else (response,)
        for item in items:
            if isinstance(item, bytes):
                item = item.decode("ascii", errors="replace")
            if isinstance(item, str) and item.strip().upper() == "EXISTS":
                return True
    return False


def _status_count(status: Dict[Any, Any], key: str) -> int:
    value = status.get(key.encode("ascii"), status.get(key, 0))
    return int(value or 0)


class ImapConnection:
    """One authenticated, read-only IMAP session on a single folder."""

    def __init__(
        self,
        account: ImapAccountSettings,
        *,
        timeout: float = 30,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.account = account
        self.timeout = timeout
        self.uidvalidity = 0
        self._client_factory = client_factory or self._default_client
        self._client: Optional[Any] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def _default_client(self) -> IMAPClient:
        if self.account.port == 143:
            raise ValueError("Plain IMAP (port 143) is unsupported; TLS required")
        return IMAPClient(
            host=self.account.host,
            port=self.account.port,
            ssl=True,
            ssl_context=create_ssl_context(),
            timeout=self.timeout,
            use_uid=True,
        )

    def open(self) -> None:
        """Connect, log in and select the folder read-only."""
        if not self.account.is_configured:
            raise AuthenticationFailed(f"Account {self.account.key} has no credentials")
        password = self.account.password.get_secret_value()  # type: ignore[union-attr]

        with self._lock:
            try:
                client = self._client_factory()
            except (socket.error, OSError, IMAPClient.Error) as exc:
                raise self._wrap(exc, "connect") from exc
            client.normalise_times = False
            try:
                client.login(self.account.username, password)
                selected = client.select_folder(self.account.folder, readonly=True)
            except Exception as exc:  # noqa: BLE001 - every login/select failure ends the attempt
                self._safe_logout(client)
                raise self._wrap(exc, "login") from exc
            self.uidvalidity = _status_count(selected or {}, "UIDVALIDITY")
            self._client = client
        logger.info(
            f"IMAP session opened for {self.account.label}",
            extra={"account": self.account.key, "folder": self.account.folder},
        )

    def heartbeat(self) -> int:
        """Lightweight STATUS call; returns the folder's message count."""
        with self._lock:
            client = self._require_client()
            status = client.folder_status(self.account.folder, ["MESSAGES"])
        return _status_count(status, "MESSAGES")

    def idle_wait(self, timeout: float) -> bool:
        """Run one bounded IDLE cycle; ``True`` when new mail was announced."""
        with self._lock:
            client = self._require_client()
            client.idle()
            try:
                responses = client.idle_check(timeout=timeout)
            finally:
                client.idle_done()
        return has_new_mail(responses)

    def fetch_recent(self, count: int) -> Dict[int, Dict[bytes, Any]]:
        """Fetch UID, INTERNALDATE and the full body of the last ``count`` messages.

        The range is by sequence number, so UID mode is switched off for the
        duration of the FETCH. ``BODY.PEEK[]`` leaves ``\\Seen`` untouched.
        """
        with self._lock:
            client = self._require_client()
            status = client.folder_status(self.account.folder, ["MESSAGES"])
            total = _status_count(status, "MESSAGES")
            if total == 0:
                return {}
            start = max(1, total - count + 1)
            client.use_uid = False
            try:
                return client.fetch(f"{start}:{total}", ["UID", "INTERNALDATE", "BODY.PEEK[]"])
            finally:
                client.use_uid = True

    def close(self) -> None:
        """Log out cleanly, waiting for any in-flight command."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            self._safe_logout(client)

    def abort(self) -> None:
        """Drop the socket without waiting for the session lock."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error shutting down IMAP socket", exc_info=exc)

    def _require_client(self) -> Any:
        if self._client is None:
            raise ChannelConnectionError(f"IMAP session for {self.account.key} is not open")
        return self._client

    @staticmethod
    def _safe_logout(client: Any) -> None:
        try:
            client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout", exc_info=exc)

    def _wrap(self, exc: BaseException, stage: str) -> ChannelConnectionError:
        kind = classify_failure(exc)
        message = f"IMAP {stage} failed for {self.account.key}: {exc}"
        if kind == FailureKind.RATE_LIMITED:
            return ProviderRateLimited(message)
        if kind == FailureKind.AUTHENTICATION:
            return AuthenticationFailed(message)
        return ChannelConnectionError(message)


__all__ = [
    "FailureKind",
    "ImapConnection",
    "ReconnectPolicy",
    "classify_failure",
    "create_ssl_context",
    "has_new_mail",
]
