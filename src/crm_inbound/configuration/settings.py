"""Typed settings for the inbound ingestion service.

Settings are stored as JSON, validated through Pydantic models, and may be
overridden from the environment. Credentials never need to live in the file:
anything missing is hydrated from the keyring-backed secret store.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import keyring
from keyring.errors import PasswordDeleteError
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".crm-inbound"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
DEFAULT_SECRETS_SERVICE = "crm-inbound"
ENV_PREFIX = "CRM_INBOUND_"


class ImapAccountSettings(BaseModel):
    """One mailbox watched by its own connection supervisor."""

    key: str = Field(..., min_length=1, description="Stable account key (e.g. 'primary')")
    display_name: Optional[str] = Field(default=None, description="Name used in logs")
    username: Optional[str] = Field(default=None, description="Login / mailbox address")
    password: Optional[SecretStr] = Field(default=None, description="App password")
    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP TLS port")
    folder: str = Field(default="INBOX", description="Mailbox to watch")
    enabled: bool = Field(default=True)

    @field_validator("port")
    @classmethod
    def _require_tls_port(cls, value: int) -> int:  # type: ignore[override]
        if value == 143:
            raise ValueError("Plain IMAP (port 143) is unsupported; TLS required")
        return value

    @property
    def label(self) -> str:
        return self.display_name or self.key

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password and self.password.get_secret_value())


class ImapTimingSettings(BaseModel):
    """Timers and backoff for every IMAP supervisor."""

    connection_timeout_seconds: float = Field(default=30, gt=0, le=300)
    idle_timeout_seconds: float = Field(
        default=30, gt=0, le=1740, description="Upper bound of one IDLE wait"
    )
    heartbeat_interval_seconds: float = Field(default=60, gt=0)
    backup_scan_interval_seconds: float = Field(default=1800, gt=0)
    catch_up_window: int = Field(default=20, ge=1, le=500)
    max_reconnect_attempts: int = Field(default=10, ge=1, le=100)
    reconnect_base_delay_seconds: float = Field(default=5, ge=0)
    reconnect_max_delay_seconds: float = Field(default=60, ge=0)
    rate_limited_delay_seconds: float = Field(default=120, ge=0)
    auth_failure_delay_seconds: float = Field(default=300, ge=0)
    shutdown_grace_seconds: float = Field(default=35, ge=0)


class SmsProviderSettings(BaseModel):
    """BulkSMS-compatible REST provider polled for replies."""

    key: str = Field(default="bulksms", min_length=1)
    base_url: str = Field(default="https://api.bulksms.com/v1")
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    poll_interval_seconds: float = Field(default=20, ge=10, le=300)
    page_size: int = Field(default=20, ge=1, le=200)
    request_timeout_seconds: float = Field(default=10, gt=0, le=120)
    enabled: bool = Field(default=True)

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:  # type: ignore[override]
        if not value.startswith(("https://", "http://")):
            raise ValueError("base_url must be an http(s) URL")
        return value.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password and self.password.get_secret_value())


class DedupSettings(BaseModel):
    """Deduplication and cursor retention."""

    retention_days: int = Field(default=30, ge=1, le=365)
    hash_history_size: int = Field(default=50, ge=1, le=1000)
    timestamp_rounding_seconds: int = Field(default=60, ge=1, le=3600)
    body_prefix_chars: int = Field(default=200, ge=10, le=5000)
    recent_id_limit: int = Field(default=500, ge=10, le=100_000)
    compaction_interval_seconds: int = Field(default=3600, ge=60)


class IdentitySettings(BaseModel):
    """How sender identifiers are canonicalized and classified."""

    default_country_code: str = Field(default="44", pattern=r"^\d{1,4}$")
    min_sender_digits: int = Field(
        default=7, ge=3, le=15, description="Digits needed for a sender to look like a phone number"
    )
    own_identifiers: List[str] = Field(
        default_factory=list,
        description="Addresses and sender names this system sends from",
    )


class InboundSettings(BaseModel):
    """Root configuration."""

    state_path: Path = Field(default=DEFAULT_HOME / "state.db")
    record_store_path: Path = Field(default=DEFAULT_HOME / "records.db")
    imap_accounts: List[ImapAccountSettings] = Field(default_factory=list)
    imap: ImapTimingSettings = Field(default_factory=ImapTimingSettings)
    sms: Optional[SmsProviderSettings] = None
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)

    @field_validator("imap_accounts")
    @classmethod
    def _unique_keys(cls, value: List[ImapAccountSettings]) -> List[ImapAccountSettings]:  # type: ignore[override]
        keys = [account.key for account in value]
        if len(keys) != len(set(keys)):
            raise ValueError("imap account keys must be unique")
        return value

    def own_identifiers(self) -> List[str]:
        """Configured own identifiers plus every mailbox login."""
        identifiers = list(self.identity.own_identifiers)
        identifiers.extend(a.username for a in self.imap_accounts if a.username)
        return identifiers


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        return self.keyring_module.get_password(self.service_name, key)

    def delete_secret(self, key: str) -> None:
        if self.keyring_module is None:
            return
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except PasswordDeleteError:
            return


def imap_secret_key(account_key: str) -> str:
    return f"imap:{account_key}"


SMS_SECRET_KEY = "sms"


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> InboundSettings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    payload = json.loads(path.read_text(encoding="utf-8"))
    try:
        return InboundSettings.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: InboundSettings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk without secrets."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    secret_store: SecretStore | None = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> InboundSettings:
    """Create or load settings, then apply overrides, env vars and secrets."""

    secret_store = secret_store or SecretStore()
    overrides = overrides or {}

    if path.exists():
        settings = load_settings(path)
    else:
        settings = InboundSettings()
        save_settings(settings, path)
        logger.info(f"Wrote default settings to {path}")

    merged = settings.model_dump(mode="python")
    for key, value in overrides.items():
        merged[key] = value
    merged = _apply_env_overrides(merged)

    resolved = InboundSettings.model_validate(merged)
    _hydrate_secrets(resolved, secret_store)
    resolved.state_path.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    _set_env_override(data, "state_path", f"{ENV_PREFIX}STATE_PATH")
    _set_env_override(data, "record_store_path", f"{ENV_PREFIX}RECORD_STORE_PATH")

    identity = data.setdefault("identity", {})
    _set_env_override(identity, "default_country_code", f"{ENV_PREFIX}DEFAULT_COUNTRY_CODE")

    for account in data.get("imap_accounts") or []:
        suffix = account["key"].upper().replace("-", "_")
        _set_env_override(account, "username", f"{ENV_PREFIX}IMAP_{suffix}_USERNAME")
        _set_env_override(account, "password", f"{ENV_PREFIX}IMAP_{suffix}_PASSWORD")

    sms_env = {
        "username": os.getenv(f"{ENV_PREFIX}SMS_USERNAME"),
        "password": os.getenv(f"{ENV_PREFIX}SMS_PASSWORD"),
    }
    if data.get("sms") is None and any(sms_env.values()):
        data["sms"] = {}
    if data.get("sms") is not None:
        sms = data["sms"]
        _set_env_override(sms, "username", f"{ENV_PREFIX}SMS_USERNAME")
        _set_env_override(sms, "password", f"{ENV_PREFIX}SMS_PASSWORD")
        _set_env_override(sms, "poll_interval_seconds", f"{ENV_PREFIX}SMS_POLL_INTERVAL", cast_float=True)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_float: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    mapping[key] = float(raw) if cast_float else raw


def _hydrate_secrets(settings: InboundSettings, secret_store: SecretStore) -> None:
    for account in settings.imap_accounts:
        if account.password is None:
            secret = secret_store.get_secret(imap_secret_key(account.key))
            if secret:
                account.password = SecretStr(secret)
    if settings.sms is not None and settings.sms.password is None:
        secret = secret_store.get_secret(SMS_SECRET_KEY)
        if secret:
            settings.sms.password = SecretStr(secret)


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    for account in payload.get("imap_accounts") or []:
        account["password"] = None
    if payload.get("sms"):
        payload["sms"]["password"] = None
    return payload


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DedupSettings",
    "IdentitySettings",
    "ImapAccountSettings",
    "ImapTimingSettings",
    "InboundSettings",
    "SMS_SECRET_KEY",
    "SecretStore",
    "SmsProviderSettings",
    "bootstrap_settings",
    "imap_secret_key",
    "load_settings",
    "save_settings",
]
