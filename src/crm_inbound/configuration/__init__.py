"""Configuration utilities for the inbound ingestion service."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    DedupSettings,
    IdentitySettings,
    ImapAccountSettings,
    ImapTimingSettings,
    InboundSettings,
    SecretStore,
    SmsProviderSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DedupSettings",
    "IdentitySettings",
    "ImapAccountSettings",
    "ImapTimingSettings",
    "InboundSettings",
    "SecretStore",
    "SmsProviderSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
