from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from crm_inbound.configuration.settings import (
    ImapAccountSettings,
    InboundSettings,
    SecretStore,
    SmsProviderSettings,
    bootstrap_settings,
    imap_secret_key,
    load_settings,
    save_settings,
)


class FakeKeyring:
    def __init__(self) -> None:
        self.storage = {}

    def set_password(self, service, key, value):
        self.storage[(service, key)] = value

    def get_password(self, service, key):
        return self.storage.get((service, key))

    def delete_password(self, service, key):
        self.storage.pop((service, key), None)


@pytest.fixture
def secret_store() -> SecretStore:
    return SecretStore(keyring_module=FakeKeyring())


def test_defaults_match_documented_values():
    settings = InboundSettings()
    assert settings.imap.idle_timeout_seconds == 30
    assert settings.imap.heartbeat_interval_seconds == 60
    assert settings.imap.backup_scan_interval_seconds == 1800
    assert settings.imap.max_reconnect_attempts == 10
    assert settings.dedup.retention_days == 30
    assert settings.dedup.hash_history_size == 50
    assert settings.identity.default_country_code == "44"
    assert settings.sms is None


def test_plain_imap_port_rejected():
    with pytest.raises(ValidationError):
        ImapAccountSettings(key="primary", port=143)


def test_duplicate_account_keys_rejected():
    with pytest.raises(ValidationError):
        InboundSettings(imap_accounts=[{"key": "a"}, {"key": "a"}])


def test_sms_poll_interval_bounds_and_url():
    with pytest.raises(ValidationError):
        SmsProviderSettings(poll_interval_seconds=5)
    with pytest.raises(ValidationError):
        SmsProviderSettings(base_url="ftp://example.com")
    assert SmsProviderSettings(base_url="https://api.example.com/v1/").base_url == "https://api.example.com/v1"


def test_account_is_configured_requires_credentials():
    assert not ImapAccountSettings(key="a", username="me@example.com").is_configured
    assert ImapAccountSettings(key="a", username="me@example.com", password="pw").is_configured


def test_own_identifiers_include_mailbox_logins():
    settings = InboundSettings(
        imap_accounts=[{"key": "a", "username": "bookings@ourcrm.test"}],
        identity={"own_identifiers": ["OURCRM"]},
    )
    assert settings.own_identifiers() == ["OURCRM", "bookings@ourcrm.test"]


def test_save_settings_never_writes_passwords(tmp_path):
    path = tmp_path / "config.json"
    settings = InboundSettings(
        imap_accounts=[{"key": "a", "username": "me@example.com", "password": "secret-pw"}],
        sms={"username": "u", "password": "sms-pw"},
    )
    save_settings(settings, path)
    raw = path.read_text(encoding="utf-8")
    assert "secret-pw" not in raw
    assert "sms-pw" not in raw
    payload = json.loads(raw)
    assert payload["imap_accounts"][0]["password"] is None


def test_load_settings_rejects_invalid_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"imap_accounts": [{"key": "a", "port": 143}]}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(path)
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.json")


def test_bootstrap_creates_default_file(tmp_path, secret_store):
    path = tmp_path / "config.json"
    settings = bootstrap_settings(
        path=path,
        secret_store=secret_store,
        overrides={"state_path": tmp_path / "state" / "state.db"},
    )
    assert path.exists()
    assert settings.state_path.parent.exists()


def test_bootstrap_hydrates_secrets_from_keyring(tmp_path, secret_store):
    path = tmp_path / "config.json"
    save_settings(
        InboundSettings(
            state_path=tmp_path / "state.db",
            imap_accounts=[{"key": "primary", "username": "me@example.com"}],
            sms={"username": "sms-user"},
        ),
        path,
    )
    secret_store.set_secret(imap_secret_key("primary"), "imap-pw")
    secret_store.set_secret("sms", "sms-pw")

    settings = bootstrap_settings(path=path, secret_store=secret_store)
    assert settings.imap_accounts[0].password.get_secret_value() == "imap-pw"
    assert settings.sms.password.get_secret_value() == "sms-pw"
    assert settings.imap_accounts[0].is_configured


def test_env_overrides_apply(tmp_path, secret_store, monkeypatch):
    path = tmp_path / "config.json"
    save_settings(
        InboundSettings(
            state_path=tmp_path / "state.db",
            imap_accounts=[{"key": "primary-box", "username": "old@example.com"}],
        ),
        path,
    )
    monkeypatch.setenv("CRM_INBOUND_IMAP_PRIMARY_BOX_USERNAME", "new@example.com")
    monkeypatch.setenv("CRM_INBOUND_IMAP_PRIMARY_BOX_PASSWORD", "env-pw")
    monkeypatch.setenv("CRM_INBOUND_SMS_USERNAME", "sms-env")
    monkeypatch.setenv("CRM_INBOUND_SMS_PASSWORD", "sms-env-pw")
    monkeypatch.setenv("CRM_INBOUND_SMS_POLL_INTERVAL", "45")
    monkeypatch.setenv("CRM_INBOUND_DEFAULT_COUNTRY_CODE", "1")

    settings = bootstrap_settings(path=path, secret_store=secret_store)
    account = settings.imap_accounts[0]
    assert account.username == "new@example.com"
    assert account.password.get_secret_value() == "env-pw"
    assert settings.sms is not None
    assert settings.sms.username == "sms-env"
    assert settings.sms.poll_interval_seconds == 45
    assert settings.identity.default_country_code == "1"


def test_secret_store_delete_is_idempotent(secret_store):
    secret_store.set_secret("k", "v")
    assert secret_store.get_secret("k") == "v"
    secret_store.delete_secret("k")
    secret_store.delete_secret("k")
    assert secret_store.get_secret("k") is None
