"""
Tests for billing_sentinel/services/key_store.py - encrypted Stripe key storage.
"""
import json
import os
import stat
import pytest
from unittest.mock import patch

from billing_sentinel.exceptions import KeyManagementError
from billing_sentinel.schemas.audit import AuditEvent, Severity
from billing_sentinel.services.key_store import (
    EncryptedFileSecretStore,
    InMemorySecretStore,
    KeyEnvironment,
    KeyPurpose,
    StripeKeyManager,
    looks_like_live_key,
    validate_key_format,
)
from billing_sentinel.utils.encryption import fingerprint


@pytest.fixture
def store(fernet):
    return InMemorySecretStore(fernet)


@pytest.fixture
def keys(store, audit, settings):
    return StripeKeyManager(store, audit, settings)


class TestKeyFormat:
    @pytest.mark.parametrize("purpose,key", [
        (KeyPurpose.PUBLISHABLE, "pk_test_123"),
        (KeyPurpose.PUBLISHABLE, "pk_live_123"),
        (KeyPurpose.SECRET, "sk_test_123"),
        (KeyPurpose.SECRET, "sk_live_123"),
        (KeyPurpose.WEBHOOK, "whsec_123"),
    ])
    def test_valid_prefixes(self, purpose, key):
        assert validate_key_format(purpose, key) is True

    @pytest.mark.parametrize("purpose,key", [
        (KeyPurpose.SECRET, "pk_test_123"),
        (KeyPurpose.WEBHOOK, "sk_test_123"),
        (KeyPurpose.PUBLISHABLE, ""),
    ])
    def test_wrong_prefixes(self, purpose, key):
        assert validate_key_format(purpose, key) is False

    def test_live_detection(self):
        assert looks_like_live_key("sk_live_abc")
        assert not looks_like_live_key("sk_test_abc")


class TestSecretStores:
    def test_in_memory_values_encrypted(self, store):
        store.set(KeyPurpose.SECRET, KeyEnvironment.STAGING, "sk_test_mem")
        assert "sk_test_mem" not in json.dumps(store._data)
        assert store.get(KeyPurpose.SECRET, KeyEnvironment.STAGING) == "sk_test_mem"

    def test_file_store_round_trip_and_permissions(self, tmp_path, fernet):
        path = tmp_path / "nested" / "keys.json"
        file_store = EncryptedFileSecretStore(path, fernet)
        file_store.set(KeyPurpose.WEBHOOK, KeyEnvironment.PRODUCTION, "whsec_file")

        assert "whsec_file" not in path.read_text()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        reopened = EncryptedFileSecretStore(path, fernet)
        assert reopened.get(KeyPurpose.WEBHOOK, KeyEnvironment.PRODUCTION) == "whsec_file"

    def test_file_store_delete_and_clear(self, tmp_path, fernet):
        file_store = EncryptedFileSecretStore(tmp_path / "keys.json", fernet)
        file_store.set(KeyPurpose.SECRET, KeyEnvironment.DEVELOPMENT, "sk_test_a")
        file_store.set(KeyPurpose.WEBHOOK, KeyEnvironment.DEVELOPMENT, "whsec_b")

        file_store.delete(KeyPurpose.SECRET, KeyEnvironment.DEVELOPMENT)
        assert file_store.get(KeyPurpose.SECRET, KeyEnvironment.DEVELOPMENT) is None
        file_store.clear()
        assert file_store.get(KeyPurpose.WEBHOOK, KeyEnvironment.DEVELOPMENT) is None

    def test_corrupted_file_raises(self, tmp_path, fernet):
        path = tmp_path / "keys.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(KeyManagementError):
            EncryptedFileSecretStore(path, fernet).get(KeyPurpose.SECRET, KeyEnvironment.DEVELOPMENT)

    def test_wrong_encryption_key_raises(self, tmp_path, fernet):
        from cryptography.fernet import Fernet

        path = tmp_path / "keys.json"
        EncryptedFileSecretStore(path, fernet).set(KeyPurpose.SECRET, KeyEnvironment.DEVELOPMENT, "sk_test_x")
        other = EncryptedFileSecretStore(path, Fernet(Fernet.generate_key()))
        with pytest.raises(KeyManagementError):
            other.get(KeyPurpose.SECRET, KeyEnvironment.DEVELOPMENT)


class TestStripeKeyManager:
    @pytest.mark.asyncio
    async def test_store_returns_fingerprint_and_audits(self, keys, audit):
        fp = await keys.store_key("secret", "staging", "sk_test_stored")

        assert fp == fingerprint("sk_test_stored")
        entry = audit.recent()[0]
        assert entry.event == AuditEvent.KEY_STORED
        assert entry.details["fingerprint"] == fp
        assert "sk_test_stored" not in json.dumps(entry.details)

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, keys, audit):
        with pytest.raises(KeyManagementError):
            await keys.store_key(KeyPurpose.SECRET, KeyEnvironment.STAGING, "")
        assert audit.recent()[0].event == AuditEvent.KEY_VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_wrong_format_rejected(self, keys, store):
        with pytest.raises(KeyManagementError):
            await keys.store_key(KeyPurpose.WEBHOOK, KeyEnvironment.STAGING, "sk_test_not_webhook")
        assert store.get(KeyPurpose.WEBHOOK, KeyEnvironment.STAGING) is None

    @pytest.mark.asyncio
    async def test_get_key(self, keys, audit):
        await keys.store_key("publishable", "development", "pk_test_abc")
        assert await keys.get_key("publishable") == "pk_test_abc"
        assert audit.recent()[0].event == AuditEvent.KEY_ACCESSED

    @pytest.mark.asyncio
    async def test_get_missing_key_raises(self, keys):
        with pytest.raises(KeyManagementError):
            await keys.get_key(KeyPurpose.PUBLISHABLE, KeyEnvironment.PRODUCTION)

    @pytest.mark.asyncio
    async def test_remove_key(self, keys, audit):
        await keys.store_key("secret", "staging", "sk_test_gone")
        await keys.remove_key("secret", "staging")
        with pytest.raises(KeyManagementError):
            await keys.get_key("secret", "staging")
        assert audit.recent()[0].severity == Severity.WARNING

    @pytest.mark.asyncio
    async def test_clear_all_is_critical(self, keys, audit, alerter):
        await keys.store_key("secret", "staging", "sk_test_1")
        await keys.clear_all()
        entry = audit.recent()[0]
        assert entry.event == AuditEvent.KEY_REMOVED
        assert entry.severity == Severity.CRITICAL
        assert alerter.sent == 1


class TestResolve:
    def test_store_takes_precedence(self, keys, store):
        store.set(KeyPurpose.WEBHOOK, KeyEnvironment.DEVELOPMENT, "whsec_from_store")
        assert keys.resolve(KeyPurpose.WEBHOOK) == "whsec_from_store"

    def test_settings_fallback_for_current_environment(self, keys, webhook_secret):
        assert keys.resolve(KeyPurpose.WEBHOOK) == webhook_secret

    def test_no_settings_fallback_for_other_environment(self, keys):
        with pytest.raises(KeyManagementError):
            keys.resolve(KeyPurpose.WEBHOOK, KeyEnvironment.PRODUCTION)

    def test_invalid_settings_value_raises(self, store, audit, settings):
        settings = settings.model_copy(update={"stripe_webhook_secret": "not-a-secret"})
        manager = StripeKeyManager(store, audit, settings)
        with pytest.raises(KeyManagementError) as exc_info:
            manager.resolve(KeyPurpose.WEBHOOK)
        assert "not-a-secret" not in str(exc_info.value)

    def test_unknown_app_env_is_development(self, store, audit, settings):
        settings = settings.model_copy(update={"app_env": "local"})
        assert StripeKeyManager(store, audit, settings).current_environment == KeyEnvironment.DEVELOPMENT

    def test_resolved_key_cached(self, keys, store, webhook_secret):
        with patch.object(store, "get", wraps=store.get) as spy:
            assert keys.resolve(KeyPurpose.WEBHOOK) == webhook_secret
            assert keys.resolve(KeyPurpose.WEBHOOK) == webhook_secret
        assert spy.call_count == 1

    @pytest.mark.asyncio
    async def test_store_key_replaces_cached_value(self, keys, webhook_secret):
        assert keys.resolve(KeyPurpose.WEBHOOK) == webhook_secret
        await keys.store_key(KeyPurpose.WEBHOOK, KeyEnvironment.DEVELOPMENT, "whsec_rotated")
        assert keys.resolve(KeyPurpose.WEBHOOK) == "whsec_rotated"

        await keys.remove_key(KeyPurpose.WEBHOOK, KeyEnvironment.DEVELOPMENT)
        assert keys.resolve(KeyPurpose.WEBHOOK) == webhook_secret


class TestSecurityAudit:
    @pytest.mark.asyncio
    async def test_report_for_configured_settings(self, keys, audit):
        report = await keys.perform_security_audit()

        assert report.environment == "development"
        assert "secret:development" in report.valid_keys
        assert "webhook:development" in report.valid_keys
        assert "publishable:development" in report.missing_keys
        assert report.is_secure
        assert audit.recent()[0].event == AuditEvent.KEY_AUDIT_COMPLETED

    @pytest.mark.asyncio
    async def test_live_key_in_development_warns(self, keys, audit):
        await keys.store_key("secret", "development", "sk_live_oops")
        report = await keys.perform_security_audit()

        assert not report.is_secure
        assert report.warnings
        assert audit.recent()[0].severity == Severity.WARNING
        assert report.as_dict()["is_secure"] is False
