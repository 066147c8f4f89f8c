"""
Stripe key material store.

Keys are scoped by (purpose, environment) and held Fernet-encrypted behind the
SecretStore interface. Only 8-char SHA-256 fingerprints ever reach logs or
audit details. Every failure surfaces as KeyManagementError; there is no
plaintext or environment-variable fallback beyond the explicit settings value
for the running environment.
"""
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet

from billing_sentinel.exceptions import KeyManagementError
from billing_sentinel.schemas.audit import AuditEvent, Severity
from billing_sentinel.utils.encryption import decrypt_value, encrypt_value, fingerprint

logger = logging.getLogger(__name__)


class KeyPurpose(str, Enum):
    PUBLISHABLE = "publishable"
    SECRET = "secret"
    WEBHOOK = "webhook"


class KeyEnvironment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


KEY_PREFIXES: dict[KeyPurpose, tuple[str, ...]] = {
    KeyPurpose.PUBLISHABLE: ("pk_test_", "pk_live_"),
    KeyPurpose.SECRET: ("sk_test_", "sk_live_"),
    KeyPurpose.WEBHOOK: ("whsec_",),
}


def validate_key_format(purpose: Union[KeyPurpose, str], key: str) -> bool:
    return bool(key) and key.startswith(KEY_PREFIXES[KeyPurpose(purpose)])


def looks_like_live_key(key: str) -> bool:
    return "live" in key or "prod" in key


def _slot(purpose: KeyPurpose, environment: KeyEnvironment) -> str:
    return f"{purpose.value}:{environment.value}"


class SecretStore:
    """Uniform secret-store interface keyed by (purpose, environment)."""

    def get(self, purpose: KeyPurpose, environment: KeyEnvironment) -> Optional[str]:
        raise NotImplementedError

    def set(self, purpose: KeyPurpose, environment: KeyEnvironment, secret: str) -> None:
        raise NotImplementedError

    def delete(self, purpose: KeyPurpose, environment: KeyEnvironment) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        for purpose in KeyPurpose:
            for environment in KeyEnvironment:
                self.delete(purpose, environment)


class InMemorySecretStore(SecretStore):
    """Process-local store; values held as Fernet tokens. Used in tests and dev."""

    def __init__(self, fernet: Fernet):
        self._fernet = fernet
        self._data: dict[str, str] = {}

    def get(self, purpose, environment):
        token = self._data.get(_slot(purpose, environment))
        return decrypt_value(token, self._fernet) if token else None

    def set(self, purpose, environment, secret):
        self._data[_slot(purpose, environment)] = encrypt_value(secret, self._fernet)

    def delete(self, purpose, environment):
        self._data.pop(_slot(purpose, environment), None)


class EncryptedFileSecretStore(SecretStore):
    """
    JSON file of Fernet tokens, replaced atomically on every write.
    The file is created with 0600 permissions.
    """

    def __init__(self, path: Union[str, Path], fernet: Fernet):
        self.path = Path(path)
        self._fernet = fernet
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise KeyManagementError(f"Key store {self.path} unreadable: {e}") from e
        if not isinstance(data, dict):
            raise KeyManagementError(f"Key store {self.path} is corrupted")
        return data

    def _write(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".keys-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, sort_keys=True)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise KeyManagementError(f"Key store {self.path} not writable: {e}") from e

    def get(self, purpose, environment):
        with self._lock:
            token = self._read().get(_slot(purpose, environment))
        return decrypt_value(token, self._fernet) if token else None

    def set(self, purpose, environment, secret):
        token = encrypt_value(secret, self._fernet)
        with self._lock:
            data = self._read()
            data[_slot(purpose, environment)] = token
            self._write(data)

    def delete(self, purpose, environment):
        with self._lock:
            data = self._read()
            if data.pop(_slot(purpose, environment), None) is not None:
                self._write(data)

    def clear(self):
        with self._lock:
            if self._read():
                self._write({})


@dataclass
class KeyAuditReport:
    environment: str
    valid_keys: list[str] = field(default_factory=list)
    invalid_keys: list[str] = field(default_factory=list)
    missing_keys: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_secure(self) -> bool:
        return not self.invalid_keys and not self.warnings

    def as_dict(self) -> dict:
        return {
            "environment": self.environment,
            "valid_keys": self.valid_keys,
            "invalid_keys": self.invalid_keys,
            "missing_keys": self.missing_keys,
            "warnings": self.warnings,
            "is_secure": self.is_secure,
        }


class StripeKeyManager:
    def __init__(self, store: SecretStore, audit, settings=None):
        if settings is None:
            from billing_sentinel.config import get_settings
            settings = get_settings()
        self.store = store
        self.audit = audit
        self.settings = settings
        # resolve() results; cleared whenever this manager changes the store
        self._resolved: dict[tuple[KeyPurpose, KeyEnvironment], str] = {}

    @property
    def current_environment(self) -> KeyEnvironment:
        try:
            return KeyEnvironment(self.settings.app_env)
        except ValueError:
            return KeyEnvironment.DEVELOPMENT

    def _settings_value(self, purpose: KeyPurpose) -> str:
        if purpose == KeyPurpose.SECRET:
            return self.settings.stripe_secret_key
        if purpose == KeyPurpose.WEBHOOK:
            return self.settings.stripe_webhook_secret
        return ""

    async def store_key(
        self,
        purpose: Union[KeyPurpose, str],
        environment: Union[KeyEnvironment, str],
        key: str,
    ) -> str:
        """Validate and store a key. Returns its fingerprint."""
        purpose, environment = KeyPurpose(purpose), KeyEnvironment(environment)
        if not key:
            await self.audit.log(
                AuditEvent.KEY_VALIDATION_FAILED,
                {"purpose": purpose.value, "environment": environment.value, "reason": "empty_key"},
                Severity.WARNING,
            )
            raise KeyManagementError("Refusing to store an empty key")
        if not validate_key_format(purpose, key):
            await self.audit.log(
                AuditEvent.KEY_VALIDATION_FAILED,
                {
                    "purpose": purpose.value,
                    "environment": environment.value,
                    "reason": "invalid_format",
                    "fingerprint": fingerprint(key),
                },
                Severity.WARNING,
            )
            raise KeyManagementError(f"Key does not look like a Stripe {purpose.value} key")

        self.store.set(purpose, environment, key)
        self._resolved.clear()
        fp = fingerprint(key)
        logger.info("Stripe %s key stored for %s (fp=%s)", purpose.value, environment.value, fp)
        await self.audit.log(
            AuditEvent.KEY_STORED,
            {"purpose": purpose.value, "environment": environment.value, "fingerprint": fp},
            Severity.INFO,
        )
        return fp

    async def get_key(
        self,
        purpose: Union[KeyPurpose, str],
        environment: Optional[Union[KeyEnvironment, str]] = None,
    ) -> str:
        """Read a key from the store. Raises KeyManagementError when absent."""
        purpose = KeyPurpose(purpose)
        environment = KeyEnvironment(environment) if environment else self.current_environment
        key = self.store.get(purpose, environment)
        if not key:
            raise KeyManagementError(f"No {purpose.value} key stored for {environment.value}")
        await self.audit.log(
            AuditEvent.KEY_ACCESSED,
            {"purpose": purpose.value, "environment": environment.value, "fingerprint": fingerprint(key)},
            Severity.INFO,
        )
        return key

    async def remove_key(
        self,
        purpose: Union[KeyPurpose, str],
        environment: Union[KeyEnvironment, str],
    ) -> None:
        purpose, environment = KeyPurpose(purpose), KeyEnvironment(environment)
        self.store.delete(purpose, environment)
        self._resolved.clear()
        await self.audit.log(
            AuditEvent.KEY_REMOVED,
            {"purpose": purpose.value, "environment": environment.value},
            Severity.WARNING,
        )

    async def clear_all(self) -> None:
        self.store.clear()
        self._resolved.clear()
        logger.warning("All stored Stripe keys removed")
        await self.audit.log(AuditEvent.KEY_REMOVED, {"scope": "all"}, Severity.CRITICAL)

    def resolve(
        self,
        purpose: Union[KeyPurpose, str],
        environment: Optional[Union[KeyEnvironment, str]] = None,
    ) -> str:
        """
        Key for runtime use: the store first, then the explicit settings value
        for the running environment. Raises KeyManagementError otherwise.

        Successful lookups are cached until store_key, remove_key or clear_all
        runs on this manager; edits made by another process need a restart.
        """
        purpose = KeyPurpose(purpose)
        environment = KeyEnvironment(environment) if environment else self.current_environment

        cached = self._resolved.get((purpose, environment))
        if cached is not None:
            return cached

        key = self.store.get(purpose, environment)
        if not key and environment == self.current_environment:
            key = self._settings_value(purpose)
        if not key:
            raise KeyManagementError(f"No {purpose.value} key configured for {environment.value}")
        if not validate_key_format(purpose, key):
            raise KeyManagementError(
                f"Configured {purpose.value} key for {environment.value} has an invalid format "
                f"(fp={fingerprint(key)})"
            )
        self._resolved[(purpose, environment)] = key
        return key

    async def perform_security_audit(self) -> KeyAuditReport:
        """Check every (purpose, environment) slot for presence, format and live/test mix-ups."""
        report = KeyAuditReport(environment=self.current_environment.value)

        for environment in KeyEnvironment:
            for purpose in KeyPurpose:
                slot = _slot(purpose, environment)
                try:
                    key = self.store.get(purpose, environment)
                except KeyManagementError as e:
                    logger.error("Key slot %s unreadable: %s", slot, str(e))
                    report.invalid_keys.append(slot)
                    continue
                if not key and environment == self.current_environment:
                    key = self._settings_value(purpose)
                if not key:
                    report.missing_keys.append(slot)
                    continue

                if validate_key_format(purpose, key):
                    report.valid_keys.append(slot)
                else:
                    report.invalid_keys.append(slot)

                if environment == KeyEnvironment.DEVELOPMENT and looks_like_live_key(key):
                    report.warnings.append(f"Live key detected in development ({slot})")

        await self.audit.log(
            AuditEvent.KEY_AUDIT_COMPLETED,
            {
                "is_secure": report.is_secure,
                "valid": len(report.valid_keys),
                "invalid": report.invalid_keys,
                "missing": report.missing_keys,
                "warnings": report.warnings,
            },
            Severity.INFO if report.is_secure else Severity.WARNING,
        )
        return report
