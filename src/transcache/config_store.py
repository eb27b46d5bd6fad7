"""
Secure Config Store

Keeps one encrypted service-credential record in the ``local`` tier with a
checksummed backup copy in the ``sync`` tier. The API key is only ever
persisted encrypted under the master password.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from .base_storage_backend import StorageBackend
from .cache_entry import canonical_json
from .encryption import EncryptionEngine, EncryptionMetadata
from .errors import ConfigurationError
from .storage_types import ItemPriority, StorageTier

logger = logging.getLogger(__name__)

CONFIG_KEY = "config_secure"
BACKUP_KEY = "config_backup"
CONFIG_VERSION = "1.0.0"

UPDATABLE_FIELDS = frozenset({"service_region", "endpoint", "language", "preferences"})

REGION_PATTERN = re.compile(r"[a-z]+[a-z0-9]*")
ENDPOINT_PATTERN = re.compile(r"https://.*\.cognitiveservices\.azure\.com/?")
NOTIFICATION_LEVELS = frozenset({"all", "errors", "critical", "none"})
VALIDATION_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class SecureConfigRecord:
    id: str
    encrypted_api_key: str
    service_region: str
    endpoint: str
    language: str
    encryption_metadata: EncryptionMetadata
    created_at: str
    updated_at: str
    preferences: dict[str, Any] = field(default_factory=dict)
    config_version: str = CONFIG_VERSION
    validation: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "encrypted_api_key": self.encrypted_api_key,
            "service_region": self.service_region,
            "endpoint": self.endpoint,
            "language": self.language,
            "encryption_metadata": self.encryption_metadata.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "preferences": dict(self.preferences),
            "config_version": self.config_version,
            "validation": self.validation,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SecureConfigRecord":
        return cls(
            id=payload["id"],
            encrypted_api_key=payload["encrypted_api_key"],
            service_region=payload["service_region"],
            endpoint=payload.get("endpoint", ""),
            language=payload.get("language", ""),
            encryption_metadata=EncryptionMetadata.from_dict(payload["encryption_metadata"]),
            created_at=payload["created_at"],
            updated_at=payload["updated_at"],
            preferences=dict(payload.get("preferences") or {}),
            config_version=payload.get("config_version", CONFIG_VERSION),
            validation=payload.get("validation"),
        )


@dataclass(frozen=True)
class ConfigHistoryEntry:
    entry_id: str
    config_id: str
    description: str
    changed_at: str
    service_region: str
    endpoint: str
    language: str
    config_version: str


@dataclass(frozen=True)
class ConfigOperationResult:
    success: bool
    data: Any = None
    api_key: str | None = None
    error_code: str | None = None
    error: str | None = None
    duration: float = 0.0


@dataclass(frozen=True)
class ConfigCheck:
    test_id: str
    name: str
    status: str  # passed, warning or failed
    message: str


@dataclass(frozen=True)
class ConfigIssue:
    severity: str  # error or warning
    code: str
    message: str
    resolution: str
    field_name: str | None = None


@dataclass(frozen=True)
class ConfigValidation:
    """Outcome of the offline checks run by ``SecureConfigStore.test_config``."""

    status: str  # valid, untested or invalid
    score: float
    checks: list[ConfigCheck]
    issues: list[ConfigIssue]
    validated_at: str
    expires_at: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def preferences_are_valid(preferences: dict[str, Any]) -> bool:
    """Range checks of the known user preferences. All four must be present."""
    try:
        return (
            preferences["notification_level"] in NOTIFICATION_LEVELS
            and 1 <= preferences["cache_retention_days"] <= 365
            and 0 <= preferences["max_storage_usage"] <= 1
            and 0 <= preferences["confidence_threshold"] <= 1
        )
    except (KeyError, TypeError):
        return False


class SecureConfigStore:
    """Encrypted storage of the transcription service configuration."""

    def __init__(
        self,
        backend: StorageBackend,
        engine: EncryptionEngine,
        master_password: str | None = None,
        enable_backup: bool = True,
        max_history_entries: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize SecureConfigStore.

        Args:
            backend: Storage backend; the record lives in the local tier
            engine: Encryption engine used for the API key
            master_password: Password the API key is encrypted under
            enable_backup: Whether to mirror the record into the sync tier
            max_history_entries: Number of history entries kept, newest first
            clock: Time source in epoch seconds
        """
        if max_history_entries < 1:
            raise ConfigurationError("max_history_entries must be at least 1")
        self._backend = backend
        self._engine = engine
        self._master_password = master_password or ""
        self._enable_backup = enable_backup
        self._max_history_entries = max_history_entries
        self._clock = clock
        self._history: list[ConfigHistoryEntry] = []

    # Master password
    def set_master_password(self, password: str) -> None:
        """Switch passphrase. Keys derived from the old one are dropped."""
        self._master_password = password
        self._engine.clear_key_cache()

    def clear_master_password(self) -> None:
        """Forget the master password and every key derived from it."""
        self._master_password = ""
        self._engine.clear_key_cache()

    @property
    def has_master_password(self) -> bool:
        return bool(self._master_password)

    # Operations
    def store_config(
        self,
        api_key: str,
        service_region: str,
        endpoint: str = "",
        language: str = "en-US",
        preferences: dict[str, Any] | None = None,
    ) -> ConfigOperationResult:
        start = time.perf_counter()
        if not self._master_password:
            return self._failure(
                "NO_MASTER_PASSWORD", "Master password is required for secure storage", start
            )

        encrypted = self._engine.encrypt_data(api_key, self._master_password)
        if not encrypted.success:
            return self._failure(
                "ENCRYPTION_FAILED", f"Failed to encrypt API key: {encrypted.error}", start
            )

        now = self._now_iso()
        record = SecureConfigRecord(
            id=f"config-{int(self._clock() * 1000)}-{uuid.uuid4().hex[:6]}",
            encrypted_api_key=encrypted.ciphertext,
            service_region=service_region,
            endpoint=endpoint,
            language=language,
            encryption_metadata=encrypted.metadata,
            created_at=now,
            updated_at=now,
            preferences=dict(preferences or {}),
        )
        try:
            self._persist(record)
        except Exception as exc:  # noqa: BLE001
            return self._failure(
                "STORE_CONFIG_FAILED", f"Failed to store configuration: {exc}", start
            )

        self._add_history(record, "Configuration created")
        return self._success(record, start, api_key=api_key)

    def get_config(self) -> ConfigOperationResult:
        """Load the record and decrypt its API key."""
        start = time.perf_counter()
        if not self._master_password:
            return self._failure(
                "NO_MASTER_PASSWORD", "Master password is required to read configuration", start
            )
        try:
            record = self._load_record()
        except Exception as exc:  # noqa: BLE001
            return self._failure(
                "GET_CONFIG_FAILED", f"Failed to read configuration: {exc}", start
            )
        if record is None:
            return self._failure("CONFIG_NOT_FOUND", "No configuration stored", start)

        decrypted = self._engine.decrypt_data(
            record.encrypted_api_key, self._master_password, record.encryption_metadata
        )
        if not decrypted.success:
            return self._failure(
                "DECRYPTION_FAILED", f"Failed to decrypt API key: {decrypted.error}", start
            )
        return self._success(record, start, api_key=decrypted.plaintext)

    def update_config(self, api_key: str | None = None, **changes: Any) -> ConfigOperationResult:
        """
        Update fields of the stored record.

        Args:
            api_key: New API key, re-encrypted under the master password
            **changes: Any of service_region, endpoint, language, preferences
        """
        start = time.perf_counter()
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            return self._failure(
                "UPDATE_FAILED", f"Cannot update fields: {', '.join(sorted(unknown))}", start
            )

        current = self.get_config()
        if not current.success:
            return self._failure(
                "UPDATE_FAILED",
                f"Cannot update: current configuration unavailable ({current.error_code})",
                start,
            )

        record: SecureConfigRecord = replace(
            current.data, updated_at=self._now_iso(), **changes
        )
        if api_key is not None:
            encrypted = self._engine.encrypt_data(api_key, self._master_password)
            if not encrypted.success:
                return self._failure(
                    "ENCRYPTION_FAILED",
                    f"Failed to encrypt updated API key: {encrypted.error}",
                    start,
                )
            record = replace(
                record,
                encrypted_api_key=encrypted.ciphertext,
                encryption_metadata=encrypted.metadata,
            )

        try:
            self._persist(record)
        except Exception as exc:  # noqa: BLE001
            return self._failure(
                "UPDATE_FAILED", f"Failed to update configuration: {exc}", start
            )

        self._add_history(record, "Configuration updated")
        return self._success(
            record, start, api_key=api_key if api_key is not None else current.api_key
        )

    def delete_config(self) -> ConfigOperationResult:
        start = time.perf_counter()
        try:
            self._backend.delete(StorageTier.LOCAL, CONFIG_KEY)
            if self._enable_backup:
                self._backend.delete(StorageTier.SYNC, BACKUP_KEY)
        except Exception as exc:  # noqa: BLE001
            return self._failure("DELETE_FAILED", f"Failed to delete configuration: {exc}", start)
        logger.info("Secure configuration deleted")
        return ConfigOperationResult(
            success=True, data=True, duration=time.perf_counter() - start
        )

    def rotate_encryption_key(self, new_master_password: str) -> ConfigOperationResult:
        """
        Re-encrypt the API key under a new master password.

        On failure the stored record and the current master password are left
        unchanged.
        """
        start = time.perf_counter()
        if not self._master_password:
            return self._failure(
                "NO_MASTER_PASSWORD", "Current master password is required for key rotation", start
            )
        if not new_master_password:
            return self._failure("ROTATION_FAILED", "New master password must not be empty", start)

        try:
            record = self._load_record()
        except Exception as exc:  # noqa: BLE001
            return self._failure("ROTATION_FAILED", f"Key rotation failed: {exc}", start)
        if record is None:
            return self._failure(
                "ROTATION_FAILED", "Cannot rotate key: no configuration stored", start
            )

        rotated = self._engine.rotate_key(
            record.encrypted_api_key,
            self._master_password,
            new_master_password,
            record.encryption_metadata,
        )
        if not rotated.success:
            return self._failure(
                "KEY_ROTATION_FAILED", f"Failed to rotate encryption key: {rotated.error}", start
            )

        updated = replace(
            record,
            encrypted_api_key=rotated.ciphertext,
            encryption_metadata=rotated.metadata,
            updated_at=self._now_iso(),
        )
        try:
            self._persist(updated)
        except Exception as exc:  # noqa: BLE001
            return self._failure("ROTATION_FAILED", f"Key rotation failed: {exc}", start)

        self._master_password = new_master_password
        self._add_history(updated, "Encryption key rotated")
        return self._success(updated, start)

    def restore_from_backup(self) -> ConfigOperationResult:
        """Copy the sync-tier backup back to the local tier if its checksum matches."""
        start = time.perf_counter()
        try:
            raw = self._backend.get(StorageTier.SYNC, BACKUP_KEY)
        except Exception as exc:  # noqa: BLE001
            return self._failure("BACKUP_NOT_FOUND", f"Failed to read backup: {exc}", start)
        if raw is None:
            return self._failure("BACKUP_NOT_FOUND", "No configuration backup stored", start)

        try:
            backup = json.loads(raw.decode("utf-8"))
            config_payload = backup["config"]
            checksum = backup["backup"]["checksum"]
            record = SecureConfigRecord.from_dict(config_payload)
        except (ValueError, KeyError, TypeError) as exc:
            return self._failure("BACKUP_CORRUPTED", f"Backup is unreadable: {exc}", start)

        if not self._engine.verify_integrity(canonical_json(config_payload), checksum):
            return self._failure("BACKUP_CORRUPTED", "Backup checksum mismatch", start)

        try:
            self._write_primary(record)
        except Exception as exc:  # noqa: BLE001
            return self._failure("STORE_CONFIG_FAILED", f"Failed to restore backup: {exc}", start)
        self._add_history(record, "Configuration restored from backup")
        return self._success(record, start)

    def test_config(self, record: SecureConfigRecord | None = None) -> ConfigOperationResult:
        """
        Run offline checks against a configuration record.

        Scores the API key, region, endpoint, encryption metadata and
        preferences; each passing check adds 0.2. Without ``record`` the stored
        configuration is checked and the result is saved on it.

        Args:
            record: Record to check instead of the stored one

        Returns:
            ConfigOperationResult whose data is a ConfigValidation
        """
        start = time.perf_counter()
        stored = record is None
        if record is None:
            current = self.get_config()
            if not current.success:
                return self._failure(
                    "NO_CONFIG_TO_TEST",
                    f"No configuration available to test ({current.error_code})",
                    start,
                )
            record = current.data

        validation = self._validate_record(record)
        if stored:
            validated = replace(record, validation=validation.to_dict())
            try:
                self._persist(validated)
            except Exception as exc:  # noqa: BLE001
                return self._failure("TEST_FAILED", f"Configuration test failed: {exc}", start)
            self._add_history(validated, "Configuration validated")

        logger.info(f"Configuration {record.id} validated: {validation.status} ({validation.score:.1f})")
        return ConfigOperationResult(
            success=True, data=validation, duration=time.perf_counter() - start
        )

    def export_config(self) -> ConfigOperationResult:
        """Export the stored record as JSON. The API key stays encrypted."""
        start = time.perf_counter()
        current = self.get_config()
        if not current.success:
            return self._failure(
                "EXPORT_FAILED", f"No configuration to export ({current.error_code})", start
            )
        exported = {
            "config": current.data.to_dict(),
            "exported_at": self._now_iso(),
            "version": CONFIG_VERSION,
        }
        return ConfigOperationResult(
            success=True,
            data=json.dumps(exported, indent=2),
            duration=time.perf_counter() - start,
        )

    def get_config_history(self) -> list[ConfigHistoryEntry]:
        """History entries, newest first."""
        return list(self._history)

    # Internal helpers
    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def _validate_record(self, record: SecureConfigRecord) -> ConfigValidation:
        checks: list[ConfigCheck] = []
        issues: list[ConfigIssue] = []

        if record.encrypted_api_key:
            checks.append(ConfigCheck("api-key-format", "API Key Format", "passed", "API key format is valid"))
        else:
            checks.append(ConfigCheck("api-key-format", "API Key Format", "failed", "API key is missing or empty"))
            issues.append(
                ConfigIssue(
                    "error",
                    "MISSING_API_KEY",
                    "API key is required for the speech service",
                    "Provide a valid speech service subscription key",
                    field_name="encrypted_api_key",
                )
            )

        if record.service_region and REGION_PATTERN.fullmatch(record.service_region):
            checks.append(ConfigCheck("region-format", "Region Format", "passed", "Region format is valid"))
        else:
            checks.append(ConfigCheck("region-format", "Region Format", "failed", "Invalid region format"))
            issues.append(
                ConfigIssue(
                    "error",
                    "INVALID_REGION",
                    "Region must be a valid Azure region identifier",
                    'Use a valid Azure region like "eastus" or "westeurope"',
                    field_name="service_region",
                )
            )

        if record.endpoint and ENDPOINT_PATTERN.fullmatch(record.endpoint):
            checks.append(ConfigCheck("endpoint-format", "Endpoint Format", "passed", "Endpoint format is valid"))
        else:
            checks.append(
                ConfigCheck("endpoint-format", "Endpoint Format", "warning", "Endpoint format may be incorrect")
            )
            issues.append(
                ConfigIssue(
                    "warning",
                    "SUSPICIOUS_ENDPOINT",
                    "Endpoint should follow the Azure Cognitive Services URL format",
                    "Verify the endpoint URL in the Azure portal",
                    field_name="endpoint",
                )
            )

        if self._engine.validate_metadata(record.encryption_metadata):
            checks.append(
                ConfigCheck("encryption-metadata", "Encryption Metadata", "passed", "Encryption metadata is valid")
            )
        else:
            checks.append(
                ConfigCheck("encryption-metadata", "Encryption Metadata", "failed", "Invalid encryption metadata")
            )
            issues.append(
                ConfigIssue(
                    "error",
                    "INVALID_ENCRYPTION",
                    "Configuration encryption metadata is corrupted",
                    "Re-encrypt the configuration with a valid master password",
                )
            )

        if preferences_are_valid(record.preferences):
            checks.append(
                ConfigCheck("preferences-format", "Preferences Format", "passed", "Preferences are valid")
            )
        else:
            checks.append(
                ConfigCheck(
                    "preferences-format",
                    "Preferences Format",
                    "warning",
                    "Some preferences may have invalid values",
                )
            )

        passed = sum(1 for check in checks if check.status == "passed")
        score = passed / len(checks)
        if score >= 0.8:
            status = "valid"
        elif score >= 0.5:
            status = "untested"
        else:
            status = "invalid"

        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return ConfigValidation(
            status=status,
            score=score,
            checks=checks,
            issues=issues,
            validated_at=now.isoformat(),
            expires_at=(now + VALIDATION_TTL).isoformat(),
        )

    def _load_record(self) -> SecureConfigRecord | None:
        raw = self._backend.get(StorageTier.LOCAL, CONFIG_KEY)
        if raw is None:
            return None
        return SecureConfigRecord.from_dict(json.loads(raw.decode("utf-8")))

    def _write_primary(self, record: SecureConfigRecord) -> None:
        self._backend.set(
            StorageTier.LOCAL,
            CONFIG_KEY,
            json.dumps(record.to_dict()).encode("utf-8"),
            priority=ItemPriority.CRITICAL,
            cleanup_allowed=False,
        )

    def _persist(self, record: SecureConfigRecord) -> None:
        self._write_primary(record)
        if self._enable_backup:
            self._write_backup(record)

    def _write_backup(self, record: SecureConfigRecord) -> None:
        payload = record.to_dict()
        serialized = canonical_json(payload)
        backup = {
            "config": payload,
            "backup": {
                "backup_id": f"backup-{int(self._clock() * 1000)}-{uuid.uuid4().hex[:6]}",
                "created_at": self._now_iso(),
                "size": len(serialized.encode("utf-8")),
                "checksum": self._engine.generate_hash(serialized),
            },
        }
        try:
            self._backend.set(
                StorageTier.SYNC,
                BACKUP_KEY,
                json.dumps(backup).encode("utf-8"),
                priority=ItemPriority.HIGH,
                cleanup_allowed=False,
            )
        except Exception as exc:  # noqa: BLE001
            # The primary copy is already written; a missing backup is not fatal
            logger.warning(f"Failed to create configuration backup: {exc}")

    def _add_history(self, record: SecureConfigRecord, description: str) -> None:
        entry = ConfigHistoryEntry(
            entry_id=f"history-{int(self._clock() * 1000)}-{uuid.uuid4().hex[:6]}",
            config_id=record.id,
            description=description,
            changed_at=self._now_iso(),
            service_region=record.service_region,
            endpoint=record.endpoint,
            language=record.language,
            config_version=record.config_version,
        )
        self._history.insert(0, entry)
        del self._history[self._max_history_entries :]

    def _success(
        self, record: SecureConfigRecord, start: float, api_key: str | None = None
    ) -> ConfigOperationResult:
        return ConfigOperationResult(
            success=True,
            data=record,
            api_key=api_key,
            duration=time.perf_counter() - start,
        )

    @staticmethod
    def _failure(code: str, message: str, start: float) -> ConfigOperationResult:
        logger.warning(f"{code}: {message}")
        return ConfigOperationResult(
            success=False,
            error_code=code,
            error=message,
            duration=time.perf_counter() - start,
        )
