"""
Encryption Engine

Passphrase-based authenticated encryption of single secret values.

Ciphertext layout is ``base64(nonce || ciphertext || tag)``. Everything needed
to decrypt except the passphrase travels in an immutable EncryptionMetadata.
Cryptographic failures never raise; they come back as typed results with an
error code.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import hashlib
import hmac
import logging
import secrets
import string
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from cacheout import Cache
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import (
    MIN_KDF_ITERATIONS,
    EncryptionAlgorithm,
    EncryptionConfig,
    KeyDerivationFunction,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16

# scrypt cost parameters; the iteration count in metadata only applies to PBKDF2
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

PASSWORD_CHARSET = string.ascii_letters + string.digits + "!@#$%^&*"

HASH_ALGORITHMS = {
    "SHA-256": "sha256",
    "SHA-384": "sha384",
    "SHA-512": "sha512",
}

# Error codes
INVALID_METADATA = "INVALID_METADATA"
MALFORMED_CIPHERTEXT = "MALFORMED_CIPHERTEXT"
ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
DECRYPTION_FAILED = "DECRYPTION_FAILED"
KEY_ROTATION_FAILED = "KEY_ROTATION_FAILED"

STRING_METADATA_FIELDS = (
    "algorithm",
    "key_derivation",
    "salt",
    "iv",
    "key_id",
    "security_level",
    "encrypted_at",
)
REQUIRED_METADATA_FIELDS = frozenset({"algorithm", "key_derivation", "iv", "salt"})


@dataclass(frozen=True)
class KeyRotation:
    next_rotation: str  # ISO-8601
    rotation_interval_days: int
    auto_rotate: bool

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class EncryptionMetadata:
    """Parameters bound to one ciphertext. Rotation produces new metadata."""

    algorithm: str
    key_derivation: str
    iterations: int
    salt: str  # base64
    iv: str  # base64
    security_level: str
    key_id: str
    encrypted_at: str  # ISO-8601
    key_rotation: KeyRotation

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EncryptionMetadata":
        """Raises KeyError or TypeError when fields are missing or malformed."""
        rotation = payload["key_rotation"]
        return cls(
            algorithm=payload["algorithm"],
            key_derivation=payload["key_derivation"],
            iterations=payload["iterations"],
            salt=payload["salt"],
            iv=payload["iv"],
            security_level=payload["security_level"],
            key_id=payload["key_id"],
            encrypted_at=payload["encrypted_at"],
            key_rotation=KeyRotation(
                next_rotation=rotation["next_rotation"],
                rotation_interval_days=rotation["rotation_interval_days"],
                auto_rotate=rotation["auto_rotate"],
            ),
        )


@dataclass(frozen=True)
class EncryptionResult:
    success: bool
    ciphertext: str | None = None
    metadata: EncryptionMetadata | None = None
    error_code: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DecryptionResult:
    success: bool
    plaintext: str | None = None
    error_code: str | None = None
    error: str | None = None


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EncryptionEngine:
    """
    Key derivation, AEAD encryption and key rotation for secret strings.

    Derived keys are cached in memory per (KDF, passphrase digest, salt,
    iterations) and are never persisted. Call ``lock()`` on logout.
    """

    def __init__(
        self,
        config: EncryptionConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or EncryptionConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._key_cache = Cache(maxsize=self._config.key_cache_size, ttl=0)

    # Configuration
    def get_config(self) -> EncryptionConfig:
        return dataclasses.replace(self._config)

    def update_config(self, config: EncryptionConfig) -> None:
        """Replace the defaults and drop every cached key."""
        with self._lock:
            self._config = config
            self._key_cache = Cache(maxsize=config.key_cache_size, ttl=0)
        logger.info("Encryption configuration updated, key cache cleared")

    def clear_key_cache(self) -> None:
        self._key_cache.clear()

    def lock(self) -> None:
        """Forget all derived keys, e.g. on logout."""
        self.clear_key_cache()
        logger.info("Encryption engine locked")

    @property
    def cached_key_count(self) -> int:
        return len(self._key_cache)

    # Encryption
    def encrypt_data(
        self,
        plaintext: str,
        passphrase: str,
        config: EncryptionConfig | Mapping[str, Any] | None = None,
    ) -> EncryptionResult:
        """
        Encrypt a string under a passphrase.

        Args:
            plaintext: The secret value
            passphrase: Passphrase the key is derived from
            config: Full config or overrides of the engine defaults for this call

        Returns:
            EncryptionResult with the ciphertext and its metadata

        Raises:
            ConfigurationError: if the requested configuration is unsupported
        """
        effective = self._resolve_config(config)
        if not passphrase:
            return EncryptionResult(
                success=False,
                error_code=ENCRYPTION_FAILED,
                error="Encryption failed: passphrase must not be empty",
            )

        try:
            salt = secrets.token_bytes(effective.salt_length)
            nonce = secrets.token_bytes(NONCE_LENGTH)
            key = self._derive_key(
                passphrase, salt, effective.kdf, effective.iterations, effective.key_length
            )
            sealed = self._cipher(effective.algorithm, key).encrypt(
                nonce, plaintext.encode("utf-8"), None
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Encryption failed: {exc}")
            return EncryptionResult(
                success=False, error_code=ENCRYPTION_FAILED, error=f"Encryption failed: {exc}"
            )

        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        metadata = EncryptionMetadata(
            algorithm=effective.algorithm.value,
            key_derivation=effective.kdf.value,
            iterations=effective.iterations,
            salt=base64.b64encode(salt).decode("ascii"),
            iv=base64.b64encode(nonce).decode("ascii"),
            security_level=effective.security_level.value,
            key_id=secrets.token_urlsafe(9),
            encrypted_at=now.isoformat(),
            key_rotation=KeyRotation(
                next_rotation=(now + timedelta(days=effective.rotation_interval_days)).isoformat(),
                rotation_interval_days=effective.rotation_interval_days,
                auto_rotate=effective.enable_key_rotation,
            ),
        )
        return EncryptionResult(
            success=True,
            ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
            metadata=metadata,
        )

    def decrypt_data(
        self,
        ciphertext: str,
        passphrase: str,
        metadata: EncryptionMetadata | Mapping[str, Any],
    ) -> DecryptionResult:
        """Decrypt a ciphertext produced by ``encrypt_data``. Never raises."""
        issues = self._metadata_issues(metadata)
        if issues:
            return DecryptionResult(
                success=False,
                error_code=INVALID_METADATA,
                error=f"Invalid encryption metadata: {'; '.join(issues)}",
            )
        if isinstance(metadata, Mapping):
            metadata = EncryptionMetadata.from_dict(metadata)

        try:
            blob = _b64decode(ciphertext)
        except (binascii.Error, ValueError, AttributeError) as exc:
            return DecryptionResult(
                success=False,
                error_code=MALFORMED_CIPHERTEXT,
                error=f"Ciphertext is not valid base64: {exc}",
            )
        if len(blob) < NONCE_LENGTH + TAG_LENGTH:
            return DecryptionResult(
                success=False,
                error_code=MALFORMED_CIPHERTEXT,
                error="Ciphertext is too short",
            )
        nonce, sealed = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
        if nonce != _b64decode(metadata.iv):
            return DecryptionResult(
                success=False,
                error_code=MALFORMED_CIPHERTEXT,
                error="Ciphertext nonce does not match metadata",
            )

        try:
            key = self._derive_key(
                passphrase,
                _b64decode(metadata.salt),
                KeyDerivationFunction(metadata.key_derivation),
                metadata.iterations,
                self._config.key_length,
            )
            plaintext = self._cipher(EncryptionAlgorithm(metadata.algorithm), key).decrypt(
                nonce, sealed, None
            )
            return DecryptionResult(success=True, plaintext=plaintext.decode("utf-8"))
        except InvalidTag:
            return DecryptionResult(
                success=False,
                error_code=DECRYPTION_FAILED,
                error="Decryption failed: wrong passphrase or tampered ciphertext",
            )
        except Exception as exc:  # noqa: BLE001
            return DecryptionResult(
                success=False, error_code=DECRYPTION_FAILED, error=f"Decryption failed: {exc}"
            )

    def rotate_key(
        self,
        ciphertext: str,
        old_passphrase: str,
        new_passphrase: str,
        metadata: EncryptionMetadata | Mapping[str, Any],
        config: EncryptionConfig | Mapping[str, Any] | None = None,
    ) -> EncryptionResult:
        """
        Re-encrypt a ciphertext under a new passphrase.

        The inputs are never modified. On failure nothing new is produced and
        the original ciphertext and metadata stay valid.
        """
        decrypted = self.decrypt_data(ciphertext, old_passphrase, metadata)
        if not decrypted.success or decrypted.plaintext is None:
            return EncryptionResult(
                success=False,
                error_code=KEY_ROTATION_FAILED,
                error=f"Key rotation failed: {decrypted.error}",
            )

        if config is None:
            if isinstance(metadata, Mapping):
                metadata = EncryptionMetadata.from_dict(metadata)
            config = {
                "algorithm": metadata.algorithm,
                "kdf": metadata.key_derivation,
                "iterations": metadata.iterations,
                "security_level": metadata.security_level,
                "rotation_interval_days": metadata.key_rotation.rotation_interval_days,
                "enable_key_rotation": metadata.key_rotation.auto_rotate,
            }

        try:
            result = self.encrypt_data(decrypted.plaintext, new_passphrase, config)
        except ConfigurationError as exc:
            result = EncryptionResult(success=False, error=str(exc))
        finally:
            self.clear_key_cache()

        if not result.success:
            return EncryptionResult(
                success=False,
                error_code=KEY_ROTATION_FAILED,
                error=f"Key rotation failed: {result.error}",
            )
        logger.info(f"Rotated encryption key, new key id {result.metadata.key_id}")
        return result

    # Metadata
    def validate_metadata(self, metadata: EncryptionMetadata | Mapping[str, Any]) -> bool:
        """True if the metadata is complete and meets the security policy."""
        return not self._metadata_issues(metadata)

    def needs_key_rotation(self, metadata: EncryptionMetadata) -> bool:
        """Advisory: auto rotation is on and the rotation date has passed."""
        if not metadata.key_rotation.auto_rotate:
            return False
        try:
            due = _parse_timestamp(metadata.key_rotation.next_rotation)
        except (TypeError, ValueError):
            logger.warning(f"Unparseable rotation date for key {metadata.key_id}")
            return False
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc) >= due

    # Hashing helpers
    def generate_hash(self, data: str | bytes, algorithm: str = "SHA-256") -> str:
        """Base64 digest of ``data``."""
        try:
            name = HASH_ALGORITHMS[algorithm.upper()]
        except KeyError as exc:
            raise ConfigurationError(
                f"Unsupported hash algorithm: {algorithm!r} "
                f"(supported: {', '.join(HASH_ALGORITHMS)})"
            ) from exc
        payload = data.encode("utf-8") if isinstance(data, str) else data
        return base64.b64encode(hashlib.new(name, payload).digest()).decode("ascii")

    def verify_integrity(
        self, data: str | bytes, expected_hash: str, algorithm: str = "SHA-256"
    ) -> bool:
        try:
            actual = self.generate_hash(data, algorithm)
        except ConfigurationError:
            return False
        return hmac.compare_digest(actual, expected_hash)

    @staticmethod
    def generate_secure_password(length: int = 32) -> str:
        if length < 1:
            raise ConfigurationError("Password length must be at least 1")
        return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))

    # Internal helpers
    def _resolve_config(
        self, config: EncryptionConfig | Mapping[str, Any] | None
    ) -> EncryptionConfig:
        if config is None:
            return self._config
        if isinstance(config, EncryptionConfig):
            return config
        try:
            return dataclasses.replace(self._config, **dict(config))
        except TypeError as exc:
            raise ConfigurationError(f"Unknown encryption option: {exc}") from exc

    def _derive_key(
        self,
        passphrase: str,
        salt: bytes,
        kdf: KeyDerivationFunction,
        iterations: int,
        key_length: int,
    ) -> bytes:
        cache_key = (
            kdf.value,
            hashlib.sha256(passphrase.encode("utf-8")).hexdigest(),
            salt,
            iterations,
        )
        cached = self._key_cache.get(cache_key)
        if cached is not None:
            return cached

        password = passphrase.encode("utf-8")
        if kdf is KeyDerivationFunction.PBKDF2:
            key = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=key_length,
                salt=salt,
                iterations=iterations,
            ).derive(password)
        else:
            key = Scrypt(
                salt=salt, length=key_length, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P
            ).derive(password)

        self._key_cache.set(cache_key, key)
        return key

    @staticmethod
    def _cipher(algorithm: EncryptionAlgorithm, key: bytes):
        if algorithm is EncryptionAlgorithm.CHACHA20_POLY1305:
            return ChaCha20Poly1305(key)
        return AESGCM(key)

    @staticmethod
    def _metadata_issues(metadata: EncryptionMetadata | Mapping[str, Any]) -> list[str]:
        if isinstance(metadata, Mapping):
            try:
                metadata = EncryptionMetadata.from_dict(metadata)
            except (KeyError, TypeError) as exc:
                return [f"missing or malformed field {exc}"]
        if not isinstance(metadata, EncryptionMetadata):
            return ["metadata must be EncryptionMetadata"]

        issues: list[str] = []
        for name in STRING_METADATA_FIELDS:
            value = getattr(metadata, name)
            if not isinstance(value, str):
                issues.append(f"{name} must be a string")
            elif not value and name in REQUIRED_METADATA_FIELDS:
                issues.append(f"missing {name}")
        if isinstance(metadata.iterations, bool) or not isinstance(metadata.iterations, int):
            issues.append("iterations must be an integer")
        if not isinstance(metadata.key_rotation.auto_rotate, bool):
            issues.append("key_rotation.auto_rotate must be a boolean")
        if issues:
            return issues

        if metadata.algorithm not in {member.value for member in EncryptionAlgorithm}:
            issues.append(f"unsupported algorithm {metadata.algorithm!r}")
        if metadata.key_derivation not in {member.value for member in KeyDerivationFunction}:
            issues.append(f"unsupported key derivation {metadata.key_derivation!r}")
        if metadata.iterations < MIN_KDF_ITERATIONS:
            issues.append(f"iterations below {MIN_KDF_ITERATIONS}")

        try:
            if len(_b64decode(metadata.iv)) != NONCE_LENGTH:
                issues.append(f"iv must be {NONCE_LENGTH} bytes")
            if not _b64decode(metadata.salt):
                issues.append("salt is empty")
        except (binascii.Error, ValueError, AttributeError):
            issues.append("salt or iv is not valid base64")

        try:
            _parse_timestamp(metadata.encrypted_at)
            _parse_timestamp(metadata.key_rotation.next_rotation)
        except (TypeError, ValueError, AttributeError):
            issues.append("unparseable timestamp")
        return issues
