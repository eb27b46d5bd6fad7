"""
Configuration

Dataclass configuration for the quota manager, integrity checker and
encryption engine. Every config validates itself on construction and raises
ConfigurationError for values the components cannot work with.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError
from .storage_types import (
    DEFAULT_TIER_LIMITS,
    CleanupStrategy,
    ItemPriority,
    StorageTier,
    TierLimits,
)


class RecoveryStrategy(Enum):
    """What to do with an entry once corruption is detected."""

    REMOVE = "remove"
    RESTORE = "restore"
    NOTIFY = "notify"


class EncryptionAlgorithm(Enum):
    AES_256_GCM = "AES-256-GCM"
    CHACHA20_POLY1305 = "ChaCha20-Poly1305"


class KeyDerivationFunction(Enum):
    PBKDF2 = "PBKDF2"
    SCRYPT = "scrypt"


class SecurityLevel(Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    SECRET = "secret"


MIN_KDF_ITERATIONS = 10_000

DEFAULT_STRATEGY_TARGETS: dict[CleanupStrategy, float] = {
    CleanupStrategy.LRU: 0.20,
    CleanupStrategy.SIZE_BASED: 0.15,
    CleanupStrategy.AGE_BASED: 0.25,
    CleanupStrategy.PRIORITY_BASED: 0.30,
    CleanupStrategy.SMART: 0.35,
}


@dataclass(frozen=True)
class SmartScoreWeights:
    """Heuristic constants of the smart eviction score.

    Lower scores are evicted first. The values are inherited heuristics and
    are not known to be optimal.
    """

    base_score: float = 100.0
    priority_weights: dict[ItemPriority, float] = field(
        default_factory=lambda: {
            ItemPriority.LOW: 10.0,
            ItemPriority.NORMAL: 30.0,
            ItemPriority.HIGH: 50.0,
            ItemPriority.CRITICAL: 100.0,
        }
    )
    access_frequency_multiplier: float = 20.0
    recency_decay_per_hour: float = 0.5
    recency_cap_hours: float = 168.0  # one week
    size_log_weight: float = 0.1


@dataclass
class QuotaConfig:
    """Quota monitoring and cleanup settings."""

    warning_threshold: float = 75.0
    critical_threshold: float = 90.0
    growth_warning_bytes_per_hour: float = 1024 * 1024
    track_growth: bool = True
    growth_window_hours: float = 24.0
    enable_auto_cleanup: bool = True
    auto_cleanup_threshold: float = 85.0
    max_pending_plans: int = 100
    limits: dict[StorageTier, TierLimits] = field(
        default_factory=lambda: dict(DEFAULT_TIER_LIMITS)
    )
    strategy_targets: dict[CleanupStrategy, float] = field(
        default_factory=lambda: dict(DEFAULT_STRATEGY_TARGETS)
    )
    smart_weights: SmartScoreWeights = field(default_factory=SmartScoreWeights)

    def __post_init__(self) -> None:
        if not 0 < self.warning_threshold <= self.critical_threshold:
            raise ConfigurationError(
                "warning_threshold must be positive and not above critical_threshold "
                f"(got warning={self.warning_threshold}, critical={self.critical_threshold})"
            )
        if self.growth_window_hours <= 0:
            raise ConfigurationError("growth_window_hours must be positive")
        if self.max_pending_plans < 1:
            raise ConfigurationError("max_pending_plans must be at least 1")
        missing = [tier.value for tier in StorageTier if tier not in self.limits]
        if missing:
            raise ConfigurationError(f"Missing tier limits for: {', '.join(missing)}")
        for tier, limits in self.limits.items():
            if limits.max_bytes <= 0 or limits.max_items <= 0:
                raise ConfigurationError(f"Tier {tier.value} limits must be positive")
        for strategy, fraction in self.strategy_targets.items():
            if not 0 < fraction <= 1:
                raise ConfigurationError(
                    f"Target fraction for {strategy.value} must be in (0, 1], got {fraction}"
                )

    @classmethod
    def from_env(cls) -> "QuotaConfig":
        """Build a config, overriding thresholds from TRANSCACHE_* variables."""
        kwargs: dict[str, object] = {}
        for env_name, attr in (
            ("TRANSCACHE_WARNING_THRESHOLD", "warning_threshold"),
            ("TRANSCACHE_CRITICAL_THRESHOLD", "critical_threshold"),
            ("TRANSCACHE_AUTO_CLEANUP_THRESHOLD", "auto_cleanup_threshold"),
        ):
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            try:
                kwargs[attr] = float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{env_name} must be a number, got {raw!r}") from exc
        auto_cleanup = os.environ.get("TRANSCACHE_AUTO_CLEANUP")
        if auto_cleanup is not None:
            kwargs["enable_auto_cleanup"] = auto_cleanup.lower() in {"1", "true", "yes"}
        return cls(**kwargs)  # type: ignore[arg-type]


@dataclass
class IntegrityConfig:
    """Integrity checking and recovery settings."""

    enable_checksum_validation: bool = True
    enable_size_validation: bool = True
    enable_structure_validation: bool = True
    enable_auto_recovery: bool = True
    max_recovery_attempts: int = 3
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.REMOVE
    max_check_batch_size: int = 100
    check_timeout_seconds: float = 5.0
    enable_parallel_check: bool = True
    max_workers: int = 8
    max_corruption_events: int = 1000

    def __post_init__(self) -> None:
        if isinstance(self.recovery_strategy, str):
            try:
                self.recovery_strategy = RecoveryStrategy(self.recovery_strategy)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unsupported recovery strategy: {self.recovery_strategy!r}"
                ) from exc
        if self.max_check_batch_size < 1:
            raise ConfigurationError("max_check_batch_size must be at least 1")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.max_corruption_events < 1:
            raise ConfigurationError("max_corruption_events must be at least 1")
        if self.check_timeout_seconds <= 0:
            raise ConfigurationError("check_timeout_seconds must be positive")

    @property
    def removes_corrupted_entries(self) -> bool:
        """Whether unrecoverable corrupted entries are deleted from storage."""
        return self.enable_auto_recovery and self.recovery_strategy is RecoveryStrategy.REMOVE


@dataclass
class EncryptionConfig:
    """Encryption defaults. Unsupported values are rejected immediately."""

    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM
    kdf: KeyDerivationFunction = KeyDerivationFunction.PBKDF2
    iterations: int = 100_000
    salt_length: int = 32
    key_length: int = 32
    security_level: SecurityLevel = SecurityLevel.CONFIDENTIAL
    enable_key_rotation: bool = True
    rotation_interval_days: int = 90
    key_cache_size: int = 32

    def __post_init__(self) -> None:
        self.algorithm = _coerce(EncryptionAlgorithm, self.algorithm, "encryption algorithm")
        self.kdf = _coerce(KeyDerivationFunction, self.kdf, "key derivation function")
        self.security_level = _coerce(SecurityLevel, self.security_level, "security level")
        if self.iterations < MIN_KDF_ITERATIONS:
            raise ConfigurationError(
                f"iterations must be at least {MIN_KDF_ITERATIONS}, got {self.iterations}"
            )
        if self.salt_length < 16:
            raise ConfigurationError("salt_length must be at least 16 bytes")
        if self.key_length != 32:
            raise ConfigurationError("key_length must be 32 bytes for 256-bit AEAD ciphers")
        if self.rotation_interval_days < 1:
            raise ConfigurationError("rotation_interval_days must be at least 1")


def _coerce(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        supported = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"Unsupported {label}: {value!r} (supported: {supported})"
        ) from exc
