"""
Unit tests for configuration validation and environment overrides.
"""

from unittest.mock import patch

import pytest

from transcache.config import (
    EncryptionAlgorithm,
    EncryptionConfig,
    IntegrityConfig,
    KeyDerivationFunction,
    QuotaConfig,
    RecoveryStrategy,
)
from transcache.errors import ConfigurationError, TranscacheError
from transcache.storage_types import CleanupStrategy, StorageTier, TierLimits


class TestQuotaConfig:
    """Test suite for QuotaConfig."""

    def test_defaults(self):
        """Test default thresholds."""
        config = QuotaConfig()
        assert config.warning_threshold == 75.0
        assert config.critical_threshold == 90.0
        assert config.auto_cleanup_threshold == 85.0
        assert config.strategy_targets[CleanupStrategy.SMART] == 0.35

    def test_warning_above_critical_rejected(self):
        """Test warning must not exceed critical."""
        with pytest.raises(ConfigurationError):
            QuotaConfig(warning_threshold=95, critical_threshold=90)

    def test_missing_tier_rejected(self):
        """Test every tier needs limits."""
        with pytest.raises(ConfigurationError, match="local"):
            QuotaConfig(limits={StorageTier.SYNC: TierLimits(1, 1, 1)})

    def test_invalid_target_fraction_rejected(self):
        """Test target fractions must be in (0, 1]."""
        with pytest.raises(ConfigurationError):
            QuotaConfig(strategy_targets={CleanupStrategy.LRU: 1.5})

    def test_configuration_error_is_value_error(self):
        """Test ConfigurationError fits both hierarchies."""
        with pytest.raises(ValueError):
            QuotaConfig(max_pending_plans=0)
        assert issubclass(ConfigurationError, TranscacheError)

    def test_from_env(self):
        """Test thresholds read from the environment."""
        env = {
            "TRANSCACHE_WARNING_THRESHOLD": "60",
            "TRANSCACHE_CRITICAL_THRESHOLD": "80",
            "TRANSCACHE_AUTO_CLEANUP": "false",
        }
        with patch.dict("os.environ", env, clear=True):
            config = QuotaConfig.from_env()
        assert config.warning_threshold == 60.0
        assert config.critical_threshold == 80.0
        assert config.enable_auto_cleanup is False

    def test_from_env_invalid_number(self):
        """Test a non-numeric threshold is rejected."""
        with patch.dict("os.environ", {"TRANSCACHE_WARNING_THRESHOLD": "high"}, clear=True):
            with pytest.raises(ConfigurationError, match="TRANSCACHE_WARNING_THRESHOLD"):
                QuotaConfig.from_env()


class TestIntegrityConfig:
    """Test suite for IntegrityConfig."""

    def test_strategy_coerced_from_string(self):
        """Test recovery strategy accepts its string value."""
        assert IntegrityConfig(recovery_strategy="notify").recovery_strategy is RecoveryStrategy.NOTIFY

    def test_unknown_strategy_rejected(self):
        """Test unknown recovery strategies fail fast."""
        with pytest.raises(ConfigurationError):
            IntegrityConfig(recovery_strategy="repair")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_check_batch_size": 0},
            {"max_workers": 0},
            {"max_corruption_events": 0},
            {"check_timeout_seconds": 0},
        ],
    )
    def test_invalid_limits(self, overrides):
        """Test non-positive limits are rejected."""
        with pytest.raises(ConfigurationError):
            IntegrityConfig(**overrides)


class TestEncryptionConfig:
    """Test suite for EncryptionConfig."""

    def test_defaults(self):
        """Test default algorithm and KDF."""
        config = EncryptionConfig()
        assert config.algorithm is EncryptionAlgorithm.AES_256_GCM
        assert config.kdf is KeyDerivationFunction.PBKDF2
        assert config.iterations == 100_000

    def test_string_values_coerced(self):
        """Test enum fields accept their string values."""
        config = EncryptionConfig(algorithm="ChaCha20-Poly1305", kdf="scrypt")
        assert config.algorithm is EncryptionAlgorithm.CHACHA20_POLY1305
        assert config.kdf is KeyDerivationFunction.SCRYPT

    def test_error_lists_supported_values(self):
        """Test the error message names the supported algorithms."""
        with pytest.raises(ConfigurationError, match="AES-256-GCM"):
            EncryptionConfig(algorithm="AES-256-CBC")

    def test_short_salt_rejected(self):
        """Test salts shorter than 16 bytes are rejected."""
        with pytest.raises(ConfigurationError):
            EncryptionConfig(salt_length=8)
