"""
Unit tests for CacheEntryStore

Tests checksummed writes and validation on read, including recovery of
corrupted entries.
"""

import pytest

from transcache.cache_entry import CacheEntry, build_cache_entry
from transcache.config import IntegrityConfig, RecoveryStrategy
from transcache.entry_store import CacheEntryStore
from transcache.integrity_checker import IntegrityChecker
from transcache.storage_types import ItemPriority, StorageTier

TIER = StorageTier.LOCAL
TRANSCRIPT = {"text": "good morning everyone", "confidence": 0.93, "segments": [0, 1200]}


def tamper(backend, key, data):
    """Replace the data of a stored entry, keeping its integrity record."""
    entry = CacheEntry.from_bytes(backend.get(TIER, key))
    entry.data = data
    backend.set(TIER, key, entry.to_bytes())


@pytest.fixture
def store(memory_backend, checker, clock):
    return CacheEntryStore(memory_backend, checker, clock=clock)


class TestReadWrite:
    """Test suite for put and get."""

    def test_round_trip(self, store, memory_backend):
        """Test stored data is returned after validation."""
        written = store.put(TIER, "transcription_1", TRANSCRIPT, priority=ItemPriority.HIGH)

        assert store.get(TIER, "transcription_1") == TRANSCRIPT
        assert written == memory_backend.get_item_size(TIER, "transcription_1")
        assert memory_backend.describe_items(TIER)[0].priority is ItemPriority.HIGH

    def test_miss(self, store):
        """Test a missing key returns None."""
        assert store.get(TIER, "transcription_missing") is None

    @pytest.mark.parametrize("bad_key", ["", " padded", None])
    def test_invalid_key(self, store, bad_key):
        """Test invalid keys are rejected before writing."""
        with pytest.raises(ValueError):
            store.put(TIER, bad_key, TRANSCRIPT)

    def test_unserializable_data(self, store):
        """Test data that is not JSON raises."""
        with pytest.raises(TypeError):
            store.put(TIER, "cache_a", {"when": object()})

    def test_delete(self, store):
        """Test delete removes the entry."""
        store.put(TIER, "cache_a", [1, 2])
        store.delete(TIER, "cache_a")
        assert store.get(TIER, "cache_a") is None

    def test_backend_read_failure_is_a_miss(self, failing_backend, checker, clock):
        """Test a failing backend read returns None."""
        store = CacheEntryStore(failing_backend, checker, clock=clock)
        store.put(TIER, "cache_a", [1])
        failing_backend.fail_get_keys.add("cache_a")
        assert store.get(TIER, "cache_a") is None


class TestExpiry:
    """Test suite for entry TTLs."""

    def test_default_ttl(self, memory_backend, checker, clock):
        """Test entries expire after the store default TTL."""
        store = CacheEntryStore(memory_backend, checker, default_ttl_seconds=60, clock=clock)
        store.put(TIER, "cache_a", TRANSCRIPT)
        clock.advance(59)
        assert store.get(TIER, "cache_a") == TRANSCRIPT
        clock.advance(2)
        assert store.get(TIER, "cache_a") is None
        assert memory_backend.get(TIER, "cache_a") is None

    def test_per_entry_ttl_overrides_default(self, memory_backend, checker, clock):
        """Test an explicit TTL wins over the default."""
        store = CacheEntryStore(memory_backend, checker, default_ttl_seconds=60, clock=clock)
        store.put(TIER, "cache_a", TRANSCRIPT, ttl_seconds=3600)
        clock.advance(120)
        assert store.get(TIER, "cache_a") == TRANSCRIPT


class TestCorruptionOnRead:
    """Test suite for corrupted entries."""

    def test_corrupted_entry_is_removed(self, store, memory_backend):
        """Test a checksum mismatch deletes the entry."""
        store.put(TIER, "transcription_1", TRANSCRIPT)
        tamper(memory_backend, "transcription_1", {**TRANSCRIPT, "text": "good morning everyon!"})

        assert store.get(TIER, "transcription_1") is None
        assert memory_backend.get(TIER, "transcription_1") is None

    def test_undecodable_payload_is_removed(self, store, memory_backend):
        """Test garbage bytes are treated as corruption."""
        memory_backend.set(TIER, "cache_a", b"\x00\x01garbage")
        assert store.get(TIER, "cache_a") is None
        assert memory_backend.get(TIER, "cache_a") is None

    def test_notify_keeps_entry(self, memory_backend, clock):
        """Test the notify strategy reports but keeps the entry."""
        checker = IntegrityChecker(
            IntegrityConfig(recovery_strategy=RecoveryStrategy.NOTIFY), clock=clock
        )
        store = CacheEntryStore(memory_backend, checker, clock=clock)
        store.put(TIER, "cache_a", TRANSCRIPT)
        tamper(memory_backend, "cache_a", {"text": "x"})

        assert store.get(TIER, "cache_a") is None
        assert memory_backend.get(TIER, "cache_a") is not None
        assert len(checker.get_corruption_events()) == 2

    def test_restore_writes_backup_back(self, memory_backend, clock):
        """Test a restored entry is returned and persisted."""
        backups = {"cache_a": build_cache_entry("cache_a", TRANSCRIPT, now=clock.now)}
        checker = IntegrityChecker(
            IntegrityConfig(recovery_strategy="restore"),
            backup_provider=backups.get,
            clock=clock,
        )
        store = CacheEntryStore(memory_backend, checker, clock=clock)
        store.put(TIER, "cache_a", TRANSCRIPT)
        tamper(memory_backend, "cache_a", {"text": "tampered"})

        assert store.get(TIER, "cache_a") == TRANSCRIPT
        assert checker.check_raw_entry("cache_a", memory_backend.get(TIER, "cache_a")).is_valid

    def test_failed_check_keeps_entry(self, store, memory_backend):
        """Test an entry that cannot be checked is not deleted."""
        store.put(TIER, "cache_a", TRANSCRIPT)
        entry = CacheEntry.from_bytes(memory_backend.get(TIER, "cache_a"))
        entry.integrity.algorithm = "whirlpool"
        memory_backend.set(TIER, "cache_a", entry.to_bytes())

        assert store.get(TIER, "cache_a") is None
        assert memory_backend.get(TIER, "cache_a") is not None

    def test_restored_entry_keeps_priority(self, memory_backend, clock):
        """Test writing back a restored entry keeps the item's priority."""
        backups = {"config_a": build_cache_entry("config_a", TRANSCRIPT, now=clock.now)}
        checker = IntegrityChecker(
            IntegrityConfig(recovery_strategy="restore"),
            backup_provider=backups.get,
            clock=clock,
        )
        store = CacheEntryStore(memory_backend, checker, clock=clock)
        store.put(TIER, "config_a", TRANSCRIPT, priority=ItemPriority.CRITICAL, cleanup_allowed=False)
        tamper(memory_backend, "config_a", {"text": "tampered"})

        assert store.get(TIER, "config_a") == TRANSCRIPT
        item = memory_backend.describe_item(TIER, "config_a")
        assert item.priority is ItemPriority.CRITICAL
        assert item.cleanup_allowed is False

    @pytest.mark.parametrize(
        "config",
        [
            IntegrityConfig(recovery_strategy=RecoveryStrategy.RESTORE),
            IntegrityConfig(enable_auto_recovery=False),
        ],
    )
    def test_entry_kept_unless_removal_applies(self, memory_backend, clock, config):
        """Test reads delete corrupted entries only when a sweep would too."""
        checker = IntegrityChecker(config, clock=clock)
        store = CacheEntryStore(memory_backend, checker, clock=clock)
        store.put(TIER, "cache_a", TRANSCRIPT)
        tamper(memory_backend, "cache_a", {"text": "x"})

        assert store.get(TIER, "cache_a") is None
        assert memory_backend.get(TIER, "cache_a") is not None
