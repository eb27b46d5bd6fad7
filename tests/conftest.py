"""Shared pytest fixtures for transcache tests."""

import pytest

from transcache.config import EncryptionConfig, IntegrityConfig, QuotaConfig
from transcache.diskcache_backend import DiskCacheBackend
from transcache.encryption import EncryptionEngine
from transcache.events import EventEmitter
from transcache.integrity_checker import IntegrityChecker
from transcache.quota_manager import QuotaManager
from transcache.ttl_in_memory_backend import TTLInMemoryBackend

from tests.utils.fakes import FailingBackend, FakeClock


@pytest.fixture
def clock():
    """A manually advanced clock."""
    return FakeClock()


@pytest.fixture
def memory_backend(clock):
    """In-memory backend without expiry, driven by the fake clock."""
    backend = TTLInMemoryBackend(clock=clock)
    yield backend
    backend.close()


@pytest.fixture
def failing_backend(clock):
    """In-memory backend with switchable failures."""
    return FailingBackend(clock=clock)


@pytest.fixture
def disk_backend(tmp_path, clock):
    """Disk backend in a per-test temporary directory."""
    with DiskCacheBackend(cache_dir=str(tmp_path / "cache"), clock=clock) as backend:
        yield backend


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def checker(clock, events):
    """Integrity checker with sequential batches for deterministic tests."""
    return IntegrityChecker(
        IntegrityConfig(enable_parallel_check=False), events=events, clock=clock
    )


@pytest.fixture
def quota_manager(memory_backend, checker, events, clock):
    """Quota manager over the in-memory backend with auto cleanup disabled."""
    manager = QuotaManager(
        memory_backend,
        QuotaConfig(enable_auto_cleanup=False),
        integrity_checker=checker,
        events=events,
        clock=clock,
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def fast_encryption_config():
    """Minimum allowed iteration count keeps key derivation quick."""
    return EncryptionConfig(iterations=10_000)


@pytest.fixture
def engine(fast_encryption_config, clock):
    return EncryptionEngine(fast_encryption_config, clock=clock)
