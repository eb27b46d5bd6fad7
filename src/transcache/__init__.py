from importlib.metadata import version, PackageNotFoundError

from .base_storage_backend import StorageBackend
from .cache_entry import CacheEntry, ChecksumAlgorithm, build_cache_entry
from .config import EncryptionConfig, IntegrityConfig, QuotaConfig, RecoveryStrategy
from .config_store import SecureConfigStore
from .diskcache_backend import DiskCacheBackend
from .encryption import EncryptionEngine, EncryptionMetadata
from .entry_store import CacheEntryStore
from .errors import ConfigurationError, StorageBackendError, TranscacheError
from .events import EventEmitter, EventType
from .integrity_checker import CorruptionType, IntegrityChecker
from .quota_manager import QuotaManager
from .scheduler import MaintenanceScheduler
from .storage_types import (
    CleanupStrategy,
    ItemPriority,
    QuotaStatus,
    StorageTier,
)
from .tiered_backend import TieredStorageBackend
from .ttl_in_memory_backend import TTLInMemoryBackend


def main():
    """Main entry point for the package."""
    # Importing server creates the storage backend
    from . import server

    server.main()


# Package metadata helpers
try:
    __version__ = version("transcache")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0+dev"

# Public API
__all__ = [
    "main",
    "__version__",
    "CacheEntry",
    "CacheEntryStore",
    "ChecksumAlgorithm",
    "CleanupStrategy",
    "ConfigurationError",
    "CorruptionType",
    "DiskCacheBackend",
    "EncryptionConfig",
    "EncryptionEngine",
    "EncryptionMetadata",
    "EventEmitter",
    "EventType",
    "IntegrityChecker",
    "IntegrityConfig",
    "ItemPriority",
    "MaintenanceScheduler",
    "QuotaConfig",
    "QuotaManager",
    "QuotaStatus",
    "RecoveryStrategy",
    "SecureConfigStore",
    "StorageBackend",
    "StorageBackendError",
    "StorageTier",
    "TTLInMemoryBackend",
    "TieredStorageBackend",
    "TranscacheError",
    "build_cache_entry",
]
