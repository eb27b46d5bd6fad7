"""
Defines custom exceptions so callers can tell configuration mistakes apart
from storage failures.
"""


class TranscacheError(Exception):
    """Base exception for all transcache errors."""


class ConfigurationError(TranscacheError, ValueError):
    """Raised when a component is given an unsupported or unsafe configuration."""


class StorageBackendError(TranscacheError):
    """Raised by a storage backend when a read, write or delete fails."""
