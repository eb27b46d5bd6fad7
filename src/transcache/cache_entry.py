"""
Cache Entry

Cache entries wrap JSON-compatible data together with the integrity record
(checksum, algorithm and declared size) that the integrity checker verifies.
Entries are persisted in a storage backend as UTF-8 JSON bytes.
"""

from __future__ import annotations

import hashlib
import json
import time
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class VerificationStatus(Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    CORRUPTED = "corrupted"
    PENDING = "pending"


class ChecksumAlgorithm(Enum):
    SHA256 = "sha256"
    MD5 = "md5"
    CRC32 = "crc32"


def canonical_json(data: Any) -> str:
    """Serialize data the one way checksums and sizes are computed over."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def serialized_size(data: Any) -> int:
    """UTF-8 byte length of the canonical serialization."""
    return len(canonical_json(data).encode("utf-8"))


def compute_checksum(
    data: Any, algorithm: ChecksumAlgorithm | str = ChecksumAlgorithm.SHA256
) -> str:
    """Hex checksum of the canonical serialization of ``data``.

    Raises:
        ValueError: if the algorithm is not supported
        TypeError: if the data is not JSON-serializable
    """
    return checksum_of_text(canonical_json(data), algorithm)


def checksum_of_text(
    text: str, algorithm: ChecksumAlgorithm | str = ChecksumAlgorithm.SHA256
) -> str:
    """Hex checksum of an already serialized payload."""
    algorithm = ChecksumAlgorithm(algorithm)
    payload = text.encode("utf-8")
    if algorithm is ChecksumAlgorithm.SHA256:
        return hashlib.sha256(payload).hexdigest()
    if algorithm is ChecksumAlgorithm.MD5:
        return hashlib.md5(payload).hexdigest()  # noqa: S324
    return f"{zlib.crc32(payload) & 0xFFFFFFFF:08x}"


@dataclass
class IntegrityRecord:
    """Expected checksum and size of an entry plus its verification status."""

    checksum: str
    algorithm: str = ChecksumAlgorithm.SHA256.value
    declared_size: int = 0
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    verified_at: float | None = None


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping fields."""

    key: str
    data: Any
    size: int
    integrity: IntegrityRecord
    created_at: float = field(default_factory=time.time)
    last_access_time: float = field(default_factory=time.time)
    access_count: int = 0
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "data": self.data,
            "size": self.size,
            "created_at": self.created_at,
            "last_access_time": self.last_access_time,
            "access_count": self.access_count,
            "expires_at": self.expires_at,
            "integrity": {
                "checksum": self.integrity.checksum,
                "algorithm": self.integrity.algorithm,
                "declared_size": self.integrity.declared_size,
                "status": self.integrity.status.value,
                "verified_at": self.integrity.verified_at,
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CacheEntry":
        integrity = payload["integrity"]
        return cls(
            key=payload["key"],
            data=payload.get("data"),
            size=payload["size"],
            created_at=payload["created_at"],
            last_access_time=payload["last_access_time"],
            access_count=payload.get("access_count", 0),
            expires_at=payload.get("expires_at"),
            integrity=IntegrityRecord(
                checksum=integrity["checksum"],
                algorithm=integrity.get("algorithm", ChecksumAlgorithm.SHA256.value),
                declared_size=integrity.get("declared_size", payload["size"]),
                status=VerificationStatus(
                    integrity.get("status", VerificationStatus.UNVERIFIED.value)
                ),
                verified_at=integrity.get("verified_at"),
            ),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CacheEntry":
        """Decode an entry written by ``to_bytes``.

        Raises ValueError (including JSON and UTF-8 decode errors), KeyError or
        TypeError when the payload is not a well-formed entry.
        """
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("cache entry payload must be a JSON object")
        return cls.from_dict(payload)


def build_cache_entry(
    key: str,
    data: Any,
    algorithm: ChecksumAlgorithm | str = ChecksumAlgorithm.SHA256,
    ttl_seconds: float | None = None,
    now: float | None = None,
) -> CacheEntry:
    """Create an entry whose checksum and size match ``data``."""
    now = time.time() if now is None else now
    algorithm = ChecksumAlgorithm(algorithm)
    size = serialized_size(data)
    return CacheEntry(
        key=key,
        data=data,
        size=size,
        created_at=now,
        last_access_time=now,
        access_count=0,
        expires_at=now + ttl_seconds if ttl_seconds else None,
        integrity=IntegrityRecord(
            checksum=compute_checksum(data, algorithm),
            algorithm=algorithm.value,
            declared_size=size,
            status=VerificationStatus.PENDING,
        ),
    )
