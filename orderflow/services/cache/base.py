"""
Cache Backend Abstract Base Class

Defines the storage contract used by the CacheCoordinator.
Both MemoryCacheBackend and RedisCacheBackend must implement these methods.

Backends are dumb key/value stores with TTLs and prefix deletion; the
cache-aside protocol (single-flight, ETags, invalidation races) lives in
the coordinator.

Author: Khalil Bannouri
Version: 1.0.0
"""

import base64
import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


def canonical_json(value: Any) -> str:
    """Stable serialization used for both storage and ETag hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_etag(value: Any) -> str:
    """
    Content hash of a payload, formatted as a quoted HTTP entity tag.

    Uses the first 16 characters of the base64 SHA-256 digest of the
    canonical JSON form.
    """
    digest = hashlib.sha256(canonical_json(value).encode("utf-8")).digest()
    short_hash = base64.b64encode(digest).decode("ascii")[:16]
    return f'"{short_hash}"'


def normalize_etag(etag: Optional[str]) -> Optional[str]:
    """Strip weak validators and quotes so client and server tags compare."""
    if etag is None:
        return None
    tag = etag.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    return tag.strip('"') or None


@dataclass
class CacheEntry:
    """
    One cached payload.

    Attributes:
        key: Namespaced cache key
        value: JSON-serializable payload
        etag: Content hash of `value`
    """
    key: str
    value: Any
    etag: str

    def to_json(self) -> str:
        return json.dumps({"value": self.value, "etag": self.etag}, default=str)

    @classmethod
    def from_json(cls, key: str, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(key=key, value=data["value"], etag=data["etag"])


class BaseCacheBackend(ABC):
    """Abstract base class for cache storage backends."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the backend name (e.g., "memory", "redis")."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for `key`, or None on miss/expiry."""
        pass

    @abstractmethod
    async def set(self, entry: CacheEntry, ttl_seconds: int) -> None:
        """Store an entry that expires after `ttl_seconds`."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove one key. Returns True if it existed."""
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with `prefix`. Returns the count removed."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check backend connectivity."""
        pass

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None
