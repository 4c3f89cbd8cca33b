from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

V = TypeVar("V")

EXACT_DESCRIPTION_CHARS = 100


class TTLCache(Generic[V]):
    """In-memory key/value store with per-entry expiry.

    Expired entries are evicted lazily on read; ``cleanup`` sweeps them
    eagerly.  Writes are whole-value overwrites (last write wins).
    """

    def __init__(self, *, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._entries: dict[str, tuple[V, float]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expiry = entry
            if self._clock() >= expiry:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + self.ttl_s)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def cleanup(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expiry) in self._entries.items() if now >= expiry]
            for key in expired:
                del self._entries[key]
            return len(expired)


@dataclass(frozen=True)
class CacheEntry:
    code: str
    title: str
    confidence: float
    segment: str | None = None
    family: str | None = None


@dataclass(frozen=True)
class CachedClassification:
    code: str
    title: str
    confidence: float
    source: Literal["exact", "vendor"]
    segment: str | None = None
    family: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "title": self.title,
            "confidence": self.confidence,
            "source": self.source,
            "segment": self.segment,
            "family": self.family,
        }


def exact_cache_key(vendor: str, description: str) -> str:
    normalized_vendor = str(vendor or "").strip().lower()
    normalized_desc = str(description or "").strip().lower()[:EXACT_DESCRIPTION_CHARS]
    return f"{normalized_vendor}::{normalized_desc}"


def vendor_cache_key(vendor: str) -> str:
    return str(vendor or "").strip().lower()


class ClassificationCache:
    """Two-level classification cache.

    Level 1 is keyed by vendor and truncated description; level 2 by vendor
    alone.  A level-2 hit is returned with its confidence multiplied by
    ``vendor_confidence_factor`` since the description was not compared.
    """

    def __init__(
        self,
        *,
        exact_ttl_s: float = 600,
        vendor_ttl_s: float = 3600,
        vendor_confidence_factor: float = 0.9,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.exact: TTLCache[CacheEntry] = TTLCache(ttl_s=exact_ttl_s, clock=clock)
        self.vendor: TTLCache[CacheEntry] = TTLCache(ttl_s=vendor_ttl_s, clock=clock)
        self.vendor_confidence_factor = float(vendor_confidence_factor)

    @classmethod
    def from_settings(cls, settings: Any, *, clock: Callable[[], float] = time.monotonic) -> "ClassificationCache":
        return cls(
            exact_ttl_s=settings.cache_exact_ttl_s,
            vendor_ttl_s=settings.cache_vendor_ttl_s,
            vendor_confidence_factor=settings.cache_vendor_confidence_factor,
            clock=clock,
        )

    def lookup(self, vendor: str, description: str) -> CachedClassification | None:
        exact_hit = self.exact.get(exact_cache_key(vendor, description))
        if exact_hit is not None:
            return CachedClassification(
                code=exact_hit.code,
                title=exact_hit.title,
                confidence=exact_hit.confidence,
                source="exact",
                segment=exact_hit.segment,
                family=exact_hit.family,
            )
        if not vendor_cache_key(vendor):
            return None
        vendor_hit = self.vendor.get(vendor_cache_key(vendor))
        if vendor_hit is not None:
            return CachedClassification(
                code=vendor_hit.code,
                title=vendor_hit.title,
                confidence=round(vendor_hit.confidence * self.vendor_confidence_factor, 4),
                source="vendor",
                segment=vendor_hit.segment,
                family=vendor_hit.family,
            )
        return None

    def store(self, vendor: str, description: str, entry: CacheEntry) -> None:
        self.exact.set(exact_cache_key(vendor, description), entry)
        if vendor_cache_key(vendor):
            self.vendor.set(vendor_cache_key(vendor), entry)

    def clear(self) -> None:
        self.exact.clear()
        self.vendor.clear()

    def cleanup(self) -> int:
        return self.exact.cleanup() + self.vendor.cleanup()
