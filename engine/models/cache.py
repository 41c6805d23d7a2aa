"""In-memory cache entry with per-entry expiration."""

from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    """Generic key-value cache entry.

    Valid while `now - stored_at < ttl`. Keys are opaque strings built by the
    caller (e.g. "story:42"); the cache never looks inside them.
    """

    key: str
    value: Any
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl
