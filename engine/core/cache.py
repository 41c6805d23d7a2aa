"""In-memory TTL cache with lazy expiry and a periodic sweep.

Every operation is a total function: nothing here raises, and an expired
entry is never returned even if the sweep has not run yet.
"""

import fnmatch
from typing import Any, Dict, List, Optional

from core.config import Settings
from core.logging import get_logger, log_cache_operation
from core.timers import Clock, PeriodicTask
from models.cache import CacheEntry

logger = get_logger(__name__)


class CacheService:
    """Session-wide key/value cache with per-entry TTL.

    Lifecycle:
    - startup(): starts the periodic sweep so keys that are never re-read
      do not accumulate
    - shutdown(): stops the sweep and drops all entries
    """

    def __init__(self, settings: Settings, clock: Clock):
        self.settings = settings
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper = PeriodicTask(
            clock, settings.cache_sweep_interval, self.sweep, name="cache-sweep"
        )

    async def startup(self):
        """Start the periodic sweep."""
        self._sweeper.start()
        logger.info("In-memory cache initialized",
                    default_ttl=self.settings.cache_ttl,
                    sweep_interval=self.settings.cache_sweep_interval)

    async def shutdown(self):
        """Stop sweeping and clear the cache."""
        await self._sweeper.stop()
        self._entries.clear()
        logger.info("In-memory cache cleared")

    def get(self, key: str, default: Any = None) -> Optional[Any]:
        """Get value from cache, or `default` on a miss.

        Expired entries are removed on access. Pass a sentinel as `default` to
        tell a stored None apart from a miss.
        """
        entry = self._entries.get(key)
        if entry is None:
            log_cache_operation(logger, "get", key, hit=False)
            return default

        if not entry.is_valid(self.clock.now()):
            del self._entries[key]
            log_cache_operation(logger, "get", key, hit=False, expired=True)
            return default

        log_cache_operation(logger, "get", key, hit=True)
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value, replacing any existing entry for key."""
        ttl = self.settings.cache_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(key=key, value=value,
                                        stored_at=self.clock.now(), ttl=ttl)
        log_cache_operation(logger, "set", key, ttl=ttl)

    def delete(self, key: str) -> bool:
        """Delete value from cache."""
        deleted = self._entries.pop(key, None) is not None
        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    def exists(self, key: str) -> bool:
        """Check if key holds a valid entry."""
        entry = self._entries.get(key)
        return entry is not None and entry.is_valid(self.clock.now())

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        log_cache_operation(logger, "clear", "*", deleted=count)

    def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching a glob pattern (e.g. "viewed_stories:*")."""
        keys_to_delete = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in keys_to_delete:
            del self._entries[key]
        log_cache_operation(logger, "clear_pattern", pattern, deleted=len(keys_to_delete))
        return len(keys_to_delete)

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self.clock.now()
        expired = [k for k, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed expired entries",
                         removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Entry count and age bounds, for diagnostics only."""
        entries = list(self._entries.values())
        keys: List[str] = [entry.key for entry in entries]
        return {
            "size": len(entries),
            "keys": keys,
            "oldest_stored_at": min((e.stored_at for e in entries), default=None),
            "newest_stored_at": max((e.stored_at for e in entries), default=None),
        }

    def __len__(self) -> int:
        return len(self._entries)
