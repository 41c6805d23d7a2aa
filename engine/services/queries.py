"""Cached feed reads.

Each query checks the TTL cache first, then reads the remote store with
bounded retries (progressive 1s/2s/5s delays) and caches the result. Read
failures are logged and yield an empty result so the feed degrades instead
of breaking.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Set, TypeVar

from constants import (
    PROFILE_TTL, PROFILES, READ_RETRY_DELAYS, STORIES, STORIES_TTL, STORY_VIEWS, VIEWED_STORIES_TTL,
    stories_key, user_profile_key, viewed_stories_key,
)
from core.cache import CacheService
from core.config import Settings
from core.errors import SyncError, classify_error
from core.logging import get_logger
from core.timers import Clock, sleep
from models.sync import RetryPolicy
from services.remote_store import RemoteStore, Row

logger = get_logger(__name__)

T = TypeVar("T")

PROFILE_FIELDS = ("name", "username", "avatar")


async def with_retry(operation: Callable[[], Awaitable[T]], clock: Clock,
                     policy: Optional[RetryPolicy] = None,
                     context: str = "operation") -> T:
    """Run `operation`, retrying transient failures with progressive delays.

    Non-retryable failures are raised on the first attempt. After the last
    attempt the classified error is raised.
    """
    policy = policy or RetryPolicy(delays=list(READ_RETRY_DELAYS))
    last_error: Optional[SyncError] = None

    for attempt in range(policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = classify_error(e)
            logger.warning("Read failed", context=context, attempt=attempt + 1,
                           max_attempts=policy.max_attempts + 1, error=str(e),
                           error_type=last_error.error_type)
            if not last_error.retryable:
                raise last_error from e
            if attempt < policy.max_attempts:
                await sleep(clock, policy.calculate_delay(attempt))

    raise last_error


class FeedQueries:
    """Read side of the stories feed."""

    def __init__(self, settings: Settings, clock: Clock, cache: CacheService, remote: RemoteStore):
        self.settings = settings
        self.clock = clock
        self.cache = cache
        self.remote = remote
        self.retry_policy = RetryPolicy(max_attempts=settings.read_max_retries,
                                        delays=list(READ_RETRY_DELAYS))

    async def _read(self, operation: Callable[[], Awaitable[T]], context: str) -> T:
        return await with_retry(operation, self.clock, self.retry_policy, context)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc).isoformat()

    # =========================================================================
    # Stories
    # =========================================================================

    async def stories_with_profiles(self, user_id: Optional[str] = None) -> List[Row]:
        """Non-expired stories, newest first, each with its author's profile."""
        key = stories_key(user_id or "anonymous")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            stories = await self._read(
                lambda: self.remote.fetch_many(
                    STORIES,
                    {"expires_at": ("gt", self._now_iso())},
                    order="created_at.desc",
                ),
                "stories_with_profiles",
            )
            profiles = await self.user_profiles({s["user_id"] for s in stories if s.get("user_id")})
        except SyncError as e:
            logger.error("Error fetching stories with profiles", error=str(e))
            return []

        by_id = {str(p["id"]): p for p in profiles}
        result = []
        for story in stories:
            profile = by_id.get(str(story.get("user_id")))
            # Inner join: stories without an author profile are hidden
            if profile is None:
                continue
            result.append({**story, "profiles": {f: profile.get(f) for f in PROFILE_FIELDS}})

        self.cache.set(key, result, ttl=STORIES_TTL)
        return result

    async def viewed_story_ids(self, user_id: Optional[str], story_ids: Iterable[str]) -> List[str]:
        """Subset of `story_ids` this user has viewed."""
        story_ids = list(story_ids)
        if not user_id or not story_ids:
            return []

        key = viewed_stories_key(user_id)
        cached = self.cache.get(key)
        if isinstance(cached, set):
            return [sid for sid in story_ids if sid in cached]

        try:
            rows = await self._read(
                lambda: self.remote.fetch_many(STORY_VIEWS, {"viewer_id": user_id, "story_id": story_ids}),
                "viewed_story_ids",
            )
        except SyncError as e:
            logger.error("Error fetching viewed stories", user_id=user_id, error=str(e))
            return []

        viewed: Set[str] = {str(row["story_id"]) for row in rows}
        self.cache.set(key, viewed, ttl=VIEWED_STORIES_TTL)
        return [sid for sid in story_ids if sid in viewed]

    # =========================================================================
    # Profiles
    # =========================================================================

    async def user_profile(self, user_id: str) -> Optional[Row]:
        key = user_profile_key(user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            profile = await self._read(lambda: self.remote.fetch_one(PROFILES, user_id), "user_profile")
        except SyncError as e:
            logger.error("Error fetching user profile", user_id=user_id, error=str(e))
            return None

        if profile is not None:
            self.cache.set(key, profile, ttl=PROFILE_TTL)
        return profile

    async def user_profiles(self, user_ids: Iterable[str]) -> List[Row]:
        """Batch profile fetch; every profile is also cached on its own key."""
        ids = sorted({str(uid) for uid in user_ids})
        if not ids:
            return []

        batch_key = f"user_profiles:{','.join(ids)}"
        cached = self.cache.get(batch_key)
        if cached is not None:
            return cached

        try:
            profiles = await self._read(lambda: self.remote.fetch_many(PROFILES, {"id": ids}),
                                        "user_profiles")
        except SyncError as e:
            logger.error("Error fetching user profiles", count=len(ids), error=str(e))
            return []

        for profile in profiles:
            self.cache.set(user_profile_key(str(profile["id"])), profile, ttl=PROFILE_TTL)
        self.cache.set(batch_key, profiles, ttl=PROFILE_TTL)
        return profiles

    def invalidate_stories(self, user_id: Optional[str] = None) -> None:
        self.cache.delete(stories_key(user_id or "anonymous"))

    def cache_viewed(self, user_id: str, viewed: Iterable[str]) -> None:
        """Replace the cached viewed set with one known locally."""
        self.cache.set(viewed_stories_key(user_id), {str(sid) for sid in viewed}, ttl=VIEWED_STORIES_TTL)
