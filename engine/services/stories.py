"""Stories feed: latest story per author with view tracking.

The feed owns one reconciler on the `stories` resource. Story rows live in
the reconciler (so views_count reflects optimistic views and live updates);
author profiles and the viewed set are kept beside it.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from constants import STORIES, stories_key, viewed_stories_key
from core.logging import get_logger
from core.timers import PeriodicTask, ScheduledTask
from models.view_state import StateChange
from services.queries import FeedQueries
from services.remote_store import Subscription
from services.sync_engine import SyncEngine

logger = get_logger(__name__)

REFRESH_INTERVAL = 120.0
# New stories are refetched after a short delay so the author profile exists
INSERT_REFETCH_DELAY = 1.0


def latest_per_user(stories: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the newest story of each author, preserving input order."""
    latest: Dict[str, Dict[str, Any]] = {}
    for story in stories:
        current = latest.get(story["user_id"])
        if current is None or str(story.get("created_at")) > str(current.get("created_at")):
            latest[story["user_id"]] = story
    kept = {id(s) for s in latest.values()}
    return [s for s in stories if id(s) in kept]


class StoryFeed:
    """Stories feed for one (possibly anonymous) user."""

    def __init__(self, engine: SyncEngine, queries: FeedQueries, user_id: Optional[str] = None,
                 refresh_interval: float = REFRESH_INTERVAL):
        self.engine = engine
        self.queries = queries
        self.user_id = user_id
        self.loading = False
        self.reconciler = engine.create_reconciler(STORIES)
        self.viewed: Set[str] = set()

        self._order: List[str] = []
        self._profiles: Dict[str, Dict[str, Any]] = {}
        self._view_mutations: Dict[str, str] = {}
        self._subscription: Optional[Subscription] = None
        self._unsubscribe = self.reconciler.on_state_change(self._on_state_change)
        self._refresher = PeriodicTask(engine.clock, refresh_interval, self._periodic_refresh,
                                       name="stories-refresh")
        self._refetch = ScheduledTask(engine.clock, self.fetch, name="stories-refetch")

    async def start(self) -> None:
        self._subscription = await self.engine.subscribe(STORIES, self.reconciler)
        await self.fetch()
        self._refresher.start()

    async def close(self) -> None:
        await self._refresher.stop()
        self._refetch.cancel()
        self._unsubscribe()
        self.reconciler.close()

    # =========================================================================
    # Reads
    # =========================================================================

    async def fetch(self, fresh: bool = False) -> List[Dict[str, Any]]:
        self.loading = True
        fetched_at = datetime.fromtimestamp(self.engine.clock.now(), tz=timezone.utc)
        try:
            rows = latest_per_user(await self.queries.stories_with_profiles(self.user_id))

            order = []
            snapshot = []
            for row in rows:
                story_id = str(row["id"])
                order.append(story_id)
                self._profiles[story_id] = row.get("profiles") or {
                    "name": "Unknown User", "username": "unknown", "avatar": None,
                }
                snapshot.append({k: v for k, v in row.items() if k not in ("profiles", "viewed")})
            self._order = order
            self.reconciler.load(snapshot, as_of=fetched_at if fresh else None)

            if self.user_id and order:
                self.viewed.update(await self.queries.viewed_story_ids(self.user_id, order))
        finally:
            self.loading = False

        logger.debug("Stories fetched", count=len(self._order), viewed=len(self.viewed))
        return self.stories()

    async def refresh(self) -> List[Dict[str, Any]]:
        """Drop cached feed data and refetch from the remote store."""
        self.queries.invalidate_stories(self.user_id)
        if self.user_id:
            self.engine.cache.delete(viewed_stories_key(self.user_id))
        return await self.fetch(fresh=True)

    async def _periodic_refresh(self) -> None:
        if not self.loading:
            await self.fetch()

    def stories(self) -> List[Dict[str, Any]]:
        result = []
        for story_id in self._order:
            view = self.reconciler.view(story_id)
            if view is None:
                continue
            result.append({
                **view,
                "profiles": self._profiles.get(story_id),
                "viewed": bool(view.get("viewed")) or story_id in self.viewed,
            })
        return result

    # =========================================================================
    # Views
    # =========================================================================

    def mark_viewed(self, story_id: str) -> Optional[str]:
        """Optimistically count a view. Skipped for anonymous or repeat views."""
        story_id = str(story_id)
        if not self.user_id or story_id in self.viewed:
            return None

        mutation_id = self.reconciler.mutate("story_view", {
            "story_id": story_id,
            "viewer_id": self.user_id,
        })
        if mutation_id is None:
            return None

        self.viewed.add(story_id)
        self._view_mutations[mutation_id] = story_id
        self.queries.cache_viewed(self.user_id, self.viewed)
        return mutation_id

    # =========================================================================
    # Live updates
    # =========================================================================

    def _on_state_change(self, change: StateChange) -> None:
        if change.type in ("merged", "deleted") and not self.loading:
            self.engine.cache.delete(stories_key(self.user_id or "anonymous"))

        if change.type == "merged" and change.entity_id not in self._order:
            self._refetch.arm(INSERT_REFETCH_DELAY)
        elif change.type == "deleted" and change.entity_id in self._order:
            self._order.remove(change.entity_id)
        elif change.type == "reverted" and change.mutation_id in self._view_mutations:
            # Failed view: let the user count it again later
            self.viewed.discard(self._view_mutations.pop(change.mutation_id))
        elif change.type in ("confirmed", "conflict"):
            self._view_mutations.pop(change.mutation_id, None)
