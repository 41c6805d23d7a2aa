"""Tests for cached feed reads and read retries."""

import asyncio

import pytest

from constants import STORIES_TTL, user_profile_key
from core.errors import TransientNetworkError, ValidationError
from models.sync import RetryPolicy
from services.queries import FeedQueries, with_retry

from conftest import EPOCH, iso


def flaky(*outcomes):
    """Operation that raises or returns each outcome in turn, recording call count."""
    remaining = list(outcomes)
    calls = []

    async def operation():
        calls.append(1)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return operation, calls


@pytest.fixture
def queries(settings, clock, cache, remote) -> FeedQueries:
    return FeedQueries(settings, clock, cache, remote)


class TestWithRetry:

    async def test_progressive_delays(self, clock):
        operation, calls = flaky(TransientNetworkError("a"), TransientNetworkError("b"), "ok")
        run = asyncio.ensure_future(with_retry(operation, clock))
        await clock.settle()
        assert len(calls) == 1

        await clock.advance(0.9)
        assert len(calls) == 1
        await clock.advance(0.2)
        assert len(calls) == 2

        await clock.advance(1.5)
        assert not run.done()
        await clock.advance(0.5)

        assert await run == "ok"
        assert len(calls) == 3

    async def test_non_retryable_raised_immediately(self, clock):
        operation, calls = flaky(ValidationError("bad filter"))

        with pytest.raises(ValidationError):
            await with_retry(operation, clock)
        assert len(calls) == 1

    async def test_budget_exhausted(self, clock):
        operation, calls = flaky(*[TransientNetworkError("down")] * 3)
        policy = RetryPolicy(max_attempts=2, delays=[1.0])
        run = asyncio.ensure_future(with_retry(operation, clock, policy))
        await clock.settle()

        await clock.advance(1.0)
        await clock.advance(1.0)

        with pytest.raises(TransientNetworkError):
            await run
        assert len(calls) == 3

    async def test_unknown_errors_are_retried(self, clock):
        operation, calls = flaky(RuntimeError("socket closed"), "ok")
        run = asyncio.ensure_future(with_retry(operation, clock))
        await clock.settle()

        await clock.advance(1.0)

        assert await run == "ok"


class TestRetryPolicy:

    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0)

        assert [policy.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_delay_table_repeats_last_entry(self):
        policy = RetryPolicy(delays=[1.0, 2.0, 5.0])

        assert [policy.calculate_delay(n) for n in range(5)] == [1.0, 2.0, 5.0, 5.0, 5.0]

    def test_feed_reads_use_progressive_table(self, queries):
        assert queries.retry_policy.delays == [1.0, 2.0, 5.0]


class TestStoriesWithProfiles:

    async def test_join_and_order(self, queries):
        stories = await queries.stories_with_profiles("u9")

        assert [s["id"] for s in stories] == ["s2", "s1"]
        assert stories[0]["profiles"] == {"name": "Grace", "username": "grace", "avatar": "g.png"}

    async def test_expired_and_orphaned_stories_hidden(self, queries, remote):
        remote.seed("stories", [
            {"id": "old", "user_id": "u1", "created_at": iso(EPOCH - 90_000), "expires_at": iso(EPOCH - 1)},
            {"id": "orphan", "user_id": "u404", "created_at": iso(EPOCH), "expires_at": iso(EPOCH + 60)},
        ])

        stories = await queries.stories_with_profiles("u9")

        assert [s["id"] for s in stories] == ["s2", "s1"]

    async def test_cached_until_ttl(self, queries, remote, clock):
        await queries.stories_with_profiles("u9")
        await queries.stories_with_profiles("u9")
        assert remote.count("fetch_many", "stories") == 1

        await clock.advance(STORIES_TTL)
        await queries.stories_with_profiles("u9")
        assert remote.count("fetch_many", "stories") == 2

    async def test_invalidate(self, queries, remote):
        await queries.stories_with_profiles("u9")
        queries.invalidate_stories("u9")
        await queries.stories_with_profiles("u9")

        assert remote.count("fetch_many", "stories") == 2

    async def test_transient_failure_retried(self, queries, remote, clock):
        remote.fail("fetch_many", TransientNetworkError("blip"))
        run = asyncio.ensure_future(queries.stories_with_profiles("u9"))
        await clock.settle()

        await clock.advance(1.0)

        assert [s["id"] for s in await run] == ["s2", "s1"]

    async def test_rejected_read_yields_empty(self, queries, remote, cache):
        remote.fail_always("fetch_many", ValidationError("bad filter"))

        assert await queries.stories_with_profiles("u9") == []
        assert len(cache) == 0


class TestViewedStories:

    async def test_subset_viewed(self, queries, remote):
        remote.seed("story_views", [{"id": "v1", "story_id": "s1", "viewer_id": "u9"}])

        assert await queries.viewed_story_ids("u9", ["s1", "s2"]) == ["s1"]
        assert await queries.viewed_story_ids("u9", ["s2", "s1"]) == ["s1"]
        assert remote.count("fetch_many", "story_views") == 1

    async def test_anonymous_viewer(self, queries, remote):
        assert await queries.viewed_story_ids(None, ["s1"]) == []
        assert await queries.viewed_story_ids("u9", []) == []
        assert remote.calls == []

    async def test_local_viewed_set_used(self, queries, remote):
        queries.cache_viewed("u9", ["s2"])

        assert await queries.viewed_story_ids("u9", ["s1", "s2"]) == ["s2"]
        assert remote.calls == []


class TestProfiles:

    async def test_profile_cached(self, queries, remote):
        assert (await queries.user_profile("u1"))["username"] == "ada"
        await queries.user_profile("u1")

        assert remote.count("fetch_one", "profiles") == 1

    async def test_missing_profile_not_cached(self, queries, cache):
        assert await queries.user_profile("u404") is None
        assert not cache.exists(user_profile_key("u404"))

    async def test_batch_fetch_fills_single_profile_cache(self, queries, remote):
        profiles = await queries.user_profiles(["u2", "u1", "u2"])

        assert sorted(p["id"] for p in profiles) == ["u1", "u2"]
        assert (await queries.user_profile("u2"))["name"] == "Grace"
        assert remote.count("fetch_one") == 0
