"""
Pytest configuration and shared fixtures for sync engine tests.

Every timing-sensitive component runs on a VirtualClock; tests move time with
`await clock.advance(seconds)` instead of sleeping.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest

from core.cache import CacheService
from core.config import Settings
from core.kvstore import BlobStore
from core.timers import VirtualClock
from services.batching import WriteCoalescer
from services.offline_queue import OfflineQueue
from services.remote_store import InMemoryRemoteStore
from services.status_broadcaster import StatusBroadcaster
from services.sync_engine import SyncEngine

# Fixed origin so ISO timestamps in fixtures look realistic
EPOCH = 1_750_000_000.0


def iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class FailingRemoteStore(InMemoryRemoteStore):
    """In-memory store that raises queued errors before real calls.

    `fail(call, *errors)` queues errors for the next calls of that method;
    `fail_always(call, error)` raises on every call until `recover(call)`.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._scheduled: Dict[str, List[Exception]] = {}
        self._always: Dict[str, Exception] = {}

    def fail(self, call: str, *errors: Exception) -> None:
        self._scheduled.setdefault(call, []).extend(errors)

    def fail_always(self, call: str, error: Exception) -> None:
        self._always[call] = error

    def recover(self, call: str) -> None:
        self._always.pop(call, None)
        self._scheduled.pop(call, None)

    def _check_available(self, call: str, target: str, args: Any) -> None:
        super()._check_available(call, target, args)
        if call in self._always:
            raise self._always[call]
        scheduled = self._scheduled.get(call)
        if scheduled:
            raise scheduled.pop(0)

    def count(self, call: str, target: str = None) -> int:
        return sum(1 for c, t, _ in self.calls if c == call and (target is None or t == target))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        cache_ttl=300.0,
        cache_sweep_interval=300.0,
        batch_max_size=50,
        batch_delay=1.0,
        batch_retry_delay=5.0,
        batch_max_redrives=3,
        queue_max_retries=3,
        queue_drain_interval=30.0,
        marker_path=str(tmp_path / "sync" / "marker.json"),
        marker_write_delay=2.0,
        remote_backend="memory",
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(start=EPOCH)


@pytest.fixture
def remote(clock: VirtualClock) -> FailingRemoteStore:
    store = FailingRemoteStore(clock=clock)
    store.seed("stories", [
        {"id": "s1", "user_id": "u1", "views_count": 0, "created_at": iso(EPOCH - 600),
         "expires_at": iso(EPOCH + 86_400)},
        {"id": "s2", "user_id": "u2", "views_count": 5, "created_at": iso(EPOCH - 300),
         "expires_at": iso(EPOCH + 86_400)},
    ])
    store.seed("profiles", [
        {"id": "u1", "name": "Ada", "username": "ada", "avatar": None},
        {"id": "u2", "name": "Grace", "username": "grace", "avatar": "g.png"},
    ])
    return store


@pytest.fixture
def cache(settings: Settings, clock: VirtualClock) -> CacheService:
    return CacheService(settings, clock)


@pytest.fixture
def coalescer(settings: Settings, clock: VirtualClock, remote: FailingRemoteStore) -> WriteCoalescer:
    return WriteCoalescer(settings, clock, remote)


@pytest.fixture
def queue(settings: Settings, clock: VirtualClock, remote: FailingRemoteStore) -> OfflineQueue:
    return OfflineQueue(settings, clock, remote)


@pytest.fixture
def blob_store(settings: Settings) -> BlobStore:
    return BlobStore(settings.marker_file)


@pytest.fixture
async def engine(settings, clock, cache, remote, coalescer, queue, blob_store):
    sync_engine = SyncEngine(
        settings=settings,
        clock=clock,
        cache=cache,
        remote=remote,
        coalescer=coalescer,
        queue=queue,
        broadcaster=StatusBroadcaster(),
        blob_store=blob_store,
    )
    await sync_engine.init()
    yield sync_engine
    await sync_engine.shutdown()
