"""Dependency injection container for a sync session."""

from dependency_injector import containers, providers

from core.config import Settings
from core.cache import CacheService
from core.kvstore import BlobStore
from core.timers import AsyncioClock
from services.batching import WriteCoalescer
from services.offline_queue import OfflineQueue
from services.postgrest import PostgrestRemoteStore
from services.queries import FeedQueries
from services.remote_store import InMemoryRemoteStore
from services.status_broadcaster import StatusBroadcaster
from services.sync_engine import SyncEngine


class Container(containers.DeclarativeContainer):
    """Sync engine dependency injection container."""

    # Configuration (remote_backend selects the remote store)
    config = providers.Configuration()

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    clock = providers.Singleton(
        AsyncioClock,
    )

    cache = providers.Singleton(
        CacheService,
        settings=settings,
        clock=clock
    )

    # Remote store backend
    remote_store = providers.Selector(
        config.remote_backend,
        memory=providers.Singleton(
            InMemoryRemoteStore,
            clock=clock
        ),
        postgrest=providers.Singleton(
            PostgrestRemoteStore,
            settings=settings
        ),
    )

    blob_store = providers.Singleton(
        BlobStore,
        path=settings.provided.marker_file
    )

    coalescer = providers.Singleton(
        WriteCoalescer,
        settings=settings,
        clock=clock,
        remote=remote_store
    )

    offline_queue = providers.Singleton(
        OfflineQueue,
        settings=settings,
        clock=clock,
        remote=remote_store
    )

    broadcaster = providers.Singleton(
        StatusBroadcaster,
    )

    sync_engine = providers.Singleton(
        SyncEngine,
        settings=settings,
        clock=clock,
        cache=cache,
        remote=remote_store,
        coalescer=coalescer,
        queue=offline_queue,
        broadcaster=broadcaster,
        blob_store=blob_store
    )

    feed_queries = providers.Factory(
        FeedQueries,
        settings=settings,
        clock=clock,
        cache=cache,
        remote=remote_store
    )


def create_container(settings: Settings) -> Container:
    """Build a container bound to `settings`."""
    container = Container()
    container.settings.override(providers.Object(settings))
    container.config.remote_backend.from_value(settings.remote_backend)
    return container


