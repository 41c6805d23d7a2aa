"""Health and status reporting for a sync session.

get_sync_status() gathers uptime, cache stats, pending batches, queue state
and the change event marker into one dict for diagnostics screens and logs.
"""
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from services.sync_engine import SyncEngine


def get_uptime(engine: "SyncEngine") -> float:
    """Get uptime in seconds since the engine was initialized."""
    if engine.started_at is None:
        return 0.0
    return max(engine.clock.now() - engine.started_at, 0.0)


def get_overall_status(engine: "SyncEngine") -> str:
    """offline when disconnected, degraded when writes are failing, healthy otherwise."""
    if not engine.queue.online:
        return "offline"
    if any(write.attempt > 0 for write in engine.queue.pending()):
        return "degraded"
    return "healthy"


def get_sync_status(engine: "SyncEngine") -> Dict[str, Any]:
    """Get comprehensive sync status.

    Returns:
        Dict containing overall status, uptime, cache, batch and queue state.
    """
    cache_stats = engine.cache.stats()
    queue_status = engine.queue.status()

    return {
        "status": get_overall_status(engine),
        "uptime_seconds": round(get_uptime(engine), 1),
        "cache": {
            "size": cache_stats["size"],
            "oldest_stored_at": cache_stats["oldest_stored_at"],
            "newest_stored_at": cache_stats["newest_stored_at"],
        },
        "batches": {
            "pending": engine.coalescer.pending_count(),
            "kinds": engine.coalescer.pending_kinds(),
        },
        "queue": queue_status,
        "reconcilers": engine.reconciler_count,
        "last_event_at": engine.last_event_at,
        "last_error": engine.broadcaster.status["last_error"],
        "remote_backend": engine.settings.remote_backend,
    }
