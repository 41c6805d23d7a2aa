"""
Client-side cache and sync engine for the stories feed.

sync_session() is the composition root: it builds the container, starts the
engine and tears everything down (flush, drain, persist marker) on exit.

    async with sync_session() as session:
        engine = session.sync_engine()
        engine.mutate("story_view", {"story_id": sid, "viewer_id": uid})
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from core.config import Settings
from core.container import Container, create_container
from core.logging import bind_session_context, clear_session_context, configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def sync_session(settings: Optional[Settings] = None,
                       container: Optional[Container] = None) -> AsyncIterator[Container]:
    """Session lifespan management."""
    settings = settings or Settings()
    configure_logging(settings)
    bind_session_context(settings)

    container = container or create_container(settings)

    # Startup
    logger.info("Starting sync session")
    engine = container.sync_engine()
    await engine.init()
    logger.info("Sync session started")
    try:
        yield container
    finally:
        # Shutdown
        await engine.shutdown()
        logger.info("Sync session shutdown complete")
        clear_session_context()


async def _report_status() -> None:
    async with sync_session() as session:
        engine = session.sync_engine()
        await engine.flush_pending()
        logger.info("Sync status", **engine.status())


if __name__ == "__main__":
    asyncio.run(_report_status())
