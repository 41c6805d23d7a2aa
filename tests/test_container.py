"""Tests for container wiring and the session lifespan."""

from core.container import create_container
from main import sync_session
from services.postgrest import PostgrestRemoteStore
from services.remote_store import InMemoryRemoteStore


def test_memory_backend_wiring(settings):
    container = create_container(settings)
    engine = container.sync_engine()

    assert isinstance(engine.remote, InMemoryRemoteStore)
    assert engine.queue is container.offline_queue()
    assert engine.coalescer.remote is engine.remote
    assert container.feed_queries().cache is engine.cache


async def test_postgrest_backend_selected(settings):
    settings = settings.model_copy(update={
        "remote_backend": "postgrest",
        "remote_url": "https://db.example.test",
        "remote_api_key": "anon-key",
    })
    container = create_container(settings)
    remote = container.remote_store()

    assert isinstance(remote, PostgrestRemoteStore)
    assert str(remote.client.base_url).startswith("https://db.example.test/rest/v1")
    await remote.close()


async def test_session_flushes_on_exit(settings):
    async with sync_session(settings) as session:
        engine = session.sync_engine()
        remote = session.remote_store()
        engine.set_online(False)
        engine.mutate("notification", {"id": "n1", "user_id": "u1", "body": "hello"})
        engine.set_online(True)
        await engine.flush_pending()
        assert engine.status()["queue"]["pending"] == 0

    assert "n1" in remote.tables["notifications"]
    assert engine.default_reconciler("notifications") is None
    assert not settings.marker_file.exists()
