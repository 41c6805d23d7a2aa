"""Tests for the PostgREST remote store (httpx MockTransport, no network)."""

import httpx
import orjson
import pytest

from constants import NOTIFICATIONS, STORIES
from core.errors import ConfigurationError, ConflictError, TransientNetworkError, ValidationError
from models.view_state import MutationState
from services.batching import WriteCoalescer
from services.offline_queue import OfflineQueue
from services.postgrest import PostgrestRemoteStore, encode_filters, map_http_error
from services.reconciler import Reconciler

BASE_URL = "https://db.example.test/rest/v1"


def make_store(settings, handler):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return PostgrestRemoteStore(settings, client=client)


@pytest.fixture
def requests():
    return []


def respond_with(requests, response):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return response
    return handler


def test_encode_filters():
    params = encode_filters({
        "id": "s1",
        "story_id": ["a", "b"],
        "expires_at": ("gt", "2025-06-15T12:00:00+00:00"),
    })

    assert params == {
        "id": "eq.s1",
        "story_id": "in.(a,b)",
        "expires_at": "gt.2025-06-15T12:00:00+00:00",
    }


class TestRequests:

    async def test_fetch_many_query_params(self, settings, requests):
        store = make_store(settings, respond_with(requests, httpx.Response(200, json=[{"id": "s1"}])))

        rows = await store.fetch_many("stories", {"user_id": "u1"}, order="created_at.desc", limit=10)

        assert rows == [{"id": "s1"}]
        params = requests[0].url.params
        assert requests[0].url.path == "/rest/v1/stories"
        assert params["user_id"] == "eq.u1"
        assert params["select"] == "*"
        assert params["order"] == "created_at.desc"
        assert params["limit"] == "10"
        await store.close()

    async def test_fetch_one_missing(self, settings, requests):
        store = make_store(settings, respond_with(requests, httpx.Response(200, json=[])))

        assert await store.fetch_one("profiles", "u404") is None
        assert requests[0].url.params["limit"] == "1"
        await store.close()

    async def test_insert_many_minimal_return(self, settings, requests):
        store = make_store(settings, respond_with(requests, httpx.Response(201)))

        assert await store.insert_many("story_views", [{"story_id": "s1", "viewer_id": "u9"}]) == []

        request = requests[0]
        assert request.method == "POST"
        assert request.headers["Prefer"] == "return=minimal"
        assert orjson.loads(request.content) == [{"story_id": "s1", "viewer_id": "u9"}]
        await store.close()

    async def test_invoke_procedure(self, settings, requests):
        store = make_store(settings, respond_with(requests, httpx.Response(200, json={"views_count": 3})))

        result = await store.invoke_procedure("increment_story_views", {"story_uuid": "s1"})

        assert result == {"views_count": 3}
        assert requests[0].url.path == "/rest/v1/rpc/increment_story_views"
        await store.close()

    async def test_transport_error_is_transient(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = make_store(settings, handler)

        with pytest.raises(TransientNetworkError):
            await store.fetch_many("stories")
        await store.close()

    async def test_http_error_raised_as_sync_error(self, settings, requests):
        response = httpx.Response(409, json={"code": "23505", "message": "duplicate key"})
        store = make_store(settings, respond_with(requests, response))

        with pytest.raises(ConflictError):
            await store.insert_many("story_views", [{"story_id": "s1", "viewer_id": "u9"}])
        await store.close()

    async def test_subscribe_without_realtime_is_noop(self, settings):
        store = make_store(settings, respond_with([], httpx.Response(200, json=[])))

        subscription = await store.subscribe("stories", None, lambda raw: None)
        await subscription.close()

        assert subscription.closed
        await store.close()

    def test_unconfigured_backend_rejected(self, settings):
        with pytest.raises(ConfigurationError):
            PostgrestRemoteStore(settings)


class TestErrorMapping:

    @pytest.mark.parametrize("status,body,expected", [
        (503, {"message": "unavailable"}, TransientNetworkError),
        (429, {}, TransientNetworkError),
        (401, {"code": "PGRST301", "message": "JWT expired"}, TransientNetworkError),
        (409, {"message": "conflict"}, ConflictError),
        (400, {"code": "23505", "message": "duplicate key"}, ConflictError),
        (400, {"code": "22P02", "message": "invalid input syntax"}, ValidationError),
        (404, {}, ValidationError),
    ])
    def test_status_and_code(self, status, body, expected):
        error = map_http_error(httpx.Response(status, json=body))

        assert type(error) is expected

    def test_validation_details(self):
        error = map_http_error(httpx.Response(
            400, json={"code": "22P02", "message": "bad uuid", "hint": "check the id"}))

        assert error.code == "22P02"
        assert error.details == {"status": 400, "code": "22P02", "hint": "check the id"}
        assert "bad uuid" in str(error)

    def test_non_json_body(self):
        error = map_http_error(httpx.Response(502, text="<html>Bad Gateway</html>"))

        assert isinstance(error, TransientNetworkError)
        assert error.code == "502"


class TestMutationWrites:
    """Optimistic mutations must reach PostgREST with schema columns only."""

    @pytest.fixture
    def wired(self, settings, clock, cache, requests):
        store = make_store(settings, respond_with(requests, httpx.Response(204)))
        coalescer = WriteCoalescer(settings, clock, store)
        queue = OfflineQueue(settings, clock, store)
        return store, coalescer, queue

    def bodies(self, requests):
        return {r.url.path: orjson.loads(r.content) for r in requests}

    async def test_story_view_sends_only_schema_fields(self, wired, cache, clock, requests):
        store, coalescer, queue = wired
        stories = Reconciler(STORIES, cache, coalescer, queue, clock)

        mutation_id = stories.mutate("story_view", {"story_id": "s1", "viewer_id": "u9"})
        await clock.advance(1.5)

        assert self.bodies(requests) == {
            "/rest/v1/rpc/increment_story_views": {"story_uuid": "s1", "viewer_uuid": "u9"},
            "/rest/v1/story_views": [{"story_id": "s1", "viewer_id": "u9"}],
        }
        assert stories.state_of(mutation_id) == MutationState.OPTIMISTICALLY_APPLIED
        assert len(queue) == 0
        await store.close()

    async def test_notification_row_has_no_mutation_id(self, wired, cache, clock, requests):
        store, coalescer, queue = wired
        notifications = Reconciler(NOTIFICATIONS, cache, coalescer, queue, clock)

        notifications.mutate("notification", {"id": "n1", "user_id": "u1", "body": "hi"})
        await clock.settle()

        assert self.bodies(requests) == {
            "/rest/v1/notifications": [{"id": "n1", "user_id": "u1", "body": "hi"}],
        }
        await store.close()
