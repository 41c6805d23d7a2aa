"""PostgREST remote store over httpx.

Reads:      GET  /rest/v1/<resource>?<column>=eq.<value>&order=...&limit=...
Inserts:    POST /rest/v1/<resource>   (Prefer: return=minimal)
Procedures: POST /rest/v1/rpc/<name>
Changes:    realtime websocket (services.realtime)

Every failure is mapped onto the sync error taxonomy so the queue and the
coalescer can decide whether to retry.
"""

from typing import Any, Dict, List, Optional, Sequence

import httpx

from core.config import Settings
from core.errors import (
    TEMPORARY_ERROR_CODES, ConfigurationError, ConflictError, SyncError, TransientNetworkError, ValidationError,
)
from core.logging import get_logger
from services.realtime import RealtimeClient
from services.remote_store import EventCallback, Filters, Row, Subscription, normalize_filter

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"
TRANSIENT_STATUS = frozenset([408, 425, 429])


def encode_filters(filters: Optional[Filters]) -> Dict[str, str]:
    """Filter dict to PostgREST query params (`id=eq.1`, `id=in.(1,2)`)."""
    params: Dict[str, str] = {}
    for column, raw in (filters or {}).items():
        op, operand = normalize_filter(raw)
        if op == "in":
            params[column] = f"in.({','.join(str(v) for v in operand)})"
        else:
            params[column] = f"{op}.{operand}"
    return params


def map_http_error(response: httpx.Response) -> SyncError:
    """Map an error response onto the sync error taxonomy."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = str(body.get("code") or "")
    message = body.get("message") or response.text or response.reason_phrase
    status = response.status_code

    if code in TEMPORARY_ERROR_CODES or status in TRANSIENT_STATUS or status >= 500:
        error: SyncError = TransientNetworkError(f"{status} {message}")
    elif status == 409 or code == UNIQUE_VIOLATION:
        error = ConflictError(f"{status} {message}")
    else:
        error = ValidationError(f"{status} {message}", details={
            "status": status, "code": code, "hint": body.get("hint"),
        })
    error.code = code or str(status)
    return error


class PostgrestRemoteStore:
    """RemoteStore backed by a PostgREST endpoint."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None,
                 realtime: Optional[RealtimeClient] = None):
        self.settings = settings
        if client is None and not settings.is_remote_configured:
            raise ConfigurationError("PostgREST backend requires SYNC_REMOTE_URL and SYNC_REMOTE_API_KEY")
        headers = {
            "apikey": settings.remote_api_key,
            "Authorization": f"Bearer {settings.remote_api_key}",
            "Content-Type": "application/json",
        }
        self.client = client or httpx.AsyncClient(
            base_url=f"{settings.remote_url}/rest/v1",
            headers=headers,
            timeout=settings.remote_timeout,
        )
        self.realtime = realtime
        if self.realtime is None and settings.realtime_url:
            self.realtime = RealtimeClient(settings.realtime_url, settings.remote_api_key)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Remote store unreachable", method=method, path=path, error=str(e))
            raise TransientNetworkError(f"{method} {path}: {e}") from e

        if response.is_error:
            error = map_http_error(response)
            logger.warning("Remote store request failed", method=method, path=path,
                           status=response.status_code, error_type=error.error_type)
            raise error
        return response

    # =========================================================================
    # RemoteStore interface
    # =========================================================================

    async def fetch_many(self, resource: str, filters: Optional[Filters] = None,
                         order: Optional[str] = None, limit: Optional[int] = None) -> List[Row]:
        params = encode_filters(filters)
        params["select"] = "*"
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        response = await self._request("GET", f"/{resource}", params=params)
        return response.json()

    async def fetch_one(self, resource: str, id: str) -> Optional[Row]:
        rows = await self.fetch_many(resource, {"id": id}, limit=1)
        return rows[0] if rows else None

    async def insert_many(self, resource: str, rows: Sequence[Row]) -> List[Row]:
        response = await self._request("POST", f"/{resource}", json=list(rows),
                                       headers={"Prefer": "return=minimal"})
        return response.json() if response.content else []

    async def invoke_procedure(self, name: str, args: Dict[str, Any]) -> Any:
        response = await self._request("POST", f"/rpc/{name}", json=args)
        return response.json() if response.content else None

    async def subscribe(self, resource: str, filters: Optional[Filters],
                        on_event: EventCallback) -> Subscription:
        if self.realtime is None:
            logger.warning("No realtime endpoint configured, change stream disabled",
                           resource=resource)
            return Subscription(resource, lambda: None)
        return await self.realtime.subscribe(resource, filters, on_event)

    async def close(self) -> None:
        if self.realtime is not None:
            await self.realtime.close()
        await self.client.aclose()
