"""Status Broadcaster Service.

Fans out state changes and sync errors to UI subscribers. Subscribers are
plain callables (sync or async); a failing subscriber is logged and never
breaks delivery to the others or the caller.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.logging import get_logger
from core.timers import BackgroundTasks

logger = get_logger(__name__)

Subscriber = Callable[[Any], Union[None, Awaitable[None]]]


class StatusBroadcaster:
    """Manages subscriber callbacks and broadcasts status updates."""

    def __init__(self, name: str = "status"):
        self.name = name
        self._subscribers: List[Subscriber] = []
        self.tasks = BackgroundTasks(f"broadcast:{name}")

        # Current state, sent to new subscribers on request
        self._status: Dict[str, Any] = {
            "connectivity": {
                "online": True,
            },
            "queue": {
                "pending": 0,
                "syncing": False,
            },
            "batches": {
                "pending": 0,
                "kinds": [],
            },
            "last_error": None,
        }

    def subscribe(self, callback: Subscriber, send_initial: bool = False) -> Callable[[], None]:
        """Add a subscriber. Returns an unsubscribe handle."""
        self._subscribers.append(callback)
        logger.debug("Subscriber added", broadcaster=self.name, total=len(self._subscribers))

        if send_initial:
            self._deliver(callback, {"type": "initial_status", "data": self.status})

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
                logger.debug("Subscriber removed", broadcaster=self.name,
                             total=len(self._subscribers))
        return unsubscribe

    def clear(self) -> None:
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def status(self) -> Dict[str, Any]:
        return {k: (dict(v) if isinstance(v, dict) else v) for k, v in self._status.items()}

    def notify(self, message: Any) -> None:
        """Deliver synchronously; async subscribers are scheduled as tasks."""
        for callback in list(self._subscribers):
            self._deliver(callback, message)

    async def broadcast(self, message: Any) -> None:
        """Deliver to every subscriber and wait for async ones using TaskGroup."""
        if not self._subscribers:
            return

        pending: List[Awaitable[None]] = []
        for callback in list(self._subscribers):
            result = self._call(callback, message)
            if result is not None:
                pending.append(result)

        if not pending:
            return

        async def run(awaitable: Awaitable[None]):
            try:
                await awaitable
            except Exception as e:
                logger.warning("Subscriber failed", broadcaster=self.name, error=str(e))

        async with asyncio.TaskGroup() as tg:
            for awaitable in pending:
                tg.create_task(run(awaitable))

    def _deliver(self, callback: Subscriber, message: Any) -> None:
        result = self._call(callback, message)
        if result is not None:
            self.tasks.spawn(result)

    def _call(self, callback: Subscriber, message: Any) -> Optional[Awaitable[None]]:
        try:
            result = callback(message)
        except Exception as e:
            logger.warning("Subscriber failed", broadcaster=self.name, error=str(e))
            return None
        return result if inspect.isawaitable(result) else None

    # =========================================================================
    # Status Updates
    # =========================================================================

    async def update_status(self, section: str, data: Dict[str, Any]) -> None:
        """Merge `data` into one status section and broadcast the change."""
        current = self._status.get(section)
        if isinstance(current, dict):
            current.update(data)
        else:
            self._status[section] = data
        await self.broadcast({"type": "status_update", "section": section,
                              "data": self._status[section]})

    async def report_error(self, event: Any) -> None:
        """Record and broadcast a sync error event (anything with to_dict())."""
        self._status["last_error"] = event.to_dict()
        await self.broadcast(event)
