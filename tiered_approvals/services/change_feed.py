"""
Change feed: per-tenant fan-out of approval level change events.

Subscribers are keyed by client_id, or listen to every tenant with
``subscribe_all``. The store publishes after every successful mutation; the
Postgres listener republishes NOTIFY payloads (marked ``remote``) so other
processes converge too. LevelWatcher turns a burst of events into a single
refetch of the tenant's list.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger()

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
EVENT_TYPES = (INSERT, UPDATE, DELETE)


@dataclass(frozen=True)
class LevelChange:
    event: str
    client_id: str
    level_id: Optional[str] = None
    # Set when the change was read back from the database, not made here
    remote: bool = field(default=False, compare=False)


Subscriber = Callable[[LevelChange], Union[None, Awaitable[None]]]


class ChangeFeed:
    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._all: list[Subscriber] = []

    def subscribe(self, client_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for one tenant. Returns the unsubscribe function."""
        self._subscribers[client_id].append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(client_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[client_id]

        return unsubscribe

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for every tenant."""
        self._all.append(callback)

        def unsubscribe():
            if callback in self._all:
                self._all.remove(callback)

        return unsubscribe

    def subscriber_count(self, client_id: str) -> int:
        return len(self._subscribers.get(client_id, ())) + len(self._all)

    async def publish(self, change: LevelChange) -> int:
        """Deliver to every subscriber of the tenant; returns how many were called."""
        callbacks = list(self._subscribers.get(change.client_id, ())) + list(self._all)
        for callback in callbacks:
            try:
                result = callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A failing subscriber is skipped; the others still run
                logger.error(
                    "change_subscriber_failed",
                    client_id=change.client_id,
                    change_event=change.event,
                    error=str(e),
                )
        logger.debug(
            "approval_level_change_published",
            client_id=change.client_id,
            change_event=change.event,
            level_id=change.level_id,
            remote=change.remote,
            subscribers=len(callbacks),
        )
        return len(callbacks)


class LevelWatcher:
    """Debounced refetch of one tenant's levels whenever the feed reports a change."""

    def __init__(
        self,
        feed: ChangeFeed,
        client_id: str,
        refetch: Callable[[str], Awaitable[object]],
        debounce_seconds: float = 0.5,
    ):
        self.feed = feed
        self.client_id = client_id
        self.debounce_seconds = debounce_seconds
        self.refetch_count = 0
        self._refetch = refetch
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> "LevelWatcher":
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(self.client_id, self._on_change)
        return self

    def _on_change(self, change: LevelChange) -> None:
        # Restart the window so a burst of events costs one refetch
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.get_running_loop().create_task(self._refetch_later())

    async def _refetch_later(self):
        await asyncio.sleep(self.debounce_seconds)
        try:
            await self._refetch(self.client_id)
            self.refetch_count += 1
        except Exception as e:
            logger.warning(
                "approval_level_refetch_failed", client_id=self.client_id, error=str(e)
            )

    async def wait_idle(self):
        """Wait for a scheduled refetch, if any, to finish."""
        if self._pending is not None:
            try:
                await self._pending
            except asyncio.CancelledError:
                pass

    async def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
        self._pending = None
