"""In-process signaling store.

Implements the SignalingStore interface on plain dictionaries with one
asyncio queue and consumer task per subscription, so callbacks run
asynchronously and in emission order exactly like a remote push store.
Used by the test suite and for single-process loopback calls.
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import Awaitable, Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

from pushtalk.errors import RecordExistsError
from pushtalk.store.base import (
    ListItemCallback,
    QueryCallback,
    RecordCallback,
    SignalingStore,
    Unsubscribe,
    join_path,
    split_path,
)

logger = logging.getLogger(__name__)


def matches_filter(data: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    """Check if every filter field equals the record field."""
    return all(data.get(key) == value for key, value in filter.items())


def matches_expectation(data: Mapping[str, Any], expect: Mapping[str, Collection[Any]]) -> bool:
    """Check if every expected field currently holds one of its allowed values."""
    return all(data.get(key) in allowed for key, allowed in expect.items())


@dataclass
class _Subscription:
    """Single live subscription with its private delivery queue."""

    kind: str  # "record", "list" or "query"
    path: str
    callback: Callable[..., Awaitable[None]]
    filter: dict[str, Any] = field(default_factory=dict)
    queue: asyncio.Queue[tuple[Any, ...]] = field(default_factory=asyncio.Queue)
    task: asyncio.Task[None] | None = None
    active: bool = True
    matched: set[str] = field(default_factory=set)


class InMemorySignalingStore(SignalingStore):
    """Dictionary-backed store with asynchronous change notifications."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lists: dict[str, list[dict[str, Any]]] = {}
        self._subscriptions: list[_Subscription] = []
        self._in_flight = 0

    # ------------------------------------------------------------------
    # Writes and reads
    # ------------------------------------------------------------------

    def new_record_id(self, collection: str) -> str:
        return uuid.uuid4().hex

    async def create_record(
        self, collection: str, data: dict[str, Any], record_id: str | None = None
    ) -> str:
        record_id = record_id or self.new_record_id(collection)
        path = join_path(collection, record_id)
        if path in self._records:
            raise RecordExistsError(f"Record already exists: {path}")

        self._records[path] = copy.deepcopy(data)
        self._notify_record(path)
        return record_id

    async def read_record(self, path: str) -> dict[str, Any] | None:
        data = self._records.get(path)
        if data is None:
            return None

        snapshot = copy.deepcopy(data)
        prefix = f"{path}/"
        for list_path, items in self._lists.items():
            name = list_path[len(prefix):]
            if list_path.startswith(prefix) and "/" not in name:
                snapshot[name] = copy.deepcopy(items)
        return snapshot

    async def read_list(self, path: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._lists.get(path, []))

    async def update_record(
        self,
        path: str,
        partial: dict[str, Any],
        expect: Mapping[str, Collection[Any]] | None = None,
    ) -> bool:
        data = self._records.get(path)
        if data is None:
            return False
        if expect and not matches_expectation(data, expect):
            return False

        data.update(copy.deepcopy(partial))
        self._notify_record(path)
        return True

    async def append_to_list(self, path: str, item: dict[str, Any]) -> None:
        self._lists.setdefault(path, []).append(copy.deepcopy(item))
        for sub in self._active("list", path):
            self._enqueue(sub, copy.deepcopy(item))

    async def delete_record(self, path: str) -> None:
        existed = self._records.pop(path, None) is not None

        prefix = f"{path}/"
        for list_path in [p for p in self._lists if p.startswith(prefix)]:
            del self._lists[list_path]

        if existed:
            self._notify_record(path)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_to_record(self, path: str, on_change: RecordCallback) -> Unsubscribe:
        sub = self._register("record", path, on_change)
        self._enqueue(sub, copy.deepcopy(self._records.get(path)))
        return self._unsubscriber(sub)

    async def subscribe_to_list(self, path: str, on_item_added: ListItemCallback) -> Unsubscribe:
        sub = self._register("list", path, on_item_added)
        for item in self._lists.get(path, []):
            self._enqueue(sub, copy.deepcopy(item))
        return self._unsubscriber(sub)

    async def subscribe_to_query(
        self,
        collection: str,
        filter: Mapping[str, Any],
        on_change: QueryCallback,
    ) -> Unsubscribe:
        sub = self._register("query", collection, on_change, dict(filter))
        for path, data in list(self._records.items()):
            record_collection, record_id = split_path(path)
            if record_collection == collection and matches_filter(data, sub.filter):
                sub.matched.add(record_id)
                self._enqueue(sub, record_id, copy.deepcopy(data))
        return self._unsubscriber(sub)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    async def replay(self, path: str) -> None:
        """Redeliver the current state of a record or list to its subscribers.

        Simulates the at-least-once delivery of real push stores.
        """
        data = self._records.get(path)
        for sub in self._active("record", path):
            self._enqueue(sub, copy.deepcopy(data))
        for sub in self._active("list", path):
            for item in self._lists.get(path, []):
                self._enqueue(sub, copy.deepcopy(item))

        if data is not None:
            collection, record_id = split_path(path)
            for sub in self._active("query", collection):
                if record_id in sub.matched:
                    self._enqueue(sub, record_id, copy.deepcopy(data))

    async def drain(self, rounds: int = 5, timeout: float = 5.0) -> None:
        """Wait until no notification is queued or being delivered.

        Args:
            rounds: Consecutive idle event-loop iterations required
            timeout: Maximum time to wait in seconds

        Raises:
            TimeoutError: If the store does not become idle in time
        """

        async def wait_idle() -> None:
            quiet = 0
            while quiet < rounds:
                await asyncio.sleep(0)
                quiet = quiet + 1 if self._in_flight == 0 else 0

        await asyncio.wait_for(wait_idle(), timeout=timeout)

    async def close(self) -> None:
        """Cancel every subscription."""
        for sub in list(self._subscriptions):
            await self._unsubscriber(sub)()

    @property
    def subscription_count(self) -> int:
        """Number of live subscriptions."""
        return len(self._subscriptions)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _active(self, kind: str, path: str) -> list[_Subscription]:
        return [s for s in self._subscriptions if s.active and s.kind == kind and s.path == path]

    def _register(
        self,
        kind: str,
        path: str,
        callback: Callable[..., Awaitable[None]],
        filter: dict[str, Any] | None = None,
    ) -> _Subscription:
        sub = _Subscription(kind=kind, path=path, callback=callback, filter=filter or {})
        sub.task = asyncio.create_task(self._consume(sub))
        self._subscriptions.append(sub)
        return sub

    def _enqueue(self, sub: _Subscription, *args: Any) -> None:
        sub.queue.put_nowait(args)
        self._in_flight += 1

    def _notify_record(self, path: str) -> None:
        data = self._records.get(path)
        collection, record_id = split_path(path)

        for sub in self._active("record", path):
            self._enqueue(sub, copy.deepcopy(data))

        for sub in self._active("query", collection):
            if data is not None and matches_filter(data, sub.filter):
                sub.matched.add(record_id)
                self._enqueue(sub, record_id, copy.deepcopy(data))
            elif record_id in sub.matched:
                sub.matched.discard(record_id)
                self._enqueue(sub, record_id, None)

    async def _consume(self, sub: _Subscription) -> None:
        try:
            while sub.active:
                args = await sub.queue.get()
                try:
                    await sub.callback(*args)
                except Exception as e:
                    logger.error(
                        f"Subscription callback failed for {sub.kind} {sub.path}: {e}",
                        exc_info=True,
                    )
                finally:
                    self._in_flight -= 1
        except asyncio.CancelledError:
            # Unsubscribed while waiting or delivering
            pass

    def _unsubscriber(self, sub: _Subscription) -> Unsubscribe:
        async def unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            while not sub.queue.empty():
                sub.queue.get_nowait()
                self._in_flight -= 1
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
            # A callback may unsubscribe its own subscription; it then ends
            # after returning instead of being cancelled mid-flight
            if sub.task is not None and sub.task is not asyncio.current_task():
                sub.task.cancel()

        return unsubscribe
