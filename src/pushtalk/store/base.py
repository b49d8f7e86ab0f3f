"""Base signaling store abstraction.

Defines the interface the call orchestrator consumes for relaying
negotiation metadata between the two parties. The store is used purely as a
relay: records live under slash-separated paths ("calls/<id>"), and each
record may own append-only child lists ("calls/<id>/offerCandidates").

Delivery guarantees assumed by consumers:
- Within one subscription, notifications arrive in the order the store
  emits them, possibly more than once (at-least-once, replays allowed).
- No ordering is guaranteed across two different subscriptions.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Collection, Mapping
from typing import Any

Unsubscribe = Callable[[], Awaitable[None]]
RecordCallback = Callable[[dict[str, Any] | None], Awaitable[None]]
ListItemCallback = Callable[[dict[str, Any]], Awaitable[None]]
QueryCallback = Callable[[str, dict[str, Any] | None], Awaitable[None]]


def join_path(*parts: str) -> str:
    """Join path segments with '/'."""
    return "/".join(part.strip("/") for part in parts if part)


def split_path(path: str) -> tuple[str, str]:
    """Split a record path into (collection, record_id).

    Raises:
        ValueError: If the path has no collection segment
    """
    collection, _, record_id = path.rpartition("/")
    if not collection or not record_id:
        raise ValueError(f"Invalid record path: {path!r}")
    return collection, record_id


class SignalingStore(ABC):
    """Push-notification-capable key/record store.

    All write methods raise StoreWriteError on failure. Callbacks passed to
    subscribe methods are awaited sequentially per subscription; exceptions
    they raise are logged by the store and never end the subscription.
    """

    @abstractmethod
    def new_record_id(self, collection: str) -> str:
        """Generate a fresh record id without writing anything.

        Args:
            collection: Collection path the id is intended for

        Returns:
            Unique record id
        """
        pass

    @abstractmethod
    async def create_record(
        self, collection: str, data: dict[str, Any], record_id: str | None = None
    ) -> str:
        """Create a record in a collection.

        Args:
            collection: Collection path (e.g., "calls")
            data: Record document
            record_id: Optional id (generated when omitted)

        Returns:
            Id of the created record

        Raises:
            RecordExistsError: If record_id is already taken
            StoreWriteError: If the write fails
        """
        pass

    @abstractmethod
    async def read_record(self, path: str) -> dict[str, Any] | None:
        """Read a record, including its child lists.

        Returns:
            Record document with each child list under its name, or None
        """
        pass

    @abstractmethod
    async def read_list(self, path: str) -> list[dict[str, Any]]:
        """Read every item of a list in insertion order."""
        pass

    @abstractmethod
    async def update_record(
        self,
        path: str,
        partial: dict[str, Any],
        expect: Mapping[str, Collection[Any]] | None = None,
    ) -> bool:
        """Merge fields into an existing record.

        Never creates a record. When ``expect`` is given the update is applied
        atomically only if every listed field currently holds one of the
        allowed values.

        Args:
            path: Record path
            partial: Fields to merge
            expect: Optional field -> allowed current values precondition

        Returns:
            True if the update was applied, False if the record is missing
            or the precondition did not hold

        Raises:
            StoreWriteError: If the write fails
        """
        pass

    @abstractmethod
    async def append_to_list(self, path: str, item: dict[str, Any]) -> None:
        """Append an item to a child list.

        Raises:
            StoreWriteError: If the write fails
        """
        pass

    @abstractmethod
    async def delete_record(self, path: str) -> None:
        """Delete a record and its child lists.

        Raises:
            StoreWriteError: If the delete fails
        """
        pass

    @abstractmethod
    async def subscribe_to_record(self, path: str, on_change: RecordCallback) -> Unsubscribe:
        """Watch a record.

        The current snapshot is delivered first (None if absent), then every
        change. Deletion is delivered as None. Child lists are not included.
        """
        pass

    @abstractmethod
    async def subscribe_to_list(self, path: str, on_item_added: ListItemCallback) -> Unsubscribe:
        """Watch a list. Existing items are replayed, then new items follow."""
        pass

    @abstractmethod
    async def subscribe_to_query(
        self,
        collection: str,
        filter: Mapping[str, Any],
        on_change: QueryCallback,
    ) -> Unsubscribe:
        """Watch records of a collection whose fields equal ``filter``.

        Existing matches are delivered first as (record_id, data). Later
        changes to matching records are delivered the same way, and deletion
        of a previously matching record as (record_id, None).
        """
        pass
