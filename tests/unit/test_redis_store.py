"""Unit tests for the Redis-backed signaling store.

Tests connection lifecycle, key layout, conditional updates and pub/sub
subscriptions against a mocked Redis client.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import RedisError

from pushtalk.config import RedisConfig, SignalingConfig
from pushtalk.errors import RecordExistsError, StoreWriteError
from pushtalk.store.redis_store import CONDITIONAL_UPDATE_SCRIPT, RedisSignalingStore


def make_pubsub(messages: list[dict[str, Any]] | None = None, block: bool = False) -> MagicMock:
    """Create a mock pub/sub connection that yields the given messages."""
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()

    async def listen() -> AsyncIterator[dict[str, Any]]:
        yield {"type": "subscribe", "data": 1}
        for message in messages or []:
            yield message
        if block:
            await asyncio.Event().wait()

    pubsub.listen = listen
    return pubsub


def message(payload: Any) -> dict[str, Any]:
    """Wrap a payload the way redis-py delivers published messages."""
    return {"type": "message", "data": json.dumps(payload)}


async def wait_for_subscriptions(store: RedisSignalingStore) -> None:
    """Wait until every subscription task has finished."""
    await asyncio.gather(*list(store._subscription_tasks))


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis client."""
    redis_mock = AsyncMock()
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.smembers = AsyncMock(return_value=set())
    redis_mock.lrange = AsyncMock(return_value=[])
    redis_mock.delete = AsyncMock(return_value=1)
    redis_mock.eval = AsyncMock(return_value=1)
    redis_mock.aclose = AsyncMock()
    redis_mock.pubsub = MagicMock(return_value=make_pubsub())
    return redis_mock


@pytest.fixture
def mock_pool() -> AsyncMock:
    """Create mock connection pool."""
    pool_mock = AsyncMock()
    pool_mock.disconnect = AsyncMock()
    return pool_mock


@pytest.fixture
def store() -> RedisSignalingStore:
    """Create store instance for testing."""
    return RedisSignalingStore(
        redis_url="redis://localhost:6379",
        db=0,
        key_prefix="pushtalk:",
        live_record_ttl_seconds=3600,
        connection_pool_size=10,
    )


@pytest.fixture
def patched_redis(mock_redis: AsyncMock, mock_pool: AsyncMock) -> Iterator[None]:
    """Route connection setup to the mocks."""
    with (
        patch("pushtalk.store.redis_store.ConnectionPool") as mock_pool_class,
        patch("pushtalk.store.redis_store.aioredis.Redis") as mock_redis_class,
    ):
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        yield


@pytest.fixture
async def connected(
    store: RedisSignalingStore, patched_redis: None
) -> AsyncIterator[RedisSignalingStore]:
    """Create a connected store."""
    await store.connect()
    yield store
    await store.disconnect()


class TestConnection:
    """Test connection lifecycle."""

    async def test_initialization(self, store: RedisSignalingStore) -> None:
        """Test store initialization."""
        assert store.redis_url == "redis://localhost:6379"
        assert store.key_prefix == "pushtalk:"
        assert store.live_record_ttl_seconds == 3600
        assert store.persistent_collections == frozenset({"call_history"})
        assert store._connected is False

    def test_from_config(self) -> None:
        """Test building the store from configuration sections."""
        store = RedisSignalingStore.from_config(
            RedisConfig(
                url="redis://cache:6379",
                db=3,
                key_prefix="ptt:",
                live_record_ttl_seconds=900,
                connection_pool_size=4,
            ),
            SignalingConfig(history_collection="archive"),
        )

        assert store.redis_url == "redis://cache:6379"
        assert store.db == 3
        assert store.key_prefix == "ptt:"
        assert store.live_record_ttl_seconds == 900
        assert store.connection_pool_size == 4
        assert store.persistent_collections == frozenset({"archive"})

    def test_from_config_defaults(self) -> None:
        """Test that the default history collection is persistent."""
        store = RedisSignalingStore.from_config(RedisConfig())

        assert store.persistent_collections == frozenset({"call_history"})

    @patch("pushtalk.store.redis_store.ConnectionPool")
    @patch("pushtalk.store.redis_store.aioredis.Redis")
    async def test_connect(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisSignalingStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test Redis connection establishment."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis

        await store.connect()
        await store.connect()

        assert store._connected is True
        mock_redis.ping.assert_awaited_once()
        mock_pool_class.from_url.assert_called_once_with(
            "redis://localhost:6379", db=0, max_connections=10, decode_responses=True
        )

    @patch("pushtalk.store.redis_store.ConnectionPool")
    @patch("pushtalk.store.redis_store.aioredis.Redis")
    async def test_connect_failure(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisSignalingStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test Redis connection failure."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        mock_redis.ping.side_effect = ConnectionError("Connection refused")

        with pytest.raises(ConnectionError, match="Redis connection failed"):
            await store.connect()

        assert store._connected is False

    async def test_disconnect(
        self,
        store: RedisSignalingStore,
        patched_redis: None,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test Redis disconnection."""
        await store.connect()
        await store.disconnect()
        await store.disconnect()

        assert store._connected is False
        mock_redis.aclose.assert_awaited_once()
        mock_pool.disconnect.assert_awaited_once()

    async def test_health_check(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test health check when Redis is healthy and when ping fails."""
        assert await connected.health_check() is True

        mock_redis.ping.side_effect = Exception("Connection lost")
        assert await connected.health_check() is False

    async def test_health_check_not_connected(self, store: RedisSignalingStore) -> None:
        """Test health check when not connected."""
        assert await store.health_check() is False

    async def test_operations_require_connection(self, store: RedisSignalingStore) -> None:
        """Test that operations fail before connect()."""
        with pytest.raises(ConnectionError, match="not connected"):
            await store.read_record("calls/c1")


class TestRecords:
    """Test record reads and writes."""

    async def test_create_record(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test create with expiry, index entry and notifications."""
        record_id = await connected.create_record("calls", {"status": "OFFERING"}, record_id="c1")

        assert record_id == "c1"
        mock_redis.set.assert_awaited_once_with(
            "pushtalk:calls/c1", '{"status": "OFFERING"}', ex=3600, nx=True
        )
        mock_redis.sadd.assert_awaited_once_with("pushtalk:index:calls", "c1")
        channels = [c.args[0] for c in mock_redis.publish.await_args_list]
        assert channels == ["pushtalk:events:calls/c1", "pushtalk:events:calls"]
        event = json.loads(mock_redis.publish.await_args_list[0].args[1])
        assert event == {"id": "c1", "data": {"status": "OFFERING"}}

    async def test_create_history_record_has_no_expiry(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that persistent collections are written without TTL."""
        await connected.create_record("call_history", {"status": "ENDED"}, record_id="c1")

        assert mock_redis.set.await_args.kwargs["ex"] is None

    async def test_history_collection_from_config_has_no_expiry(
        self, patched_redis: None, mock_redis: AsyncMock
    ) -> None:
        """Test that the configured history collection is persistent."""
        store = RedisSignalingStore.from_config(
            RedisConfig(url="redis://cache:6379", db=2, live_record_ttl_seconds=900),
            SignalingConfig(history_collection="archive"),
        )
        await store.connect()

        await store.create_record("archive", {"status": "ENDED"}, record_id="c1")
        assert mock_redis.set.await_args.kwargs["ex"] is None

        await store.create_record("calls", {"status": "OFFERING"}, record_id="c2")
        assert mock_redis.set.await_args.kwargs["ex"] == 900
        await store.disconnect()

    async def test_create_existing_record(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that an existing id is not overwritten."""
        mock_redis.set.return_value = None

        with pytest.raises(RecordExistsError):
            await connected.create_record("call_history", {}, record_id="c1")

        mock_redis.publish.assert_not_awaited()

    async def test_create_record_redis_error(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that Redis failures surface as StoreWriteError."""
        mock_redis.set.side_effect = RedisError("READONLY")

        with pytest.raises(StoreWriteError, match="READONLY"):
            await connected.create_record("calls", {})

    async def test_read_record_with_lists(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that full reads include child lists."""
        mock_redis.get.return_value = '{"status": "OFFERING"}'
        mock_redis.smembers.return_value = {"offerCandidates"}
        mock_redis.lrange.return_value = ['{"candidate": "candidate:1"}']

        data = await connected.read_record("calls/c1")

        assert data == {
            "status": "OFFERING",
            "offerCandidates": [{"candidate": "candidate:1"}],
        }
        mock_redis.smembers.assert_awaited_once_with("pushtalk:children:calls/c1")
        mock_redis.lrange.assert_awaited_once_with("pushtalk:calls/c1/offerCandidates", 0, -1)

    async def test_read_missing_record(self, connected: RedisSignalingStore) -> None:
        """Test reading a record that does not exist."""
        assert await connected.read_record("calls/missing") is None

    async def test_update_record(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that conditional updates run as one script."""
        applied = await connected.update_record(
            "calls/c1", {"status": "ENDED"}, expect={"status": ("OFFERING", "CONNECTED")}
        )

        assert applied is True
        mock_redis.eval.assert_awaited_once_with(
            CONDITIONAL_UPDATE_SCRIPT,
            1,
            "pushtalk:calls/c1",
            '{"status": "ENDED"}',
            '{"status": ["OFFERING", "CONNECTED"]}',
            "c1",
            "pushtalk:events:calls/c1",
            "pushtalk:events:calls",
            3600,
        )

    async def test_update_record_refreshes_expiry(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that an applied update restarts the expiry of the record's lists."""
        mock_redis.smembers.return_value = {"offerCandidates"}

        await connected.update_record("calls/c1", {"activeSpeakerId": "alice"})

        expired = [c.args for c in mock_redis.expire.await_args_list]
        assert expired == [
            ("pushtalk:calls/c1/offerCandidates", 3600),
            ("pushtalk:children:calls/c1", 3600),
        ]

    async def test_update_record_not_applied_keeps_expiry(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that a rejected update touches no expiry."""
        mock_redis.eval.return_value = 0

        await connected.update_record("calls/c1", {"status": "BUSY"})

        mock_redis.expire.assert_not_awaited()

    async def test_update_persistent_record_keeps_no_expiry(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that updates to persistent collections never set a TTL."""
        await connected.update_record("call_history/c1", {"status": "ENDED"})

        assert mock_redis.eval.await_args.args[-1] == 0
        mock_redis.expire.assert_not_awaited()

    async def test_update_record_not_applied(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that a failed expectation reports False."""
        mock_redis.eval.return_value = 0

        assert await connected.update_record("calls/c1", {"status": "BUSY"}) is False

    async def test_update_record_redis_error(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that script failures surface as StoreWriteError."""
        mock_redis.eval.side_effect = RedisError("NOSCRIPT")

        with pytest.raises(StoreWriteError):
            await connected.update_record("calls/c1", {"activeSpeakerId": "alice"})

    async def test_append_to_list(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test appending a candidate to a child list."""
        mock_redis.smembers.return_value = {"offerCandidates"}

        await connected.append_to_list("calls/c1/offerCandidates", {"candidate": "candidate:1"})

        mock_redis.rpush.assert_awaited_once_with(
            "pushtalk:calls/c1/offerCandidates", '{"candidate": "candidate:1"}'
        )
        mock_redis.sadd.assert_awaited_once_with("pushtalk:children:calls/c1", "offerCandidates")
        expired = [c.args for c in mock_redis.expire.await_args_list]
        assert expired == [
            ("pushtalk:calls/c1", 3600),
            ("pushtalk:calls/c1/offerCandidates", 3600),
            ("pushtalk:children:calls/c1", 3600),
        ]
        mock_redis.publish.assert_awaited_once_with(
            "pushtalk:events:calls/c1/offerCandidates", '{"candidate": "candidate:1"}'
        )

    async def test_delete_record(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that deletion removes lists and notifies subscribers."""
        mock_redis.smembers.return_value = {"offerCandidates"}

        await connected.delete_record("calls/c1")

        mock_redis.delete.assert_awaited_once_with(
            "pushtalk:calls/c1",
            "pushtalk:children:calls/c1",
            "pushtalk:calls/c1/offerCandidates",
        )
        mock_redis.srem.assert_awaited_once_with("pushtalk:index:calls", "c1")
        event = json.loads(mock_redis.publish.await_args_list[0].args[1])
        assert event == {"id": "c1", "data": None}

    async def test_delete_missing_record_is_silent(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that deleting nothing publishes nothing."""
        mock_redis.delete.return_value = 0

        await connected.delete_record("calls/c1")

        mock_redis.publish.assert_not_awaited()


class TestSubscriptions:
    """Test pub/sub subscriptions."""

    async def test_record_snapshot_then_messages(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that the snapshot precedes live changes."""
        pubsub = make_pubsub(
            [
                message({"id": "c1", "data": {"status": "CONNECTED"}}),
                message({"id": "c1", "data": None}),
            ]
        )
        mock_redis.pubsub.return_value = pubsub
        mock_redis.get.return_value = '{"status": "OFFERING"}'
        received: list[Any] = []

        async def on_change(data: Any) -> None:
            received.append(data)

        await connected.subscribe_to_record("calls/c1", on_change)
        await wait_for_subscriptions(connected)

        pubsub.subscribe.assert_awaited_once_with("pushtalk:events:calls/c1")
        assert received == [{"status": "OFFERING"}, {"status": "CONNECTED"}, None]

    async def test_list_replays_existing_items(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test list subscription replay followed by live items."""
        mock_redis.pubsub.return_value = make_pubsub([message({"candidate": "b"})])
        mock_redis.lrange.return_value = ['{"candidate": "a"}']
        received: list[Any] = []

        async def on_item(item: Any) -> None:
            received.append(item)

        await connected.subscribe_to_list("calls/c1/answerCandidates", on_item)
        await wait_for_subscriptions(connected)

        assert received == [{"candidate": "a"}, {"candidate": "b"}]

    async def test_query_filters_and_reports_removal(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test query snapshot, filtering, expiry pruning and removal."""
        stored = {
            "pushtalk:calls/c1": '{"calleeId": "bob"}',
            "pushtalk:calls/c2": '{"calleeId": "carol"}',
        }
        mock_redis.smembers.return_value = {"c1", "c2", "c3"}
        mock_redis.get.side_effect = lambda key: stored.get(key)
        mock_redis.pubsub.return_value = make_pubsub(
            [
                message({"id": "c4", "data": {"calleeId": "carol"}}),
                message({"id": "c5", "data": {"calleeId": "bob"}}),
                message({"id": "c1", "data": None}),
                message({"id": "c2", "data": None}),
            ]
        )
        received: list[tuple[str, Any]] = []

        async def on_change(record_id: str, data: Any) -> None:
            received.append((record_id, data))

        await connected.subscribe_to_query("calls", {"calleeId": "bob"}, on_change)
        await wait_for_subscriptions(connected)

        assert received == [
            ("c1", {"calleeId": "bob"}),
            ("c5", {"calleeId": "bob"}),
            ("c1", None),
        ]
        mock_redis.srem.assert_awaited_once_with("pushtalk:index:calls", "c3")

    async def test_unsubscribe(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that unsubscribe stops the stream and closes pub/sub once."""
        pubsub = make_pubsub(block=True)
        mock_redis.pubsub.return_value = pubsub
        received: list[Any] = []

        async def on_change(data: Any) -> None:
            received.append(data)

        unsubscribe = await connected.subscribe_to_record("calls/c1", on_change)
        await asyncio.sleep(0)
        await unsubscribe()
        await unsubscribe()
        await wait_for_subscriptions(connected)

        assert received == [None]
        pubsub.unsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()

    async def test_callback_error_keeps_streaming(
        self, connected: RedisSignalingStore, mock_redis: AsyncMock
    ) -> None:
        """Test that a failing callback does not end the subscription."""
        mock_redis.pubsub.return_value = make_pubsub([message({"n": 1}), message({"n": 2})])
        seen: list[int] = []

        async def on_item(item: Any) -> None:
            seen.append(item["n"])
            if item["n"] == 1:
                raise RuntimeError("handler bug")

        await connected.subscribe_to_list("calls/c1/offerCandidates", on_item)
        await wait_for_subscriptions(connected)

        assert seen == [1, 2]
