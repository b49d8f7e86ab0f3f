"""Redis-backed signaling store.

Records are JSON documents stored under "{prefix}{path}" with a TTL so that
abandoned calls expire on their own. Child lists are Redis lists under
"{prefix}{path}/{name}". Change notifications are published on
"{prefix}events:{path}" (record and list channels) and
"{prefix}events:{collection}" (query channel); subscribers attach with
pub/sub before reading the initial snapshot, so no change is lost between
snapshot and live stream (duplicates are possible and tolerated).

Collections listed as persistent (call history) are written without TTL.
Every write to a live record or one of its lists restarts the expiry of the
record and its lists, so a call only expires after a full TTL of silence.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Collection, Mapping
from typing import Any

from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from pushtalk.config import RedisConfig, SignalingConfig
from pushtalk.errors import RecordExistsError, StoreWriteError
from pushtalk.store.base import (
    ListItemCallback,
    QueryCallback,
    RecordCallback,
    SignalingStore,
    Unsubscribe,
    join_path,
    split_path,
)
from pushtalk.store.memory import matches_filter

logger = logging.getLogger(__name__)

# Merge ARGV[1] into the record at KEYS[1] only if every field listed in
# ARGV[2] holds one of its allowed values, then publish the new document.
# A positive ARGV[6] restarts the record's expiry; 0 keeps the current one.
CONDITIONAL_UPDATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local record = cjson.decode(raw)
local expect = cjson.decode(ARGV[2])
for field, allowed in pairs(expect) do
  local ok = false
  for _, value in ipairs(allowed) do
    if record[field] == value then
      ok = true
      break
    end
  end
  if not ok then
    return 0
  end
end
for field, value in pairs(cjson.decode(ARGV[1])) do
  record[field] = value
end
local encoded = cjson.encode(record)
local ttl = tonumber(ARGV[6])
if ttl > 0 then
  redis.call('SET', KEYS[1], encoded, 'EX', ttl)
else
  redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
end
local event = '{"id":' .. cjson.encode(ARGV[3]) .. ',"data":' .. encoded .. '}'
redis.call('PUBLISH', ARGV[4], event)
redis.call('PUBLISH', ARGV[5], event)
return 1
"""


class RedisSignalingStore(SignalingStore):
    """Signaling store on Redis keys, lists and pub/sub."""

    def __init__(
        self,
        redis_url: str,
        db: int = 0,
        key_prefix: str = "pushtalk:",
        live_record_ttl_seconds: int = 3600,
        persistent_collections: Collection[str] = ("call_history",),
        connection_pool_size: int = 10,
    ) -> None:
        """Initialize store with Redis connection settings.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379")
            db: Redis database number (0-15)
            key_prefix: Prefix for every key and channel
            live_record_ttl_seconds: Expiry of live records and their lists
            persistent_collections: Collections written without expiry
            connection_pool_size: Redis connection pool size
        """
        self.redis_url = redis_url
        self.db = db
        self.key_prefix = key_prefix
        self.live_record_ttl_seconds = live_record_ttl_seconds
        self.persistent_collections = frozenset(persistent_collections)
        self.connection_pool_size = connection_pool_size

        # Connection pool (lazy initialization)
        self._pool: Any = None
        self._redis: Any = None
        self._connected = False
        self._subscription_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls, redis: RedisConfig, signaling: SignalingConfig | None = None
    ) -> "RedisSignalingStore":
        """Build a store from configuration.

        The history collection named by the signaling config is persistent.
        """
        signaling = signaling or SignalingConfig()
        return cls(
            redis_url=redis.url,
            db=redis.db,
            key_prefix=redis.key_prefix,
            live_record_ttl_seconds=redis.live_record_ttl_seconds,
            persistent_collections=(signaling.history_collection,),
            connection_pool_size=redis.connection_pool_size,
        )

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            ConnectionError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                db=self.db,
                max_connections=self.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)

            await self._redis.ping()
            self._connected = True
            logger.info(
                f"Connected to Redis at {self.redis_url} (db={self.db}, "
                f"prefix={self.key_prefix})"
            )
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Cancel subscriptions and close the connection pool.

        This method is idempotent - safe to call multiple times.
        """
        if not self._connected:
            return

        for task in list(self._subscription_tasks):
            task.cancel()
        self._subscription_tasks.clear()

        try:
            if self._redis:
                await self._redis.aclose()
            if self._pool:
                await self._pool.disconnect()
            self._connected = False
            logger.info("Disconnected from Redis")
        except Exception as e:
            logger.warning(f"Error during Redis disconnect: {e}")

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is reachable and responsive, False otherwise
        """
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _key(self, path: str) -> str:
        return f"{self.key_prefix}{path}"

    def _channel(self, path: str) -> str:
        return f"{self.key_prefix}events:{path}"

    def _index_key(self, collection: str) -> str:
        return f"{self.key_prefix}index:{collection}"

    def _children_key(self, path: str) -> str:
        return f"{self.key_prefix}children:{path}"

    def _ttl_for(self, collection: str) -> int | None:
        if collection in self.persistent_collections:
            return None
        return self.live_record_ttl_seconds

    def _require_connection(self) -> None:
        if not self._connected or not self._redis:
            raise ConnectionError("Redis not connected. Call connect() first.")

    # ------------------------------------------------------------------
    # Writes and reads
    # ------------------------------------------------------------------

    def new_record_id(self, collection: str) -> str:
        return uuid.uuid4().hex

    async def create_record(
        self, collection: str, data: dict[str, Any], record_id: str | None = None
    ) -> str:
        self._require_connection()

        record_id = record_id or self.new_record_id(collection)
        path = join_path(collection, record_id)
        encoded = json.dumps(data)

        try:
            created = await self._redis.set(
                self._key(path), encoded, ex=self._ttl_for(collection), nx=True
            )
            if not created:
                raise RecordExistsError(f"Record already exists: {path}")

            await self._redis.sadd(self._index_key(collection), record_id)
            await self._publish_record(collection, record_id, encoded)
        except RedisError as e:
            logger.error(f"Failed to create record {path}: {e}")
            raise StoreWriteError(f"Failed to create record {path}: {e}") from e

        logger.debug(f"Created record {path}")
        return record_id

    async def read_record(self, path: str) -> dict[str, Any] | None:
        self._require_connection()

        raw = await self._redis.get(self._key(path))
        if raw is None:
            return None

        record: dict[str, Any] = json.loads(raw)
        for name in sorted(await self._redis.smembers(self._children_key(path))):
            record[name] = await self.read_list(join_path(path, name))
        return record

    async def read_list(self, path: str) -> list[dict[str, Any]]:
        self._require_connection()

        items = await self._redis.lrange(self._key(path), 0, -1)
        return [json.loads(item) for item in items]

    async def update_record(
        self,
        path: str,
        partial: dict[str, Any],
        expect: Mapping[str, Collection[Any]] | None = None,
    ) -> bool:
        self._require_connection()

        collection, record_id = split_path(path)
        expected = {field: list(allowed) for field, allowed in (expect or {}).items()}
        ttl = self._ttl_for(collection)

        try:
            applied = await self._redis.eval(
                CONDITIONAL_UPDATE_SCRIPT,
                1,
                self._key(path),
                json.dumps(partial),
                json.dumps(expected),
                record_id,
                self._channel(path),
                self._channel(collection),
                ttl or 0,
            )
            if applied and ttl is not None:
                await self._refresh_children(path, ttl)
        except RedisError as e:
            logger.error(f"Failed to update record {path}: {e}")
            raise StoreWriteError(f"Failed to update record {path}: {e}") from e

        return bool(applied)

    async def append_to_list(self, path: str, item: dict[str, Any]) -> None:
        self._require_connection()

        parent, name = split_path(path)
        collection, _ = split_path(parent)
        encoded = json.dumps(item)
        key = self._key(path)

        try:
            await self._redis.rpush(key, encoded)
            await self._redis.sadd(self._children_key(parent), name)
            if (ttl := self._ttl_for(collection)) is not None:
                await self._redis.expire(self._key(parent), ttl)
                await self._refresh_children(parent, ttl)
            await self._redis.publish(self._channel(path), encoded)
        except RedisError as e:
            logger.error(f"Failed to append to list {path}: {e}")
            raise StoreWriteError(f"Failed to append to list {path}: {e}") from e

    async def delete_record(self, path: str) -> None:
        self._require_connection()

        collection, record_id = split_path(path)
        children_key = self._children_key(path)

        try:
            names = await self._redis.smembers(children_key)
            keys = [self._key(join_path(path, name)) for name in names]
            deleted = await self._redis.delete(self._key(path), children_key, *keys)
            await self._redis.srem(self._index_key(collection), record_id)
            if deleted:
                await self._publish_record(collection, record_id, None)
        except RedisError as e:
            logger.error(f"Failed to delete record {path}: {e}")
            raise StoreWriteError(f"Failed to delete record {path}: {e}") from e

        logger.debug(f"Deleted record {path}")

    async def _refresh_children(self, path: str, ttl: int) -> None:
        children_key = self._children_key(path)
        for name in await self._redis.smembers(children_key):
            await self._redis.expire(self._key(join_path(path, name)), ttl)
        await self._redis.expire(children_key, ttl)

    async def _publish_record(self, collection: str, record_id: str, encoded: str | None) -> None:
        event = f'{{"id":{json.dumps(record_id)},"data":{encoded or "null"}}}'
        await self._redis.publish(self._channel(join_path(collection, record_id)), event)
        await self._redis.publish(self._channel(collection), event)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_to_record(self, path: str, on_change: RecordCallback) -> Unsubscribe:
        self._require_connection()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel(path))

        raw = await self._redis.get(self._key(path))
        snapshot = [(json.loads(raw) if raw is not None else None,)]

        async def on_message(event: dict[str, Any]) -> None:
            await on_change(event.get("data"))

        return self._start(pubsub, f"record {path}", snapshot, on_change, on_message)

    async def subscribe_to_list(self, path: str, on_item_added: ListItemCallback) -> Unsubscribe:
        self._require_connection()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel(path))

        snapshot = [(item,) for item in await self.read_list(path)]
        return self._start(pubsub, f"list {path}", snapshot, on_item_added, on_item_added)

    async def subscribe_to_query(
        self,
        collection: str,
        filter: Mapping[str, Any],
        on_change: QueryCallback,
    ) -> Unsubscribe:
        self._require_connection()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel(collection))

        matched: set[str] = set()
        snapshot: list[tuple[Any, ...]] = []
        index_key = self._index_key(collection)
        for record_id in sorted(await self._redis.smembers(index_key)):
            raw = await self._redis.get(self._key(join_path(collection, record_id)))
            if raw is None:
                # Expired live record
                await self._redis.srem(index_key, record_id)
                continue
            data = json.loads(raw)
            if matches_filter(data, filter):
                matched.add(record_id)
                snapshot.append((record_id, data))

        async def on_message(event: dict[str, Any]) -> None:
            record_id = event["id"]
            data = event.get("data")
            if data is not None and matches_filter(data, filter):
                matched.add(record_id)
                await on_change(record_id, data)
            elif record_id in matched:
                matched.discard(record_id)
                await on_change(record_id, None)

        return self._start(pubsub, f"query {collection}", snapshot, on_change, on_message)

    def _start(
        self,
        pubsub: Any,
        description: str,
        snapshot: list[tuple[Any, ...]],
        on_snapshot: Callable[..., Awaitable[None]],
        on_message: Callable[[Any], Awaitable[None]],
    ) -> Unsubscribe:
        """Deliver the snapshot, then stream pub/sub messages, on one task."""

        async def run() -> None:
            try:
                for args in snapshot:
                    await self._deliver(description, on_snapshot, *args)
                    if not active:
                        return
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._deliver(description, on_message, json.loads(message["data"]))
                    if not active:
                        return
            except asyncio.CancelledError:
                # Unsubscribed
                pass
            except Exception as e:
                logger.error(f"Subscription to {description} stopped: {e}", exc_info=True)

        task = asyncio.create_task(run())
        self._subscription_tasks.add(task)
        task.add_done_callback(self._subscription_tasks.discard)
        active = True

        async def unsubscribe() -> None:
            nonlocal active
            if not active:
                return
            active = False
            # A callback may unsubscribe its own subscription
            if task is not asyncio.current_task():
                task.cancel()
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except Exception as e:
                logger.warning(f"Error closing subscription to {description}: {e}")

        return unsubscribe

    @staticmethod
    async def _deliver(
        description: str, callback: Callable[..., Awaitable[None]], *args: Any
    ) -> None:
        try:
            await callback(*args)
        except Exception as e:
            logger.error(f"Subscription callback failed for {description}: {e}", exc_info=True)
