"""Signaling store implementations."""

from pushtalk.store.base import SignalingStore, join_path, split_path
from pushtalk.store.memory import InMemorySignalingStore
from pushtalk.store.redis_store import RedisSignalingStore

__all__ = [
    "InMemorySignalingStore",
    "RedisSignalingStore",
    "SignalingStore",
    "join_path",
    "split_path",
]
