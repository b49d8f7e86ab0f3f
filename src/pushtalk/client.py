"""Wire a CallOrchestrator from configuration.

start_orchestrator() sets up logging, connects the Redis signaling store and
starts watching for incoming calls; stop_orchestrator() reverses it.
"""

import logging
from functools import partial
from pathlib import Path
from typing import Any

from pushtalk.config import PushTalkConfig
from pushtalk.orchestrator import CallOrchestrator, TransportFactory
from pushtalk.store.base import SignalingStore
from pushtalk.store.redis_store import RedisSignalingStore
from pushtalk.transport.aiortc_transport import AiortcTransport
from pushtalk.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def start_orchestrator(
    user_id: str,
    config: PushTalkConfig | Path | None = None,
    store: SignalingStore | None = None,
    transport_factory: TransportFactory | None = None,
    **callbacks: Any,
) -> CallOrchestrator:
    """Build and start the orchestrator for one user.

    Args:
        user_id: Identity of the local party
        config: Loaded config, or a YAML path (defaults apply when missing)
        store: Optional pre-connected store (for testing)
        transport_factory: Optional transport factory (for testing)
        **callbacks: on_incoming_call, on_state_change, on_remote_track,
            on_active_speaker

    Returns:
        Started orchestrator

    Raises:
        ConnectionError: If Redis connection fails
    """
    if not isinstance(config, PushTalkConfig):
        config = PushTalkConfig.from_yaml_with_defaults(config)

    setup_logging(config.log_level, json_format=config.log_json)

    if store is None:
        logger.info("Connecting signaling store", extra={"redis_url": config.redis.url})
        redis_store = RedisSignalingStore.from_config(config.redis, config.signaling)
        await redis_store.connect()
        store = redis_store

    if transport_factory is None:
        transport_factory = partial(AiortcTransport, config.ice, config.media)

    orchestrator = CallOrchestrator(
        user_id,
        store,
        transport_factory,
        config=config.signaling,
        **callbacks,
    )
    await orchestrator.start()
    logger.info("Orchestrator started", extra={"user_id": user_id})
    return orchestrator


async def stop_orchestrator(orchestrator: CallOrchestrator) -> None:
    """Stop the orchestrator and disconnect a Redis store it uses."""
    await orchestrator.stop()

    if isinstance(orchestrator.store, RedisSignalingStore):
        await orchestrator.store.disconnect()
