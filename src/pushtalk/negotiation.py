"""Remote description application guard.

Both the answer-write path and redundant record notifications can try to
apply the same remote description. NegotiationGuard makes application
happen at most once per session, only in a signaling state that expects it,
and triggers the candidate flush exactly once on success.

Phase Transitions:
- IDLE → AWAITING_REMOTE_DESCRIPTION (application started)
- AWAITING_REMOTE_DESCRIPTION → READY (application succeeded)
- AWAITING_REMOTE_DESCRIPTION → IDLE (application failed)
- * → IDLE (session reset)
"""

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from pushtalk.errors import NegotiationError
from pushtalk.models import SessionDescription
from pushtalk.transport.base import HAVE_LOCAL_OFFER, STABLE, PeerTransport

logger = logging.getLogger(__name__)


class NegotiationPhase(Enum):
    """Remote description application phase."""

    IDLE = "idle"
    AWAITING_REMOTE_DESCRIPTION = "awaiting_remote_description"
    READY = "ready"


# Signaling state in which each description type may be applied
EXPECTED_SIGNALING_STATE: dict[str, str] = {
    "offer": STABLE,
    "answer": HAVE_LOCAL_OFFER,
}


class NegotiationGuard:
    """Apply the remote description at most once."""

    def __init__(
        self,
        transport: PeerTransport,
        on_ready: Callable[[], Awaitable[object]] | None = None,
        call_id: str | None = None,
    ) -> None:
        """Initialize guard.

        Args:
            transport: Transport the description is applied to
            on_ready: Awaited once after successful application (buffer flush)
            call_id: Call identifier for logging
        """
        self._transport = transport
        self._on_ready = on_ready
        self.call_id = call_id
        self._phase = NegotiationPhase.IDLE

    @property
    def phase(self) -> NegotiationPhase:
        """Current negotiation phase."""
        return self._phase

    @property
    def is_ready(self) -> bool:
        """Check if the remote description has been applied."""
        return self._phase is NegotiationPhase.READY

    async def try_apply_remote_description(self, description: SessionDescription) -> bool:
        """Apply the remote description unless already applied or in flight.

        Args:
            description: Remote offer or answer

        Returns:
            True if this call applied the description, False if it was a no-op

        Raises:
            NegotiationError: If the transport rejects the description
        """
        if self._phase is not NegotiationPhase.IDLE:
            logger.debug(
                f"Remote {description.type} ignored for call {self.call_id} "
                f"(phase={self._phase.value})"
            )
            return False

        expected = EXPECTED_SIGNALING_STATE[description.type]
        if (state := self._transport.signaling_state) != expected:
            logger.debug(
                f"Remote {description.type} ignored for call {self.call_id} "
                f"(signaling_state={state}, expected={expected})"
            )
            return False

        self._phase = NegotiationPhase.AWAITING_REMOTE_DESCRIPTION
        try:
            await self._transport.set_remote_description(description)
        except Exception as e:
            if self._phase is NegotiationPhase.AWAITING_REMOTE_DESCRIPTION:
                self._phase = NegotiationPhase.IDLE
            logger.error(
                f"Failed to apply remote {description.type} for call {self.call_id}: {e}",
                extra={"call_id": self.call_id, "error": str(e)},
            )
            if isinstance(e, NegotiationError):
                raise
            raise NegotiationError(f"Failed to apply remote {description.type}: {e}") from e

        if self._phase is not NegotiationPhase.AWAITING_REMOTE_DESCRIPTION:
            logger.info(f"Session reset while applying remote {description.type}, skipping flush")
            return False

        self._phase = NegotiationPhase.READY
        logger.info(f"Remote {description.type} applied for call {self.call_id}")

        if self._on_ready is not None:
            await self._on_ready()
        return True

    def reset(self) -> None:
        """Return to IDLE, abandoning any in-flight application."""
        self._phase = NegotiationPhase.IDLE
