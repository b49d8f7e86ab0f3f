"""Base peer transport abstraction.

Defines the interface the call orchestrator drives for one media session:
description exchange, candidate application and push-to-talk gating of the
local audio track. Each call owns a fresh transport instance; a closed
transport is never reused.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from pushtalk.models import IceCandidate, SessionDescription

LocalCandidateHandler = Callable[[IceCandidate], Awaitable[None]]
RemoteTrackHandler = Callable[[Any], Awaitable[None] | None]

# Signaling states, mirroring the peer-connection state names
STABLE = "stable"
HAVE_LOCAL_OFFER = "have-local-offer"
HAVE_REMOTE_OFFER = "have-remote-offer"
CLOSED = "closed"


class PeerTransport(ABC):
    """Point-to-point real-time media session.

    Implementations emit local candidates through the handler registered
    with on_local_candidate(), in gathering order, after
    set_local_description() has been called.
    """

    @abstractmethod
    async def acquire_local_audio(self) -> None:
        """Open the local microphone track.

        Raises:
            MediaAcquisitionError: If the device is unavailable or denied
        """
        pass

    @abstractmethod
    async def create_session(self, on_remote_track: RemoteTrackHandler | None = None) -> None:
        """Create the underlying session and attach the local audio track.

        Args:
            on_remote_track: Called with each remote audio track
        """
        pass

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Produce a local offer."""
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Produce a local answer to the applied remote offer."""
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply a local description and start candidate gathering."""
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote description.

        Raises:
            NegotiationError: If the description is malformed or out of order
        """
        pass

    @abstractmethod
    async def add_candidate(self, candidate: IceCandidate) -> None:
        """Apply one remote candidate.

        Only valid once a remote description has been applied.

        Raises:
            CandidateError: If the candidate cannot be applied
        """
        pass

    @abstractmethod
    def on_local_candidate(self, handler: LocalCandidateHandler) -> None:
        """Register the handler for locally gathered candidates."""
        pass

    @abstractmethod
    def set_audio_enabled(self, enabled: bool) -> None:
        """Gate transmission of the local audio track (push-to-talk)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the media session and local tracks.

        Idempotent. After close() the transport must not be used again.
        """
        pass

    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """Current signaling state (e.g., "stable", "have-local-offer")."""
        pass

    @property
    @abstractmethod
    def audio_enabled(self) -> bool:
        """Check if the local audio track is currently transmitting."""
        pass
