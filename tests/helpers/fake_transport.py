"""In-memory peer transport for orchestration tests.

FakeTransport follows the offer/answer signaling states of a real peer
connection, emits a fixed number of local candidates when a local
description is set, and records every remote candidate it is given.
Failures and slow remote-description application can be injected.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from pushtalk.errors import CandidateError, MediaAcquisitionError, NegotiationError
from pushtalk.models import IceCandidate, SessionDescription
from pushtalk.transport.base import (
    CLOSED,
    HAVE_LOCAL_OFFER,
    HAVE_REMOTE_OFFER,
    STABLE,
    LocalCandidateHandler,
    PeerTransport,
)


def make_candidate(label: str, port: int = 50000, mline_index: int = 0) -> IceCandidate:
    """Build a host candidate with a recognizable foundation."""
    return IceCandidate(
        candidate=f"candidate:{label} 1 udp 2130706431 192.0.2.1 {port} typ host",
        sdp_mid="0",
        sdp_mline_index=mline_index,
    )


class FakeTransport(PeerTransport):
    """Scriptable PeerTransport."""

    def __init__(self, name: str = "peer", local_candidate_count: int = 2) -> None:
        self.name = name
        self.local_candidate_count = local_candidate_count

        self.state = STABLE
        self.session_created = False
        self.audio_acquired = False
        self.closed = False
        self.close_count = 0
        self._audio_enabled = False

        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.set_remote_calls = 0
        self.applied_candidates: list[IceCandidate] = []
        self.audio_toggles: list[bool] = []

        self._candidate_handler: LocalCandidateHandler | None = None
        self._remote_track_handler: Callable[[Any], Awaitable[None] | None] | None = None

        # Failure injection
        self.fail_media = False
        self.fail_remote_description = False
        self.failing_candidates: set[str] = set()
        self.remote_description_gate: asyncio.Event | None = None

    async def acquire_local_audio(self) -> None:
        if self.fail_media:
            raise MediaAcquisitionError("Microphone permission denied")
        self.audio_acquired = True

    async def create_session(self, on_remote_track: Any = None) -> None:
        self.session_created = True
        self._remote_track_handler = on_remote_track

    async def create_offer(self) -> SessionDescription:
        return SessionDescription(type="offer", sdp=f"v=0 offer from {self.name}")

    async def create_answer(self) -> SessionDescription:
        if self.state != HAVE_REMOTE_OFFER:
            raise NegotiationError(f"Cannot answer in state {self.state}")
        return SessionDescription(type="answer", sdp=f"v=0 answer from {self.name}")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.local_description = description
        self.state = HAVE_LOCAL_OFFER if description.type == "offer" else STABLE

        if self._candidate_handler is None:
            return
        role = "offer" if description.type == "offer" else "answer"
        for index in range(self.local_candidate_count):
            await self._candidate_handler(
                make_candidate(f"{self.name}-{role}-{index}", port=50000 + index)
            )

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.set_remote_calls += 1
        if self.remote_description_gate is not None:
            await self.remote_description_gate.wait()
        if self.fail_remote_description:
            raise NegotiationError(f"Malformed {description.type}")
        if self.closed:
            raise NegotiationError("Transport is closed")

        self.remote_description = description
        self.state = HAVE_REMOTE_OFFER if description.type == "offer" else STABLE

    async def add_candidate(self, candidate: IceCandidate) -> None:
        if self.remote_description is None:
            raise AssertionError("Candidate applied before remote description")
        if candidate.candidate in self.failing_candidates:
            raise CandidateError(f"Unreachable candidate {candidate.candidate}")
        self.applied_candidates.append(candidate)

    def on_local_candidate(self, handler: LocalCandidateHandler) -> None:
        self._candidate_handler = handler

    def set_audio_enabled(self, enabled: bool) -> None:
        self._audio_enabled = enabled
        self.audio_toggles.append(enabled)

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    @property
    def signaling_state(self) -> str:
        return CLOSED if self.closed else self.state

    async def close(self) -> None:
        self.close_count += 1
        self.closed = True
        self.state = CLOSED

    async def emit_remote_track(self, track: Any) -> None:
        """Simulate the arrival of a remote audio track."""
        if self._remote_track_handler is None:
            return
        result = self._remote_track_handler(track)
        if asyncio.iscoroutine(result):
            await result


class FakeTransportFactory:
    """Transport factory that remembers every transport it built."""

    def __init__(self, name: str, local_candidate_count: int = 2) -> None:
        self.name = name
        self.local_candidate_count = local_candidate_count
        self.created: list[FakeTransport] = []
        self.configure: Callable[[FakeTransport], None] | None = None

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(
            name=f"{self.name}{len(self.created)}",
            local_candidate_count=self.local_candidate_count,
        )
        if self.configure is not None:
            self.configure(transport)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        """Most recently created transport."""
        return self.created[-1]
