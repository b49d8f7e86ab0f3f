"""aiortc peer transport.

Implements PeerTransport on top of aiortc's RTCPeerConnection. Local audio is
captured with MediaPlayer and wrapped in GatedAudioTrack, which transmits
silence unless push-to-talk is engaged, so the media path stays negotiated
while the user is not speaking.

aiortc gathers all local candidates inside setLocalDescription() and does
not emit per-candidate events, so candidates are extracted from the local
description afterwards and handed to the registered handler in order.
"""

import inspect
import logging
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from pushtalk.config import IceConfig, MediaConfig
from pushtalk.errors import CandidateError, MediaAcquisitionError, NegotiationError
from pushtalk.models import IceCandidate, SessionDescription
from pushtalk.transport.base import (
    CLOSED,
    LocalCandidateHandler,
    PeerTransport,
    RemoteTrackHandler,
)

logger = logging.getLogger(__name__)


def extract_candidates(sdp: str) -> list[IceCandidate]:
    """Extract candidate attributes from a session description.

    Args:
        sdp: Session description body

    Returns:
        Candidates in document order, tagged with their media section
    """
    candidates: list[IceCandidate] = []
    section: list[str] = []
    mline_index = -1
    mid: str | None = None

    def finish_section() -> None:
        for line in section:
            candidates.append(
                IceCandidate(candidate=line, sdp_mid=mid, sdp_mline_index=mline_index)
            )
        section.clear()

    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            finish_section()
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and mline_index >= 0:
            section.append(line[len("a="):])
    finish_section()

    return candidates


def build_ice_servers(config: IceConfig) -> list[RTCIceServer]:
    """Build the STUN/TURN server list for a peer connection."""
    servers = [RTCIceServer(urls=[url]) for url in config.stun_urls]
    if config.turn_url:
        servers.append(
            RTCIceServer(
                urls=[config.turn_url],
                username=config.turn_username,
                credential=config.turn_password,
            )
        )
    return servers


class GatedAudioTrack(MediaStreamTrack):
    """Audio track that forwards frames from a source, silenced unless transmitting."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self._source = source
        self.transmitting = False

    async def recv(self) -> Any:  # type: ignore[override]
        frame = await self._source.recv()
        if not self.transmitting:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcTransport(PeerTransport):
    """Peer transport backed by an aiortc RTCPeerConnection."""

    def __init__(
        self,
        ice_config: IceConfig | None = None,
        media_config: MediaConfig | None = None,
    ) -> None:
        """Initialize transport.

        Args:
            ice_config: STUN/TURN servers (defaults to public STUN)
            media_config: Capture device settings
        """
        self.ice_config = ice_config or IceConfig()
        self.media_config = media_config or MediaConfig()

        self._player: MediaPlayer | None = None
        self._track: GatedAudioTrack | None = None
        self._pc: RTCPeerConnection | None = None
        self._candidate_handler: LocalCandidateHandler | None = None
        self._closed = False

    async def acquire_local_audio(self) -> None:
        if self._track is not None:
            return

        media = self.media_config
        try:
            self._player = MediaPlayer(
                media.audio_device,
                format=media.audio_format,
                options=media.audio_options or None,
            )
        except Exception as e:
            logger.error(f"Failed to open audio device {media.audio_device}: {e}")
            raise MediaAcquisitionError(
                f"Cannot open audio device {media.audio_device!r} ({media.audio_format}): {e}"
            ) from e

        if self._player.audio is None:
            raise MediaAcquisitionError(f"Audio device {media.audio_device!r} has no audio track")

        self._track = GatedAudioTrack(self._player.audio)
        logger.info(f"Acquired audio device {media.audio_device} ({media.audio_format})")

    async def create_session(self, on_remote_track: RemoteTrackHandler | None = None) -> None:
        if self._closed:
            raise RuntimeError("Transport is closed")

        self._pc = RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=build_ice_servers(self.ice_config))
        )
        if self._track is not None:
            self._pc.addTrack(self._track)
        else:
            # Receive-only until a microphone is attached
            self._pc.addTransceiver("audio", direction="recvonly")

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.info(f"Remote {track.kind} track received")
            if track.kind != "audio" or on_remote_track is None:
                return
            result = on_remote_track(track)
            if inspect.isawaitable(result):
                await result

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            if self._pc is not None:
                logger.info(f"Peer connection state: {self._pc.connectionState}")

    def _require_session(self) -> RTCPeerConnection:
        if self._pc is None:
            raise NegotiationError("Transport session not created. Call create_session() first.")
        return self._pc

    async def create_offer(self) -> SessionDescription:
        pc = self._require_session()
        try:
            offer = await pc.createOffer()
        except Exception as e:
            raise NegotiationError(f"Failed to create offer: {e}") from e
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        pc = self._require_session()
        try:
            answer = await pc.createAnswer()
        except Exception as e:
            raise NegotiationError(f"Failed to create answer: {e}") from e
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        pc = self._require_session()
        try:
            await pc.setLocalDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as e:
            raise NegotiationError(f"Failed to set local {description.type}: {e}") from e

        candidates = extract_candidates(pc.localDescription.sdp)
        logger.debug(f"Gathered {len(candidates)} local candidates")
        if self._candidate_handler is None:
            return
        for candidate in candidates:
            await self._candidate_handler(candidate)

    async def set_remote_description(self, description: SessionDescription) -> None:
        pc = self._require_session()
        try:
            await pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as e:
            raise NegotiationError(f"Failed to set remote {description.type}: {e}") from e

    async def add_candidate(self, candidate: IceCandidate) -> None:
        pc = self._require_session()
        try:
            ice = candidate_from_sdp(candidate.candidate.split(":", 1)[1])
            ice.sdpMid = candidate.sdp_mid
            ice.sdpMLineIndex = candidate.sdp_mline_index
            await pc.addIceCandidate(ice)
        except Exception as e:
            raise CandidateError(f"Failed to add candidate {candidate.candidate!r}: {e}") from e

    def on_local_candidate(self, handler: LocalCandidateHandler) -> None:
        self._candidate_handler = handler

    def set_audio_enabled(self, enabled: bool) -> None:
        if self._track is not None:
            self._track.transmitting = enabled

    @property
    def audio_enabled(self) -> bool:
        return self._track is not None and self._track.transmitting

    @property
    def signaling_state(self) -> str:
        if self._closed or self._pc is None:
            return CLOSED
        return str(self._pc.signalingState)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._track is not None:
            self._track.stop()
        if self._pc is not None:
            await self._pc.close()
        logger.info("Peer transport closed")
