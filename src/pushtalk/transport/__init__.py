"""Peer transport layer.

Provides the PeerTransport abstraction the call orchestrator drives and the
aiortc-based implementation.
"""

from pushtalk.transport.aiortc_transport import AiortcTransport, GatedAudioTrack
from pushtalk.transport.base import PeerTransport

__all__ = [
    "PeerTransport",
    "AiortcTransport",
    "GatedAudioTrack",
]
