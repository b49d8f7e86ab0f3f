"""Push-to-talk call signaling and session lifecycle.

This package negotiates two-party audio calls through a shared signaling
store (Redis or in-memory) and hands the negotiated channel to a peer
transport (aiortc).
"""

__version__ = "0.1.0"
