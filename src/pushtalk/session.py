"""Call session state machine and per-session state.

All negotiation state (guard phase, candidate queue, subscriptions) lives in
an ActiveSession that is created fresh for each call and discarded after
cleanup, so nothing leaks from one call into the next.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from pushtalk.candidates import CandidateBuffer
from pushtalk.errors import InvalidTransitionError
from pushtalk.models import ANSWER_CANDIDATES, OFFER_CANDIDATES, CallRecord
from pushtalk.negotiation import NegotiationGuard
from pushtalk.store.base import Unsubscribe
from pushtalk.transport.base import PeerTransport

logger = logging.getLogger(__name__)


class CallState(Enum):
    """Local call state.

    State Transitions:
    - IDLE → OFFERING (caller places a call)
    - IDLE → RINGING (callee receives an offer while idle)
    - OFFERING → CONNECTED (caller observes the answer)
    - RINGING → CONNECTED (callee answers)
    - OFFERING/RINGING → ENDED/REJECTED/BUSY (hangup, reject or remote status)
    - CONNECTED → ENDED (hangup or remote status)
    - ENDED/REJECTED/BUSY → IDLE (cleanup complete)
    """

    IDLE = "IDLE"
    OFFERING = "OFFERING"
    RINGING = "RINGING"
    CONNECTED = "CONNECTED"
    ENDED = "ENDED"
    REJECTED = "REJECTED"
    BUSY = "BUSY"

    @property
    def is_terminal(self) -> bool:
        """Check if the call is over and only cleanup remains."""
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {CallState.ENDED, CallState.REJECTED, CallState.BUSY}

# Valid state transitions
VALID_TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.IDLE: {CallState.OFFERING, CallState.RINGING},
    CallState.OFFERING: {CallState.CONNECTED} | _TERMINAL_STATES,
    CallState.RINGING: {CallState.CONNECTED} | _TERMINAL_STATES,
    CallState.CONNECTED: {CallState.ENDED},
    CallState.ENDED: {CallState.IDLE},
    CallState.REJECTED: {CallState.IDLE},
    CallState.BUSY: {CallState.IDLE},
}

StateChangeCallback = Callable[[CallState, CallState], None]


class CallStateMachine:
    """Validated local call state."""

    def __init__(
        self,
        call_id: str | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self.call_id = call_id
        self.state = CallState.IDLE
        self._on_state_change = on_state_change

    def can_transition(self, new_state: CallState) -> bool:
        """Check if a transition to new_state is legal from the current state."""
        return new_state in VALID_TRANSITIONS.get(self.state, set())

    def transition(self, new_state: CallState) -> None:
        """Transition to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            InvalidTransitionError: If transition is invalid
        """
        if not self.can_transition(new_state):
            raise InvalidTransitionError(
                f"Invalid call state transition: {self.state.value} → {new_state.value}"
            )

        old_state = self.state
        self.state = new_state

        logger.info(
            "Call state transition",
            extra={
                "call_id": self.call_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

        if self._on_state_change is not None:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback failed: {e}", exc_info=True)

    def try_transition(self, new_state: CallState) -> bool:
        """Transition if legal.

        Returns:
            True if the transition happened, False if it was not permitted
        """
        if not self.can_transition(new_state):
            return False
        self.transition(new_state)
        return True


@dataclass
class ActiveSession:
    """State owned by one call, from placement or ring to cleanup."""

    transport: PeerTransport
    machine: CallStateMachine
    call_id: str | None = None
    is_caller: bool = True
    peer_id: str | None = None
    record: CallRecord | None = None
    subscriptions: list[Unsubscribe] = field(default_factory=list)
    disposed: bool = False
    cleanup_task: asyncio.Task[None] | None = None
    active_speaker_id: str | None = None

    # Latest desired activeSpeakerId and the task writing it
    desired_speaker_id: str | None = None
    speaker_writer: asyncio.Task[None] | None = None

    guard: NegotiationGuard = field(init=False)
    buffer: CandidateBuffer = field(init=False)

    def __post_init__(self) -> None:
        self.buffer = CandidateBuffer(self.transport, is_ready=lambda: self.guard.is_ready)
        self.guard = NegotiationGuard(self.transport, on_ready=self.buffer.flush)
        self.bind_call(self.call_id)

    @property
    def state(self) -> CallState:
        """Current local call state."""
        return self.machine.state

    def bind_call(self, call_id: str | None) -> None:
        """Attach the call id used for logging by every component."""
        self.call_id = call_id
        self.machine.call_id = call_id
        self.guard.call_id = call_id
        self.buffer.call_id = call_id

    @property
    def local_candidates_list(self) -> str:
        """Name of the candidate list this party appends to."""
        return OFFER_CANDIDATES if self.is_caller else ANSWER_CANDIDATES

    @property
    def remote_candidates_list(self) -> str:
        """Name of the candidate list this party reads."""
        return ANSWER_CANDIDATES if self.is_caller else OFFER_CANDIDATES
