"""Error taxonomy for call signaling.

Errors raised by user-initiated operations (placing or accepting a call)
propagate to the caller. Errors observed inside background subscription
callbacks are logged and absorbed by the orchestrator.
"""


class PushTalkError(Exception):
    """Base exception for all signaling errors."""

    pass


class MediaAcquisitionError(PushTalkError):
    """Raised when the microphone is unavailable or access is denied."""

    pass


class NegotiationError(PushTalkError):
    """Raised when a session description is malformed or applied out of order.

    Fatal to the session: the orchestrator tears the call down.
    """

    pass


class CandidateError(PushTalkError):
    """Raised when a single connectivity candidate fails to apply.

    Non-fatal: candidate gathering is redundant, so the candidate is skipped.
    """

    pass


class StoreWriteError(PushTalkError):
    """Raised when a signaling store write fails."""

    pass


class RecordExistsError(StoreWriteError):
    """Raised when creating a record under an id that is already taken."""

    pass


class DisposedServiceError(PushTalkError):
    """Raised when an operation continues after its session was disposed.

    Callers should treat this as a benign race, not a user-visible failure.
    """

    pass


class SessionActiveError(PushTalkError):
    """Raised when starting a call while another session is active."""

    pass


class CallNotFoundError(PushTalkError):
    """Raised when a call record is missing or no longer answerable."""

    pass


class InvalidTransitionError(ValueError):
    """Raised on an illegal call state transition."""

    pass
