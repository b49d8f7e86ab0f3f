"""Shared signaling record and negotiation artefact models.

Defines Pydantic models for the call record exchanged through the signaling
store. Field names are snake_case in Python and camelCase on the wire.
"""

import json
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Child list names under a call record, one per negotiation direction
OFFER_CANDIDATES = "offerCandidates"
ANSWER_CANDIDATES = "answerCandidates"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CallStatus(str, Enum):
    """Status of a call as stored in the shared record.

    RINGING is a callee-local presentation state and is never written to the
    shared record; an unanswered record stays OFFERING.
    """

    OFFERING = "OFFERING"
    RINGING = "RINGING"
    CONNECTED = "CONNECTED"
    ENDED = "ENDED"
    REJECTED = "REJECTED"
    BUSY = "BUSY"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is permitted from this status."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[CallStatus] = frozenset(
    {CallStatus.ENDED, CallStatus.REJECTED, CallStatus.BUSY}
)

# Statuses a record may hold immediately before each status write
STATUS_PREDECESSORS: dict[CallStatus, tuple[CallStatus, ...]] = {
    CallStatus.CONNECTED: (CallStatus.OFFERING,),
    CallStatus.ENDED: (CallStatus.OFFERING, CallStatus.CONNECTED),
    CallStatus.REJECTED: (CallStatus.OFFERING,),
    CallStatus.BUSY: (CallStatus.OFFERING,),
}


class SessionDescription(BaseModel):
    """Offer or answer produced by the peer transport."""

    type: Literal["offer", "answer"]
    sdp: str = Field(..., min_length=1, description="Opaque description body")


class IceCandidate(BaseModel):
    """Connectivity candidate trickled between the two parties."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str = Field(..., min_length=1, description="candidate:... attribute line")
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire dictionary."""
        return self.model_dump(by_alias=True)

    def fingerprint(self) -> str:
        """Canonical serialized form used for deduplication."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


class CallRecord(BaseModel):
    """Shared call signaling record.

    The offer is written once by the caller and the answer once by the
    callee. Candidate lists are child lists of the record: they are only
    populated on full reads and are never part of a record write.
    """

    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(..., alias="callId")
    caller_id: str = Field(..., alias="callerId")
    callee_id: str = Field(..., alias="calleeId")
    status: CallStatus = CallStatus.OFFERING
    call_type: str = Field(default="PTT", alias="type")
    offer: SessionDescription | None = None
    answer: SessionDescription | None = None
    offer_candidates: list[IceCandidate] = Field(default_factory=list, alias=OFFER_CANDIDATES)
    answer_candidates: list[IceCandidate] = Field(default_factory=list, alias=ANSWER_CANDIDATES)
    active_speaker_id: str | None = Field(default=None, alias="activeSpeakerId")
    started_at: int = Field(default_factory=now_ms, alias="startedAt")
    ended_at: int | None = Field(default=None, alias="endedAt")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: CallStatus) -> CallStatus:
        """Reject the callee-local RINGING state in the shared record."""
        if v == CallStatus.RINGING:
            raise ValueError("RINGING is a local state and never part of the shared record")
        return v

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallRecord":
        """Deserialize from a store document.

        Raises:
            ValueError: If the document is not a valid call record
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid call record: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Serialize the live record for a store write (without child lists)."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"offer_candidates", "answer_candidates"},
        )

    def to_history(self, ended_at: int | None = None) -> dict[str, Any]:
        """Derive the archival record.

        Transient candidate lists are stripped. A call that had not reached a
        terminal status is archived as ENDED.
        """
        status = self.status if self.status.is_terminal else CallStatus.ENDED
        archived = self.model_copy(
            update={
                "status": status,
                "ended_at": self.ended_at or ended_at or now_ms(),
                "active_speaker_id": None,
            }
        )
        return archived.to_dict()
