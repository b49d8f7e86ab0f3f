"""Remote candidate buffering and de-duplication.

Remote candidates can arrive before the remote description is applied, more
than once (store replays), and interleaved with a flush. CandidateBuffer
applies each distinct candidate exactly once, never before the negotiation
guard reports ready, and in arrival order.
"""

import logging
from collections import deque
from collections.abc import Callable

from pushtalk.errors import CandidateError
from pushtalk.models import IceCandidate
from pushtalk.transport.base import PeerTransport

logger = logging.getLogger(__name__)


class CandidateBuffer:
    """Per-session queue of remote candidates awaiting the remote description."""

    def __init__(
        self,
        transport: PeerTransport,
        is_ready: Callable[[], bool],
        call_id: str | None = None,
    ) -> None:
        """Initialize buffer.

        Args:
            transport: Transport the candidates are applied to
            is_ready: Returns True once the remote description is applied
            call_id: Call identifier for logging
        """
        self._transport = transport
        self._is_ready = is_ready
        self.call_id = call_id

        self._queue: deque[IceCandidate] = deque()
        self._processed: set[str] = set()
        self._flushing = False
        self.applied_count = 0
        self.failed_count = 0

    @property
    def pending_count(self) -> int:
        """Number of candidates waiting for the flush."""
        return len(self._queue)

    @property
    def processed_count(self) -> int:
        """Number of distinct candidates seen."""
        return len(self._processed)

    async def add_remote(self, candidate: IceCandidate) -> bool:
        """Accept a remote candidate.

        Args:
            candidate: Candidate read from the remote party's list

        Returns:
            False if the candidate was a duplicate, True otherwise
        """
        key = candidate.fingerprint()
        if key in self._processed:
            logger.debug(f"Duplicate candidate ignored for call {self.call_id}")
            return False
        self._processed.add(key)

        if self._is_ready() and not self._flushing:
            await self._apply(candidate)
        else:
            self._queue.append(candidate)
        return True

    async def flush(self) -> int:
        """Apply every queued candidate in arrival order.

        Candidates queued while the flush is running are applied by the same
        flush.

        Returns:
            Number of candidates applied successfully
        """
        if self._flushing:
            return 0

        self._flushing = True
        applied = 0
        try:
            while self._queue:
                if await self._apply(self._queue.popleft()):
                    applied += 1
        finally:
            self._flushing = False

        logger.debug(f"Flushed {applied} candidates for call {self.call_id}")
        return applied

    def clear(self) -> None:
        """Drop queued and processed candidates."""
        self._queue.clear()
        self._processed.clear()
        self._flushing = False

    async def _apply(self, candidate: IceCandidate) -> bool:
        try:
            await self._transport.add_candidate(candidate)
        except CandidateError as e:
            # Candidates are redundant; one bad path does not fail the call
            self.failed_count += 1
            logger.warning(
                f"Skipping candidate for call {self.call_id}: {e}",
                extra={"call_id": self.call_id, "error": str(e)},
            )
            return False

        self.applied_count += 1
        return True
