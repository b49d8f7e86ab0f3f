"""Push-to-talk call orchestration.

CallOrchestrator turns a call intent into a negotiated, connected session
for one user. It writes the offer and answer through the signaling store,
arbitrates races between the two parties (duplicate notifications, busy
callees, hangups during setup) and guarantees that every session ends in
exactly one cleanup that archives the call and removes the live record.

Every subscription callback is bound to the ActiveSession that created it
and checks ``session.disposed`` before doing anything, so late
notifications from a finished call never touch the next one.
"""

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from pydantic import ValidationError

from pushtalk.config import SignalingConfig
from pushtalk.errors import (
    CallNotFoundError,
    DisposedServiceError,
    NegotiationError,
    RecordExistsError,
    SessionActiveError,
    StoreWriteError,
)
from pushtalk.models import (
    STATUS_PREDECESSORS,
    CallRecord,
    CallStatus,
    IceCandidate,
    now_ms,
)
from pushtalk.session import ActiveSession, CallState, CallStateMachine, StateChangeCallback
from pushtalk.store.base import SignalingStore, Unsubscribe, join_path
from pushtalk.transport.base import PeerTransport
from pushtalk.utils.logging import log_event

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], PeerTransport]
IncomingCallCallback = Callable[[CallRecord], Awaitable[None] | None]
RemoteTrackCallback = Callable[[Any], Awaitable[None] | None]
ActiveSpeakerCallback = Callable[[str | None], Awaitable[None] | None]

# Ids of calls this user already answered, declined or ended; a redelivered
# OFFERING snapshot for one of them must not ring again
HANDLED_CALL_HISTORY = 256


class CallOrchestrator:
    """Signaling and session lifecycle for one user.

    At most one session exists at a time. ``state`` is IDLE whenever no
    session exists.
    """

    def __init__(
        self,
        user_id: str,
        store: SignalingStore,
        transport_factory: TransportFactory,
        config: SignalingConfig | None = None,
        on_incoming_call: IncomingCallCallback | None = None,
        on_state_change: StateChangeCallback | None = None,
        on_remote_track: RemoteTrackCallback | None = None,
        on_active_speaker: ActiveSpeakerCallback | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            user_id: Identity of the local party
            store: Signaling store used as relay
            transport_factory: Returns a fresh transport for each session
            config: Collection names and call type
            on_incoming_call: Called with the record when a call starts ringing
            on_state_change: Called with (old_state, new_state) on every transition
            on_remote_track: Called with each remote audio track
            on_active_speaker: Called when the active speaker changes
        """
        self.user_id = user_id
        self.store = store
        self.transport_factory = transport_factory
        self.config = config or SignalingConfig()

        self.on_incoming_call = on_incoming_call
        self.on_state_change = on_state_change
        self.on_remote_track = on_remote_track
        self.on_active_speaker = on_active_speaker

        self._session: ActiveSession | None = None
        self._incoming_unsubscribe: Unsubscribe | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._handled_calls: deque[str] = deque(maxlen=HANDLED_CALL_HISTORY)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session(self) -> ActiveSession | None:
        """Current session, or None when idle."""
        return self._session

    @property
    def state(self) -> CallState:
        """Local call state."""
        return self._session.state if self._session is not None else CallState.IDLE

    @property
    def call_id(self) -> str | None:
        """Id of the current call, if any."""
        return self._session.call_id if self._session is not None else None

    @property
    def active_speaker_id(self) -> str | None:
        """Party currently holding the floor in the current call."""
        return self._session.active_speaker_id if self._session is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start watching for calls addressed to this user.

        This method is idempotent - safe to call multiple times.
        """
        if self._incoming_unsubscribe is not None:
            return

        self._incoming_unsubscribe = await self.store.subscribe_to_query(
            self.config.calls_collection,
            {"calleeId": self.user_id},
            self._on_incoming_change,
        )
        logger.info(f"Watching incoming calls for {self.user_id}")

    async def stop(self) -> None:
        """Stop watching, end any call and wait for background work."""
        if self._incoming_unsubscribe is not None:
            unsubscribe, self._incoming_unsubscribe = self._incoming_unsubscribe, None
            await unsubscribe()

        if self._session is not None:
            await self.end_call()

        await self.wait_for_background_tasks()
        logger.info(f"Orchestrator stopped for {self.user_id}")

    async def wait_for_background_tasks(self) -> None:
        """Wait until every cleanup and speaker write has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    async def place_call(self, target_id: str, metadata: dict[str, Any] | None = None) -> str:
        """Call another user.

        Args:
            target_id: Callee identity
            metadata: Free-form data stored with the call (display names, avatar)

        Returns:
            Id of the new call

        Raises:
            SessionActiveError: If a session already exists
            ValueError: If target_id is this user
            MediaAcquisitionError: If the microphone cannot be opened
            NegotiationError: If the offer cannot be produced
            StoreWriteError: If the call record cannot be written
            DisposedServiceError: If the call was ended while being placed
        """
        if self._session is not None:
            raise SessionActiveError(
                f"Cannot place call: session already active ({self.state.value})"
            )
        if target_id == self.user_id:
            raise ValueError("Cannot place a call to yourself")

        call_id = self.store.new_record_id(self.config.calls_collection)
        session = self._reset_session(is_caller=True, call_id=call_id, peer_id=target_id)
        session.machine.transition(CallState.OFFERING)

        try:
            await self._place(session, call_id, target_id, metadata or {})
        except Exception as e:
            if not isinstance(e, DisposedServiceError):
                logger.error(
                    f"Failed to place call to {target_id}: {e}",
                    extra={"call_id": session.call_id, "error": str(e)},
                )
            await self._cleanup(session)
            raise

        return call_id

    async def _place(
        self, session: ActiveSession, call_id: str, target_id: str, metadata: dict[str, Any]
    ) -> None:
        collection = self.config.calls_collection
        record_path = join_path(collection, call_id)
        transport = session.transport

        await transport.acquire_local_audio()
        self._apply_local_audio(session)
        self._check_disposed(session)

        await transport.create_session(self._remote_track_handler(session))
        self._check_disposed(session)

        transport.on_local_candidate(
            self._local_candidate_handler(
                session, join_path(record_path, session.local_candidates_list)
            )
        )
        offer = await transport.create_offer()
        self._check_disposed(session)
        await transport.set_local_description(offer)
        self._check_disposed(session)

        record = CallRecord(
            call_id=call_id,
            caller_id=self.user_id,
            callee_id=target_id,
            status=CallStatus.OFFERING,
            call_type=self.config.call_type,
            offer=offer,
            metadata=metadata,
        )
        await self.store.create_record(collection, record.to_dict(), record_id=call_id)
        session.record = record
        if session.disposed:
            # Ended while the record was being written; cleanup already ran
            await self._archive_and_remove(call_id)
            self._check_disposed(session)

        log_event("call_placed", {"call_id": call_id, "callee_id": target_id})

        await self._subscribe(
            session,
            self.store.subscribe_to_record(record_path, self._record_handler(session)),
        )
        await self._subscribe(
            session,
            self.store.subscribe_to_list(
                join_path(record_path, session.remote_candidates_list),
                self._remote_candidate_handler(session),
            ),
        )

    async def accept_call(self, call_id: str | None = None) -> None:
        """Answer the ringing call (or the given call).

        Args:
            call_id: Call to answer; defaults to the ringing call

        Raises:
            SessionActiveError: If another session is active
            CallNotFoundError: If the call is gone or no longer OFFERING
            MediaAcquisitionError: If the microphone cannot be opened
            NegotiationError: If the offer cannot be applied
            StoreWriteError: If the answer cannot be written
            DisposedServiceError: If the call ended while being answered
        """
        session = self._session
        if session is not None:
            if session.state is not CallState.RINGING or (
                call_id is not None and call_id != session.call_id
            ):
                raise SessionActiveError(
                    f"Cannot accept call: session already active ({session.state.value})"
                )
            call_id = session.call_id
        if call_id is None:
            raise CallNotFoundError("No incoming call to accept")

        if session is None:
            # Only ringing sessions come from the incoming-call watch; an
            # explicit id must be checked before this user owns the record
            data = await self.store.read_record(join_path(self.config.calls_collection, call_id))
            if data is None or data.get("calleeId") != self.user_id:
                raise CallNotFoundError(f"No incoming call {call_id} for {self.user_id}")
            session = self._reset_session(is_caller=False, call_id=call_id)
            session.machine.transition(CallState.RINGING)

        try:
            await self._accept(session, call_id)
        except Exception as e:
            if not isinstance(e, DisposedServiceError):
                logger.error(
                    f"Failed to accept call {session.call_id}: {e}",
                    extra={"call_id": session.call_id, "error": str(e)},
                )
            await self._cleanup(session)
            raise

    async def _accept(self, session: ActiveSession, call_id: str) -> None:
        record_path = join_path(self.config.calls_collection, call_id)
        transport = session.transport

        data = await self.store.read_record(record_path)
        self._check_disposed(session)
        if data is None:
            raise CallNotFoundError(f"Call {call_id} not found")
        try:
            record = CallRecord.from_dict(data)
        except ValueError as e:
            raise CallNotFoundError(f"Call {call_id} is unreadable: {e}") from e
        if record.status is not CallStatus.OFFERING or record.offer is None:
            raise CallNotFoundError(
                f"Call {call_id} is no longer answerable ({record.status.value})"
            )
        session.record = record
        session.peer_id = record.caller_id

        await transport.acquire_local_audio()
        self._apply_local_audio(session)
        self._check_disposed(session)

        await transport.create_session(self._remote_track_handler(session))
        self._check_disposed(session)

        transport.on_local_candidate(
            self._local_candidate_handler(
                session, join_path(record_path, session.local_candidates_list)
            )
        )

        applied = await session.guard.try_apply_remote_description(record.offer)
        self._check_disposed(session)
        if not applied:
            raise NegotiationError(f"Offer for call {call_id} could not be applied")

        answer = await transport.create_answer()
        self._check_disposed(session)
        await transport.set_local_description(answer)
        self._check_disposed(session)

        written = await self.store.update_record(
            record_path,
            {"answer": answer.model_dump(), "status": CallStatus.CONNECTED.value},
            expect={"status": [CallStatus.OFFERING.value]},
        )
        if not written:
            raise CallNotFoundError(f"Call {call_id} ended before it was answered")
        session.record = record.model_copy(update={"answer": answer, "status": CallStatus.CONNECTED})
        self._check_disposed(session)

        # Catch up on candidates written before the subscription exists;
        # the subscription replays them too and the buffer drops duplicates
        remote_list = join_path(record_path, session.remote_candidates_list)
        for item in await self.store.read_list(remote_list):
            await self._add_remote_candidate(session, item)
        self._check_disposed(session)

        await self._subscribe(
            session,
            self.store.subscribe_to_list(remote_list, self._remote_candidate_handler(session)),
        )
        await self._subscribe(
            session,
            self.store.subscribe_to_record(record_path, self._record_handler(session)),
        )

        session.machine.try_transition(CallState.CONNECTED)
        if session.desired_speaker_id != session.active_speaker_id:
            self._schedule_speaker_write(session)
        log_event("call_accepted", {"call_id": call_id, "caller_id": session.peer_id})

    async def reject_call(self, call_id: str | None = None) -> None:
        """Decline the ringing call (or the given call).

        Raises:
            CallNotFoundError: If there is no call to reject
            SessionActiveError: If the given call is already past ringing
        """
        session = self._session
        target = call_id or (session.call_id if session is not None else None)
        if target is None:
            raise CallNotFoundError("No incoming call to reject")

        if session is None or session.call_id != target:
            self._handled_calls.append(target)
            await self._write_status(target, CallStatus.REJECTED)
            return

        if session.state is not CallState.RINGING:
            raise SessionActiveError(f"Cannot reject call in state {session.state.value}")

        session.machine.try_transition(CallState.REJECTED)
        await self._write_status(target, CallStatus.REJECTED)
        await self._cleanup(session)

    async def end_call(self) -> None:
        """Hang up the current call, whatever its stage.

        The terminal status write is best-effort; cleanup always runs.
        """
        session = self._session
        if session is None:
            return

        if not session.disposed:
            terminal = CallState.REJECTED if session.state is CallState.RINGING else CallState.ENDED
            session.machine.try_transition(terminal)
            if session.call_id is not None:
                await self._write_status(session.call_id, CallStatus(terminal.value))

        await self._cleanup(session)

    def set_transmitting(self, active: bool) -> None:
        """Engage or release push-to-talk.

        Local audio is gated immediately. The activeSpeakerId write happens
        in the background; only the latest value is guaranteed to be written.
        """
        session = self._session
        if session is None or session.disposed:
            return

        session.desired_speaker_id = self.user_id if active else None
        self._apply_local_audio(session)
        self._schedule_speaker_write(session)

    def _apply_local_audio(self, session: ActiveSession) -> None:
        session.transport.set_audio_enabled(session.desired_speaker_id == self.user_id)

    def _schedule_speaker_write(self, session: ActiveSession) -> None:
        """Start the speaker writer unless one is running; a no-op before CONNECTED."""
        if session.disposed or session.state is not CallState.CONNECTED:
            return
        if session.call_id is None:
            return
        if session.speaker_writer is None or session.speaker_writer.done():
            session.speaker_writer = self._spawn(
                self._write_active_speaker(session, session.call_id)
            )

    async def _write_active_speaker(self, session: ActiveSession, call_id: str) -> None:
        record_path = join_path(self.config.calls_collection, call_id)

        while not session.disposed:
            speaker_id = session.desired_speaker_id
            try:
                await self.store.update_record(
                    record_path,
                    {"activeSpeakerId": speaker_id},
                    expect={"status": [CallStatus.CONNECTED.value]},
                )
            except StoreWriteError as e:
                logger.warning(
                    f"Failed to publish active speaker for call {call_id}: {e}",
                    extra={"call_id": call_id, "error": str(e)},
                )
            if session.desired_speaker_id == speaker_id:
                return

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _on_incoming_change(self, call_id: str, data: dict[str, Any] | None) -> None:
        try:
            await self._handle_incoming(call_id, data)
        except Exception as e:
            logger.error(f"Failed to handle incoming call {call_id}: {e}", exc_info=True)

    async def _handle_incoming(self, call_id: str, data: dict[str, Any] | None) -> None:
        session = self._session

        if data is None:
            if session is not None and self._is_ringing(session, call_id):
                logger.info(f"Missed call {call_id}: record removed while ringing")
                session.machine.try_transition(CallState.ENDED)
                await self._cleanup(session)
            return

        record = CallRecord.from_dict(data)

        if record.status is CallStatus.OFFERING:
            if session is None:
                if call_id in self._handled_calls:
                    logger.debug(f"Ignoring redelivered offer for finished call {call_id}")
                    return
                session = self._reset_session(
                    is_caller=False, call_id=call_id, peer_id=record.caller_id
                )
                session.record = record
                session.machine.transition(CallState.RINGING)
                await self._notify(self.on_incoming_call, record)
            elif session.call_id != call_id:
                logger.info(
                    f"Busy: declining call {call_id} from {record.caller_id}",
                    extra={"call_id": call_id},
                )
                self._handled_calls.append(call_id)
                await self._write_status(call_id, CallStatus.BUSY)
            return

        if (
            record.status.is_terminal
            and session is not None
            and self._is_ringing(session, call_id)
        ):
            logger.info(f"Missed call {call_id}: caller ended while ringing")
            session.machine.try_transition(CallState(record.status.value))
            await self._cleanup(session)

    @staticmethod
    def _is_ringing(session: ActiveSession, call_id: str) -> bool:
        return (
            session.call_id == call_id
            and session.state is CallState.RINGING
            and not session.disposed
        )

    def _record_handler(
        self, session: ActiveSession
    ) -> Callable[[dict[str, Any] | None], Awaitable[None]]:
        async def on_change(data: dict[str, Any] | None) -> None:
            if session.disposed:
                return
            try:
                await self._handle_record_change(session, data)
            except DisposedServiceError:
                return
            except NegotiationError as e:
                logger.error(
                    f"Negotiation failed for call {session.call_id}: {e}",
                    extra={"call_id": session.call_id, "error": str(e)},
                )
                session.machine.try_transition(CallState.ENDED)
                if session.call_id is not None:
                    await self._write_status(session.call_id, CallStatus.ENDED)
                await self._cleanup(session)
            except Exception as e:
                logger.error(
                    f"Failed to handle update for call {session.call_id}: {e}", exc_info=True
                )

        return on_change

    async def _handle_record_change(
        self, session: ActiveSession, data: dict[str, Any] | None
    ) -> None:
        if data is None:
            logger.info(f"Call record {session.call_id} removed; ending session")
            session.machine.try_transition(CallState.ENDED)
            await self._cleanup(session)
            return

        record = CallRecord.from_dict(data)
        session.record = record

        if record.active_speaker_id != session.active_speaker_id:
            session.active_speaker_id = record.active_speaker_id
            await self._notify(self.on_active_speaker, record.active_speaker_id)
            self._check_disposed(session)

        if session.is_caller and record.answer is not None and not record.status.is_terminal:
            await session.guard.try_apply_remote_description(record.answer)
            self._check_disposed(session)

        if record.status is CallStatus.CONNECTED:
            if session.machine.try_transition(CallState.CONNECTED) and (
                session.desired_speaker_id != record.active_speaker_id
            ):
                # Push-to-talk held while the call was still being set up
                self._schedule_speaker_write(session)
        elif record.status.is_terminal:
            session.machine.try_transition(CallState(record.status.value))
            await self._cleanup(session)

    def _remote_candidate_handler(
        self, session: ActiveSession
    ) -> Callable[[dict[str, Any]], Awaitable[None]]:
        async def on_item_added(item: dict[str, Any]) -> None:
            if session.disposed:
                return
            await self._add_remote_candidate(session, item)

        return on_item_added

    async def _add_remote_candidate(self, session: ActiveSession, item: dict[str, Any]) -> None:
        try:
            candidate = IceCandidate.model_validate(item)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed candidate for call {session.call_id}: {e}")
            return
        await session.buffer.add_remote(candidate)

    def _local_candidate_handler(
        self, session: ActiveSession, list_path: str
    ) -> Callable[[IceCandidate], Awaitable[None]]:
        async def on_local_candidate(candidate: IceCandidate) -> None:
            if session.disposed:
                return
            try:
                await self.store.append_to_list(list_path, candidate.to_dict())
            except StoreWriteError as e:
                logger.warning(
                    f"Failed to publish candidate for call {session.call_id}: {e}",
                    extra={"call_id": session.call_id, "error": str(e)},
                )

        return on_local_candidate

    def _remote_track_handler(self, session: ActiveSession) -> Callable[[Any], Awaitable[None]]:
        async def on_remote_track(track: Any) -> None:
            if session.disposed:
                return
            await self._notify(self.on_remote_track, track)

        return on_remote_track

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _cleanup(self, session: ActiveSession) -> None:
        """Tear the session down once; concurrent callers wait for the same teardown."""
        if session.cleanup_task is None:
            session.cleanup_task = self._spawn(self._run_cleanup(session))
        await asyncio.shield(session.cleanup_task)

    async def _run_cleanup(self, session: ActiveSession) -> None:
        session.disposed = True
        logger.info(
            "Cleaning up call session",
            extra={"call_id": session.call_id, "from_state": session.state.value},
        )

        subscriptions, session.subscriptions = session.subscriptions, []
        for unsubscribe in subscriptions:
            try:
                await unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe for call {session.call_id}: {e}")

        try:
            await session.transport.close()
        except Exception as e:
            logger.warning(f"Failed to close transport for call {session.call_id}: {e}")

        session.guard.reset()
        session.buffer.clear()
        if session.speaker_writer is not None and not session.speaker_writer.done():
            session.speaker_writer.cancel()

        if session.call_id is not None:
            self._handled_calls.append(session.call_id)
            await self._archive_and_remove(session.call_id)

        if not session.state.is_terminal:
            session.machine.try_transition(CallState.ENDED)
        session.machine.try_transition(CallState.IDLE)
        if self._session is session:
            self._session = None

    async def _archive_and_remove(self, call_id: str) -> None:
        """Write the history record once and delete the live record. Never raises."""
        record_path = join_path(self.config.calls_collection, call_id)

        try:
            data = await self.store.read_record(record_path)
            if data is not None:
                history = CallRecord.from_dict(data).to_history()
                try:
                    await self.store.create_record(
                        self.config.history_collection, history, record_id=call_id
                    )
                    log_event(
                        "call_archived",
                        {"call_id": call_id, "status": history["status"]},
                    )
                except RecordExistsError:
                    logger.debug(f"Call {call_id} already archived")
            await self.store.delete_record(record_path)
        except Exception as e:
            logger.error(
                f"Failed to archive call {call_id}: {e}",
                extra={"call_id": call_id, "error": str(e)},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reset_session(
        self,
        is_caller: bool,
        call_id: str | None = None,
        peer_id: str | None = None,
    ) -> ActiveSession:
        """Replace the current session with a fresh one and a fresh transport."""
        session = ActiveSession(
            transport=self.transport_factory(),
            machine=CallStateMachine(on_state_change=self.on_state_change),
            call_id=call_id,
            is_caller=is_caller,
            peer_id=peer_id,
        )
        self._session = session
        return session

    async def _subscribe(
        self,
        session: ActiveSession,
        subscription: Coroutine[Any, Any, Unsubscribe],
    ) -> None:
        unsubscribe = await subscription
        if session.disposed:
            await unsubscribe()
            self._check_disposed(session)
        session.subscriptions.append(unsubscribe)

    async def _write_status(self, call_id: str, status: CallStatus) -> bool:
        """Conditionally write a status. Best-effort: failures are logged."""
        partial: dict[str, Any] = {"status": status.value}
        if status.is_terminal:
            partial["endedAt"] = now_ms()

        try:
            written = await self.store.update_record(
                join_path(self.config.calls_collection, call_id),
                partial,
                expect={"status": [s.value for s in STATUS_PREDECESSORS[status]]},
            )
        except StoreWriteError as e:
            logger.warning(
                f"Failed to write status {status.value} for call {call_id}: {e}",
                extra={"call_id": call_id, "error": str(e)},
            )
            return False

        if not written:
            logger.debug(f"Status {status.value} not written for call {call_id}")
        return bool(written)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    @staticmethod
    def _check_disposed(session: ActiveSession) -> None:
        if session.disposed:
            raise DisposedServiceError(f"Session for call {session.call_id} was disposed")

    @staticmethod
    async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Callback failed: {e}", exc_info=True)
