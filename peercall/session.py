# peercall/session.py
"""
Call session negotiation.

SessionStateMachine drives one outgoing call at a time through

    IDLE -> ACQUIRING_MEDIA -> NEGOTIATING -> AWAITING_ANSWER -> CONNECTED

and back to IDLE on end_call() or on any fatal error. Local media
acquisition, signaling round-trips and candidate discovery all complete
asynchronously; every completion is checked against the session that
started it, so results that land after a teardown are dropped.
"""
import asyncio
import functools
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from aiortc import RTCSessionDescription

from .candidates import IceCandidateQueue
from .exceptions import (
    AlreadyInCallError,
    CallError,
    DescriptionApplyError,
    IceNegotiationFailure,
    MediaAccessError,
    OfferCreationError,
    SignalingSendError,
)
from .media import MediaConstraints, MediaSourceManager, MediaStream
from .signaling import MessageType, SignalingChannel, SignalingMessage
from .webrtc import AiortcPeerConnectionAdapter, PeerConnectionAdapter

LOGGER = logging.getLogger(__name__)


class CallState(Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring_media"
    NEGOTIATING = "negotiating"
    AWAITING_ANSWER = "awaiting_answer"
    CONNECTED = "connected"


class CallStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


# Forward edges only; every state can also drop to IDLE through teardown.
TRANSITIONS = {
    CallState.IDLE: {CallState.ACQUIRING_MEDIA},
    CallState.ACQUIRING_MEDIA: {CallState.NEGOTIATING},
    CallState.NEGOTIATING: {CallState.AWAITING_ANSWER},
    CallState.AWAITING_ANSWER: {CallState.CONNECTED},
    CallState.CONNECTED: set(),
}

_session_ids = itertools.count(1)


@dataclass(eq=False)
class CallSession:
    session_id: int = field(default_factory=lambda: next(_session_ids))
    state: CallState = CallState.IDLE
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None
    adapter: Optional[PeerConnectionAdapter] = None
    local_description: Optional[RTCSessionDescription] = None
    remote_description: Optional[RTCSessionDescription] = None
    pending_local_candidates: IceCandidateQueue = field(default_factory=IceCandidateQueue)
    pending_remote_candidates: IceCandidateQueue = field(default_factory=IceCandidateQueue)
    pending_answer: Optional[str] = None
    answer_received: bool = False
    last_error: Optional[CallError] = None
    # Held from "description set" until the matching queue is flushed
    local_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    remote_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionStateMachine:
    def __init__(
        self,
        signaling: SignalingChannel,
        media_manager: MediaSourceManager,
        adapter_factory: Callable[[], PeerConnectionAdapter] = AiortcPeerConnectionAdapter,
        constraints: Optional[MediaConstraints] = None,
    ):
        self.signaling = signaling
        self.media_manager = media_manager
        self.adapter_factory = adapter_factory
        self.constraints = constraints or MediaConstraints()

        self._session: Optional[CallSession] = None
        self._last_error: Optional[CallError] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._listeners: List[Callable[[Any], None]] = []

    # --- Observables ---
    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def state(self) -> CallState:
        return self._session.state if self._session else CallState.IDLE

    @property
    def status(self) -> CallStatus:
        if self._session is None:
            return CallStatus.FAILED if self._last_error else CallStatus.IDLE
        if self._session.state is CallState.CONNECTED:
            return CallStatus.CONNECTED
        return CallStatus.CONNECTING

    @property
    def error(self) -> Optional[str]:
        return self._last_error.message if self._last_error else None

    @property
    def last_error(self) -> Optional[CallError]:
        return self._last_error

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self._session.local_stream if self._session else None

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._session.remote_stream if self._session else None

    def add_listener(self, callback):
        """Calls ``callback(machine)`` after every observable change."""
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                LOGGER.exception(f"Call listener {listener!r} failed")

    # --- Lifecycle ---
    async def start_call(self):
        if self._session is not None:
            raise AlreadyInCallError()

        session = CallSession()
        self._session = session
        self._last_error = None
        self._unsubscribe = self.signaling.on_message(
            functools.partial(self._on_signaling_message, session)
        )
        self._transition(session, CallState.ACQUIRING_MEDIA)
        LOGGER.info(f"Call {session.session_id}: acquiring local media...")

        try:
            stream = await self.media_manager.acquire(self.constraints)
        except CallError as e:
            await self._fail(session, e)
            return
        except Exception as e:
            await self._fail(session, MediaAccessError(f"Failed to access camera/microphone: {e}"))
            return

        if not self._is_active(session):
            LOGGER.info(f"Call {session.session_id}: ended before media was ready, releasing it.")
            self.media_manager.release(stream)
            return

        session.local_stream = stream
        self._notify()

        try:
            await self._negotiate(session)
        except CallError as e:
            await self._fail(session, e)
        except Exception as e:
            # Adapter construction or add_track
            LOGGER.exception(f"Call {session.session_id}: unexpected negotiation error")
            await self._fail(session, OfferCreationError(f"Failed to create the call offer: {e}"))

    async def end_call(self):
        session = self._session
        if session is None:
            return
        LOGGER.info(f"Call {session.session_id}: hanging up...")
        self._last_error = None
        await self._teardown(session)

    # --- Negotiation ---
    async def _negotiate(self, session):
        self._transition(session, CallState.NEGOTIATING)

        adapter = self.adapter_factory()
        session.adapter = adapter
        adapter.on_ice_candidate_callback = functools.partial(self._on_local_candidate, session)
        adapter.on_track_callback = functools.partial(self._on_remote_track, session)
        adapter.on_connection_state_callback = functools.partial(self._on_connection_state, session)

        for track in session.local_stream.get_tracks():
            adapter.add_track(track, session.local_stream)

        offer = await self._step(OfferCreationError, adapter.create_offer())
        if not self._is_active(session):
            return

        async with session.local_lock:
            description = await self._step(DescriptionApplyError, adapter.set_local_description(offer))
            if not self._is_active(session):
                return
            session.local_description = description

            await self._send(SignalingMessage.offer(description.sdp))
            LOGGER.info(f"Call {session.session_id}: offer sent, waiting for answer...")

            for candidate in session.pending_local_candidates.flush():
                if not self._is_active(session):
                    return
                await self._send(SignalingMessage.ice_candidate(candidate))

        if not self._is_active(session):
            return
        self._transition(session, CallState.AWAITING_ANSWER)

        if session.pending_answer is not None:
            sdp, session.pending_answer = session.pending_answer, None
            await self._apply_answer(session, sdp)

    async def _on_signaling_message(self, session, message):
        if not self._is_active(session):
            LOGGER.debug(f"Discarding late {message.type.value} for ended call {session.session_id}")
            return

        if message.type is MessageType.ANSWER:
            await self._on_answer(session, message.sdp)
        elif message.type is MessageType.CANDIDATE:
            await self._on_remote_candidate(session, message.candidate)
        else:
            LOGGER.debug(f"Call {session.session_id}: ignoring inbound {message.type.value}")

    async def _on_answer(self, session, sdp):
        if session.state in (CallState.ACQUIRING_MEDIA, CallState.NEGOTIATING):
            # Offer not on the wire yet from our side; replay once it is
            if session.pending_answer is None:
                session.pending_answer = sdp
            return
        if session.state is not CallState.AWAITING_ANSWER or session.answer_received:
            LOGGER.warning(f"Call {session.session_id}: ignoring unexpected answer in {session.state.name}")
            return
        await self._apply_answer(session, sdp)

    async def _apply_answer(self, session, sdp):
        session.answer_received = True
        description = RTCSessionDescription(sdp=sdp, type="answer")
        try:
            async with session.remote_lock:
                await self._step(DescriptionApplyError, session.adapter.set_remote_description(description))
                if not self._is_active(session):
                    return
                session.remote_description = description
                LOGGER.info(f"Call {session.session_id}: remote description set from answer.")

                for candidate in session.pending_remote_candidates.flush():
                    if not self._is_active(session):
                        return
                    await self._add_remote_candidate(session, candidate)
        except CallError as e:
            await self._fail(session, e)

    async def _on_remote_candidate(self, session, candidate):
        if session.remote_description is None:
            session.pending_remote_candidates.enqueue(candidate)
            return
        async with session.remote_lock:
            if self._is_active(session):
                await self._add_remote_candidate(session, candidate)

    async def _add_remote_candidate(self, session, candidate):
        try:
            await session.adapter.add_ice_candidate(candidate)
        except Exception as e:
            LOGGER.warning(f"Call {session.session_id}: skipping remote candidate: {e}")

    # --- Adapter events ---
    async def _on_local_candidate(self, session, candidate):
        if not self._is_active(session):
            return
        if session.local_description is None:
            session.pending_local_candidates.enqueue(candidate)
            return
        try:
            async with session.local_lock:
                if self._is_active(session):
                    await self._send(SignalingMessage.ice_candidate(candidate))
        except CallError as e:
            await self._fail(session, e)

    def _on_remote_track(self, session, track, stream):
        if not self._is_active(session):
            return
        LOGGER.info(f"Call {session.session_id}: received remote {track.kind} track")
        session.remote_stream = stream
        self._notify()

    async def _on_connection_state(self, session, state):
        if not self._is_active(session):
            return
        LOGGER.debug(f"Call {session.session_id}: connection state {state}")

        if state == "connected":
            if session.state is CallState.AWAITING_ANSWER:
                self._transition(session, CallState.CONNECTED)
                LOGGER.info(f"Call {session.session_id}: connected.")
        elif state == "failed":
            await self._fail(session, IceNegotiationFailure())
        elif state == "closed":
            await self.end_call()

    # --- Helpers ---
    def _is_active(self, session):
        return session is not None and self._session is session

    async def _step(self, error_cls, awaitable):
        """Awaits a collaborator call, reporting any foreign exception as ``error_cls``."""
        try:
            return await awaitable
        except CallError:
            raise
        except Exception as e:
            raise error_cls(f"{error_cls.default_message} ({e})") from e

    async def _send(self, message):
        await self._step(SignalingSendError, self.signaling.send(message))

    def _transition(self, session, new_state):
        if new_state not in TRANSITIONS[session.state]:
            raise RuntimeError(f"Invalid call transition {session.state.name} -> {new_state.name}")
        LOGGER.debug(f"Call {session.session_id}: {session.state.name} -> {new_state.name}")
        session.state = new_state
        self._notify()

    async def _fail(self, session, error):
        if not self._is_active(session):
            LOGGER.debug(f"Call {session.session_id}: discarding error after teardown: {error}")
            return
        LOGGER.error(f"Call {session.session_id} failed: {error.message}")
        session.last_error = error
        self._last_error = error
        await self._teardown(session)

    async def _teardown(self, session):
        # Everything up to the first await runs atomically, so the machine is
        # IDLE before any in-flight step resumes.
        self._session = None
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        stream, session.local_stream = session.local_stream, None
        adapter, session.adapter = session.adapter, None
        session.remote_stream = None
        session.pending_answer = None
        session.pending_local_candidates.clear()
        session.pending_remote_candidates.clear()
        session.state = CallState.IDLE

        try:
            self.media_manager.release(stream)
            self._notify()
        finally:
            if adapter is not None:
                try:
                    await adapter.close()
                except Exception as e:
                    LOGGER.error(f"Error closing peer connection: {e}")
        LOGGER.info(f"Call {session.session_id}: cleanup complete.")
