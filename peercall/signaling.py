# peercall/signaling.py
import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import socketio
from socketio.exceptions import SocketIOError

from config import CALLER_ID, LOOPBACK_ANSWER_DELAY_S, SIGNALING_SERVER_URL
from .candidates import CandidateRecord
from .exceptions import SignalingSendError

LOGGER = logging.getLogger(__name__)


class MessageType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


@dataclass(frozen=True)
class SignalingMessage:
    """
    Envelope exchanged with the remote peer:

        {"type": "offer" | "answer" | "candidate", "sdp": ..., "candidate": ...}

    ``sdp`` is present for offers and answers, ``candidate`` for candidates.
    """

    type: MessageType
    sdp: Optional[str] = None
    candidate: Optional[CandidateRecord] = None

    def __post_init__(self):
        object.__setattr__(self, "type", MessageType(self.type))
        if self.type is MessageType.CANDIDATE:
            if self.candidate is None:
                raise ValueError("candidate message without a candidate")
        elif not self.sdp:
            raise ValueError(f"{self.type.value} message without sdp")

    @classmethod
    def offer(cls, sdp):
        return cls(MessageType.OFFER, sdp=sdp)

    @classmethod
    def answer(cls, sdp):
        return cls(MessageType.ANSWER, sdp=sdp)

    @classmethod
    def ice_candidate(cls, candidate):
        return cls(MessageType.CANDIDATE, candidate=candidate)

    def to_dict(self):
        data = {"type": self.type.value}
        if self.sdp is not None:
            data["sdp"] = self.sdp
        if self.candidate is not None:
            data["candidate"] = self.candidate.to_dict()
        return data

    @classmethod
    def from_dict(cls, data):
        try:
            candidate = data.get("candidate")
            return cls(
                type=data["type"],
                sdp=data.get("sdp"),
                candidate=CandidateRecord.from_dict(candidate) if candidate else None,
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed signaling message: {data!r}") from e

    @classmethod
    def parse(cls, raw):
        """Accepts a SignalingMessage, a dict, or its JSON encoding."""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"Signaling message is not JSON: {e}") from e
        return cls.from_dict(raw)


class SignalingChannel(ABC):
    """Abstract bidirectional message transport between the two peers."""

    def __init__(self):
        self._handlers = []

    @abstractmethod
    async def send(self, message):
        """Transmits a SignalingMessage; raises SignalingSendError on rejection."""

    def on_message(self, handler):
        """
        Registers ``handler`` for every inbound SignalingMessage, in delivery
        order. Returns a callable that removes the registration.
        """
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def _dispatch(self, message):
        for handler in list(self._handlers):
            result = handler(message)
            if inspect.isawaitable(result):
                await result


class InMemorySignalingChannel(SignalingChannel):
    """Records outbound messages; inbound ones are injected with deliver()."""

    def __init__(self):
        super().__init__()
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    async def deliver(self, message):
        await self._dispatch(SignalingMessage.parse(message))


class LoopbackSignalingChannel(InMemorySignalingChannel):
    """
    Stands in for the remote side: every offer is handed to ``answerer``
    (a coroutine function taking the offer sdp and returning the answer sdp)
    and the answer comes back after ``delay`` seconds.
    """

    def __init__(self, answerer, delay=LOOPBACK_ANSWER_DELAY_S):
        super().__init__()
        self.answerer = answerer
        self.delay = delay
        self._tasks = set()

    async def send(self, message):
        await super().send(message)
        LOGGER.debug(f"Loopback signaling: {message.type.value}")
        if message.type is MessageType.OFFER:
            task = asyncio.create_task(self._answer(message.sdp))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _answer(self, offer_sdp):
        await asyncio.sleep(self.delay)
        try:
            answer_sdp = await self.answerer(offer_sdp)
        except Exception as e:
            LOGGER.error(f"Loopback answerer failed: {e}")
            return
        await self.deliver(SignalingMessage.answer(answer_sdp))

    async def close(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


class SocketIOSignalingChannel(SignalingChannel):
    """
    Talks to the Socket.IO signaling server. Outbound offers, answers and
    candidates are emitted as ``call``, ``answerCall`` and ``ICEcandidate``
    addressed to ``peer_id``; the server relays them as ``newCall``,
    ``callAnswered`` and ``ICEcandidate``.
    """

    def __init__(self, server_url=SIGNALING_SERVER_URL, caller_id=CALLER_ID, sio=None):
        super().__init__()
        self.server_url = server_url
        self.caller_id = caller_id
        self.peer_id = None
        self.sio = sio or socketio.AsyncClient()

        # Callbacks to be set by the Application class
        self.on_connect_callback = None
        self.on_peer_hangup_callback = None

        self._register_events()

    def _register_events(self):
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on("newCall", self._on_new_call)
        self.sio.on("callAnswered", self._on_call_answered)
        self.sio.on("ICEcandidate", self._on_ice_candidate)
        self.sio.on("callEnded", self._on_call_ended)

    @property
    def connected(self):
        return self.sio.connected

    async def connect(self):
        await self.sio.connect(f"{self.server_url}?callerId={self.caller_id}")

    async def disconnect(self):
        if self.sio.connected:
            await self.sio.disconnect()

    async def send(self, message):
        if not self.peer_id:
            raise SignalingSendError("No peer selected to signal.")
        if not self.sio.connected:
            raise SignalingSendError("Not connected to the signaling server.")

        if message.type is MessageType.OFFER:
            event = "call"
            payload = {"calleeId": self.peer_id, "rtcMessage": {"type": "offer", "sdp": message.sdp}}
        elif message.type is MessageType.ANSWER:
            event = "answerCall"
            payload = {"callerId": self.peer_id, "rtcMessage": {"type": "answer", "sdp": message.sdp}}
        else:
            event = "ICEcandidate"
            payload = {"calleeId": self.peer_id, "rtcMessage": message.candidate.to_dict()}

        try:
            await self.sio.emit(event, payload)
        except SocketIOError as e:
            raise SignalingSendError(f"Signaling server rejected '{event}': {e}") from e
        LOGGER.debug(f"[Signaling] Sent {event} to {self.peer_id}")

    async def send_hangup(self):
        if self.peer_id and self.sio.connected:
            await self.sio.emit("hangupCall", {"targetId": self.peer_id})

    # --- Socket.IO Event Handlers ---
    async def _on_connect(self):
        LOGGER.info(f"[Signaling] Connected as {self.caller_id}")
        if self.on_connect_callback:
            await self.on_connect_callback()

    async def _on_disconnect(self, reason=None):
        LOGGER.info("[Signaling] Disconnected from server.")

    async def _on_new_call(self, data):
        LOGGER.info(f"[Signaling] Incoming call from {data.get('callerId')}")
        rtc_message = data.get("rtcMessage") or {}
        await self._relay({"type": "offer", "sdp": rtc_message.get("sdp")})

    async def _on_call_answered(self, data):
        LOGGER.info(f"[Signaling] Call answered by {data.get('callee')}")
        rtc_message = data.get("rtcMessage") or {}
        await self._relay({"type": "answer", "sdp": rtc_message.get("sdp")})

    async def _on_ice_candidate(self, data):
        LOGGER.debug(f"[Signaling] Received ICE candidate from {data.get('sender')}")
        await self._relay({"type": "candidate", "candidate": data.get("rtcMessage")})

    async def _on_call_ended(self, data):
        LOGGER.info(f"[Signaling] {data.get('senderId')} hung up.")
        if self.on_peer_hangup_callback:
            await self.on_peer_hangup_callback()

    async def _relay(self, payload):
        try:
            message = SignalingMessage.from_dict(payload)
        except ValueError as e:
            LOGGER.warning(f"[Signaling] Dropping message: {e}")
            return
        await self._dispatch(message)
