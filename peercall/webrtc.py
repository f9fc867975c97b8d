# peercall/webrtc.py
import inspect
import logging
from abc import ABC, abstractmethod

from aiortc import RTCPeerConnection, RTCConfiguration, RTCIceServer
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from config import ICE_SERVERS
from .candidates import CandidateRecord
from .exceptions import DescriptionApplyError, OfferCreationError
from .media import MediaStream

LOGGER = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


def record_to_candidate(record):
    """Turns a signaled candidate into an aiortc RTCIceCandidate."""
    sdp = record.candidate
    if sdp.startswith(CANDIDATE_PREFIX):
        sdp = sdp[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = record.sdp_mid
    candidate.sdpMLineIndex = record.sdp_mline_index
    return candidate


def candidate_to_record(candidate):
    return CandidateRecord(
        candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid,
        sdp_mline_index=candidate.sdpMLineIndex,
    )


class PeerConnectionAdapter(ABC):
    """
    The control surface the call session drives. Implementations report
    engine events through the three callbacks, which may be plain functions
    or coroutines:

    - on_ice_candidate_callback(candidate_record)
    - on_track_callback(track, remote_stream)
    - on_connection_state_callback(state)
    """

    def __init__(self):
        # Callbacks to be set by the SessionStateMachine
        self.on_ice_candidate_callback = None
        self.on_track_callback = None
        self.on_connection_state_callback = None

    @abstractmethod
    async def create_offer(self):
        ...

    @abstractmethod
    async def set_local_description(self, description):
        """Applies the description and returns it as applied."""

    @abstractmethod
    async def set_remote_description(self, description):
        ...

    @abstractmethod
    async def add_ice_candidate(self, candidate):
        """Applies a remote candidate; a malformed one is logged and skipped."""

    @abstractmethod
    def add_track(self, track, stream):
        ...

    @abstractmethod
    async def close(self):
        ...

    async def _notify(self, callback, *args):
        if callback:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result


class AiortcPeerConnectionAdapter(PeerConnectionAdapter):
    def __init__(self, ice_servers=ICE_SERVERS):
        super().__init__()
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=[RTCIceServer(**s) for s in ice_servers]))
        self.remote_stream = MediaStream()
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        @self.pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate:
                LOGGER.debug("Found local ICE candidate.")
                await self._notify(self.on_ice_candidate_callback, candidate_to_record(candidate))

        @self.pc.on("track")
        async def on_track(track):
            LOGGER.debug(f"Received remote {track.kind} track.")
            self.remote_stream.add_track(track)
            await self._notify(self.on_track_callback, track, self.remote_stream)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            LOGGER.debug(f"RTC Connection State: {self.pc.connectionState}")
            await self._notify(self.on_connection_state_callback, self.pc.connectionState)

    async def create_offer(self):
        try:
            return await self.pc.createOffer()
        except Exception as e:
            raise OfferCreationError(f"Failed to create the call offer: {e}") from e

    async def set_local_description(self, description):
        try:
            await self.pc.setLocalDescription(description)
        except Exception as e:
            raise DescriptionApplyError(f"Failed to apply local description: {e}") from e
        # Gathered candidates are folded into the applied description
        return self.pc.localDescription

    async def set_remote_description(self, description):
        try:
            await self.pc.setRemoteDescription(description)
        except Exception as e:
            raise DescriptionApplyError(f"Failed to apply remote {description.type}: {e}") from e

    async def add_ice_candidate(self, candidate):
        try:
            await self.pc.addIceCandidate(record_to_candidate(candidate))
            LOGGER.debug("Added remote ICE candidate.")
        except Exception as e:
            LOGGER.error(f"Error adding ICE candidate: {e}")

    def add_track(self, track, stream):
        self.pc.addTrack(track)

    async def close(self):
        if self.pc and self.pc.connectionState != "closed":
            await self.pc.close()
