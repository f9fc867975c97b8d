# peercall/loopback.py
import logging

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay

LOGGER = logging.getLogger(__name__)


class EchoPeer:
    """
    In-process answering peer used with LoopbackSignalingChannel.
    It accepts an offer and sends every received track straight back,
    so a call can be exercised end to end without a signaling server.
    """

    def __init__(self):
        self.pc = None
        self.relay = MediaRelay()

    async def answer(self, offer_sdp):
        await self.close()
        self.pc = RTCPeerConnection()
        pc = self.pc

        @pc.on("track")
        def on_track(track):
            LOGGER.debug(f"Echo peer: returning {track.kind} track")
            pc.addTrack(self.relay.subscribe(track))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            LOGGER.debug(f"Echo peer connection state: {pc.connectionState}")

        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer_sdp, type="offer"))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        return pc.localDescription.sdp

    async def close(self):
        if self.pc and self.pc.connectionState != "closed":
            await self.pc.close()
        self.pc = None
