# peercall/application.py
import logging

from config import CALLER_ID, ICE_SERVERS
from .cli import CLIHandler
from .exceptions import AlreadyInCallError
from .loopback import EchoPeer
from .media import MediaSourceManager
from .session import CallState, CallStatus, SessionStateMachine
from .signaling import LoopbackSignalingChannel, SocketIOSignalingChannel
from .webrtc import AiortcPeerConnectionAdapter

LOGGER = logging.getLogger(__name__)


class PeerCallApp:
    def __init__(self, loopback=False):
        self.caller_id = CALLER_ID
        self.loopback = loopback

        self.echo_peer = None
        if loopback:
            self.echo_peer = EchoPeer()
            self.signaling_client = LoopbackSignalingChannel(self.echo_peer.answer)
            # Both ends live in this process; host candidates are enough
            adapter_factory = lambda: AiortcPeerConnectionAdapter(ice_servers=[])
        else:
            self.signaling_client = SocketIOSignalingChannel(caller_id=self.caller_id)
            adapter_factory = lambda: AiortcPeerConnectionAdapter(ice_servers=ICE_SERVERS)

        self.media_manager = MediaSourceManager()
        self.call = SessionStateMachine(self.signaling_client, self.media_manager, adapter_factory)
        self.cli = CLIHandler(self)

        self._last_status = self.call.status
        self._wire_components()

    def _wire_components(self):
        # Session -> App
        self.call.add_listener(self._on_call_changed)

        # Signaling -> App
        if not self.loopback:
            self.signaling_client.on_connect_callback = self._on_signaling_connected
            self.signaling_client.on_peer_hangup_callback = self.call.end_call

    async def _on_signaling_connected(self):
        print(f"Connected to signaling with ID: {self.caller_id}")

    def _on_call_changed(self, call):
        if call.status is self._last_status:
            return
        self._last_status = call.status
        if call.status is CallStatus.FAILED:
            print(f"\nCall failed: {call.error}")
        else:
            print(f"\nCall status: {call.status.value}")

    async def start_call(self, target_id):
        if not target_id:
            print("Target ID cannot be empty.")
            return
        if target_id == self.caller_id:
            print("You cannot call yourself.")
            return
        if not self.loopback:
            if self.call.state is not CallState.IDLE:
                print("Already in a call. Please hangup first.")
                return
            self.signaling_client.peer_id = target_id

        print(f"Starting call to {target_id}...")
        try:
            await self.call.start_call()
        except AlreadyInCallError as e:
            print(e.message)

    async def hang_up(self):
        if self.call.state is not CallState.IDLE:
            print("Hanging up call...")
            if not self.loopback:
                await self.signaling_client.send_hangup()
        await self.call.end_call()
        if self.echo_peer:
            await self.echo_peer.close()

    def describe(self):
        lines = [f"Status: {self.call.status.value} ({self.call.state.name})"]
        if self.call.error:
            lines.append(f"Error: {self.call.error}")
        if self.call.local_stream:
            lines.append(f"Local media: {self.call.local_stream}")
        if self.call.remote_stream:
            lines.append(f"Remote media: {self.call.remote_stream}")
        return "\n".join(lines)

    async def shutdown(self):
        print("Shutting down application...")
        await self.hang_up()
        if self.loopback:
            await self.signaling_client.close()
        else:
            await self.signaling_client.disconnect()

    async def run(self, target=None):
        try:
            if not self.loopback:
                await self.signaling_client.connect()
            if target:
                await self.start_call(target)
            await self.cli.loop()
        except Exception as e:
            LOGGER.error(f"An error occurred in the application: {e}")
            await self.shutdown()
