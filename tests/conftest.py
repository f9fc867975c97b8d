"""
Shared fixtures: a scriptable peer connection, the in-memory signaling
channel and synthetic local media.
"""

import asyncio

import pytest
from aiortc import RTCSessionDescription

from peercall.exceptions import DescriptionApplyError, OfferCreationError
from peercall.media import MediaSourceManager
from peercall.session import SessionStateMachine
from peercall.signaling import InMemorySignalingChannel
from peercall.webrtc import PeerConnectionAdapter


class FakePeerConnectionAdapter(PeerConnectionAdapter):
    """
    Records every call in order; steps can be gated or made to fail.
    Failing steps raise ``error`` when given, else the step's own CallError.
    """

    def __init__(self, offer_sdp="O1", fail_on=(), error=None, offer_gate=None, remote_gate=None):
        super().__init__()
        self.offer_sdp = offer_sdp
        self.fail_on = set(fail_on)
        self.error = error
        self.offer_gate = offer_gate
        self.remote_gate = remote_gate
        self.calls = []
        self.tracks = []
        self.applied_candidates = []
        self.close_count = 0

    @property
    def closed(self):
        return self.close_count > 0

    def _maybe_fail(self, step, default):
        if step in self.fail_on:
            raise self.error or default

    async def create_offer(self):
        if self.offer_gate:
            await self.offer_gate.wait()
        self._maybe_fail("create_offer", OfferCreationError())
        return RTCSessionDescription(sdp=self.offer_sdp, type="offer")

    async def set_local_description(self, description):
        self._maybe_fail("set_local_description", DescriptionApplyError())
        self.calls.append(("set_local_description", description.sdp))
        return description

    async def set_remote_description(self, description):
        if self.remote_gate:
            await self.remote_gate.wait()
        self._maybe_fail("set_remote_description", DescriptionApplyError())
        self.calls.append(("set_remote_description", description.sdp))

    async def add_ice_candidate(self, candidate):
        if candidate.candidate in self.fail_on:
            raise self.error or ValueError(f"bad candidate {candidate.candidate}")
        self.calls.append(("add_ice_candidate", candidate.candidate))
        self.applied_candidates.append(candidate.candidate)

    def add_track(self, track, stream):
        self.tracks.append(track)

    async def close(self):
        self.close_count += 1

    # --- engine events ---
    async def emit_candidate(self, candidate):
        await self._notify(self.on_ice_candidate_callback, candidate)

    async def emit_track(self, track, stream):
        await self._notify(self.on_track_callback, track, stream)

    async def emit_connection_state(self, state):
        await self._notify(self.on_connection_state_callback, state)


class GatedMediaSourceManager(MediaSourceManager):
    """Synthetic media that is only handed out once ``gate`` is set."""

    def __init__(self):
        super().__init__(source="synthetic")
        self.gate = asyncio.Event()
        self.acquired = []

    async def acquire(self, constraints=None):
        await self.gate.wait()
        stream = await super().acquire(constraints)
        self.acquired.append(stream)
        return stream


async def wait_until(predicate, attempts=50):
    """Yields to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def adapter_options():
    return {}


@pytest.fixture
def adapters():
    return []


@pytest.fixture
def adapter_factory(adapters, adapter_options):
    def factory():
        adapter = FakePeerConnectionAdapter(**adapter_options)
        adapters.append(adapter)
        return adapter
    return factory


@pytest.fixture
def channel():
    return InMemorySignalingChannel()


@pytest.fixture
def media_manager():
    return MediaSourceManager(source="synthetic")


@pytest.fixture
def machine(channel, media_manager, adapter_factory):
    return SessionStateMachine(channel, media_manager, adapter_factory)
