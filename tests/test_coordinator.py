"""Tests for the connection coordinator driving both sides of a rendezvous."""
from __future__ import annotations

import asyncio

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from codedrop.client import coordinator as coordinator_module
from codedrop.client.coordinator import ConnectionCoordinator, CoordinatorState, CoordinatorTimeouts
from codedrop.client.signaling import HttpSignalingClient, RetryPolicy, WebSocketSignalingClient
from codedrop.client.transport import (
    ConnectionState,
    DataReceived,
    LocalCandidate,
    StateChanged,
    TransportCapability,
    TransportEventChannel,
)
from codedrop.core.errors import (
    CodedropError,
    ConflictError,
    NotFoundError,
    SignalingTimeoutError,
    TransportFailureError,
)
from codedrop.schemas.payload import DataPayload, PayloadType

FAST_RETRY = RetryPolicy(initial_interval=0.01, max_interval=0.02, multiplier=2.0)
FAST = CoordinatorTimeouts(offer=2.0, answer=2.0, connect=2.0)


class FakeTransport:
    """In-memory peer connection: connects once it has a remote description and a remote candidate."""

    def __init__(self, name: str, *, candidates: int = 2, outcome: ConnectionState = ConnectionState.CONNECTED) -> None:
        self.name = name
        self.events = TransportEventChannel()
        self.peer: FakeTransport | None = None
        self.remote_description = None
        self.remote_candidates: list = []
        self.closed = False
        self._candidates = candidates
        self._outcome = outcome
        self._settled = False

    async def create_local_offer(self):
        self._emit_candidates()
        return {"type": "offer", "sdp": f"v=0 {self.name}"}

    async def create_local_answer(self, remote_offer):
        self.remote_description = remote_offer
        self._emit_candidates()
        return {"type": "answer", "sdp": f"v=0 {self.name}"}

    async def apply_remote_answer(self, answer) -> None:
        self.remote_description = answer
        self._maybe_settle()

    async def add_remote_candidate(self, candidate) -> None:
        self.remote_candidates.append(candidate)
        self._maybe_settle()

    async def send_data(self, payload: DataPayload) -> None:
        assert self.peer is not None
        self.peer.events.emit(DataReceived(payload))

    async def close(self) -> None:
        self.closed = True
        self.events.close()

    def _emit_candidates(self) -> None:
        for index in range(self._candidates):
            self.events.emit(LocalCandidate({"candidate": f"{self.name}-{index}", "sdpMid": "0"}))

    def _maybe_settle(self) -> None:
        if self._settled or self.remote_description is None or not self.remote_candidates:
            return
        self._settled = True
        self.events.emit(StateChanged(ConnectionState.CONNECTING))
        self.events.emit(StateChanged(self._outcome))


def transport_pair(**initiator_options) -> tuple[FakeTransport, FakeTransport]:
    initiator = FakeTransport("initiator", **initiator_options)
    responder = FakeTransport("responder")
    initiator.peer, responder.peer = responder, initiator
    return initiator, responder


def http_signaling(app, handle: str) -> HttpSignalingClient:
    http = AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
    return HttpSignalingClient(client=http, handle=handle, retry=FAST_RETRY)


def test_fake_transport_satisfies_capability():
    assert isinstance(FakeTransport("x"), TransportCapability)


def test_generated_codes_are_six_digits():
    codes = {coordinator_module.generate_code() for _ in range(50)}

    assert all(len(code) == 6 and code.isdigit() and code[0] != "0" for code in codes)


@pytest.mark.asyncio
async def test_http_rendezvous_connects_and_exchanges_data(app):
    initiator_transport, responder_transport = transport_pair()
    received: list[DataPayload] = []

    async def on_data(payload: DataPayload) -> None:
        received.append(payload)

    initiator = ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST)
    responder = ConnectionCoordinator(
        http_signaling(app, "bob"), responder_transport, timeouts=FAST, on_data=on_data
    )

    async with initiator, responder:
        code = await initiator.offer()
        assert initiator.state is CoordinatorState.WAITING_FOR_ANSWER

        await asyncio.gather(initiator.complete(), responder.join(code))

        assert initiator.state is CoordinatorState.CONNECTED
        assert responder.state is CoordinatorState.CONNECTED
        assert {c["candidate"] for c in responder_transport.remote_candidates} <= {"initiator-0", "initiator-1"}
        assert initiator_transport.remote_description["sdp"] == "v=0 responder"

        await initiator.send_text("hello")
        payload = await asyncio.wait_for(responder.received.get(), 1.0)
        assert payload.type is PayloadType.TEXT
        assert payload.content == "hello"
        assert received == [payload]

        await responder.send(DataPayload.file("notes.txt", b"\x00\x01data"))
        payload = await asyncio.wait_for(initiator.received.get(), 1.0)
        assert payload.content == b"\x00\x01data"
        assert payload.mime_type == "text/plain"

    assert initiator.state is CoordinatorState.CLOSED
    assert initiator_transport.closed and responder_transport.closed
    assert len(app.state.store) == 0


@pytest.mark.asyncio
async def test_websocket_rendezvous_with_responder_joining_first(app, loopback):
    initiator_transport, responder_transport = transport_pair()

    async with WebSocketSignalingClient("http://relay", handle="alice") as alice_signaling, \
            WebSocketSignalingClient("http://relay", handle="bob") as bob_signaling:
        initiator = ConnectionCoordinator(alice_signaling, initiator_transport, timeouts=FAST)
        responder = ConnectionCoordinator(bob_signaling, responder_transport, timeouts=FAST)

        async with initiator, responder:
            join = asyncio.create_task(responder.join("424242"))
            await asyncio.sleep(0.02)
            assert responder.state is CoordinatorState.JOINING

            code = await initiator.offer(code="424242")
            await asyncio.gather(initiator.complete(), join)

            assert code == "424242"
            assert initiator.state is CoordinatorState.CONNECTED
            assert responder.state is CoordinatorState.CONNECTED

            await responder.send_text("pong")
            payload = await asyncio.wait_for(initiator.received.get(), 1.0)
            assert payload.content == "pong"

    assert len(app.state.store) == 0


@pytest.mark.asyncio
async def test_offer_regenerates_code_when_taken(app, monkeypatch):
    squatter = http_signaling(app, "squatter")
    await squatter.send_offer("111111", "someone else's offer")
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(coordinator_module, "generate_code", lambda: next(codes))

    initiator_transport, _ = transport_pair()
    async with ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST) as initiator:
        assert await initiator.offer() == "222222"

    assert await squatter.get_offer("111111") == "someone else's offer"


@pytest.mark.asyncio
async def test_offer_gives_up_after_attempt_limit(app, monkeypatch):
    squatter = http_signaling(app, "squatter")
    await squatter.send_offer("111111", "taken")
    monkeypatch.setattr(coordinator_module, "generate_code", lambda: "111111")

    initiator_transport, _ = transport_pair()
    coordinator = ConnectionCoordinator(
        http_signaling(app, "alice"), initiator_transport, timeouts=FAST, code_attempts=3
    )
    async with coordinator:
        with pytest.raises(ConflictError):
            await coordinator.offer()
        assert coordinator.state is CoordinatorState.FAILED
        assert coordinator.code is None


@pytest.mark.asyncio
async def test_join_times_out_without_offer(app):
    _, responder_transport = transport_pair()
    timeouts = CoordinatorTimeouts(offer=0.05, answer=2.0, connect=2.0)

    async with ConnectionCoordinator(http_signaling(app, "bob"), responder_transport, timeouts=timeouts) as responder:
        with pytest.raises(SignalingTimeoutError):
            await responder.join("123456")
        assert responder.state is CoordinatorState.FAILED


@pytest.mark.asyncio
async def test_complete_times_out_without_answer(app):
    initiator_transport, _ = transport_pair()
    timeouts = CoordinatorTimeouts(offer=2.0, answer=0.05, connect=2.0)

    async with ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=timeouts) as initiator:
        await initiator.offer()
        with pytest.raises(SignalingTimeoutError):
            await initiator.complete()
        assert initiator.state is CoordinatorState.FAILED


@pytest.mark.asyncio
async def test_connect_times_out_when_no_candidates_arrive(app):
    initiator_transport, responder_transport = transport_pair(candidates=0)
    timeouts = CoordinatorTimeouts(offer=2.0, answer=2.0, connect=0.1)

    async with ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST) as initiator, \
            ConnectionCoordinator(http_signaling(app, "bob"), responder_transport, timeouts=timeouts) as responder:
        code = await initiator.offer()

        with pytest.raises(SignalingTimeoutError):
            await responder.join(code)
        assert responder.state is CoordinatorState.FAILED


@pytest.mark.asyncio
async def test_transport_failure_is_reported(app):
    initiator_transport, responder_transport = transport_pair(outcome=ConnectionState.FAILED)

    async with ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST) as initiator, \
            ConnectionCoordinator(http_signaling(app, "bob"), responder_transport, timeouts=FAST) as responder:
        code = await initiator.offer()

        results = await asyncio.gather(initiator.complete(), responder.join(code), return_exceptions=True)

        assert isinstance(results[0], TransportFailureError)
        assert results[0].state == "failed"
        assert initiator.state is CoordinatorState.FAILED
        assert results[1] is None
        assert responder.state is CoordinatorState.CONNECTED


@pytest.mark.asyncio
async def test_close_clears_code_on_relay(app):
    initiator_transport, _ = transport_pair()
    observer = http_signaling(app, "observer")
    coordinator = ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST)

    code = await coordinator.offer()
    assert await observer.get_offer(code) == {"type": "offer", "sdp": "v=0 initiator"}

    await coordinator.close()
    await coordinator.close()

    with pytest.raises(NotFoundError):
        await observer.get_offer(code)
    assert coordinator.state is CoordinatorState.CLOSED
    assert initiator_transport.closed


@pytest.mark.asyncio
async def test_misuse_is_rejected(app):
    initiator_transport, _ = transport_pair()

    async with ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST) as coordinator:
        with pytest.raises(CodedropError):
            await coordinator.complete()
        with pytest.raises(TransportFailureError):
            await coordinator.send_text("too early")

        await coordinator.offer()
        with pytest.raises(CodedropError):
            await coordinator.join("123456")


class UnreachableRelaySignaling(HttpSignalingClient):
    async def send_ice_candidate(self, code, candidate, role):
        raise httpx.ConnectError("relay unreachable")


class BrokenEvents(TransportEventChannel):
    async def __anext__(self):
        raise RuntimeError("transport event loop crashed")


@pytest.mark.asyncio
async def test_close_still_clears_when_candidate_forwarding_fails(app):
    initiator_transport, _ = transport_pair()
    http = AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
    signaling = UnreachableRelaySignaling(client=http, handle="alice", retry=FAST_RETRY)
    coordinator = ConnectionCoordinator(signaling, initiator_transport, timeouts=FAST)

    await coordinator.offer()
    await asyncio.sleep(0.02)
    await coordinator.close()

    assert initiator_transport.closed
    assert coordinator.state is CoordinatorState.CLOSED
    assert len(app.state.store) == 0


@pytest.mark.asyncio
async def test_close_survives_a_crashed_event_pump(app):
    initiator_transport, _ = transport_pair()
    initiator_transport.events = BrokenEvents()
    coordinator = ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST)

    await coordinator.offer()
    await asyncio.sleep(0.01)
    await coordinator.close()

    assert initiator_transport.closed
    assert coordinator.state is CoordinatorState.CLOSED
    assert len(app.state.store) == 0


@pytest.mark.asyncio
async def test_join_keeps_pulling_candidates_through_relay_errors(app, monkeypatch):
    initiator_transport, responder_transport = transport_pair()
    real_get = HttpSignalingClient.get_ice_candidate
    failures = iter([httpx.ReadTimeout("slow relay")])

    async def flaky_get(self, code, role):
        failure = next(failures, None) if self.handle == "bob" else None
        if failure is not None:
            raise failure
        return await real_get(self, code, role)

    monkeypatch.setattr(HttpSignalingClient, "get_ice_candidate", flaky_get)

    async with ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST) as initiator, \
            ConnectionCoordinator(http_signaling(app, "bob"), responder_transport, timeouts=FAST) as responder:
        code = await initiator.offer()
        await asyncio.gather(initiator.complete(), responder.join(code))

        assert responder.state is CoordinatorState.CONNECTED


@pytest.mark.asyncio
async def test_internal_helpers_reject_missing_session(app):
    initiator_transport, _ = transport_pair()
    coordinator = ConnectionCoordinator(http_signaling(app, "alice"), initiator_transport, timeouts=FAST)

    with pytest.raises(CodedropError):
        await coordinator._forward_candidate(LocalCandidate("x"))
    await coordinator.close()
