"""Drive one side of a rendezvous against the relay and the peer transport."""
from __future__ import annotations

import asyncio
import enum
import logging
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..core.config import Settings, settings as default_settings
from ..core.errors import (
    CodedropError,
    ConflictError,
    NotFoundError,
    SignalingError,
    SignalingTimeoutError,
    TransportFailureError,
)
from ..schemas.payload import DataPayload
from ..schemas.signaling import Role
from .signaling import SignalingClient
from .transport import (
    ConnectionState,
    DataReceived,
    LocalCandidate,
    StateChanged,
    TransportCapability,
)

logger = logging.getLogger(__name__)

DataHandler = Callable[[DataPayload], Awaitable[None]]


def generate_code() -> str:
    """Return a random six digit rendezvous code."""

    return str(100000 + secrets.randbelow(900000))


class CoordinatorState(str, enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    WAITING_FOR_ANSWER = "waiting_for_answer"
    JOINING = "joining"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(slots=True)
class CoordinatorTimeouts:
    offer: float = 60.0
    answer: float = 120.0
    connect: float = 30.0

    @classmethod
    def from_settings(cls, config: Settings) -> "CoordinatorTimeouts":
        return cls(
            offer=config.offer_timeout_seconds,
            answer=config.answer_timeout_seconds,
            connect=config.connect_timeout_seconds,
        )


class ConnectionCoordinator:
    """Run the initiator or responder flow for one code.

    Initiator: ``code = await offer()`` then ``await complete()``.
    Responder: ``await join(code)``.
    Either way ``close()`` (or leaving ``async with``) clears the code on the
    relay, stops every background task and releases the transport.
    """

    def __init__(
        self,
        signaling: SignalingClient,
        transport: TransportCapability,
        *,
        timeouts: CoordinatorTimeouts | None = None,
        code_attempts: int | None = None,
        on_data: DataHandler | None = None,
    ) -> None:
        self._signaling = signaling
        self._transport = transport
        self._timeouts = timeouts or CoordinatorTimeouts.from_settings(default_settings)
        self._code_attempts = code_attempts or default_settings.code_generation_attempts
        self._on_data = on_data

        self.code: Optional[str] = None
        self.role: Optional[Role] = None
        self.state = CoordinatorState.IDLE
        self.transport_state = ConnectionState.NEW
        self.received: asyncio.Queue[DataPayload] = asyncio.Queue()

        self._terminal = asyncio.Event()
        self._event_task: asyncio.Task[None] | None = None
        self._candidate_task: asyncio.Task[None] | None = None
        self._forwarding = asyncio.Event()
        self._closed = False

    async def __aenter__(self) -> "ConnectionCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Initiator -----------------------------------------------------------------

    async def offer(self, code: str | None = None) -> str:
        """Publish a local offer under a fresh code and return the code to share."""

        self._begin(Role.INITIATOR, CoordinatorState.OFFERING)
        local_offer = await self._transport.create_local_offer()
        attempts = 1 if code else self._code_attempts
        for attempt in range(1, attempts + 1):
            candidate_code = code or generate_code()
            try:
                await self._signaling.send_offer(candidate_code, local_offer)
            except ConflictError:
                if attempt == attempts:
                    self._set_state(CoordinatorState.FAILED)
                    raise
                logger.info("Code %s is taken; generating another", candidate_code)
                continue
            self.code = candidate_code
            break
        self._forwarding.set()
        self._set_state(CoordinatorState.WAITING_FOR_ANSWER)
        logger.info("Offer published under code %s", self.code)
        return self.code

    async def complete(self) -> None:
        """Wait for the responder's answer, then for the peer connection."""

        if self.role is not Role.INITIATOR or self.code is None:
            raise CodedropError("complete() requires a published offer")
        try:
            answer = await self._signaling.wait_for_answer(self.code, self._timeouts.answer)
        except CodedropError:
            self._set_state(CoordinatorState.FAILED)
            raise
        await self._transport.apply_remote_answer(answer)
        await self._connect()

    # Responder -----------------------------------------------------------------

    async def join(self, code: str) -> None:
        """Answer the offer published under ``code`` and wait for the peer connection."""

        self._begin(Role.RESPONDER, CoordinatorState.JOINING)
        self.code = code
        try:
            remote_offer = await self._signaling.wait_for_offer(code, self._timeouts.offer)
            local_answer = await self._transport.create_local_answer(remote_offer)
            await self._signaling.send_answer(code, local_answer)
        except CodedropError:
            self._set_state(CoordinatorState.FAILED)
            raise
        self._forwarding.set()
        logger.info("Answer sent for code %s", code)
        await self._connect()

    # Data ----------------------------------------------------------------------

    async def send(self, payload: DataPayload) -> None:
        if self.state is not CoordinatorState.CONNECTED:
            raise TransportFailureError("Peer connection is not open", state=self.transport_state.value)
        await self._transport.send_data(payload)

    async def send_text(self, text: str) -> None:
        await self.send(DataPayload.text(text))

    # Teardown ------------------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            for task in (self._candidate_task, self._event_task):
                await _cancel(task)
            self._candidate_task = None
            self._event_task = None
            if self.code is not None:
                try:
                    await self._signaling.clear_connection(self.code)
                except Exception:  # noqa: BLE001 - teardown continues regardless
                    logger.warning("Failed to clear connection for code %s", self.code, exc_info=True)
        finally:
            await self._transport.close()
            self._set_state(CoordinatorState.CLOSED)

    # Internals -----------------------------------------------------------------

    def _begin(self, role: Role, state: CoordinatorState) -> None:
        if self._closed:
            raise CodedropError("Coordinator is closed")
        if self.role is not None:
            raise CodedropError(f"Coordinator already running as {self.role.value}")
        self.role = role
        self._set_state(state)
        self._event_task = asyncio.create_task(self._pump_transport_events())

    async def _connect(self) -> None:
        """Pull remote candidates until the transport settles or the window closes."""

        self._set_state(CoordinatorState.CONNECTING)
        self._candidate_task = asyncio.create_task(self._pull_candidates())
        try:
            await asyncio.wait_for(self._terminal.wait(), self._timeouts.connect)
        except asyncio.TimeoutError as exc:
            self._set_state(CoordinatorState.FAILED)
            raise SignalingTimeoutError(f"Timed out connecting to peer for code {self.code}") from exc
        finally:
            await self._stop_candidates()

        if self.transport_state is not ConnectionState.CONNECTED:
            self._set_state(CoordinatorState.FAILED)
            raise TransportFailureError(
                f"Peer connection {self.transport_state.value}", state=self.transport_state.value
            )
        self._set_state(CoordinatorState.CONNECTED)
        logger.info("Peer connected for code %s", self.code)

    async def _stop_candidates(self) -> None:
        task = self._candidate_task
        self._candidate_task = None
        await _cancel(task)

    async def _pull_candidates(self) -> None:
        code, role = self._session()
        try:
            async for candidate in self._signaling.iter_candidates(code, role):
                try:
                    await self._transport.add_remote_candidate(candidate)
                except Exception:  # noqa: BLE001 - one bad candidate should not stop the others
                    logger.warning("Transport rejected remote candidate for code %s", self.code, exc_info=True)
        except NotFoundError as exc:
            logger.info("Stopped pulling candidates for code %s: %s", self.code, exc)

    async def _pump_transport_events(self) -> None:
        async for event in self._transport.events:
            if isinstance(event, LocalCandidate):
                await self._forwarding.wait()
                await self._forward_candidate(event)
            elif isinstance(event, StateChanged):
                self._on_transport_state(event.state)
            elif isinstance(event, DataReceived):
                await self._deliver(event.payload)

    async def _forward_candidate(self, event: LocalCandidate) -> None:
        code, role = self._session()
        try:
            await self._signaling.send_ice_candidate(code, event.candidate, role)
        except SignalingError as exc:
            logger.warning("Could not forward local candidate for code %s: %s", code, exc)
        except Exception:  # noqa: BLE001 - a lost candidate must not stop the event pump
            logger.warning("Relay unreachable forwarding candidate for code %s", code, exc_info=True)

    def _session(self) -> tuple[str, Role]:
        if self.code is None or self.role is None:
            raise CodedropError("No rendezvous in progress")
        return self.code, self.role

    def _on_transport_state(self, state: ConnectionState) -> None:
        logger.debug("Transport state for code %s: %s", self.code, state.value)
        self.transport_state = state
        if state.is_terminal:
            self._terminal.set()
        if state in (ConnectionState.CLOSED, ConnectionState.FAILED) and self.state is CoordinatorState.CONNECTED:
            self._set_state(CoordinatorState.FAILED if state is ConnectionState.FAILED else CoordinatorState.CLOSED)

    async def _deliver(self, payload: DataPayload) -> None:
        self.received.put_nowait(payload)
        if self._on_data is not None:
            try:
                await self._on_data(payload)
            except Exception:  # noqa: BLE001 - callback errors stay with the callback
                logger.exception("Data handler failed")

    def _set_state(self, state: CoordinatorState) -> None:
        if state is not self.state:
            logger.debug("Coordinator %s -> %s", self.state.value, state.value)
            self.state = state


async def _cancel(task: asyncio.Task[None] | None) -> None:
    """Cancel ``task`` and wait for it, logging whatever it died of."""

    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:  # noqa: BLE001 - the failure already happened in the background
        logger.warning("Background task %s failed", task.get_name(), exc_info=True)
