"""Interface to the peer transport that actually carries the data.

The transport (for example a WebRTC peer connection) is external. The
coordinator only needs it to produce and consume session descriptions and
candidates, and to report what happens through an ordered event channel.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Protocol, Union, runtime_checkable

from ..schemas.payload import DataPayload
from ..schemas.signaling import Blob


class ConnectionState(str, enum.Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionState.CONNECTED, ConnectionState.CLOSED, ConnectionState.FAILED)


@dataclass(frozen=True, slots=True)
class LocalCandidate:
    candidate: Blob


@dataclass(frozen=True, slots=True)
class StateChanged:
    state: ConnectionState


@dataclass(frozen=True, slots=True)
class DataReceived:
    payload: DataPayload


TransportEvent = Union[LocalCandidate, StateChanged, DataReceived]


class TransportEventChannel:
    """FIFO of transport events; consumers see them in emission order."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        self._closed = False

    def emit(self, event: TransportEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "TransportEventChannel":
        return self

    async def __anext__(self) -> TransportEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


@runtime_checkable
class TransportCapability(Protocol):
    """What the coordinator needs from a peer transport."""

    events: TransportEventChannel

    async def create_local_offer(self) -> Blob: ...

    async def create_local_answer(self, remote_offer: Blob) -> Blob: ...

    async def apply_remote_answer(self, answer: Blob) -> None: ...

    async def add_remote_candidate(self, candidate: Blob) -> None: ...

    async def send_data(self, payload: DataPayload) -> None: ...

    async def close(self) -> None: ...
