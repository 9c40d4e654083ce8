"""Shared fixtures: a fresh relay app and an in-process stand-in for ``websockets.connect``."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

import pytest

from codedrop.client import signaling as signaling_client
from codedrop.main import create_app
from codedrop.routers.signaling import handle_message
from codedrop.services.signaling import SignalingConnection, SignalingService


class LoopbackSocket:
    """Client-side socket wired straight into a SignalingService, no network involved."""

    def __init__(self, service: SignalingService, handle: str) -> None:
        self.service = service
        self.handle = handle
        self.closed = False
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._connection = SignalingConnection(connection_id=handle, send=self._push)

    async def open(self) -> "LoopbackSocket":
        await self.service.hub.register(self._connection)
        await self._push({"type": "connected", "handle": self.handle})
        return self

    async def _push(self, message: dict) -> None:
        await self._inbox.put(json.dumps(message))

    async def send(self, raw: str) -> None:
        reply = await handle_message(self.service, self.handle, raw)
        async with self._connection.lock:
            await self._push(reply)

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise ConnectionError("closed")
        return item

    def __aiter__(self) -> "LoopbackSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.service.hub.unregister(self._connection)
        await self.service.disconnect(self.handle)
        self._inbox.put_nowait(None)


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def loopback(app, monkeypatch) -> list[LoopbackSocket]:
    """Route WebSocketSignalingClient connections into ``app``; returns the opened sockets."""

    sockets: list[LoopbackSocket] = []

    async def connect(url: str, *args, **kwargs) -> LoopbackSocket:
        handle = parse_qs(urlsplit(url).query)["handle"][0]
        socket = await LoopbackSocket(app.state.signaling, handle).open()
        sockets.append(socket)
        return socket

    monkeypatch.setattr(signaling_client, "websockets", SimpleNamespace(connect=connect))
    return sockets
