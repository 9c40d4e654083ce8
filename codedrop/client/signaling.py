"""Client side of the signaling relay, over HTTP polling or a WebSocket push channel."""
from __future__ import annotations

import abc
import asyncio
import json
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator
from urllib.parse import urlencode, urlsplit, urlunsplit
from uuid import uuid4

import httpx
import websockets

from ..core.config import Settings, settings as default_settings
from ..core.errors import (
    NotFoundError,
    SignalingError,
    SignalingTimeoutError,
    error_from_response,
)
from ..schemas.signaling import Blob, EventType, Role, SignalingAction

logger = logging.getLogger(__name__)

SIGNALING_PATH = "/api/signaling"
_SESSION_CLOSED = object()


@dataclass(slots=True)
class RetryPolicy:
    """Polling cadence: start at ``initial_interval`` and grow up to ``max_interval``."""

    initial_interval: float = 1.0
    max_interval: float = 5.0
    multiplier: float = 1.5

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            initial_interval=config.poll_interval_seconds,
            max_interval=config.poll_max_interval_seconds,
            multiplier=config.poll_backoff_multiplier,
        )

    def intervals(self) -> Iterator[float]:
        delay = self.initial_interval
        while True:
            yield delay
            delay = min(self.max_interval, delay * self.multiplier)


class SignalingClient(abc.ABC):
    """The seven relay actions plus bounded waits built on top of them.

    Every action raises the relay's error taxonomy (``NotFoundError``,
    ``ConflictError``, ``InvalidPayloadError``). The default waits poll; push
    realizations override them.
    """

    def __init__(self, *, handle: str | None = None, retry: RetryPolicy | None = None) -> None:
        self.handle = handle or uuid4().hex
        self.retry = retry or RetryPolicy.from_settings(default_settings)

    @abc.abstractmethod
    async def _request(self, action: SignalingAction, code: str, **fields: Any) -> dict[str, Any]:
        """Perform one action and return the successful response body."""

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "SignalingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send_offer(self, code: str, offer: Blob) -> None:
        await self._request(SignalingAction.SEND_OFFER, code, offer=offer)

    async def get_offer(self, code: str) -> Blob:
        return (await self._request(SignalingAction.GET_OFFER, code))["offer"]

    async def send_answer(self, code: str, answer: Blob) -> None:
        await self._request(SignalingAction.SEND_ANSWER, code, answer=answer)

    async def get_answer(self, code: str) -> Blob:
        return (await self._request(SignalingAction.GET_ANSWER, code))["answer"]

    async def send_ice_candidate(self, code: str, candidate: Blob, role: Role) -> None:
        await self._request(SignalingAction.SEND_ICE_CANDIDATE, code, candidate=candidate, role=role.value)

    async def get_ice_candidate(self, code: str, role: Role) -> Blob:
        return (await self._request(SignalingAction.GET_ICE_CANDIDATE, code, role=role.value))["candidate"]

    async def clear_connection(self, code: str) -> None:
        await self._request(SignalingAction.CLEAR_CONNECTION, code)

    async def wait_for_offer(self, code: str, timeout: float) -> Blob:
        return await self._poll(lambda: self.get_offer(code), timeout, f"offer for code {code}")

    async def wait_for_answer(self, code: str, timeout: float) -> Blob:
        return await self._poll(lambda: self.get_answer(code), timeout, f"answer for code {code}")

    async def iter_candidates(self, code: str, role: Role) -> AsyncIterator[Blob]:
        """Yield remote candidates for ``role`` until the caller stops iterating."""

        intervals = self.retry.intervals()
        while True:
            try:
                candidate = await self.get_ice_candidate(code, role)
            except NotFoundError:
                await asyncio.sleep(next(intervals))
                continue
            except httpx.TransportError as exc:
                delay = next(intervals)
                logger.warning("Candidate poll for code %s failed (%s); retrying in %.1fs", code, exc, delay)
                await asyncio.sleep(delay)
                continue
            intervals = self.retry.intervals()
            yield candidate

    async def _poll(self, fetch: Callable[[], Awaitable[Blob]], timeout: float, what: str) -> Blob:
        async def attempt() -> Blob:
            for delay in self.retry.intervals():
                try:
                    return await fetch()
                except NotFoundError:
                    logger.debug("%s not available yet; retrying in %.1fs", what, delay)
                except httpx.TransportError as exc:
                    logger.warning("Signaling request failed (%s); retrying in %.1fs", exc, delay)
                await asyncio.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        try:
            return await asyncio.wait_for(attempt(), timeout)
        except asyncio.TimeoutError as exc:
            raise SignalingTimeoutError(f"Timed out waiting for {what}") from exc


class HttpSignalingClient(SignalingClient):
    """Stateless realization: one POST per action, waits implemented by polling."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        handle: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(handle=handle, retry=retry)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url or default_settings.signaling_url, timeout=10.0)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, action: SignalingAction, code: str, **fields: Any) -> dict[str, Any]:
        body = {"action": action.value, "code": code, "handle": self.handle, **fields}
        response = await self._client.post(SIGNALING_PATH, json=body)
        try:
            data = response.json()
        except ValueError as exc:
            raise SignalingError(f"Unexpected relay response ({response.status_code})", code=code) from exc
        if response.is_success and data.get("success"):
            return data
        raise error_from_response(data)


class WebSocketSignalingClient(SignalingClient):
    """Stateful realization: actions are correlated replies, remote data arrives as pushed events."""

    def __init__(
        self,
        url: str | None = None,
        *,
        handle: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(handle=handle, retry=retry)
        self._url = _socket_url(url or default_settings.signaling_url, self.handle)
        self._ws: Any = None
        self._receiver: asyncio.Task[None] | None = None
        self._pending: Dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._offers: Dict[str, asyncio.Future[Blob]] = {}
        self._answers: Dict[str, asyncio.Future[Blob]] = {}
        self._candidates: Dict[str, asyncio.Queue[Any]] = {}

    async def connect(self) -> "WebSocketSignalingClient":
        if self._ws is not None:
            return self
        self._ws = await websockets.connect(self._url)
        greeting = json.loads(await self._ws.recv())
        if greeting.get("type") == EventType.CONNECTED.value:
            self.handle = greeting.get("handle", self.handle)
        self._receiver = asyncio.create_task(self._receive_loop())
        logger.info("Connected to signaling relay as %s", self.handle)
        return self

    async def __aenter__(self) -> "WebSocketSignalingClient":
        return await self.connect()

    async def close(self) -> None:
        if self._receiver:
            self._receiver.cancel()
            with suppress(asyncio.CancelledError):
                await self._receiver
            self._receiver = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._fail_pending(SignalingError("Signaling connection closed"))

    async def _request(self, action: SignalingAction, code: str, **fields: Any) -> dict[str, Any]:
        if self._ws is None:
            await self.connect()
        request_id = uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({"action": action.value, "code": code, "request_id": request_id, **fields}))
            reply = await future
        finally:
            self._pending.pop(request_id, None)
        if reply.get("success"):
            return reply
        raise error_from_response(reply)

    async def wait_for_offer(self, code: str, timeout: float) -> Blob:
        waiter = self._event_future(self._offers, code)
        try:
            reply = await self._request(SignalingAction.WAIT_FOR_OFFER, code)
            if reply.get("offer") is not None:
                return reply["offer"]
            return await self._await_event(waiter, timeout, f"offer for code {code}")
        finally:
            self._offers.pop(code, None)

    async def wait_for_answer(self, code: str, timeout: float) -> Blob:
        waiter = self._event_future(self._answers, code)
        try:
            try:
                return await self.get_answer(code)
            except NotFoundError as exc:
                if not exc.pending:
                    raise
            return await self._await_event(waiter, timeout, f"answer for code {code}")
        finally:
            self._answers.pop(code, None)

    async def iter_candidates(self, code: str, role: Role) -> AsyncIterator[Blob]:
        queue = self._candidate_queue(code)
        try:
            while True:
                item = await queue.get()
                if item is _SESSION_CLOSED:
                    raise NotFoundError("Session closed", code=code)
                yield item
        finally:
            if self._candidates.get(code) is queue:
                del self._candidates[code]

    def _event_future(self, registry: Dict[str, asyncio.Future[Blob]], code: str) -> asyncio.Future[Blob]:
        future = registry.get(code)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            registry[code] = future
        return future

    def _candidate_queue(self, code: str) -> asyncio.Queue[Any]:
        return self._candidates.setdefault(code, asyncio.Queue())

    @staticmethod
    async def _await_event(future: asyncio.Future[Blob], timeout: float, what: str) -> Blob:
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError as exc:
            raise SignalingTimeoutError(f"Timed out waiting for {what}") from exc

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except ValueError:
                    logger.warning("Ignoring non-JSON signaling message")
                    continue
                self._route(data)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - surfaced to waiters below
            logger.exception("Signaling connection failed")
        self._fail_pending(SignalingError("Signaling connection closed"))

    def _route(self, data: dict[str, Any]) -> None:
        kind = data.get("type")
        code = data.get("code")
        if kind == EventType.RESULT.value:
            future = self._pending.get(str(data.get("request_id")))
            if future is not None and not future.done():
                future.set_result(data)
        elif kind == EventType.OFFER_RECEIVED.value:
            self._resolve(self._offers, code, data.get("offer"))
        elif kind == EventType.ANSWER_RECEIVED.value:
            self._resolve(self._answers, code, data.get("answer"))
        elif kind == EventType.ICE_CANDIDATE_RECEIVED.value and code is not None:
            self._candidate_queue(code).put_nowait(data.get("candidate"))
        elif kind == EventType.SESSION_CLOSED.value:
            logger.info("Relay closed session %s (%s)", code, data.get("reason"))
            error = NotFoundError(f"Session closed: {data.get('reason')}", code=code)
            for registry in (self._offers, self._answers):
                future = registry.get(code)
                if future is not None and not future.done():
                    future.set_exception(error)
            self._close_candidates(code)
        else:
            logger.debug("Ignoring signaling event %s", kind)

    def _resolve(self, registry: Dict[str, asyncio.Future[Blob]], code: str | None, value: Blob | None) -> None:
        if code is None or value is None:
            return
        future = registry.get(code)
        if future is None or future.done():
            logger.debug("No waiter for pushed value on code %s; dropping it", code)
            return
        future.set_result(value)

    def _fail_pending(self, error: Exception) -> None:
        for registry in (self._pending, self._offers, self._answers):
            for future in registry.values():
                if not future.done():
                    future.set_exception(error)
        for code in list(self._candidates):
            self._close_candidates(code)

    def _close_candidates(self, code: str | None) -> None:
        """Wake any reader of ``code`` with the closed marker and forget its buffer."""

        queue = self._candidates.pop(code, None) if code is not None else None
        if queue is not None:
            queue.put_nowait(_SESSION_CLOSED)


def _socket_url(base_url: str, handle: str) -> str:
    """Turn the relay base URL into the WebSocket endpoint for ``handle``."""

    parts = urlsplit(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme or "ws")
    path = parts.path.rstrip("/")
    if not path.endswith(f"{SIGNALING_PATH}/ws"):
        path = f"{path}{SIGNALING_PATH}/ws"
    return urlunsplit((scheme, parts.netloc, path, urlencode({"handle": handle}), ""))
