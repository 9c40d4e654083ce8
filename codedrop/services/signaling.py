"""Signaling dispatch shared by the polling and push realizations."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable

from ..core.errors import InvalidPayloadError
from ..schemas.signaling import (
    EventType,
    Role,
    SessionSummary,
    SignalingAction,
    SignalingRequest,
    SignalingResponse,
)
from .rendezvous import RendezvousProtocol
from .session_store import SessionRecord

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for push participants."""

    connection_id: str
    send: SendCallable
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class SignalingHub:
    """Track live push connections and deliver messages to them in order."""

    def __init__(self) -> None:
        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: SignalingConnection) -> None:
        async with self._lock:
            previous = self._connections.get(connection.connection_id)
            if previous is not None and previous is not connection:
                logger.warning("Handle %s reconnected; replacing previous connection", connection.connection_id)
            self._connections[connection.connection_id] = connection

    async def unregister(self, connection: SignalingConnection) -> None:
        async with self._lock:
            if self._connections.get(connection.connection_id) is connection:
                self._connections.pop(connection.connection_id, None)

    def get(self, handle: str | None) -> SignalingConnection | None:
        if not handle:
            return None
        return self._connections.get(handle)

    def is_connected(self, handle: str | None) -> bool:
        return self.get(handle) is not None

    async def send(self, handle: str | None, message: dict) -> bool:
        connection = self.get(handle)
        if connection is None:
            return False
        async with connection.lock:
            return await self.deliver(connection, message)

    async def broadcast(self, handles: Iterable[str], message: dict) -> None:
        tasks = [self.send(handle, message) for handle in set(handles)]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    async def deliver(connection: SignalingConnection, message: dict) -> bool:
        try:
            await connection.send(message)
        except Exception:  # noqa: BLE001 - a dead peer must not break the sender's request
            logger.warning("Failed pushing %s to %s", message.get("type"), connection.connection_id, exc_info=True)
            return False
        return True

    def __len__(self) -> int:
        return len(self._connections)


class SignalingService:
    """Run one action through the rendezvous protocol and push the consequences."""

    def __init__(self, protocol: RendezvousProtocol, hub: SignalingHub) -> None:
        self._protocol = protocol
        self._hub = hub

    @property
    def protocol(self) -> RendezvousProtocol:
        return self._protocol

    @property
    def hub(self) -> SignalingHub:
        return self._hub

    async def dispatch(self, request: SignalingRequest, handle: str | None = None) -> SignalingResponse:
        """Apply ``request`` on behalf of ``handle`` (the push connection or a caller-supplied id)."""

        handle = handle or request.handle
        code = request.code
        action = request.action

        if action is SignalingAction.SEND_OFFER:
            record = await self._protocol.send_offer(code, request.offer, handle)
            waiters = set(record.offer_waiters)
            await self._hub.broadcast(
                waiters,
                {"type": EventType.OFFER_RECEIVED.value, "code": code, "offer": request.offer},
            )
            return SignalingResponse(code=code)

        if action is SignalingAction.WAIT_FOR_OFFER:
            if not handle:
                raise InvalidPayloadError("wait-for-offer requires a handle", code=code)
            _, offer = await self._protocol.wait_for_offer(code, handle)
            return SignalingResponse(code=code, offer=offer, pending=offer is None)

        if action is SignalingAction.GET_OFFER:
            return SignalingResponse(code=code, offer=await self._protocol.get_offer(code))

        if action is SignalingAction.SEND_ANSWER:
            result = await self._protocol.send_answer(code, request.answer, handle)
            if result.accepted:
                await self._hub.send(
                    result.record.initiator_handle,
                    {"type": EventType.ANSWER_RECEIVED.value, "code": code, "answer": request.answer},
                )
                await self._flush_candidates(code, Role.RESPONDER, result.record.responder_handle)
            return SignalingResponse(code=code)

        if action is SignalingAction.GET_ANSWER:
            return SignalingResponse(code=code, answer=await self._protocol.get_answer(code))

        if action is SignalingAction.SEND_ICE_CANDIDATE:
            role = await self._resolve_role(request, handle)
            record = await self._protocol.send_candidate(code, request.candidate, role)
            await self._flush_candidates(code, role.opposite, record.handle_for(role.opposite))
            return SignalingResponse(code=code)

        if action is SignalingAction.GET_ICE_CANDIDATE:
            role = await self._resolve_role(request, handle)
            return SignalingResponse(code=code, candidate=await self._protocol.pop_candidate(code, role))

        if action is SignalingAction.CLEAR_CONNECTION:
            record = await self._protocol.clear(code)
            if record is not None:
                await self._notify_closed(record, "cleared", exclude=handle)
            return SignalingResponse(code=code)

        raise InvalidPayloadError(f"Invalid action {action!r}", code=code)  # pragma: no cover

    async def disconnect(self, handle: str) -> list[SessionRecord]:
        closed = await self._protocol.disconnect(handle)
        for record in closed:
            await self._notify_closed(record, "peer-disconnected", exclude=handle)
        return closed

    async def sweep(self, max_age: float | None = None) -> list[SessionRecord]:
        expired = await self._protocol.sweep(max_age)
        for record in expired:
            await self._notify_closed(record, "expired")
        return expired

    async def list_sessions(self) -> list[SessionSummary]:
        return await self._protocol.store.snapshot()

    async def _resolve_role(self, request: SignalingRequest, handle: str | None) -> Role:
        if request.role is not None:
            return request.role
        if handle:
            role = await self._protocol.resolve_role(request.code, handle)
            if role is not None:
                return role
        raise InvalidPayloadError(f"{request.action.value} requires 'role'", code=request.code)

    async def _flush_candidates(self, code: str, role: Role, handle: str | None) -> None:
        """Push every queued candidate addressed to ``role`` when its handle is live.

        Draining happens under the recipient's send lock so two concurrent
        flushes cannot reorder candidates.
        """

        connection = self._hub.get(handle)
        if connection is None:
            return
        async with connection.lock:
            candidates = await self._protocol.drain_candidates(code, role)
            for candidate in candidates:
                message: dict[str, Any] = {
                    "type": EventType.ICE_CANDIDATE_RECEIVED.value,
                    "code": code,
                    "candidate": candidate,
                }
                await self._hub.deliver(connection, message)

    async def _notify_closed(self, record: SessionRecord, reason: str, exclude: str | None = None) -> None:
        handles = (record.bound_handles() | record.offer_waiters) - {exclude}
        await self._hub.broadcast(
            (handle for handle in handles if handle),
            {"type": EventType.SESSION_CLOSED.value, "code": record.code, "reason": reason},
        )
