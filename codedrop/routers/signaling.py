"""Signaling endpoints: stateless action POST and stateful WebSocket push."""
from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

import anyio
from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..core.errors import InvalidPayloadError, SignalingError
from ..schemas.signaling import EventType, SessionListResponse, SignalingRequest
from ..services.signaling import SignalingConnection, SignalingService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_signaling_service(request: Request) -> SignalingService:
    """FastAPI dependency returning the app-scoped signaling service."""

    return request.app.state.signaling


def parse_request(raw: str | bytes) -> SignalingRequest:
    """Validate one action envelope, mapping every failure to InvalidPayloadError."""

    try:
        return SignalingRequest.model_validate_json(raw)
    except ValidationError as exc:
        code = _extract_code(raw)
        errors = exc.errors()
        if errors and errors[0].get("type") == "json_invalid":
            raise InvalidPayloadError("Invalid JSON", code=code) from exc
        detail = "; ".join(_format_error(error) for error in errors) or "Invalid request"
        raise InvalidPayloadError(detail, code=code) from exc


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid")
    return f"{location}: {message}" if location else message


def _extract_code(raw: str | bytes) -> str | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("code"), str):
        return data["code"]
    return None


@router.post("")
async def signaling_action(
    request: Request,
    service: SignalingService = Depends(get_signaling_service),
) -> dict[str, Any]:
    """Apply a single signaling action (polling realization)."""

    payload = parse_request(await request.body())
    response = await service.dispatch(payload)
    return response.to_wire()


@router.get("/connections", response_model=SessionListResponse)
async def list_connections(
    service: SignalingService = Depends(get_signaling_service),
) -> SessionListResponse:
    """Debug listing of live sessions; not authoritative."""

    return SessionListResponse(connections=await service.list_sessions())


@router.websocket("/ws")
async def signaling_socket(websocket: WebSocket) -> None:
    """Persistent signaling channel that pushes offers, answers and candidates."""

    service: SignalingService = websocket.app.state.signaling
    handle = websocket.query_params.get("handle") or str(uuid4())
    await websocket.accept()

    connection = SignalingConnection(connection_id=handle, send=websocket.send_json)
    await service.hub.register(connection)
    logger.info("Signaling client connected: %s", handle)

    async with connection.lock:
        await websocket.send_json({"type": EventType.CONNECTED.value, "handle": handle})

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text") or message.get("bytes") or b""
            reply = await handle_message(service, handle, raw)
            async with connection.lock:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    finally:
        # The server may cancel this task right after the disconnect arrives.
        with anyio.CancelScope(shield=True):
            await service.hub.unregister(connection)
            closed = await service.disconnect(handle)
        logger.info("Signaling client disconnected: %s (%d session(s) closed)", handle, len(closed))


async def handle_message(service: SignalingService, handle: str, raw: str | bytes) -> dict[str, Any]:
    """Process one socket message and build the correlated result envelope."""

    request_id = _extract_request_id(raw)
    action: str | None = None
    try:
        payload = parse_request(raw)
        action = payload.action.value
        reply = (await service.dispatch(payload, handle)).to_wire()
    except SignalingError as exc:
        reply = exc.to_payload()
    except Exception:  # noqa: BLE001 - one bad message must not drop the socket
        logger.exception("Unhandled error processing signaling message from %s", handle)
        reply = {"success": False, "error": "internal_error", "message": "Internal error"}

    reply["type"] = EventType.RESULT.value
    if action is not None:
        reply["action"] = action
    if request_id is not None:
        reply["request_id"] = request_id
    return reply


def _extract_request_id(raw: str | bytes) -> str | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("request_id") is not None:
        return str(data["request_id"])
    return None
