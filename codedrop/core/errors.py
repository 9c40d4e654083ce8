"""Error taxonomy shared by the relay and its clients."""
from __future__ import annotations

from typing import Any, Mapping


class CodedropError(Exception):
    """Base class for every error raised by codedrop."""


class SignalingError(CodedropError):
    """An error the relay reports back to the caller instead of crashing."""

    kind = "signaling_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        if self.code is not None:
            payload["code"] = self.code
        return payload


class NotFoundError(SignalingError):
    """No record for the code, or the requested data is not available yet.

    ``pending`` distinguishes "the session exists but the other side has not
    produced this yet" from "nothing is known about this code".
    """

    kind = "not_found"
    status_code = 404

    def __init__(self, message: str, *, code: str | None = None, pending: bool = False) -> None:
        super().__init__(message, code=code)
        self.pending = pending

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["pending"] = self.pending
        return payload


class ConflictError(SignalingError):
    """The offer or answer for this code was already committed by another party."""

    kind = "conflict"
    status_code = 409


class InvalidPayloadError(SignalingError):
    """The message envelope is malformed."""

    kind = "invalid_payload"
    status_code = 400


class SignalingTimeoutError(CodedropError, TimeoutError):
    """A bounded wait for the remote side expired."""


class TransportFailureError(CodedropError):
    """The peer transport reported a failed or closed connection."""

    def __init__(self, message: str, *, state: str | None = None) -> None:
        super().__init__(message)
        self.state = state


_ERRORS_BY_KIND: dict[str, type[SignalingError]] = {
    NotFoundError.kind: NotFoundError,
    ConflictError.kind: ConflictError,
    InvalidPayloadError.kind: InvalidPayloadError,
}


def error_from_response(payload: Mapping[str, Any]) -> SignalingError:
    """Rebuild the relay's exception from a failed wire response."""

    kind = str(payload.get("error") or "")
    message = str(payload.get("message") or "Signaling request failed")
    code = payload.get("code")
    error_cls = _ERRORS_BY_KIND.get(kind)
    if error_cls is NotFoundError:
        return NotFoundError(message, code=code, pending=bool(payload.get("pending")))
    if error_cls is None:
        return SignalingError(message, code=code)
    return error_cls(message, code=code)
