"""Data contracts for the signaling relay."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

CODE_PATTERN = r"^\d{6}$"

# Session descriptions and candidates are opaque to the relay. Browsers send
# them either as JSON strings or as plain objects.
Blob = Union[str, dict[str, Any]]


class SignalingAction(str, enum.Enum):
    SEND_OFFER = "send-offer"
    GET_OFFER = "get-offer"
    WAIT_FOR_OFFER = "wait-for-offer"
    SEND_ANSWER = "send-answer"
    GET_ANSWER = "get-answer"
    SEND_ICE_CANDIDATE = "send-ice-candidate"
    GET_ICE_CANDIDATE = "get-ice-candidate"
    CLEAR_CONNECTION = "clear-connection"


class Role(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"

    @property
    def opposite(self) -> "Role":
        return Role.RESPONDER if self is Role.INITIATOR else Role.INITIATOR


class SessionState(str, enum.Enum):
    EMPTY = "empty"
    OFFERED = "offered"
    ANSWERED = "answered"
    CLOSED = "closed"


class EventType(str, enum.Enum):
    CONNECTED = "connected"
    RESULT = "result"
    OFFER_RECEIVED = "offer-received"
    ANSWER_RECEIVED = "answer-received"
    ICE_CANDIDATE_RECEIVED = "ice-candidate-received"
    SESSION_CLOSED = "session-closed"


_REQUIRED_FIELDS: dict[SignalingAction, str] = {
    SignalingAction.SEND_OFFER: "offer",
    SignalingAction.SEND_ANSWER: "answer",
    SignalingAction.SEND_ICE_CANDIDATE: "candidate",
}


class SignalingRequest(BaseModel):
    """One logical action against the relay, over either realization."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: SignalingAction
    code: str = Field(..., pattern=CODE_PATTERN, description="Six digit rendezvous code")
    offer: Blob | None = None
    answer: Blob | None = None
    candidate: Blob | None = None
    role: Role | None = Field(default=None, description="Role of the caller for candidate actions")
    is_sender: bool | None = Field(default=None, alias="isSender")
    handle: str | None = Field(default=None, max_length=128, description="Stable caller identifier")
    request_id: str | None = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _check_payload(self) -> "SignalingRequest":
        field_name = _REQUIRED_FIELDS.get(self.action)
        if field_name and getattr(self, field_name) is None:
            raise ValueError(f"{self.action.value} requires '{field_name}'")
        if self.role is None and self.is_sender is not None:
            self.role = Role.INITIATOR if self.is_sender else Role.RESPONDER
        return self


class SignalingResponse(BaseModel):
    success: bool = True
    code: str | None = None
    offer: Blob | None = None
    answer: Blob | None = None
    candidate: Blob | None = None
    pending: bool | None = None
    error: str | None = None
    message: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class SessionSummary(BaseModel):
    code: str
    state: SessionState
    has_offer: bool
    has_answer: bool
    initiator_handle: str | None = None
    responder_handle: str | None = None
    offer_waiters: int = Field(default=0, ge=0)
    pending_candidates: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    connections: list[SessionSummary]


class HealthResponse(BaseModel):
    status: str
    connections: int
    timestamp: datetime
