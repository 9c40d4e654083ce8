"""Client-side rendezvous: signaling clients and the connection coordinator."""
from .coordinator import ConnectionCoordinator, CoordinatorState, CoordinatorTimeouts, generate_code
from .signaling import HttpSignalingClient, RetryPolicy, SignalingClient, WebSocketSignalingClient
from .transport import (
    ConnectionState,
    DataReceived,
    LocalCandidate,
    StateChanged,
    TransportCapability,
    TransportEventChannel,
)

__all__ = [
    "ConnectionCoordinator",
    "ConnectionState",
    "CoordinatorState",
    "CoordinatorTimeouts",
    "DataReceived",
    "HttpSignalingClient",
    "LocalCandidate",
    "RetryPolicy",
    "SignalingClient",
    "StateChanged",
    "TransportCapability",
    "TransportEventChannel",
    "WebSocketSignalingClient",
    "generate_code",
]
