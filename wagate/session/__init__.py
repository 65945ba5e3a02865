"""
Session lifecycle for wagate.

Public API:
    - LifecycleController: connect / list / info / delete / stats / shutdown
    - ConnectionSession: One connection attempt and its state machine
    - ResponseArbiter: At most one response per connect request
    - ConnectResult: The response a connect request produces
    - ReconnectPolicy: Classifies disconnects into TERMINATE / RETRY / IGNORE

    - SocketFactory / ProtocolSocket / SocketListener: Protocol library seam
    - load_socket_factory: Resolve the configured socket factory
"""

from .models import (
    BootstrapKind,
    ConnectionClosed,
    ConnectionEvent,
    ConnectionOpened,
    ConnectionPhase,
    ConnectionState,
    CredentialReady,
    InvalidIdentity,
    InvalidTransition,
    SessionError,
    SessionSetupError,
    normalize_identity,
)

from .policy import (
    DEFAULT_RETRY_DELAY,
    TERMINAL_REASONS,
    DisconnectReason,
    ReconnectAction,
    ReconnectPolicy,
    decide,
)

from .protocol import (
    BootstrapCredentialSource,
    ConnectionUpdate,
    CredentialsUpdate,
    ProtocolNotConfigured,
    ProtocolSocket,
    SocketFactory,
    SocketListener,
    load_socket_factory,
    unconfigured_socket_factory,
)

from .arbiter import (
    ConnectResult,
    ConnectResultKind,
    ResponseArbiter,
    result_for_event,
)

from .connection import ConnectionSession

from .controller import (
    DEFAULT_CONNECT_DEADLINE,
    LifecycleController,
    SessionLineage,
)


__all__ = [
    # Models
    "BootstrapKind",
    "ConnectionClosed",
    "ConnectionEvent",
    "ConnectionOpened",
    "ConnectionPhase",
    "ConnectionState",
    "CredentialReady",
    "InvalidIdentity",
    "InvalidTransition",
    "SessionError",
    "SessionSetupError",
    "normalize_identity",

    # Policy
    "DEFAULT_RETRY_DELAY",
    "TERMINAL_REASONS",
    "DisconnectReason",
    "ReconnectAction",
    "ReconnectPolicy",
    "decide",

    # Protocol seam
    "BootstrapCredentialSource",
    "ConnectionUpdate",
    "CredentialsUpdate",
    "ProtocolNotConfigured",
    "ProtocolSocket",
    "SocketFactory",
    "SocketListener",
    "load_socket_factory",
    "unconfigured_socket_factory",

    # Arbitration
    "ConnectResult",
    "ConnectResultKind",
    "ResponseArbiter",
    "result_for_event",

    # Sessions
    "ConnectionSession",
    "DEFAULT_CONNECT_DEADLINE",
    "LifecycleController",
    "SessionLineage",
]
