"""
Connection state and lifecycle events for wagate sessions.

A ConnectionSession moves through these phases::

    idle -> connecting -> awaiting_credential -> open -> closing
                                                          |-> reconnecting
                                                          '-> terminated

Any phase may jump to ``terminated`` on an unrecoverable setup error or an
explicit stop. Connection state lives in memory only and is owned by the
session that holds it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from .policy import ReconnectAction


class SessionError(Exception):
    """Base exception for session lifecycle errors."""
    pass


class InvalidIdentity(SessionError, ValueError):
    """Raised when an identity is empty or not a phone number."""
    pass


class InvalidTransition(SessionError):
    """Raised when a phase change is not allowed by the state machine."""

    def __init__(self, current: ConnectionPhase, target: ConnectionPhase):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move from {current.value} to {target.value}")


class SessionSetupError(SessionError):
    """Raised when a connection session cannot be constructed."""
    pass


def normalize_identity(identity: str | None) -> str:
    """
    Normalize a phone-number identity into its store-key form.

    Strips whitespace and a leading ``+``.

    Raises:
        InvalidIdentity: If the result is empty or contains non-digits.
    """
    value = (identity or "").strip()
    if value.startswith("+"):
        value = value[1:]
    if not value:
        raise InvalidIdentity("identity cannot be empty")
    if not value.isdigit():
        raise InvalidIdentity(f"identity must be digits only, got '{identity}'")
    return value


class ConnectionPhase(str, Enum):
    """Lifecycle phase of one ConnectionSession."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_CREDENTIAL = "awaiting_credential"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


_TRANSITIONS: dict[ConnectionPhase, frozenset[ConnectionPhase]] = {
    ConnectionPhase.IDLE: frozenset({ConnectionPhase.CONNECTING}),
    ConnectionPhase.CONNECTING: frozenset({
        ConnectionPhase.AWAITING_CREDENTIAL,
        ConnectionPhase.OPEN,
        ConnectionPhase.CLOSING,
    }),
    ConnectionPhase.AWAITING_CREDENTIAL: frozenset({
        ConnectionPhase.OPEN,
        ConnectionPhase.CLOSING,
    }),
    ConnectionPhase.OPEN: frozenset({ConnectionPhase.CLOSING}),
    ConnectionPhase.CLOSING: frozenset({
        ConnectionPhase.RECONNECTING,
        ConnectionPhase.TERMINATED,
    }),
    ConnectionPhase.RECONNECTING: frozenset(),
    ConnectionPhase.TERMINATED: frozenset(),
}

FINAL_PHASES = frozenset({ConnectionPhase.RECONNECTING, ConnectionPhase.TERMINATED})


@dataclass
class ConnectionState:
    """
    In-memory state of one ConnectionSession.

    Attributes:
        phase: Current lifecycle phase.
        last_disconnect_reason: Status code of the most recent close, if any.
        reconnect_count: Consecutive transient reconnects leading to this
            session. Reset once a connection opens.
    """

    phase: ConnectionPhase = ConnectionPhase.IDLE
    last_disconnect_reason: int | None = None
    reconnect_count: int = 0

    @property
    def is_final(self) -> bool:
        return self.phase in FINAL_PHASES

    def can_move_to(self, target: ConnectionPhase) -> bool:
        if target is ConnectionPhase.TERMINATED and not self.is_final:
            return True
        return target in _TRANSITIONS[self.phase]

    def move_to(self, target: ConnectionPhase) -> None:
        if not self.can_move_to(target):
            raise InvalidTransition(self.phase, target)
        self.phase = target


class BootstrapKind(str, Enum):
    """How a new device proves itself to the account."""

    QR = "qr"
    PAIRING_CODE = "pairing_code"


@dataclass(frozen=True)
class CredentialReady:
    """A bootstrap credential is ready to hand to the user."""

    kind: BootstrapKind
    value: str


@dataclass(frozen=True)
class ConnectionOpened:
    """The protocol connection is live."""

    user_id: str | None = None


@dataclass(frozen=True)
class ConnectionClosed:
    """The protocol connection closed and the policy has classified it."""

    reason: int | None
    action: ReconnectAction
    message: str = ""


ConnectionEvent = Union[CredentialReady, ConnectionOpened, ConnectionClosed]
