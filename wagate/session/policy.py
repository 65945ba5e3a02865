"""Reconnection policy: what to do after the protocol connection closes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class ReconnectAction(str, Enum):
    """Outcome of classifying a disconnect."""

    TERMINATE = "terminate"  # Abandon the session and clear stored credentials
    RETRY = "retry"          # Start a fresh connection after a delay
    IGNORE = "ignore"        # Stop here, keep credentials, do nothing


class DisconnectReason(IntEnum):
    """Status codes the WhatsApp Web protocol reports on close."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    FORBIDDEN = 403
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    UNAVAILABLE_SERVICE = 503


TERMINAL_REASONS = frozenset({DisconnectReason.LOGGED_OUT, DisconnectReason.FORBIDDEN})

DEFAULT_RETRY_DELAY = 5.0


def decide(reason: int | None) -> ReconnectAction:
    """
    Classify a disconnect reason.

    ``None`` means the connection closed without an error (an intentional
    or idle close), which needs no action. Logged-out and forbidden codes
    are terminal. Anything else is treated as transient.
    """
    if reason is None:
        return ReconnectAction.IGNORE
    if reason in TERMINAL_REASONS:
        return ReconnectAction.TERMINATE
    return ReconnectAction.RETRY


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    :func:`decide` plus the retry delay and an optional attempt cap.

    Attributes:
        delay: Seconds to wait before a RETRY reconnects.
        max_attempts: Consecutive transient reconnects allowed before the
            policy stops retrying. None means no cap.
    """

    delay: float = DEFAULT_RETRY_DELAY
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if self.max_attempts is not None and self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

    def decide(self, reason: int | None, attempts: int = 0) -> ReconnectAction:
        """
        Classify ``reason`` given ``attempts`` consecutive reconnects so far.

        Once the cap is reached a transient close becomes IGNORE: the
        session stops but its credentials are kept for the next connect.
        """
        action = decide(reason)
        if (
            action is ReconnectAction.RETRY
            and self.max_attempts is not None
            and attempts >= self.max_attempts
        ):
            return ReconnectAction.IGNORE
        return action
