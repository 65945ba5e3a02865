"""
Single-response arbitration for connect requests.

A connect request races several asynchronous outcomes: a bootstrap
credential becoming available, the connection opening, a terminal close,
and its own deadline. The ResponseArbiter turns the first of those into
the request's one result and ignores the rest. Resolution is a
synchronous check-and-set on the event loop thread, so two events can
never both win.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import (
    BootstrapKind,
    ConnectionClosed,
    ConnectionEvent,
    ConnectionOpened,
    CredentialReady,
)
from .policy import ReconnectAction

logger = logging.getLogger(__name__)


class ConnectResultKind(str, Enum):
    """What a connect request ended with."""

    QR = "qr"
    PAIRING_CODE = "pairing_code"
    OPEN = "open"
    WAITING = "waiting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectResult:
    """
    The single response to a connect request.

    Attributes:
        kind: Which outcome won.
        identity: The identity the request was for.
        qr: QR payload, for QR results.
        pairing_code: Pairing code, for pairing-code results.
        user_id: Account id when the connection opened, if captured.
        message: Human-readable summary.
    """

    kind: ConnectResultKind
    identity: str
    qr: str | None = None
    pairing_code: str | None = None
    user_id: str | None = None
    message: str = ""

    @property
    def status(self) -> str:
        if self.kind is ConnectResultKind.ERROR:
            return "error"
        if self.kind is ConnectResultKind.WAITING:
            return "waiting"
        return "success"

    @property
    def is_error(self) -> bool:
        return self.kind is ConnectResultKind.ERROR

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "kind": self.kind.value,
            "identity": self.identity,
            "message": self.message,
        }
        if self.qr is not None:
            data["qr"] = self.qr
        if self.pairing_code is not None:
            data["pairing_code"] = self.pairing_code
        if self.kind is ConnectResultKind.OPEN:
            data["user_id"] = self.user_id
        return data


def result_for_event(identity: str, event: ConnectionEvent) -> ConnectResult | None:
    """Map a lifecycle event to the response it would produce, if any."""
    if isinstance(event, CredentialReady):
        if event.kind is BootstrapKind.QR:
            return ConnectResult(
                kind=ConnectResultKind.QR,
                identity=identity,
                qr=event.value,
                message=f"QR code for {identity} generated",
            )
        return ConnectResult(
            kind=ConnectResultKind.PAIRING_CODE,
            identity=identity,
            pairing_code=event.value,
            message=f"Pairing code for {identity} generated",
        )

    if isinstance(event, ConnectionOpened):
        return ConnectResult(
            kind=ConnectResultKind.OPEN,
            identity=identity,
            user_id=event.user_id,
            message=f"{identity} is connected",
        )

    if isinstance(event, ConnectionClosed) and event.action is ReconnectAction.TERMINATE:
        return ConnectResult(
            kind=ConnectResultKind.ERROR,
            identity=identity,
            message=event.message or f"Session for {identity} was terminated",
        )

    return None


class ResponseArbiter:
    """
    Produces at most one ConnectResult per connect request.

    Pass :meth:`offer` as the listener for a session's events, then await
    :meth:`wait`. Events after the first decisive one are dropped here;
    their side effects happen in the session regardless.

    Example:
        arbiter = ResponseArbiter("6281234567890")
        unsubscribe = session.subscribe(arbiter.offer)
        try:
            result = await arbiter.wait(timeout=30.0)
        finally:
            unsubscribe()
    """

    def __init__(self, identity: str) -> None:
        self._identity = identity
        self._future: asyncio.Future[ConnectResult] = asyncio.get_running_loop().create_future()
        self._deadline: float | None = None

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def resolved(self) -> bool:
        return self._future.done()

    @property
    def result(self) -> ConnectResult | None:
        return self._future.result() if self._future.done() else None

    @property
    def deadline(self) -> float | None:
        """Loop time at which :meth:`wait` gives up, once waiting has begun."""
        return self._deadline

    def resolve(self, result: ConnectResult) -> bool:
        """Settle the request. Returns False if it was already settled."""
        if self._future.done():
            return False
        self._future.set_result(result)
        return True

    def offer(self, event: ConnectionEvent) -> bool:
        """Offer a lifecycle event. Returns True if it produced the response."""
        result = result_for_event(self._identity, event)
        if result is None:
            return False
        won = self.resolve(result)
        if not won:
            logger.debug("Suppressed %s for %s; response already sent", result.kind.value, self._identity)
        return won

    async def wait(self, timeout: float) -> ConnectResult:
        """
        Wait for the response, settling as WAITING after ``timeout`` seconds.

        WAITING is not a failure: the session keeps running and a later
        connect or info call will see its progress.
        """
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + timeout
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            self.resolve(ConnectResult(
                kind=ConnectResultKind.WAITING,
                identity=self._identity,
                message=f"Still waiting for {self._identity}; try again shortly",
            ))
            return self._future.result()

    def __repr__(self) -> str:
        state = self._future.result().kind.value if self._future.done() else "pending"
        return f"<ResponseArbiter identity={self._identity} state={state}>"
