"""
Seam between wagate and the WhatsApp Web protocol library.

wagate does not speak the wire protocol itself. It drives a socket built
by a factory that the deployment supplies (``SOCKET_FACTORY`` setting,
``"package.module:callable"``). The factory receives the identity, the
live SessionCredential (the library reads auxiliary keys from it with
``get_keys``) and a listener, and returns a ProtocolSocket whose
handshake is under way.

The library reports progress by awaiting the listener's two callbacks,
in the order it observes events:

- ``on_connection_update``: a bootstrap QR string, ``"open"``, or
  ``"close"`` with a status code.
- ``on_credentials_update``: rotated primary credential and/or key
  entries to merge and persist.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Protocol

from wagate.store import SessionCredential

from .models import BootstrapKind, CredentialReady, SessionSetupError

logger = logging.getLogger(__name__)


class ProtocolNotConfigured(SessionSetupError):
    """Raised when no socket factory has been configured."""
    pass


@dataclass(frozen=True)
class ConnectionUpdate:
    """
    Connection progress reported by the protocol library.

    Attributes:
        connection: ``"connecting"``, ``"open"`` or ``"close"``, if the
            connection status changed.
        qr: A fresh QR payload when the library needs the device to be
            linked.
        reason: Status code accompanying ``"close"``; None when the
            connection closed without an error.
        error: Human-readable close error, if any.
    """

    connection: Literal["connecting", "open", "close"] | None = None
    qr: str | None = None
    reason: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class CredentialsUpdate:
    """Rotated credential material to merge into the SessionCredential."""

    primary: Any = None
    keys: dict[str, dict[str, Any]] | None = None


class SocketListener(Protocol):
    """Callbacks the protocol library invokes on its socket's events."""

    async def on_connection_update(self, update: ConnectionUpdate) -> None:
        ...

    async def on_credentials_update(self, update: CredentialsUpdate) -> None:
        ...


class ProtocolSocket(Protocol):
    """A live protocol connection for one identity."""

    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask the server for a short numeric code to link this device."""
        ...

    def account_id(self) -> str | None:
        """The logged-in account's user id, once known."""
        ...

    async def close(self) -> None:
        ...


SocketFactory = Callable[[str, SessionCredential, SocketListener], Awaitable[ProtocolSocket]]


async def unconfigured_socket_factory(
    identity: str,
    credential: SessionCredential,
    listener: SocketListener,
) -> ProtocolSocket:
    raise ProtocolNotConfigured(
        "No protocol socket factory configured; set SOCKET_FACTORY"
    )


def load_socket_factory(path: str) -> SocketFactory:
    """
    Resolve a socket factory from ``"module:attr"`` (or ``"module.attr"``).

    An empty path yields :func:`unconfigured_socket_factory`, which fails
    every connect with ProtocolNotConfigured.

    Raises:
        SessionSetupError: If the module or attribute cannot be loaded or
            the attribute is not callable.
    """
    if not path:
        return unconfigured_socket_factory

    module_path, sep, attr = path.partition(":")
    if not sep:
        module_path, _, attr = path.rpartition(".")
    if not module_path or not attr:
        raise SessionSetupError(f"Invalid socket factory path: '{path}'")

    try:
        module = importlib.import_module(module_path)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise SessionSetupError(f"Cannot load socket factory '{path}': {exc}") from exc

    if not callable(factory):
        raise SessionSetupError(f"Socket factory '{path}' is not callable")
    return factory


class BootstrapCredentialSource:
    """
    Turns the library's "needs linking" signal into a bootstrap credential.

    In QR mode every QR payload is passed through (the library rotates
    them). In pairing-code mode the first QR signal triggers a single
    pairing-code request; later QR signals are ignored unless that request
    failed.
    """

    def __init__(self, mode: BootstrapKind, pairing_delay: float = 0.0) -> None:
        if pairing_delay < 0:
            raise ValueError("pairing_delay must be >= 0")
        self._mode = mode
        self._pairing_delay = pairing_delay
        self._pairing_requested = False

    @property
    def mode(self) -> BootstrapKind:
        return self._mode

    @property
    def pairing_requested(self) -> bool:
        return self._pairing_requested

    async def request_pairing_code(self, socket: ProtocolSocket, phone_number: str) -> CredentialReady:
        """
        Request the pairing code for this attempt.

        Raises:
            SessionSetupError: If a code was already requested this attempt.
        """
        if self._pairing_requested:
            raise SessionSetupError("Pairing code already requested for this connection attempt")
        self._pairing_requested = True
        try:
            if self._pairing_delay:
                await asyncio.sleep(self._pairing_delay)
            code = await socket.request_pairing_code(phone_number)
        except BaseException:
            self._pairing_requested = False
            raise
        return CredentialReady(kind=BootstrapKind.PAIRING_CODE, value=code)

    async def produce(
        self,
        socket: ProtocolSocket,
        phone_number: str,
        qr: str,
    ) -> CredentialReady | None:
        """Return the credential for a QR signal, or None if nothing new."""
        if self._mode is BootstrapKind.QR:
            return CredentialReady(kind=BootstrapKind.QR, value=qr)
        if self._pairing_requested:
            return None
        return await self.request_pairing_code(socket, phone_number)
