"""Shared fixtures: an in-memory store and a scripted protocol socket."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest
import pytest_asyncio

from wagate.session import ConnectionUpdate, CredentialsUpdate, SocketListener
from wagate.store import CredentialStore, InMemoryBackend, SessionCredential

IDENTITY = "6281234567890"
PAIRING_CODE = "ABCD1234"


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSocket:
    """
    Stands in for a protocol-library socket.

    Tests push connection events through the ``emit_*`` helpers, which
    await the session's listener callbacks just as the library would.
    """

    def __init__(
        self,
        identity: str,
        credential: SessionCredential,
        listener: SocketListener,
        pairing_code: str = PAIRING_CODE,
        account: str | None = None,
    ) -> None:
        self.identity = identity
        self.credential = credential
        self.listener = listener
        self.pairing_code = pairing_code
        self.account = account if account is not None else f"{identity}:1@s.whatsapp.net"
        self.pairing_requests: list[str] = []
        self.pairing_error: Exception | None = None
        self.closed = False

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        if self.pairing_error is not None:
            raise self.pairing_error
        return self.pairing_code

    def account_id(self) -> str | None:
        return self.account

    async def close(self) -> None:
        self.closed = True

    async def emit_qr(self, qr: str = "2@qr-payload") -> None:
        await self.listener.on_connection_update(ConnectionUpdate(qr=qr))

    async def emit_open(self) -> None:
        await self.listener.on_connection_update(ConnectionUpdate(connection="open"))

    async def emit_close(self, reason: int | None, error: str | None = None) -> None:
        await self.listener.on_connection_update(
            ConnectionUpdate(connection="close", reason=reason, error=error)
        )

    async def rotate(
        self,
        primary: dict[str, Any] | None = None,
        keys: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        await self.listener.on_credentials_update(CredentialsUpdate(primary=primary, keys=keys))


Script = Callable[[FakeSocket], Awaitable[None]]


async def default_script(socket: FakeSocket) -> None:
    """A fresh device asks to be linked; a registered one connects."""
    if socket.credential.is_empty:
        await socket.emit_qr()
    else:
        await socket.emit_open()


class FakeSocketFactory:
    """
    SocketFactory that builds FakeSockets and plays ``script`` against each
    one after it has been handed to the session.

    Set ``error`` to make the next builds fail.
    """

    def __init__(self, script: Script | None = default_script) -> None:
        self.script = script
        self.sockets: list[FakeSocket] = []
        self.error: Exception | None = None
        self._tasks: list[asyncio.Task[None]] = []

    async def __call__(
        self,
        identity: str,
        credential: SessionCredential,
        listener: SocketListener,
    ) -> FakeSocket:
        if self.error is not None:
            raise self.error
        socket = FakeSocket(identity, credential, listener)
        self.sockets.append(socket)
        if self.script is not None:
            self._tasks.append(asyncio.get_running_loop().create_task(self.script(socket)))
        return socket

    @property
    def calls(self) -> int:
        return len(self.sockets)

    async def wait_for_sockets(self, count: int, timeout: float = 1.0) -> FakeSocket:
        """Wait until ``count`` sockets exist and return the newest."""
        async def poll() -> None:
            while len(self.sockets) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(poll(), timeout)
        return self.sockets[-1]

    async def settle(self) -> None:
        """Let every scheduled script finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def store(backend: InMemoryBackend) -> CredentialStore:
    return CredentialStore(backend)


@pytest.fixture
def factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def manual_factory() -> FakeSocketFactory:
    """Factory whose sockets emit nothing until a test drives them."""
    return FakeSocketFactory(script=None)


@pytest_asyncio.fixture
async def registered(store: CredentialStore) -> SessionCredential:
    """A previously linked device for IDENTITY."""
    credential = SessionCredential(
        primary={"me": {"id": f"{IDENTITY}:1@s.whatsapp.net"}, "registered": True},
        keys={"pre-key": {"1": {"public": "AAA"}}},
    )
    assert await store.save(IDENTITY, credential)
    return credential


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
