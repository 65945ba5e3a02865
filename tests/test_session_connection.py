"""Tests for wagate.session.connection: the per-attempt state machine."""

from __future__ import annotations

import asyncio

import pytest

from wagate.session import (
    BootstrapKind,
    ConnectionClosed,
    ConnectionOpened,
    ConnectionPhase,
    ConnectionSession,
    ConnectionUpdate,
    CredentialReady,
    ReconnectAction,
    ReconnectPolicy,
    SessionSetupError,
    unconfigured_socket_factory,
)
from wagate.store import CredentialStore, InMemoryBackend, SessionCredential, StoreError

from conftest import PAIRING_CODE, FakeSocket

IDENTITY = "6281234567890"
ACCOUNT = f"{IDENTITY}:1@s.whatsapp.net"


def make_session(store, factory, **kwargs) -> tuple[ConnectionSession, list]:
    kwargs.setdefault("policy", ReconnectPolicy(delay=0))
    session = ConnectionSession(IDENTITY, store, factory, **kwargs)
    events: list = []
    session.subscribe(events.append)
    return session, events


class UnreadableBackend(InMemoryBackend):
    async def get(self, key):
        raise StoreError("connection refused")


class UnwritableBackend(InMemoryBackend):
    broken = True

    async def set(self, key, value, ex=None):
        if self.broken:
            raise StoreError("read-only replica")
        await super().set(key, value, ex=ex)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

class TestBootstrap:
    @pytest.mark.asyncio
    async def test_fresh_identity_gets_pairing_code(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        assert session.phase is ConnectionPhase.CONNECTING

        socket = manual_factory.sockets[0]
        await socket.emit_qr()

        assert session.phase is ConnectionPhase.AWAITING_CREDENTIAL
        assert events == [CredentialReady(kind=BootstrapKind.PAIRING_CODE, value=PAIRING_CODE)]
        assert session.last_bootstrap == events[0]
        assert socket.pairing_requests == [IDENTITY]

    @pytest.mark.asyncio
    async def test_pairing_code_requested_once_per_attempt(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]

        await socket.emit_qr("first")
        await socket.emit_qr("second")

        assert socket.pairing_requests == [IDENTITY]
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_explicit_second_request_is_refused(self, store, manual_factory):
        session, _ = make_session(store, manual_factory)
        await session.start()
        await manual_factory.sockets[0].emit_qr()

        with pytest.raises(SessionSetupError):
            await session.request_pairing_code()

    @pytest.mark.asyncio
    async def test_request_before_socket_is_refused(self, store, manual_factory):
        session, _ = make_session(store, manual_factory)
        with pytest.raises(SessionSetupError):
            await session.request_pairing_code()

    @pytest.mark.asyncio
    async def test_failed_pairing_request_is_retried_on_next_qr(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]

        socket.pairing_error = RuntimeError("socket not ready")
        await socket.emit_qr()
        assert events == []
        assert session.phase is ConnectionPhase.AWAITING_CREDENTIAL

        socket.pairing_error = None
        await socket.emit_qr()
        assert [e.value for e in events] == [PAIRING_CODE]
        assert len(socket.pairing_requests) == 2

    @pytest.mark.asyncio
    async def test_qr_mode_publishes_every_qr(self, store, manual_factory):
        session, events = make_session(store, manual_factory, bootstrap_mode=BootstrapKind.QR)
        await session.start()
        socket = manual_factory.sockets[0]

        await socket.emit_qr("qr-1")
        await socket.emit_qr("qr-2")

        assert events == [
            CredentialReady(kind=BootstrapKind.QR, value="qr-1"),
            CredentialReady(kind=BootstrapKind.QR, value="qr-2"),
        ]
        assert socket.pairing_requests == []

    @pytest.mark.asyncio
    async def test_qr_before_factory_returns_is_handled(self, store):
        async def eager_factory(identity, credential, listener):
            socket = FakeSocket(identity, credential, listener)
            await listener.on_connection_update(ConnectionUpdate(qr="early"))
            return socket

        session, events = make_session(store, eager_factory)
        await session.start()

        assert session.phase is ConnectionPhase.AWAITING_CREDENTIAL
        assert [e.value for e in events] == [PAIRING_CODE]


# ---------------------------------------------------------------------------
# Open
# ---------------------------------------------------------------------------

class TestOpen:
    @pytest.mark.asyncio
    async def test_registered_identity_opens(self, store, manual_factory, registered):
        session, events = make_session(store, manual_factory)
        await session.start()
        assert session.credential == registered

        await manual_factory.sockets[0].emit_open()

        assert session.phase is ConnectionPhase.OPEN
        assert events == [ConnectionOpened(user_id=ACCOUNT)]
        assert session.user_id == ACCOUNT
        assert await store.is_connected(IDENTITY)
        assert await store.get_account(IDENTITY) == ACCOUNT

    @pytest.mark.asyncio
    async def test_open_after_pairing_clears_bootstrap(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]
        await socket.emit_qr()
        await socket.emit_open()

        assert session.phase is ConnectionPhase.OPEN
        assert session.last_bootstrap is None
        assert isinstance(events[-1], ConnectionOpened)

    @pytest.mark.asyncio
    async def test_missing_account_id_does_not_block_open(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]
        socket.account = ""
        await socket.emit_open()

        assert session.phase is ConnectionPhase.OPEN
        assert events == [ConnectionOpened(user_id="")]
        assert await store.get_account(IDENTITY) is None

    @pytest.mark.asyncio
    async def test_open_resets_reconnect_count(self, store, manual_factory):
        session, _ = make_session(store, manual_factory, reconnect_count=3)
        await session.start()
        await manual_factory.sockets[0].emit_open()
        assert session.state.reconnect_count == 0


# ---------------------------------------------------------------------------
# Credential rotation
# ---------------------------------------------------------------------------

class TestCredentialRotation:
    @pytest.mark.asyncio
    async def test_rotations_are_merged_and_persisted(self, store, manual_factory):
        session, _ = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]

        await socket.rotate(primary={"me": {"id": ACCOUNT}}, keys={"pre-key": {"1": "a"}})
        await socket.rotate(keys={"pre-key": {"2": "b"}, "session": {"peer": "s"}})
        await session.flush()

        stored = await store.load(IDENTITY)
        assert stored.primary == {"me": {"id": ACCOUNT}}
        assert stored.keys == {"pre-key": {"1": "a", "2": "b"}, "session": {"peer": "s"}}
        assert session.credential == stored

    @pytest.mark.asyncio
    async def test_retired_keys_are_removed_from_store(self, store, manual_factory, registered):
        session, _ = make_session(store, manual_factory)
        await session.start()

        await manual_factory.sockets[0].rotate(keys={"pre-key": {"1": None, "9": "n"}})
        await session.flush()

        stored = await store.load(IDENTITY)
        assert stored.keys == {"pre-key": {"9": "n"}}
        assert stored.primary == registered.primary

    @pytest.mark.asyncio
    async def test_rotation_does_not_wait_for_store(self, store, manual_factory):
        session, _ = make_session(store, manual_factory)
        await session.start()

        await manual_factory.sockets[0].rotate(primary={"v": 1})
        # merged in memory before any save ran
        assert session.credential.primary == {"v": 1}
        await session.flush()
        assert (await store.load(IDENTITY)).primary == {"v": 1}

    @pytest.mark.asyncio
    async def test_failed_save_is_resent_in_full(self, manual_factory):
        backend = UnwritableBackend()
        store = CredentialStore(backend)
        session, _ = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]

        await socket.rotate(primary={"v": 1}, keys={"pre-key": {"1": "a"}})
        await session.flush()
        assert await store.load(IDENTITY) is None

        backend.broken = False
        await socket.rotate(keys={"pre-key": {"2": "b"}})
        await session.flush()

        stored = await store.load(IDENTITY)
        assert stored.primary == {"v": 1}
        assert stored.keys == {"pre-key": {"1": "a", "2": "b"}}

    @pytest.mark.asyncio
    async def test_key_removed_during_outage_is_removed_on_resync(self, manual_factory, registered):
        backend = UnwritableBackend()
        store = CredentialStore(backend)
        backend.broken = False
        assert await store.save(IDENTITY, registered)

        session, _ = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]

        backend.broken = True
        await socket.rotate(keys={"pre-key": {"1": None}})
        await session.flush()

        backend.broken = False
        await socket.rotate(keys={"pre-key": {"2": "b"}, "session": {"peer": None}})
        await session.flush()

        stored = await store.load(IDENTITY)
        assert stored.keys == {"pre-key": {"2": "b"}}
        assert stored.primary == registered.primary


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------

class TestClose:
    @pytest.mark.asyncio
    async def test_logged_out_clears_credentials(self, store, manual_factory, registered):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]
        await socket.emit_open()
        await socket.emit_close(401)

        assert session.phase is ConnectionPhase.TERMINATED
        assert session.is_closed
        assert events[-1].action is ReconnectAction.TERMINATE
        assert events[-1].reason == 401

        info = await store.info(IDENTITY)
        assert (info.exists, info.connected) == (False, False)
        assert IDENTITY not in await store.list()

    @pytest.mark.asyncio
    async def test_transient_close_moves_to_reconnecting(self, store, manual_factory, registered):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]
        await socket.emit_open()
        await socket.emit_close(428, error="Connection Closed")

        assert session.phase is ConnectionPhase.RECONNECTING
        assert session.state.last_disconnect_reason == 428
        assert events[-1] == ConnectionClosed(reason=428, action=ReconnectAction.RETRY, message="Connection Closed")

        info = await store.info(IDENTITY)
        assert info.exists is True
        assert info.connected is False

    @pytest.mark.asyncio
    async def test_clean_close_is_ignored(self, store, manual_factory, registered):
        session, events = make_session(store, manual_factory)
        await session.start()
        await manual_factory.sockets[0].emit_close(None)

        assert session.phase is ConnectionPhase.TERMINATED
        assert events[-1].action is ReconnectAction.IGNORE
        assert (await store.info(IDENTITY)).exists is True

    @pytest.mark.asyncio
    async def test_reconnect_cap_keeps_credentials(self, store, manual_factory, registered):
        session, events = make_session(
            store, manual_factory, policy=ReconnectPolicy(delay=0, max_attempts=2), reconnect_count=2
        )
        await session.start()
        await manual_factory.sockets[0].emit_close(408)

        assert session.phase is ConnectionPhase.TERMINATED
        assert events[-1].action is ReconnectAction.IGNORE
        assert (await store.info(IDENTITY)).exists is True

    @pytest.mark.asyncio
    async def test_events_after_close_are_ignored(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]
        await socket.emit_close(401)
        count = len(events)

        await socket.emit_open()
        await socket.emit_qr()
        await socket.rotate(primary={"v": 1})
        await session.flush()

        assert len(events) == count
        assert await store.load(IDENTITY) is None

    @pytest.mark.asyncio
    async def test_wait_closed(self, store, manual_factory):
        session, _ = make_session(store, manual_factory)
        await session.start()
        waiter = asyncio.create_task(session.wait_closed())
        await asyncio.sleep(0)
        assert not waiter.done()

        await manual_factory.sockets[0].emit_close(428)
        await asyncio.wait_for(waiter, 1.0)


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------

class TestStop:
    @pytest.mark.asyncio
    async def test_stop_keeps_credentials(self, store, manual_factory, registered):
        session, events = make_session(store, manual_factory)
        await session.start()
        socket = manual_factory.sockets[0]
        await socket.emit_open()

        await session.stop()

        assert socket.closed
        assert session.phase is ConnectionPhase.TERMINATED
        assert events[-1].action is ReconnectAction.IGNORE
        assert (await store.info(IDENTITY)).exists is True

    @pytest.mark.asyncio
    async def test_stop_with_discard_reports_terminate(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        await session.stop(discard_credentials=True, message="deleted")

        assert events[-1] == ConnectionClosed(reason=None, action=ReconnectAction.TERMINATE, message="deleted")

        await manual_factory.sockets[0].rotate(primary={"v": 1})
        await session.flush()
        assert await store.load(IDENTITY) is None

    @pytest.mark.asyncio
    async def test_stop_twice_is_harmless(self, store, manual_factory):
        session, events = make_session(store, manual_factory)
        await session.start()
        await session.stop()
        await session.stop()
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_stop_during_setup_closes_late_socket(self, store):
        gate = asyncio.Event()
        built: list[FakeSocket] = []

        async def slow_factory(identity, credential, listener):
            await gate.wait()
            socket = FakeSocket(identity, credential, listener)
            built.append(socket)
            return socket

        session, _ = make_session(store, slow_factory)
        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0.01)

        await session.stop()
        gate.set()
        await starting

        assert built[0].closed
        assert session.phase is ConnectionPhase.TERMINATED


# ---------------------------------------------------------------------------
# Setup failures
# ---------------------------------------------------------------------------

class TestSetupFailure:
    @pytest.mark.asyncio
    async def test_factory_error_terminates_and_clears(self, store, manual_factory, registered):
        manual_factory.error = RuntimeError("handshake refused")
        session, events = make_session(store, manual_factory)
        await session.start()

        assert session.phase is ConnectionPhase.TERMINATED
        assert session.is_closed
        assert events[-1].action is ReconnectAction.TERMINATE
        assert "handshake refused" in events[-1].message
        assert (await store.info(IDENTITY)).exists is False

    @pytest.mark.asyncio
    async def test_unconfigured_protocol(self, store):
        session, events = make_session(store, unconfigured_socket_factory)
        await session.start()
        assert events[-1].action is ReconnectAction.TERMINATE
        assert "SOCKET_FACTORY" in events[-1].message

    @pytest.mark.asyncio
    async def test_unreadable_store_fails_without_clearing(self, manual_factory):
        backend = UnreadableBackend()
        store = CredentialStore(backend)
        await backend.set(store.session_key(IDENTITY), '{"primary_credential": {"v": 1}, "keys": {}}')

        session, events = make_session(store, manual_factory)
        await session.start()

        assert session.phase is ConnectionPhase.TERMINATED
        assert events[-1].action is ReconnectAction.TERMINATE
        assert "unavailable" in events[-1].message
        assert manual_factory.calls == 0
        assert await backend.exists(store.session_key(IDENTITY))
