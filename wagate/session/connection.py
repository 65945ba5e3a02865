"""
ConnectionSession: one protocol connection attempt for one identity.

A session loads the stored credential, asks the socket factory for a
connection, and then reacts to what the protocol library reports:

- a QR signal moves it to ``awaiting_credential`` and produces a
  bootstrap credential (QR or pairing code, per configuration);
- ``open`` marks the identity connected in the store and captures the
  account id when available;
- ``close`` is classified by the ReconnectPolicy and ends the session in
  ``reconnecting`` or ``terminated``. A terminal close deletes the stored
  credential.

Credential rotations are merged in memory immediately and written to the
store from a background task, so persistence never holds up the library's
event dispatch. Writes are coalesced: a burst of rotations is sent as one
delta, which the store merges into the saved record.

A session never reconnects itself. The LifecycleController watches for
``reconnecting`` and builds the next session.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable

from wagate.store import CredentialStore, SessionCredential, StoreError

from .models import (
    BootstrapKind,
    ConnectionClosed,
    ConnectionEvent,
    ConnectionOpened,
    ConnectionPhase,
    ConnectionState,
    CredentialReady,
    SessionSetupError,
)
from .policy import ReconnectAction, ReconnectPolicy
from .protocol import (
    BootstrapCredentialSource,
    ConnectionUpdate,
    CredentialsUpdate,
    ProtocolSocket,
    SocketFactory,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ConnectionEvent], None]


class ConnectionSession:
    """
    One generation of a protocol connection for an identity.

    The session implements the SocketListener callbacks the protocol
    library invokes. Other components observe it through
    :meth:`subscribe`; listeners are plain callables run synchronously, in
    the order events occur.

    Attributes:
        identity: The phone-number identity this session is for.
    """

    def __init__(
        self,
        identity: str,
        store: CredentialStore,
        socket_factory: SocketFactory,
        *,
        bootstrap_mode: BootstrapKind = BootstrapKind.PAIRING_CODE,
        policy: ReconnectPolicy | None = None,
        pairing_delay: float = 0.0,
        reconnect_count: int = 0,
    ) -> None:
        self.identity = identity
        self._store = store
        self._factory = socket_factory
        self._policy = policy or ReconnectPolicy()
        self._bootstrap = BootstrapCredentialSource(bootstrap_mode, pairing_delay)
        self._state = ConnectionState(reconnect_count=reconnect_count)
        self._credential = SessionCredential()
        self._socket: ProtocolSocket | None = None
        self._listeners: list[Listener] = []
        self._last_bootstrap: CredentialReady | None = None
        self._user_id: str | None = None
        self._pending_qr: str | None = None
        self._closed = asyncio.Event()
        self._persist_task: asyncio.Task[None] | None = None
        self._pending_primary: Any = None
        self._pending_keys: dict[str, dict[str, Any]] = {}
        self._resync = False
        self._unsaved_removals: dict[str, set[str]] = {}
        self._dirty = False
        self._discarded = False
        self._stopping = False

    # -- observation --

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def credential(self) -> SessionCredential:
        return self._credential

    @property
    def last_bootstrap(self) -> CredentialReady | None:
        """Most recent bootstrap credential, while still awaiting linking."""
        return self._last_bootstrap

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for lifecycle events. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: ConnectionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s for %s", type(event).__name__, self.identity)

    async def wait_closed(self) -> None:
        """Wait until the session has ended and its last save has landed."""
        await self._closed.wait()
        await self.flush()

    # -- lifecycle --

    async def start(self) -> None:
        """Load the stored credential and open the protocol socket."""
        self._state.move_to(ConnectionPhase.CONNECTING)

        try:
            stored = await self._store.load(self.identity)
        except StoreError as exc:
            logger.error("Cannot load credential for %s: %s", self.identity, exc)
            await self._fail(f"Credential store unavailable: {exc}", clear=False)
            return

        if self._state.is_final:
            return
        if stored is None:
            logger.info("No stored credential for %s; starting fresh", self.identity)
        self._credential = stored or SessionCredential()

        try:
            socket = await self._factory(self.identity, self._credential, self)
        except Exception as exc:
            if self._state.is_final:
                return
            logger.exception("Failed to set up connection for %s", self.identity)
            await self._fail(f"Failed to connect: {exc}", clear=True)
            return

        if self._stopping:
            # Stopped while the handshake was being set up
            await socket.close()
            return
        self._socket = socket

        if self._pending_qr is not None and not self._state.is_final:
            qr, self._pending_qr = self._pending_qr, None
            await self._handle_qr(qr)

    async def stop(self, discard_credentials: bool = False, message: str = "Session stopped") -> None:
        """
        End the session on request rather than on a protocol close.

        Args:
            discard_credentials: Stop persisting rotations (the caller is
                about to delete the stored credential) and report the stop
                as terminal to listeners.
            message: Reason passed to listeners.
        """
        if self._state.is_final or self._stopping:
            return
        self._stopping = True
        self._last_bootstrap = None
        if discard_credentials:
            self._discarded = True

        if self._socket is not None:
            try:
                await self._socket.close()
            except Exception:
                logger.warning("Error closing socket for %s", self.identity, exc_info=True)

        if self._state.phase is ConnectionPhase.OPEN:
            try:
                await self._store.clear_connected(self.identity)
            except StoreError:
                logger.warning("Could not clear connected marker for %s", self.identity, exc_info=True)

        if self._state.is_final:
            # A protocol close finished first
            return
        self._state.move_to(ConnectionPhase.TERMINATED)
        action = ReconnectAction.TERMINATE if discard_credentials else ReconnectAction.IGNORE
        self._emit(ConnectionClosed(reason=None, action=action, message=message))
        self._closed.set()
        await self.flush()

    async def request_pairing_code(self) -> str:
        """
        Request a pairing code for this connection attempt.

        Raises:
            SessionSetupError: If the socket is not up or a code was already
                requested this attempt.
        """
        if self._socket is None:
            raise SessionSetupError(f"No socket for {self.identity} yet")
        ready = await self._bootstrap.request_pairing_code(self._socket, self.identity)
        self._publish_bootstrap(ready)
        return ready.value

    async def _fail(self, message: str, clear: bool) -> None:
        self._discarded = clear
        self._last_bootstrap = None
        self._state.move_to(ConnectionPhase.TERMINATED)
        if clear:
            await self.flush()
            try:
                await self._store.delete(self.identity)
            except StoreError:
                logger.warning("Cleanup after setup failure incomplete for %s", self.identity)
        self._emit(ConnectionClosed(reason=None, action=ReconnectAction.TERMINATE, message=message))
        self._closed.set()

    # -- SocketListener --

    async def on_connection_update(self, update: ConnectionUpdate) -> None:
        if self._stopping or self._state.is_final:
            return

        if update.qr:
            await self._handle_qr(update.qr)

        if update.connection == "open":
            await self._handle_open()
        elif update.connection == "close":
            await self._handle_close(update.reason, update.error)

    async def on_credentials_update(self, update: CredentialsUpdate) -> None:
        if self._discarded:
            return
        self._credential.merge(update.primary, update.keys)
        if update.primary:
            self._pending_primary = copy.deepcopy(update.primary)
        for key_type, entries in (update.keys or {}).items():
            self._pending_keys.setdefault(key_type, {}).update(copy.deepcopy(entries))
        self._schedule_persist()

    # -- transitions --

    async def _handle_qr(self, qr: str) -> None:
        if self._state.phase is ConnectionPhase.CONNECTING:
            self._state.move_to(ConnectionPhase.AWAITING_CREDENTIAL)
        elif self._state.phase is not ConnectionPhase.AWAITING_CREDENTIAL:
            return

        if self._socket is None:
            # Library signalled before the factory returned
            self._pending_qr = qr
            return

        try:
            ready = await self._bootstrap.produce(self._socket, self.identity, qr)
        except Exception:
            logger.exception("Bootstrap credential request failed for %s", self.identity)
            return

        if ready is not None:
            self._publish_bootstrap(ready)

    def _publish_bootstrap(self, ready: CredentialReady) -> None:
        if self._state.phase is not ConnectionPhase.AWAITING_CREDENTIAL:
            return
        self._last_bootstrap = ready
        logger.info("Bootstrap %s ready for %s", ready.kind.value, self.identity)
        self._emit(ready)

    async def _handle_open(self) -> None:
        if not self._state.can_move_to(ConnectionPhase.OPEN):
            return
        self._state.move_to(ConnectionPhase.OPEN)
        self._state.reconnect_count = 0
        self._last_bootstrap = None
        self._user_id = self._capture_account_id()

        try:
            await self._store.mark_connected(self.identity)
            if self._user_id:
                await self._store.save_account(self.identity, self._user_id)
        except StoreError:
            logger.warning("Could not record connection for %s", self.identity, exc_info=True)

        if self._state.is_final:
            return
        logger.info("Connected: %s (user=%s)", self.identity, self._user_id)
        self._emit(ConnectionOpened(user_id=self._user_id))

    def _capture_account_id(self) -> str | None:
        if self._socket is None:
            return None
        try:
            return self._socket.account_id()
        except Exception:
            logger.warning("Account id unavailable for %s", self.identity, exc_info=True)
            return None

    async def _handle_close(self, reason: int | None, error: str | None) -> None:
        if not self._state.can_move_to(ConnectionPhase.CLOSING):
            return
        self._state.move_to(ConnectionPhase.CLOSING)
        self._state.last_disconnect_reason = reason
        self._last_bootstrap = None

        try:
            await self._store.clear_connected(self.identity)
        except StoreError:
            logger.warning("Could not clear connected marker for %s", self.identity, exc_info=True)

        action = self._policy.decide(reason, self._state.reconnect_count)
        logger.info("Connection closed for %s (reason=%s, action=%s)", self.identity, reason, action.value)

        if action is ReconnectAction.TERMINATE:
            self._discarded = True
            await self.flush()
            try:
                await self._store.delete(self.identity)
            except StoreError:
                logger.warning("Credential cleanup incomplete for %s", self.identity, exc_info=True)

        if self._state.is_final:
            # stop() finished while the close was being handled
            return
        if action is ReconnectAction.RETRY:
            self._state.move_to(ConnectionPhase.RECONNECTING)
        else:
            self._state.move_to(ConnectionPhase.TERMINATED)

        message = error or _close_message(self.identity, reason, action)
        self._emit(ConnectionClosed(reason=reason, action=action, message=message))
        self._closed.set()

    # -- persistence --

    def _schedule_persist(self) -> None:
        self._dirty = True
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.get_running_loop().create_task(self._persist_loop())

    async def _persist_loop(self) -> None:
        while self._dirty and not self._discarded:
            self._dirty = False
            if self._resync:
                self._note_removals(self._pending_keys)
                delta = self._resync_credential()
            else:
                delta = SessionCredential(primary=self._pending_primary or {}, keys=self._pending_keys)
            self._pending_primary, self._pending_keys, self._resync = None, {}, False
            if await self._store.save(self.identity, delta):
                self._unsaved_removals = {}
                continue
            # Lost delta is still in memory; send everything next time
            self._resync = True
            self._note_removals(delta.keys)

    def _note_removals(self, keys: dict[str, dict[str, Any]]) -> None:
        for key_type, entries in keys.items():
            for key_id, value in entries.items():
                if value is None:
                    self._unsaved_removals.setdefault(key_type, set()).add(key_id)

    def _resync_credential(self) -> SessionCredential:
        """Full in-memory credential plus removals the store has not seen yet."""
        full = self._credential.copy()
        for key_type, key_ids in self._unsaved_removals.items():
            bucket = full.keys.setdefault(key_type, {})
            for key_id in key_ids:
                bucket.setdefault(key_id, None)
        return full

    async def flush(self) -> None:
        """Wait for any scheduled credential save to finish."""
        while self._persist_task is not None and not self._persist_task.done():
            await asyncio.shield(self._persist_task)

    def __repr__(self) -> str:
        return f"<ConnectionSession identity={self.identity} phase={self._state.phase.value}>"


def _close_message(identity: str, reason: int | None, action: ReconnectAction) -> str:
    if action is ReconnectAction.TERMINATE:
        return f"{identity} was logged out (reason {reason}); credentials cleared"
    if action is ReconnectAction.RETRY:
        return f"Connection for {identity} lost (reason {reason}); reconnecting"
    return f"Connection for {identity} closed"
