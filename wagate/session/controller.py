"""
LifecycleController: the entry point for wagate's session operations.

The controller keeps at most one live session lineage per identity. A
lineage is a supervisor task that runs ConnectionSession generations one
after another: when a generation ends in ``reconnecting`` the supervisor
waits out the policy delay and starts a fresh generation for the same
identity. Reconnecting is a loop inside one task, never a nested call.

Connect requests attach to the lineage (spawning it if needed) through a
ResponseArbiter and return as soon as it resolves. The lineage outlives
the request; it ends only when a generation terminates or when the
identity is deleted or the controller shuts down.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from wagate.store import CredentialStore, SessionInfo, StoreError

from .arbiter import ConnectResult, ResponseArbiter
from .connection import ConnectionSession, Listener
from .models import (
    BootstrapKind,
    ConnectionEvent,
    ConnectionOpened,
    ConnectionPhase,
    normalize_identity,
)
from .policy import ReconnectPolicy
from .protocol import SocketFactory

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_DEADLINE = 30.0


class SessionLineage:
    """
    Successive ConnectionSession generations for one identity.

    Listeners registered here receive events from whichever generation is
    current, so a request that attached during a reconnect still hears the
    next generation's outcome.
    """

    def __init__(self, identity: str) -> None:
        self.identity = identity
        self.session: ConnectionSession | None = None
        self.task: asyncio.Task[None] | None = None
        self.generation = 0
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, event: ConnectionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s for %s", type(event).__name__, self.identity)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    def replay(self, listener: Listener) -> None:
        """Bring a late listener up to date with the current generation."""
        session = self.session
        if session is None:
            return
        if session.phase is ConnectionPhase.OPEN:
            listener(ConnectionOpened(user_id=session.user_id))
        elif (
            session.phase is ConnectionPhase.AWAITING_CREDENTIAL
            and session.last_bootstrap is not None
        ):
            listener(session.last_bootstrap)

    def __repr__(self) -> str:
        phase = self.session.phase.value if self.session else "none"
        return f"<SessionLineage identity={self.identity} generation={self.generation} phase={phase}>"


class LifecycleController:
    """
    Orchestrates connect / list / info / delete for all identities.

    Example:
        controller = LifecycleController(store, socket_factory)

        result = await controller.connect("6281234567890")
        if result.pairing_code:
            print(f"Enter {result.pairing_code} on the phone")

        await controller.shutdown()
    """

    def __init__(
        self,
        store: CredentialStore,
        socket_factory: SocketFactory,
        *,
        bootstrap_mode: BootstrapKind = BootstrapKind.PAIRING_CODE,
        policy: ReconnectPolicy | None = None,
        connect_deadline: float = DEFAULT_CONNECT_DEADLINE,
        pairing_delay: float = 0.0,
    ) -> None:
        if connect_deadline <= 0:
            raise ValueError("connect_deadline must be positive")
        self._store = store
        self._factory = socket_factory
        self._bootstrap_mode = bootstrap_mode
        self._policy = policy or ReconnectPolicy()
        self._deadline = connect_deadline
        self._pairing_delay = pairing_delay
        self._lineages: dict[str, SessionLineage] = {}

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def active_identities(self) -> set[str]:
        return {identity for identity, lineage in self._lineages.items() if lineage.is_running}

    def get_session(self, identity: str) -> ConnectionSession | None:
        lineage = self._lineages.get(normalize_identity(identity))
        return lineage.session if lineage else None

    # -- connect --

    async def connect(self, identity: str, timeout: float | None = None) -> ConnectResult:
        """
        Connect ``identity`` and return the first decisive outcome.

        Attaches to the identity's live lineage if one exists, otherwise
        starts one. Never raises for protocol or store trouble: those come
        back as an ERROR result.

        Raises:
            InvalidIdentity: If ``identity`` is not a phone number.
        """
        identity = normalize_identity(identity)
        arbiter = ResponseArbiter(identity)

        lineage = self._lineages.get(identity)
        if lineage is not None and lineage.is_running:
            logger.info("Attaching connect request to live session for %s", identity)
            lineage.replay(arbiter.offer)
            unsubscribe = lineage.subscribe(arbiter.offer)
        else:
            lineage = SessionLineage(identity)
            self._lineages[identity] = lineage
            unsubscribe = lineage.subscribe(arbiter.offer)
            lineage.task = asyncio.get_running_loop().create_task(
                self._supervise(lineage), name=f"wagate-session-{identity}"
            )

        try:
            return await arbiter.wait(timeout if timeout is not None else self._deadline)
        finally:
            unsubscribe()

    def _new_session(self, identity: str, reconnect_count: int) -> ConnectionSession:
        return ConnectionSession(
            identity,
            self._store,
            self._factory,
            bootstrap_mode=self._bootstrap_mode,
            policy=self._policy,
            pairing_delay=self._pairing_delay,
            reconnect_count=reconnect_count,
        )

    async def _supervise(self, lineage: SessionLineage) -> None:
        reconnect_count = 0
        try:
            while True:
                session = self._new_session(lineage.identity, reconnect_count)
                session.subscribe(lineage.dispatch)
                lineage.session = session
                lineage.generation += 1

                await session.start()
                await session.wait_closed()

                if session.phase is not ConnectionPhase.RECONNECTING:
                    break

                reconnect_count = session.state.reconnect_count + 1
                logger.info(
                    "Reconnecting %s in %.1fs (attempt %d)",
                    lineage.identity, self._policy.delay, reconnect_count,
                )
                await asyncio.sleep(self._policy.delay)
        finally:
            if self._lineages.get(lineage.identity) is lineage:
                del self._lineages[lineage.identity]
            logger.info("Session lineage for %s ended", lineage.identity)

    # -- control surface --

    async def info(self, identity: str) -> SessionInfo:
        return await self._store.info(normalize_identity(identity))

    async def list_sessions(self) -> list[SessionInfo]:
        """Known identities with their store state, sorted by identity."""
        identities = await self._store.list()
        return [await self._store.info(identity) for identity in sorted(identities)]

    async def delete(self, identity: str) -> None:
        """
        Log ``identity`` out locally: stop its lineage and clear the store.

        Works whether or not a session is live.

        Raises:
            StoreError: If the store could not be fully cleared.
        """
        identity = normalize_identity(identity)
        await self._stop_lineage(identity, discard_credentials=True, message=f"Session for {identity} deleted")
        await self._store.delete(identity)
        logger.info("Deleted session for %s", identity)

    async def stats(self) -> dict[str, Any]:
        return {
            **await self._store.counts(),
            "live_connections": len(self.active_identities),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def shutdown(self) -> None:
        """Stop every lineage, keeping stored credentials."""
        for identity in list(self._lineages):
            await self._stop_lineage(identity, discard_credentials=False, message="Server shutting down")

    async def _stop_lineage(self, identity: str, discard_credentials: bool, message: str) -> None:
        lineage = self._lineages.pop(identity, None)
        if lineage is None:
            return

        task = lineage.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if lineage.session is not None:
            try:
                await lineage.session.stop(discard_credentials=discard_credentials, message=message)
            except StoreError:
                logger.warning("Final save failed while stopping %s", identity, exc_info=True)

    def __repr__(self) -> str:
        return f"<LifecycleController live={len(self.active_identities)}>"
