"""
Credential persistence for wagate.

This module owns the durable side of a WhatsApp device session: the
rotating primary credential and the auxiliary signal keys, stored per
identity with a TTL, plus the small set of companion records (the
"connected" marker, cached account metadata, and the global identity set)
that the control surface reads.

Store layout (``prefix`` defaults to ``whatsapp``)::

    {prefix}:session:{identity}     JSON credential record, TTL = session_ttl
    {prefix}:connected:{identity}   "true" while a connection is open, TTL = connected_ttl
    {prefix}:user:{identity}        account id captured on open, TTL = session_ttl
    {prefix}:sessions:list          set of every identity with a saved record

Failure semantics:
- ``load`` fails closed. Unparseable or structurally invalid records are
  deleted and reported as absent.
- ``save`` never raises. It merges into the stored record. Empty
  credentials are rejected and backend errors are logged.
- ``delete`` attempts all four removals even if some fail, then raises
  StoreError naming what could not be removed.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from . import codec
from .backend import TTL_MISSING, TTL_PERSISTENT, KeyValueBackend, StoreError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 30 * 24 * 3600
DEFAULT_CONNECTED_TTL = 24 * 3600


@dataclass
class SessionCredential:
    """
    Authentication material for one identity.

    Attributes:
        primary: The rotating core credential record. Opaque to wagate;
            usually a dict, but any codec-serializable value (bytes
            included) is kept as is.
        keys: Auxiliary key material, ``{key_type: {key_id: value}}``.
    """

    primary: Any = field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.primary and not any(self.keys.values())

    def merge(
        self,
        primary: Any = None,
        keys: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        """
        Apply a rotation from the protocol library.

        A non-empty ``primary`` replaces the current one; an empty or
        missing one is ignored so a populated credential is never blanked.
        Key entries are upserted per type. An entry whose value is None is
        removed, which is how the protocol retires one-time keys.
        """
        if primary:
            self.primary = dict(primary) if isinstance(primary, dict) else primary
        for key_type, entries in (keys or {}).items():
            bucket = self.keys.setdefault(key_type, {})
            for key_id, value in entries.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = value
            if not bucket:
                del self.keys[key_type]

    def get_keys(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        """Return the stored entries of ``key_type`` among ``ids``."""
        bucket = self.keys.get(key_type, {})
        return {key_id: bucket[key_id] for key_id in ids if key_id in bucket}

    def copy(self) -> SessionCredential:
        return SessionCredential(
            primary=copy.deepcopy(self.primary),
            keys=copy.deepcopy(self.keys),
        )

    def to_record(self) -> dict[str, Any]:
        return {"primary_credential": self.primary, "keys": self.keys}

    @classmethod
    def from_record(cls, data: Any) -> SessionCredential:
        """
        Normalize a decoded record into a SessionCredential.

        Accepts the canonical ``{"primary_credential", "keys"}`` shape and
        the older ``{"creds", "keys"}`` shape. The primary credential is
        opaque and kept whatever its type.

        Raises:
            codec.CorruptRecord: If the record is not an object, carries
                neither a primary credential nor a key map, or the key map
                has the wrong shape.
        """
        if not isinstance(data, dict):
            raise codec.CorruptRecord("record is not a JSON object")

        primary = data.get("primary_credential", data.get("creds"))
        keys = data.get("keys")
        if primary is None and keys is None:
            raise codec.CorruptRecord("record has neither primary_credential nor keys")

        if keys is not None:
            if not isinstance(keys, dict) or not all(
                isinstance(v, dict) for v in keys.values()
            ):
                raise codec.CorruptRecord("keys must map key types to objects")

        return cls(primary=primary or {}, keys=keys or {})


@dataclass
class SessionInfo:
    """Point-in-time view of what the store holds for one identity."""

    identity: str
    exists: bool
    connected: bool
    ttl: int

    @property
    def expires_days(self) -> int | None:
        return self.ttl // 86400 if self.ttl > 0 else None

    @property
    def expires_in_human(self) -> str:
        if self.ttl > 0:
            days, rest = divmod(self.ttl, 86400)
            return f"{days} days {rest // 3600} hours"
        if self.ttl == TTL_PERSISTENT:
            return "no expiry"
        return "n/a"

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "exists": self.exists,
            "connected": self.connected,
            "ttl": self.ttl,
            "expires_days": self.expires_days,
            "expires_in_human": self.expires_in_human,
        }


class CredentialStore:
    """
    Typed access to persisted session credentials.

    Example:
        store = CredentialStore(InMemoryBackend())

        await store.save("6281234567890", SessionCredential(primary={"me": "x"}))
        credential = await store.load("6281234567890")

        info = await store.info("6281234567890")
        assert info.exists and not info.connected
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        prefix: str = "whatsapp",
        session_ttl: int = DEFAULT_SESSION_TTL,
        connected_ttl: int = DEFAULT_CONNECTED_TTL,
    ) -> None:
        if session_ttl <= 0 or connected_ttl <= 0:
            raise ValueError("TTLs must be positive")
        self._backend = backend
        self._prefix = prefix
        self._session_ttl = session_ttl
        self._connected_ttl = connected_ttl

    @property
    def backend(self) -> KeyValueBackend:
        return self._backend

    @property
    def session_ttl(self) -> int:
        return self._session_ttl

    # -- keys --

    def session_key(self, identity: str) -> str:
        return f"{self._prefix}:session:{identity}"

    def connected_key(self, identity: str) -> str:
        return f"{self._prefix}:connected:{identity}"

    def user_key(self, identity: str) -> str:
        return f"{self._prefix}:user:{identity}"

    @property
    def index_key(self) -> str:
        return f"{self._prefix}:sessions:list"

    # -- credential record --

    async def load(self, identity: str) -> SessionCredential | None:
        """
        Load the stored credential for ``identity``.

        Returns:
            The credential, or None if nothing usable is stored.

        Raises:
            StoreError: If the backend cannot be read. Absence and
                corruption are not errors.
        """
        raw = await self._backend.get(self.session_key(identity))
        if raw is None:
            return None

        try:
            return SessionCredential.from_record(codec.loads(raw))
        except codec.CorruptRecord as exc:
            logger.warning("Discarding corrupt credential record for %s: %s", identity, exc)
            await self._purge_record(identity)
            return None

    async def save(self, identity: str, credential: SessionCredential | None) -> bool:
        """
        Merge ``credential`` into the stored record and refresh its TTL.

        The stored primary credential is replaced only by a non-empty one.
        Key entries are upserted into the stored key map; an entry whose
        value is None is removed from it. A corrupt stored record is
        overwritten.

        Returns:
            True if written, False if rejected or the backend failed.
        """
        if credential is None or credential.is_empty:
            logger.warning("Refusing to save empty credential for %s", identity)
            return False

        key = self.session_key(identity)
        try:
            raw = await self._backend.get(key)
            merged = SessionCredential()
            if raw is not None:
                try:
                    merged = SessionCredential.from_record(codec.loads(raw))
                except codec.CorruptRecord as exc:
                    logger.warning("Overwriting corrupt credential record for %s: %s", identity, exc)
            merged.merge(credential.primary, credential.keys)

            try:
                payload = codec.dumps(merged.to_record())
            except (TypeError, ValueError):
                logger.exception("Credential for %s is not serializable", identity)
                return False

            await self._backend.set(key, payload, ex=self._session_ttl)
            await self._backend.sadd(self.index_key, identity)
        except StoreError:
            logger.exception("Failed to save credential for %s", identity)
            return False
        return True

    async def delete(self, identity: str) -> None:
        """
        Remove every record held for ``identity``.

        Each removal is attempted independently; records that were never
        written are simply skipped by the backend.

        Raises:
            StoreError: If any removal failed, after all were attempted.
        """
        failed: list[str] = []
        for key in (
            self.session_key(identity),
            self.connected_key(identity),
            self.user_key(identity),
        ):
            try:
                await self._backend.delete(key)
            except StoreError:
                logger.exception("Failed to delete %s", key)
                failed.append(key)

        try:
            await self._backend.srem(self.index_key, identity)
        except StoreError:
            logger.exception("Failed to drop %s from %s", identity, self.index_key)
            failed.append(self.index_key)

        if failed:
            raise StoreError(f"Partial delete for {identity}: {', '.join(failed)}")

    async def list(self) -> set[str]:
        """Identities in the global set. A listed identity may have expired."""
        return await self._backend.smembers(self.index_key)

    async def count(self) -> int:
        return await self._backend.scard(self.index_key)

    async def counts(self) -> dict[str, int]:
        """Known identities split by whether a connected marker is live."""
        identities = await self.list()
        active = 0
        for identity in identities:
            if await self.is_connected(identity):
                active += 1
        return {
            "total_sessions": len(identities),
            "active_sessions": active,
            "inactive_sessions": len(identities) - active,
        }

    async def info(self, identity: str) -> SessionInfo:
        ttl = await self._backend.ttl(self.session_key(identity))
        exists = ttl != TTL_MISSING
        connected = await self._backend.exists(self.connected_key(identity))
        return SessionInfo(identity=identity, exists=exists, connected=connected, ttl=ttl)

    # -- companion records --

    async def mark_connected(self, identity: str) -> None:
        await self._backend.set(self.connected_key(identity), "true", ex=self._connected_ttl)

    async def clear_connected(self, identity: str) -> None:
        await self._backend.delete(self.connected_key(identity))

    async def is_connected(self, identity: str) -> bool:
        return await self._backend.exists(self.connected_key(identity))

    async def save_account(self, identity: str, user_id: str) -> None:
        await self._backend.set(self.user_key(identity), user_id, ex=self._session_ttl)

    async def get_account(self, identity: str) -> str | None:
        return await self._backend.get(self.user_key(identity))

    async def _purge_record(self, identity: str) -> None:
        try:
            await self._backend.delete(self.session_key(identity))
            await self._backend.srem(self.index_key, identity)
        except StoreError:
            logger.exception("Failed to purge corrupt record for %s", identity)

    def __repr__(self) -> str:
        return f"<CredentialStore prefix={self._prefix} backend={self._backend!r}>"
