"""
State store holding the live client snapshot.

Writers are serialized by an asyncio.Lock; a replacement finishes its
listener fan-out and storage write-back before the next one starts.
Readers take the current StateSnapshot reference without locking.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional, Callable, Dict, Any

from shared.exceptions import StorageError
from shared.interfaces import IStorage
from shared.models import Client, Session, User, Organization, StateSnapshot
from authsync.listeners import ListenerRegistry

logger = logging.getLogger(__name__)

ReplaceHook = Callable[[StateSnapshot, StateSnapshot], None]


def resolve_active_session(client: Optional[Client]) -> Optional[Session]:
    """The session the client points at, if it is still part of the client."""
    if client is None:
        return None
    return client.find_session(client.last_active_session_id)


def resolve_active_user(session: Optional[Session]) -> Optional[User]:
    return session.user if session else None


def resolve_active_organization(session: Optional[Session]) -> Optional[Organization]:
    if session is None or session.user is None or not session.last_active_organization_id:
        return None
    membership = session.user.find_membership(session.last_active_organization_id)
    return membership.organization if membership else None


def build_snapshot(client: Optional[Client], version: int) -> StateSnapshot:
    session = resolve_active_session(client)
    return StateSnapshot(
        client=client,
        session=session,
        user=resolve_active_user(session),
        organization=resolve_active_organization(session),
        version=version,
        replaced_at=datetime.now()
    )


async def read_blob(storage: IStorage, key: str) -> Optional[Dict[str, Any]]:
    """Read and decode a persisted JSON blob. Unreadable entries count as absent."""
    loop = asyncio.get_running_loop()
    try:
        raw = await loop.run_in_executor(None, storage.get, key)
    except StorageError as e:
        logger.warning(f"Ignoring unreadable cache entry {key}: {e}")
        return None

    if not raw:
        return None

    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Ignoring malformed cache entry {key}: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Ignoring malformed cache entry {key}: not an object")
        return None
    return data


async def write_blob(storage: IStorage, key: str, data: Optional[Dict[str, Any]]) -> bool:
    """Persist a JSON blob, or remove the key when data is None. Never raises."""
    loop = asyncio.get_running_loop()
    try:
        if data is None:
            written = await loop.run_in_executor(None, storage.remove, key)
        else:
            written = await loop.run_in_executor(None, storage.set, key, json.dumps(data))
    except (StorageError, OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to persist {key}: {e}")
        return False

    if not written:
        logger.warning(f"Storage rejected write of {key}")
    return written


class StateStore:
    """
    Owns the current client snapshot and its derived active views.
    """

    def __init__(self, storage: IStorage, listeners: ListenerRegistry, storage_key: str,
                 on_replaced: Optional[ReplaceHook] = None):
        self.storage = storage
        self.listeners = listeners
        self.storage_key = storage_key
        self.on_replaced = on_replaced

        self._snapshot = StateSnapshot()
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> StateSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def get_current(self) -> Optional[Client]:
        return self._snapshot.client

    def active_session(self) -> Optional[Session]:
        return self._snapshot.session

    def active_user(self) -> Optional[User]:
        return self._snapshot.user

    def active_organization(self) -> Optional[Organization]:
        return self._snapshot.organization

    @staticmethod
    def _differs(current: Optional[Client], new: Optional[Client]) -> bool:
        if current is None or new is None:
            return current is not new
        return current.version_key() != new.version_key()

    async def replace(self, client: Optional[Client], persist: bool = True,
                      expected_version: Optional[int] = None) -> bool:
        """
        Atomically swap in a new client snapshot.

        Args:
            client: The new client, or None to clear the state
            persist: Write the client back to storage when it changed
            expected_version: Discard the replacement if the store has
                moved past this version

        Returns:
            True if the new snapshot differs from the previous one. A client
            with an unchanged version key still replaces the held one, without
            a version bump or notification.
        """
        async with self._lock:
            previous = self._snapshot

            if expected_version is not None and previous.version != expected_version:
                logger.debug(
                    f"Discarding replacement based on version {expected_version}, "
                    f"store is at version {previous.version}"
                )
                return False

            if not self._differs(previous.client, client):
                if client is not None and client != previous.client:
                    # Same version, newer payload: keep it without notifying
                    self._snapshot = build_snapshot(client, previous.version)
                    if persist:
                        await write_blob(self.storage, self.storage_key, client.to_dict())
                return False

            current = build_snapshot(client, previous.version + 1)
            self._snapshot = current
            logger.debug(f"Client state replaced, now at version {current.version}")

            if self.on_replaced:
                try:
                    self.on_replaced(previous, current)
                except Exception as e:
                    logger.error(f"Error in replace hook: {e}", exc_info=True)

            self.listeners.notify_all(current.client, current.session,
                                      current.user, current.organization)

            if persist:
                await write_blob(self.storage, self.storage_key,
                                 client.to_dict() if client else None)

            return True

    async def load_cached(self) -> Optional[Client]:
        """Read the persisted client, treating any read or decode failure as a miss."""
        data = await read_blob(self.storage, self.storage_key)
        if data is None:
            return None

        try:
            return Client.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring undecodable cached client: {e}")
            return None
