"""
Public entry point for authsync.

AuthStateManager wires configuration, storage, the Frontend API client,
the token cache and the sync engine into one owned instance with an
explicit load/shutdown lifecycle.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from shared.exceptions import InvalidArgumentError, ErrorCode
from shared.interfaces import IFrontendAPI, IStorage
from shared.models import Client, Environment, Session, User, Organization, LoadState
from authsync.api_client import FrontendAPIClient, RetryConfig
from authsync.auth.storage import MemoryStorage, SecureStorage
from authsync.auth.token_manager import TokenManager
from authsync.config import ClientConfiguration
from authsync.listeners import ListenerRegistry, ListenerHandle, StateListener
from authsync.sync_manager import SyncManager

logger = logging.getLogger(__name__)


def create_storage(config: ClientConfiguration) -> IStorage:
    """Build the storage backend named by cache.storage."""
    if config.get_storage_backend() == 'secure':
        storage_path = config.get_storage_path()
        return SecureStorage(storage_path=Path(storage_path) if storage_path else None)
    return MemoryStorage()


class AuthStateManager:
    """
    Client-side authentication state with change notifications.

    Accessors return None until load() has completed. Operations that
    need state wait for an in-flight load and raise NotLoadedError when
    none was started.

    Example:
        async with AuthStateManager(config) as auth:
            await auth.load()
            token = await auth.get_token()
    """

    def __init__(self, config: Optional[ClientConfiguration] = None,
                 storage: Optional[IStorage] = None,
                 api_client: Optional[IFrontendAPI] = None):
        self.config = config or ClientConfiguration()
        self.config.validate()

        self.storage = storage or create_storage(self.config)
        store_prefix = self.config.get_store_prefix()

        self._api_client = api_client or FrontendAPIClient(
            base_url=self.config.get_base_url(),
            storage=self.storage,
            store_prefix=store_prefix,
            timeout=self.config.get_timeout(),
            retry_config=RetryConfig(
                max_retries=self.config.get_retry_attempts(),
                base_delay=self.config.get_retry_delay()
            ),
            user_agent=self.config.get_user_agent()
        )

        self.token_manager = TokenManager(
            self._api_client,
            refresh_threshold_seconds=self.config.get_token_refresh_threshold(),
            default_ttl_seconds=self.config.get_token_default_ttl()
        )
        self.listeners = ListenerRegistry()
        self.sync_manager = SyncManager(
            self._api_client,
            self.storage,
            store_prefix=store_prefix,
            revalidate_interval=self.config.get_revalidate_interval(),
            token_manager=self.token_manager,
            listeners=self.listeners
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def api_client(self) -> IFrontendAPI:
        """Transport for sign-in flows. Their responses update the cached state."""
        return self._api_client

    # Lifecycle

    async def load(self) -> "AuthStateManager":
        await self.sync_manager.load()
        return self

    def loaded(self) -> bool:
        return self.sync_manager.loaded()

    @property
    def load_state(self) -> LoadState:
        return self.sync_manager.load_state

    @property
    def last_revalidated_at(self) -> Optional[datetime]:
        return self.sync_manager.last_revalidated_at

    async def shutdown(self) -> None:
        await self.sync_manager.shutdown()

    # Accessors

    def environment(self) -> Optional[Environment]:
        return self.sync_manager.environment if self.loaded() else None

    def client(self) -> Optional[Client]:
        return self.sync_manager.snapshot.client if self.loaded() else None

    def session(self) -> Optional[Session]:
        return self.sync_manager.snapshot.session if self.loaded() else None

    def user(self) -> Optional[User]:
        return self.sync_manager.snapshot.user if self.loaded() else None

    def organization(self) -> Optional[Organization]:
        return self.sync_manager.snapshot.organization if self.loaded() else None

    # Operations

    async def sign_out(self, session_id: Optional[str] = None) -> None:
        await self.sync_manager.sign_out(session_id)

    async def set_active(self, session_id: Optional[str] = None,
                         organization_id_or_slug: Optional[str] = None) -> None:
        if session_id is None and organization_id_or_slug is None:
            raise InvalidArgumentError(
                "Either session_id or organization_id_or_slug must be provided",
                error_code=ErrorCode.VALIDATION_MISSING_TARGET
            )
        await self.sync_manager.set_active(session_id, organization_id_or_slug)

    async def get_token(self, session_id: Optional[str] = None, template: Optional[str] = None,
                        organization_id: Optional[str] = None) -> str:
        return await self.sync_manager.get_token(session_id, template, organization_id)

    # Listeners

    def add_listener(self, callback: StateListener, notify_current: bool = True) -> ListenerHandle:
        """
        Register a state-change callback.

        Args:
            callback: Called with (client, session, user, organization)
            notify_current: Immediately call back with the current state
                when it is already loaded; pass False to only hear about
                later changes
        """
        handle = self.listeners.add_listener(callback)
        if notify_current and self.loaded():
            snapshot = self.sync_manager.snapshot
            try:
                callback(snapshot.client, snapshot.session, snapshot.user, snapshot.organization)
            except Exception as e:
                logger.error(f"Error in state listener {handle.listener_id}: {e}", exc_info=True)
        return handle

    def remove_listener(self, handle: ListenerHandle) -> bool:
        return self.listeners.remove_listener(handle)
