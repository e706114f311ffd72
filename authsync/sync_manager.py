"""
Sync engine for authsync.

This module keeps the cached client state in step with the Frontend API:
cache-then-network loading with background revalidation, applying the
client embedded in mutating responses, session activation, sign-out and
session token retrieval.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Optional, Set, List, Awaitable

from shared.exceptions import (
    AuthSyncError, TransportError, NotLoadedError, InvalidArgumentError,
    NoActiveSessionError, ErrorCode, handle_exception
)
from shared.interfaces import IFrontendAPI, IStorage
from shared.logging_config import AuditLogger, OperationLogger, log_structured_error
from shared.models import (
    Client, Environment, Session, SessionStatus, LoadState, StateSnapshot, CachedToken
)
from authsync.auth.token_manager import TokenManager
from authsync.listeners import ListenerRegistry
from authsync.state_store import StateStore, read_blob, write_blob

logger = logging.getLogger(__name__)

# Sessions in these states can no longer mint tokens
INACTIVE_SESSION_STATUSES = frozenset([
    SessionStatus.ENDED, SessionStatus.EXPIRED, SessionStatus.REMOVED,
    SessionStatus.ABANDONED, SessionStatus.REPLACED, SessionStatus.REVOKED
])


class SyncManager:
    """
    Orchestrates loading, revalidation and post-mutation sync of client state.

    Load state moves UNLOADED -> LOADING -> STALE or FRESH. Anything served
    from storage is STALE until a background fetch confirms or replaces it.
    """

    def __init__(
        self,
        api_client: IFrontendAPI,
        storage: IStorage,
        store_prefix: str = "",
        revalidate_interval: float = 900,
        token_manager: Optional[TokenManager] = None,
        listeners: Optional[ListenerRegistry] = None
    ):
        self.api_client = api_client
        self.storage = storage
        self.revalidate_interval = revalidate_interval
        self.client_key = f"{store_prefix}client"
        self.environment_key = f"{store_prefix}environment"

        self.listeners = listeners if listeners is not None else ListenerRegistry()
        self.token_manager = token_manager if token_manager is not None else TokenManager(api_client)
        self.state_store = StateStore(storage, self.listeners, self.client_key,
                                      on_replaced=self._on_snapshot_replaced)

        self._environment: Optional[Environment] = None
        self._load_state = LoadState.UNLOADED
        self._pending_revalidation: Set[str] = set()
        self._client_synced = False
        self.last_revalidated_at: Optional[datetime] = None

        self._load_task: Optional[asyncio.Task] = None
        self._revalidation_tasks: Set[asyncio.Task] = set()
        self._shutting_down = False

        self.audit = AuditLogger()
        self.operations = OperationLogger()

        self.api_client.set_client_update_callback(self.apply_client)
        self.token_manager.add_token_refresh_callback(self._on_token_issued)

    # State

    @property
    def load_state(self) -> LoadState:
        return self._load_state

    def loaded(self) -> bool:
        return self._load_state in (LoadState.STALE, LoadState.FRESH)

    @property
    def environment(self) -> Optional[Environment]:
        return self._environment

    @property
    def snapshot(self) -> StateSnapshot:
        return self.state_store.snapshot

    def _mark_revalidated(self, part: str) -> None:
        if part == 'client':
            self._client_synced = True
        self._pending_revalidation.discard(part)
        self.last_revalidated_at = datetime.now()
        if self._load_state == LoadState.STALE and not self._pending_revalidation:
            self._load_state = LoadState.FRESH
            logger.info("Cached state revalidated, state is fresh")

    # Loading

    async def load(self) -> None:
        """
        Load environment and client, serving cached copies when available.

        Concurrent callers share one in-flight load. A failed load leaves the
        manager unloaded and may be retried.

        Raises:
            TransportError: If a required network fetch fails
        """
        if self.loaded():
            return

        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.create_task(self._run_load())

        # The load itself keeps running if this caller is cancelled
        await asyncio.shield(self._load_task)

    async def _run_load(self) -> None:
        operation_id = str(uuid.uuid4())
        self.operations.log_operation_start('load', operation_id)
        started = time.monotonic()

        self._load_state = LoadState.LOADING
        scheduled: List[asyncio.Task] = []

        results = await asyncio.gather(
            self._load_environment(scheduled),
            self._load_client(scheduled),
            return_exceptions=True
        )

        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            self._load_state = LoadState.UNLOADED
            self._pending_revalidation.clear()
            for task in scheduled:
                task.cancel()
            self.audit.log_error(handle_exception(errors[0], context={'operation': 'load'}))

            self.operations.log_operation_complete(
                operation_id, success=False, duration_seconds=time.monotonic() - started,
                result_summary=str(errors[0])
            )
            raise errors[0]

        if self._pending_revalidation:
            self._load_state = LoadState.STALE
        else:
            self._load_state = LoadState.FRESH

        self.operations.log_operation_complete(
            operation_id, success=True, duration_seconds=time.monotonic() - started,
            result_summary=f"state is {self._load_state.value}"
        )

    async def _load_environment(self, scheduled: List[asyncio.Task]) -> None:
        data = await read_blob(self.storage, self.environment_key)
        if data is not None:
            try:
                self._environment = Environment.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring undecodable cached environment: {e}")
            else:
                self._pending_revalidation.add('environment')
                scheduled.append(self._spawn(self._revalidate_environment()))
                return

        environment = await self.api_client.get_environment()
        await self._store_environment(environment)

    async def _load_client(self, scheduled: List[asyncio.Task]) -> None:
        version = self.state_store.version
        cached = await self.state_store.load_cached()
        if self._client_synced:
            # A server response landed while storage was read
            return

        if cached is not None:
            await self.state_store.replace(cached, persist=False, expected_version=version)
            if not self._client_synced:
                logger.info(f"Serving cached client {cached.id} while revalidating")
                self._pending_revalidation.add('client')
                scheduled.append(self._spawn(
                    self._revalidate_client(self.state_store.version)
                ))
            return

        await self.refresh_client()

    async def _store_environment(self, environment: Environment) -> None:
        self._environment = environment
        await write_blob(self.storage, self.environment_key, environment.to_dict())

    # Background revalidation

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._revalidation_tasks.add(task)
        task.add_done_callback(self._revalidation_tasks.discard)
        return task

    async def _revalidate(self, part: str, fetch_and_apply) -> None:
        attempt = 0
        while not self._shutting_down:
            attempt += 1
            try:
                await fetch_and_apply()
            except AuthSyncError as e:
                log_structured_error(logger, e, level=logging.WARNING)
            except Exception as e:
                logger.error(f"Unexpected error revalidating {part}: {e}", exc_info=True)
                self.audit.log_error(handle_exception(e, context={'revalidating': part}))
            else:
                logger.debug(f"Revalidated {part} after {attempt} attempt(s)")
                self._mark_revalidated(part)
                return

            logger.info(f"Retrying {part} revalidation in {self.revalidate_interval} seconds")
            await asyncio.sleep(self.revalidate_interval)

    async def _revalidate_environment(self) -> None:
        async def fetch_and_apply():
            await self._store_environment(await self.api_client.get_environment())

        await self._revalidate('environment', fetch_and_apply)

    async def _revalidate_client(self, expected_version: int) -> None:
        async def fetch_and_apply():
            client = await self.api_client.get_client()
            changed = await self.state_store.replace(client, expected_version=expected_version)
            if not changed and self.state_store.version != expected_version:
                logger.debug("Background client fetch superseded by a newer update")

        await self._revalidate('client', fetch_and_apply)

    # Post-mutation sync

    async def apply_client(self, client: Optional[Client]) -> bool:
        """
        Apply the client embedded in a mutating response.

        When the response carried no client, the current one is fetched.

        Returns:
            True if the cached state changed
        """
        if client is None:
            logger.debug("Mutating response carried no client, fetching it")
            _, changed = await self._fetch_client()
            return changed

        changed = await self.state_store.replace(client)
        self._mark_revalidated('client')
        return changed

    async def _fetch_client(self):
        client = await self.api_client.get_client()
        changed = await self.state_store.replace(client)
        self._mark_revalidated('client')
        return client, changed

    async def refresh_client(self) -> Optional[Client]:
        """Fetch the client from the server and apply it."""
        client, _ = await self._fetch_client()
        return client

    def _on_snapshot_replaced(self, previous: StateSnapshot, current: StateSnapshot) -> None:
        """Purge cached tokens that the new snapshot makes unusable."""
        current_ids = set(current.client.session_ids()) if current.client else set()
        previous_ids = set(previous.client.session_ids()) if previous.client else set()

        for session_id in previous_ids - current_ids:
            self.token_manager.invalidate(session_id)
        self.token_manager.invalidate_except(current_ids)

        if current.client:
            for session in current.client.sessions:
                if session.status in INACTIVE_SESSION_STATUSES:
                    self.token_manager.invalidate(session.id)

        previous_active = previous.session.id if previous.session else None
        current_active = current.session.id if current.session else None
        if previous_active and previous_active != current_active:
            self.token_manager.invalidate(previous_active)

        self.audit.log_state_replacement(
            client_id=current.client.id if current.client else None,
            version=current.version,
            session_id=current_active,
            user_id=current.user.id if current.user else None
        )

    def _on_token_issued(self, token: CachedToken) -> None:
        self.audit.log_token_issued(token.session_id, token.expires_at,
                                    template=token.template,
                                    organization_id=token.organization_id)

    # Readiness

    async def require_loaded(self) -> None:
        """
        Wait for an in-flight load.

        Raises:
            NotLoadedError: If load() was never started or failed
        """
        if self.loaded():
            return

        if self._load_task is None:
            raise NotLoadedError("load() must be called before this operation")

        try:
            await asyncio.shield(self._load_task)
        except AuthSyncError as e:
            raise NotLoadedError(f"Client state failed to load: {e.message}", cause=e) from e

        if not self.loaded():
            raise NotLoadedError()

    # Operations

    def _resolve_organization_id(self, session: Session, organization_id_or_slug: str) -> str:
        user = session.user
        if user is None:
            raise InvalidArgumentError(f"Session {session.id} has no user data",
                                       field_name='session_id')

        for membership in user.organization_memberships:
            organization = membership.organization
            if organization_id_or_slug.startswith('org_'):
                if organization.id == organization_id_or_slug:
                    return organization.id
            elif organization.slug == organization_id_or_slug:
                return organization.id

        kind = 'ID' if organization_id_or_slug.startswith('org_') else 'slug'
        raise InvalidArgumentError(
            f"Organization with {kind} '{organization_id_or_slug}' not found in user's memberships",
            field_name='organization_id_or_slug',
            error_code=ErrorCode.VALIDATION_ORGANIZATION_NOT_FOUND
        )

    async def set_active(self, session_id: Optional[str] = None,
                         organization_id_or_slug: Optional[str] = None) -> Optional[Client]:
        """
        Make a session active and optionally switch its organization.

        Args:
            session_id: Session to activate; defaults to the active session
            organization_id_or_slug: Organization ID (org_...) or slug

        Returns:
            The client returned by the server
        """
        await self.require_loaded()

        client = self.state_store.get_current()
        previous = self.state_store.active_session()

        if session_id is not None:
            target = client.find_session(session_id) if client else None
            if target is None:
                raise InvalidArgumentError(
                    f"Session with ID {session_id} not found",
                    field_name='session_id',
                    error_code=ErrorCode.VALIDATION_SESSION_NOT_FOUND
                )
        else:
            target = previous
            if target is None:
                raise NoActiveSessionError("No active session and no session_id provided")

        organization_id = target.last_active_organization_id
        if organization_id_or_slug is not None:
            organization_id = self._resolve_organization_id(target, organization_id_or_slug)

        result = await self.api_client.touch_session(target.id, organization_id)

        self.token_manager.invalidate(target.id)
        if previous and previous.id != target.id:
            self.token_manager.invalidate(previous.id)

        self.audit.log_session_activation(
            target.id, organization_id=organization_id,
            previous_session_id=previous.id if previous else None
        )
        return result

    async def sign_out(self, session_id: Optional[str] = None) -> Optional[Client]:
        """
        Sign out one session, or every session of the client.

        Returns:
            The client returned by the server
        """
        await self.require_loaded()

        try:
            if session_id:
                result = await self.api_client.remove_session(session_id)
            else:
                result = await self.api_client.remove_client_sessions()
        except TransportError as e:
            self.audit.log_sign_out(session_id, success=False, error_message=e.message)
            raise

        self.token_manager.invalidate(session_id)
        self.audit.log_sign_out(session_id)
        return result

    async def get_token(self, session_id: Optional[str] = None, template: Optional[str] = None,
                        organization_id: Optional[str] = None) -> str:
        """
        Return a session token for the given or active session.

        Raises:
            NoActiveSessionError: If no session ID can be resolved
            TransportError: If minting fails and nothing usable is cached
        """
        await self.require_loaded()

        if session_id is None:
            session = self.state_store.active_session()
            if session is None:
                raise NoActiveSessionError()
            session_id = session.id

        return await self.token_manager.get_token(session_id, template, organization_id)

    async def shutdown(self) -> None:
        """Cancel background revalidation and close the transport."""
        logger.info("Shutting down sync manager")
        self._shutting_down = True

        tasks = list(self._revalidation_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.api_client.close()
