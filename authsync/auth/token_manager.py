"""
Session token cache for authsync.

Minted session JWTs are short lived. This module keeps them keyed by
(session, template, organization) until shortly before they expire so
repeated get_token() calls do not hit the network.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional, Dict, Callable, List, Set, Tuple

from jose import jwt, JWTError

from shared.exceptions import TransportError
from shared.interfaces import IFrontendAPI
from shared.models import CachedToken

logger = logging.getLogger(__name__)

TokenKey = Tuple[str, Optional[str], Optional[str]]


class TokenManager:
    """
    Caches session tokens and mints new ones on miss or near expiry.

    Concurrent requests for the same key share one fetch. Invalidating a
    session forgets its in-flight fetches, so a token they mint is returned
    to its caller but never stored.
    """

    def __init__(self, api_client: IFrontendAPI, refresh_threshold_seconds: float = 10,
                 default_ttl_seconds: float = 60, clock: Optional[Callable[[], datetime]] = None):
        self.api_client = api_client
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.default_ttl = timedelta(seconds=default_ttl_seconds)
        self._clock = clock or datetime.now

        self._tokens: Dict[TokenKey, CachedToken] = {}
        self._fetch_locks: Dict[TokenKey, asyncio.Lock] = {}
        self._in_flight: Dict[str, Set[object]] = {}
        self._lock = threading.Lock()

        self._token_refresh_callbacks: List[Callable[[CachedToken], None]] = []

    def add_token_refresh_callback(self, callback: Callable[[CachedToken], None]) -> None:
        """
        Add callback for newly minted tokens.

        Args:
            callback: Function called with the new CachedToken
        """
        self._token_refresh_callbacks.append(callback)

    def _notify_token_refresh(self, token: CachedToken) -> None:
        for callback in self._token_refresh_callbacks:
            try:
                callback(token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    def _parse_token_expiration(self, token: str, now: datetime) -> datetime:
        """Expiry from the JWT exp claim, or the default TTL when absent."""
        try:
            payload = jwt.get_unverified_claims(token)
            exp = payload.get('exp')
            if exp:
                return datetime.fromtimestamp(exp)
        except JWTError as e:
            logger.warning(f"Failed to parse token expiration: {e}")

        return now + self.default_ttl

    @staticmethod
    def make_key(session_id: str, template: Optional[str] = None,
                 organization_id: Optional[str] = None) -> TokenKey:
        # Template tokens are not organization scoped
        if template:
            organization_id = None
        return (session_id, template, organization_id)

    def _begin_fetch(self, session_id: str) -> object:
        ticket = object()
        with self._lock:
            self._in_flight.setdefault(session_id, set()).add(ticket)
        return ticket

    def _end_fetch(self, session_id: str, ticket: object) -> None:
        with self._lock:
            tickets = self._in_flight.get(session_id)
            if tickets is not None:
                tickets.discard(ticket)
                if not tickets:
                    del self._in_flight[session_id]

    def cached_token(self, session_id: str, template: Optional[str] = None,
                     organization_id: Optional[str] = None) -> Optional[CachedToken]:
        """Return the cached entry for a key, expired entries included."""
        with self._lock:
            return self._tokens.get(self.make_key(session_id, template, organization_id))

    def _fresh_token(self, key: TokenKey) -> Optional[str]:
        with self._lock:
            cached = self._tokens.get(key)
        if cached and not cached.needs_refresh(self._clock(), self.refresh_threshold_seconds):
            return cached.jwt
        return None

    async def get_token(self, session_id: str, template: Optional[str] = None,
                        organization_id: Optional[str] = None) -> str:
        """
        Return a session token, minting one when the cache cannot serve it.

        Args:
            session_id: Session to mint for
            template: Optional JWT template name
            organization_id: Optional organization to scope a default token to

        Returns:
            The JWT string

        Raises:
            TransportError: minting failed and no unexpired token is cached
        """
        key = self.make_key(session_id, template, organization_id)

        token = self._fresh_token(key)
        if token:
            logger.debug(f"Token cache hit for session {session_id}")
            return token

        with self._lock:
            fetch_lock = self._fetch_locks.setdefault(key, asyncio.Lock())

        async with fetch_lock:
            # Another caller may have completed the fetch while we waited
            token = self._fresh_token(key)
            if token:
                return token

            ticket = self._begin_fetch(session_id)
            try:
                return await self._fetch(key, ticket)
            finally:
                self._end_fetch(session_id, ticket)

    async def _fetch(self, key: TokenKey, ticket: object) -> str:
        session_id, template, organization_id = key
        try:
            if template:
                minted = await self.api_client.create_session_token_from_template(
                    session_id, template
                )
            else:
                minted = await self.api_client.create_session_token(
                    session_id, organization_id
                )
        except TransportError as e:
            with self._lock:
                cached = self._tokens.get(key)
            if cached and not cached.is_expired(self._clock()):
                logger.warning(
                    f"Token refresh for session {session_id} failed, "
                    f"serving cached token until {cached.expires_at.isoformat()}: {e}"
                )
                return cached.jwt
            raise

        now = self._clock()
        entry = CachedToken(
            jwt=minted,
            session_id=session_id,
            template=template,
            organization_id=organization_id,
            expires_at=self._parse_token_expiration(minted, now),
            issued_at=now
        )

        with self._lock:
            stored = ticket in self._in_flight.get(session_id, ())
            if stored:
                self._tokens[key] = entry

        if stored:
            logger.debug(f"Cached token for session {session_id} until {entry.expires_at.isoformat()}")
            self._notify_token_refresh(entry)
        else:
            logger.debug(f"Session {session_id} was invalidated during fetch, token not cached")

        return minted

    def invalidate(self, session_id: Optional[str] = None) -> int:
        """
        Drop cached tokens of one session, or of every session.

        Fetches in flight for the session finish without caching their
        token, and the session's per-key fetch locks are released.

        Returns:
            Number of entries removed
        """
        if session_id is None:
            return self.clear()

        with self._lock:
            self._in_flight.pop(session_id, None)
            for key in [key for key in self._fetch_locks if key[0] == session_id]:
                del self._fetch_locks[key]
            keys = [key for key in self._tokens if key[0] == session_id]
            for key in keys:
                del self._tokens[key]

        if keys:
            logger.debug(f"Invalidated {len(keys)} cached token(s) for session {session_id}")
        return len(keys)

    def invalidate_except(self, session_ids) -> int:
        """Drop cached tokens and fetch state of every session not in session_ids."""
        keep = set(session_ids)
        with self._lock:
            known = {key[0] for key in self._tokens} | {key[0] for key in self._fetch_locks}
            known.update(self._in_flight)
        return sum(self.invalidate(session_id) for session_id in known - keep)

    def clear(self) -> int:
        """Drop every cached token."""
        with self._lock:
            count = len(self._tokens)
            self._tokens.clear()
            self._fetch_locks.clear()
            self._in_flight.clear()

        if count:
            logger.debug(f"Cleared {count} cached token(s)")
        return count
