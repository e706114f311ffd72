"""
Builders and test doubles shared by the authsync unit tests.
"""

import asyncio
import time
from typing import Optional, Dict, Any, List

from jose import jwt

from shared.exceptions import TransportError
from shared.interfaces import IFrontendAPI, ClientUpdateCallback
from shared.models import (
    Client, Session, User, Organization, OrganizationMembership,
    EmailAddress, Environment, SignIn, SignInStatus, SessionStatus
)


def make_organization(org_id: str = "org_1", slug: str = "acme", name: str = "Acme") -> Organization:
    return Organization(id=org_id, name=name, slug=slug)


def make_user(user_id: str = "user_1", organizations: Optional[List[Organization]] = None) -> User:
    memberships = [
        OrganizationMembership(id=f"orgmem_{org.id}", role="org:admin", organization=org)
        for org in organizations or []
    ]
    return User(
        id=user_id,
        first_name="Ada",
        primary_email_address_id="idn_1",
        email_addresses=[EmailAddress(id="idn_1", email_address="ada@example.com")],
        organization_memberships=memberships
    )


def make_session(session_id: str = "sess_1", user: Optional[User] = None,
                 organization_id: Optional[str] = None,
                 status: SessionStatus = SessionStatus.ACTIVE, updated_at: int = 1) -> Session:
    return Session(
        id=session_id,
        status=status,
        user=user or make_user(),
        last_active_organization_id=organization_id,
        updated_at=updated_at
    )


def make_client(sessions: Optional[List[Session]] = None, active: Optional[str] = "default",
                client_id: str = "client_1", updated_at: int = 1) -> Client:
    if sessions is None:
        sessions = [make_session()]
    if active == "default":
        active = sessions[0].id if sessions else None
    return Client(id=client_id, sessions=list(sessions),
                  last_active_session_id=active, updated_at=updated_at)


def make_jwt(expires_in: float = 60, **claims) -> str:
    payload = dict(claims)
    payload['exp'] = int(time.time() + expires_in)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


class FakeFrontendAPI(IFrontendAPI):
    """
    In-memory stand-in for the Frontend API.

    `server_client` is what get_client() returns; the session mutations
    rewrite it the way the server would and forward it to the update
    callback. Setting a gate makes get_client() wait until it is released.
    """

    def __init__(self, server_client: Optional[Client] = None,
                 environment: Optional[Environment] = None):
        self.server_client = server_client
        self.environment = environment or Environment(display_config={'application_name': 'Test'})
        self.callback: Optional[ClientUpdateCallback] = None

        self.calls: Dict[str, int] = {}
        self.client_gate: Optional[asyncio.Event] = None
        self.fail_client: Optional[TransportError] = None
        self.fail_environment: Optional[TransportError] = None
        self.fail_tokens: Optional[TransportError] = None
        self.token_expires_in: float = 60
        self.token_serial = 0
        self.touched: List[Dict[str, Any]] = []
        self.closed = False

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def set_client_update_callback(self, callback: Optional[ClientUpdateCallback]) -> None:
        self.callback = callback

    async def _respond(self, client: Optional[Client]) -> Optional[Client]:
        self.server_client = client
        if self.callback:
            await self.callback(client)
        return client

    async def get_environment(self) -> Environment:
        self._count('get_environment')
        if self.fail_environment:
            raise self.fail_environment
        return self.environment

    async def get_client(self) -> Optional[Client]:
        self._count('get_client')
        if self.client_gate is not None:
            await self.client_gate.wait()
        if self.fail_client:
            raise self.fail_client
        return self.server_client

    async def touch_session(self, session_id: str,
                            active_organization_id: Optional[str] = None) -> Optional[Client]:
        self._count('touch_session')
        self.touched.append({'session_id': session_id, 'organization_id': active_organization_id})
        current = self.server_client
        sessions = []
        for session in current.sessions:
            if session.id == session_id:
                session = Session(
                    id=session.id, status=session.status, user=session.user,
                    last_active_organization_id=active_organization_id,
                    updated_at=(session.updated_at or 0) + 1
                )
            sessions.append(session)
        return await self._respond(Client(
            id=current.id, sessions=sessions, last_active_session_id=session_id,
            updated_at=(current.updated_at or 0) + 1
        ))

    async def remove_session(self, session_id: str) -> Optional[Client]:
        self._count('remove_session')
        current = self.server_client
        sessions = [s for s in current.sessions if s.id != session_id]
        active = current.last_active_session_id
        if active == session_id:
            active = None
        return await self._respond(Client(
            id=current.id, sessions=sessions, last_active_session_id=active,
            updated_at=(current.updated_at or 0) + 1
        ))

    async def remove_client_sessions(self) -> Optional[Client]:
        self._count('remove_client_sessions')
        current = self.server_client
        return await self._respond(Client(
            id=current.id, sessions=[], last_active_session_id=None,
            updated_at=(current.updated_at or 0) + 1
        ))

    async def create_session_token(self, session_id: str,
                                   organization_id: Optional[str] = None) -> str:
        self._count('create_session_token')
        if self.fail_tokens:
            raise self.fail_tokens
        self.token_serial += 1
        return make_jwt(self.token_expires_in, sid=session_id, org_id=organization_id,
                        serial=self.token_serial)

    async def create_session_token_from_template(self, session_id: str, template: str) -> str:
        self._count('create_session_token_from_template')
        if self.fail_tokens:
            raise self.fail_tokens
        self.token_serial += 1
        return make_jwt(self.token_expires_in, sid=session_id, template=template,
                        serial=self.token_serial)

    async def create_sign_in(self, params: Dict[str, Any]) -> SignIn:
        self._count('create_sign_in')
        await self._respond(self.server_client)
        return SignIn(id="sia_1", status=SignInStatus.NEEDS_FIRST_FACTOR,
                      identifier=params.get('identifier'))

    async def close(self) -> None:
        self.closed = True


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)
