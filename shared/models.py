"""
Core data models for authsync.

This module defines the data structures mirrored from the Frontend API:
the multi-session client, its sessions, users, organizations and
environment, plus the local snapshot and token cache records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum


class SessionStatus(Enum):
    """Lifecycle status of a session."""
    ACTIVE = "active"
    PENDING = "pending"
    ENDED = "ended"
    EXPIRED = "expired"
    REMOVED = "removed"
    ABANDONED = "abandoned"
    REPLACED = "replaced"
    REVOKED = "revoked"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class SignInStatus(Enum):
    """Progress of a sign-in attempt."""
    NEEDS_IDENTIFIER = "needs_identifier"
    NEEDS_FIRST_FACTOR = "needs_first_factor"
    NEEDS_SECOND_FACTOR = "needs_second_factor"
    NEEDS_NEW_PASSWORD = "needs_new_password"
    COMPLETE = "complete"
    ABANDONED = "abandoned"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class LoadState(Enum):
    """Load lifecycle of the cached client state."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    STALE = "stale"
    FRESH = "fresh"


def _nested_id(value: Any) -> Optional[str]:
    """Sign-in/sign-up references arrive either as ids or embedded objects."""
    if isinstance(value, dict):
        return value.get('id')
    return value


@dataclass
class Organization:
    """An organization the user belongs to."""
    id: str
    name: str
    slug: Optional[str] = None
    image_url: Optional[str] = None
    members_count: Optional[int] = None
    public_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Organization id cannot be empty")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Organization':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            slug=data.get('slug'),
            image_url=data.get('image_url'),
            members_count=data.get('members_count'),
            public_metadata=data.get('public_metadata') or {},
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'object': 'organization',
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'image_url': self.image_url,
            'members_count': self.members_count,
            'public_metadata': self.public_metadata,
            'created_at': self.created_at,
            'updated_at': self.updated_at
        }


@dataclass
class OrganizationMembership:
    """Membership of a user in an organization."""
    id: str
    role: str
    organization: Organization
    permissions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrganizationMembership':
        return cls(
            id=data['id'],
            role=data.get('role', ''),
            organization=Organization.from_dict(data['organization']),
            permissions=list(data.get('permissions') or [])
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'object': 'organization_membership',
            'id': self.id,
            'role': self.role,
            'permissions': self.permissions,
            'organization': self.organization.to_dict()
        }


@dataclass
class EmailAddress:
    """An email address attached to a user."""
    id: str
    email_address: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmailAddress':
        return cls(id=data['id'], email_address=data.get('email_address', ''))

    def to_dict(self) -> Dict[str, Any]:
        return {'object': 'email_address', 'id': self.id, 'email_address': self.email_address}


@dataclass
class User:
    """Profile of the authenticated principal."""
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    primary_email_address_id: Optional[str] = None
    email_addresses: List[EmailAddress] = field(default_factory=list)
    organization_memberships: List[OrganizationMembership] = field(default_factory=list)
    public_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("User id cannot be empty")

    @property
    def primary_email_address(self) -> Optional[str]:
        for email in self.email_addresses:
            if email.id == self.primary_email_address_id:
                return email.email_address
        return None

    def find_membership(self, organization_id: str) -> Optional[OrganizationMembership]:
        for membership in self.organization_memberships:
            if membership.organization.id == organization_id:
                return membership
        return None

    def version_key(self) -> Tuple:
        return (
            self.id,
            self.updated_at,
            tuple((m.organization.id, m.role) for m in self.organization_memberships)
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        return cls(
            id=data['id'],
            first_name=data.get('first_name'),
            last_name=data.get('last_name'),
            username=data.get('username'),
            primary_email_address_id=data.get('primary_email_address_id'),
            email_addresses=[EmailAddress.from_dict(e) for e in data.get('email_addresses') or []],
            organization_memberships=[
                OrganizationMembership.from_dict(m)
                for m in data.get('organization_memberships') or []
            ],
            public_metadata=data.get('public_metadata') or {},
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'object': 'user',
            'id': self.id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'username': self.username,
            'primary_email_address_id': self.primary_email_address_id,
            'email_addresses': [e.to_dict() for e in self.email_addresses],
            'organization_memberships': [m.to_dict() for m in self.organization_memberships],
            'public_metadata': self.public_metadata,
            'created_at': self.created_at,
            'updated_at': self.updated_at
        }


@dataclass
class Session:
    """One authenticated session within a client."""
    id: str
    status: SessionStatus = SessionStatus.ACTIVE
    user: Optional[User] = None
    last_active_organization_id: Optional[str] = None
    last_active_at: Optional[int] = None
    expire_at: Optional[int] = None
    abandon_at: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    last_active_token: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Session id cannot be empty")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        user_data = data.get('user')
        token_data = data.get('last_active_token')
        return cls(
            id=data['id'],
            status=SessionStatus(data.get('status', 'active')),
            user=User.from_dict(user_data) if user_data else None,
            last_active_organization_id=data.get('last_active_organization_id'),
            last_active_at=data.get('last_active_at'),
            expire_at=data.get('expire_at'),
            abandon_at=data.get('abandon_at'),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
            last_active_token=token_data.get('jwt') if isinstance(token_data, dict) else token_data
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'object': 'session',
            'id': self.id,
            'status': self.status.value,
            'user': self.user.to_dict() if self.user else None,
            'last_active_organization_id': self.last_active_organization_id,
            'last_active_at': self.last_active_at,
            'expire_at': self.expire_at,
            'abandon_at': self.abandon_at,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'last_active_token': {'object': 'token', 'jwt': self.last_active_token}
            if self.last_active_token else None
        }


@dataclass
class Client:
    """Root snapshot of multi-session device state."""
    id: str
    sessions: List[Session] = field(default_factory=list)
    last_active_session_id: Optional[str] = None
    sign_in_id: Optional[str] = None
    sign_up_id: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Client id cannot be empty")

    def find_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def session_ids(self) -> List[str]:
        return [session.id for session in self.sessions]

    def version_key(self) -> Tuple:
        """Identity used to decide whether two snapshots differ."""
        return (
            self.id,
            self.updated_at,
            self.last_active_session_id,
            self.sign_in_id,
            self.sign_up_id,
            tuple(
                (s.id, s.status.value, s.updated_at, s.last_active_organization_id,
                 s.user.version_key() if s.user else None)
                for s in self.sessions
            )
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Client':
        return cls(
            id=data['id'],
            sessions=[Session.from_dict(s) for s in data.get('sessions') or []],
            last_active_session_id=data.get('last_active_session_id'),
            sign_in_id=_nested_id(data.get('sign_in')),
            sign_up_id=_nested_id(data.get('sign_up')),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'object': 'client',
            'id': self.id,
            'sessions': [s.to_dict() for s in self.sessions],
            'last_active_session_id': self.last_active_session_id,
            'sign_in': self.sign_in_id,
            'sign_up': self.sign_up_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at
        }


@dataclass
class Environment:
    """Instance-wide settings published by the Frontend API."""
    auth_config: Dict[str, Any] = field(default_factory=dict)
    display_config: Dict[str, Any] = field(default_factory=dict)
    user_settings: Dict[str, Any] = field(default_factory=dict)
    organization_settings: Dict[str, Any] = field(default_factory=dict)
    maintenance_mode: bool = False

    @property
    def application_name(self) -> Optional[str]:
        return self.display_config.get('application_name')

    @property
    def single_session_mode(self) -> bool:
        return bool(self.auth_config.get('single_session_mode', False))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Environment':
        return cls(
            auth_config=data.get('auth_config') or {},
            display_config=data.get('display_config') or {},
            user_settings=data.get('user_settings') or {},
            organization_settings=data.get('organization_settings') or {},
            maintenance_mode=bool(data.get('maintenance_mode', False))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'auth_config': self.auth_config,
            'display_config': self.display_config,
            'user_settings': self.user_settings,
            'organization_settings': self.organization_settings,
            'maintenance_mode': self.maintenance_mode
        }


@dataclass
class SignIn:
    """An in-progress or completed sign-in attempt."""
    id: str
    status: SignInStatus
    identifier: Optional[str] = None
    created_session_id: Optional[str] = None
    supported_first_factors: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignIn':
        return cls(
            id=data['id'],
            status=SignInStatus(data.get('status', 'unknown')),
            identifier=data.get('identifier'),
            created_session_id=data.get('created_session_id'),
            supported_first_factors=list(data.get('supported_first_factors') or [])
        )


@dataclass
class ApiErrorDetail:
    """A single entry of a Frontend API error payload."""
    message: str
    code: Optional[str] = None
    long_message: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApiErrorDetail':
        return cls(
            message=data.get('message', ''),
            code=data.get('code'),
            long_message=data.get('long_message'),
            meta=data.get('meta') or {}
        )


@dataclass
class CachedToken:
    """A minted session token held until shortly before it expires."""
    jwt: str
    session_id: str
    expires_at: datetime
    template: Optional[str] = None
    organization_id: Optional[str] = None
    issued_at: datetime = field(default_factory=datetime.now)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def needs_refresh(self, now: datetime, threshold_seconds: float) -> bool:
        return (self.expires_at - now).total_seconds() <= threshold_seconds


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable view of the client and its derived active state."""
    client: Optional[Client] = None
    session: Optional[Session] = None
    user: Optional[User] = None
    organization: Optional[Organization] = None
    version: int = 0
    replaced_at: Optional[datetime] = None
