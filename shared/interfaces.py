"""
Core interfaces for authsync.

This module defines the abstract contracts that pluggable collaborators
(storage, Frontend API transport, configuration) must implement.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from .models import Client, Environment, SignIn


ClientUpdateCallback = Callable[[Optional[Client]], Any]


class IStorage(ABC):
    """Key/value persistence for string values. Last write wins per key."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> bool:
        """Store a value. Returns False when the write failed."""
        pass

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Remove a key. Returns False when the removal failed."""
        pass


class IFrontendAPI(ABC):
    """Interface for the Frontend API calls the sync engine relies on."""

    @abstractmethod
    def set_client_update_callback(self, callback: Optional[ClientUpdateCallback]) -> None:
        """Register the hook invoked with the client embedded in mutating responses."""
        pass

    @abstractmethod
    async def get_environment(self) -> Environment:
        """Fetch instance-wide environment settings."""
        pass

    @abstractmethod
    async def get_client(self) -> Optional[Client]:
        """Fetch the current client, or None when the device has none yet."""
        pass

    @abstractmethod
    async def touch_session(self, session_id: str,
                            active_organization_id: Optional[str] = None) -> Optional[Client]:
        """Mark a session active, optionally switching its organization."""
        pass

    @abstractmethod
    async def remove_session(self, session_id: str) -> Optional[Client]:
        """Remove a single session from the client."""
        pass

    @abstractmethod
    async def remove_client_sessions(self) -> Optional[Client]:
        """Remove every session of the client."""
        pass

    @abstractmethod
    async def create_session_token(self, session_id: str,
                                   organization_id: Optional[str] = None) -> str:
        """Mint a default session token."""
        pass

    @abstractmethod
    async def create_session_token_from_template(self, session_id: str, template: str) -> str:
        """Mint a session token using a named JWT template."""
        pass

    @abstractmethod
    async def create_sign_in(self, params: Dict[str, Any]) -> SignIn:
        """Start a sign-in attempt."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_base_url(self) -> str:
        """Get the Frontend API base URL."""
        pass

    @abstractmethod
    def get_publishable_key(self) -> Optional[str]:
        """Get the publishable key."""
        pass

    @abstractmethod
    def get_store_prefix(self) -> str:
        """Get the storage key prefix."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
