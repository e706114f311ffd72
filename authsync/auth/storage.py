"""
Key/value storage for the persisted client state.

Values are opaque strings (serialized snapshots and the raw authorization
header). MemoryStorage keeps them for the lifetime of the process;
SecureStorage persists them in the system keyring when one is available and
otherwise in a Fernet-encrypted file.
"""

import os
import json
import logging
import threading
from pathlib import Path
from typing import Optional, Dict

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from shared.exceptions import StorageError, ErrorCode
from shared.interfaces import IStorage

logger = logging.getLogger(__name__)


class MemoryStorage(IStorage):
    """In-process storage. Nothing survives a restart."""

    def __init__(self):
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> bool:
        with self._lock:
            self._values[key] = value
        return True

    def remove(self, key: str) -> bool:
        with self._lock:
            self._values.pop(key, None)
        return True

    def keys(self):
        with self._lock:
            return list(self._values)


class SecureStorage(IStorage):
    """
    Persistent storage for authentication state.

    Uses the system keyring when available, falls back to a single
    encrypted JSON file readable only by the current user.
    """

    KEY_ENTRY = "encryption_key"

    def __init__(self, service_name: str = "authsync", storage_path: Optional[Path] = None,
                 use_keyring: Optional[bool] = None):
        self.service_name = service_name
        if use_keyring is None:
            use_keyring = self._check_keyring_availability()
        self.keyring_available = use_keyring
        self.storage_path = Path(storage_path) if storage_path else self._get_storage_path()
        self.key_path = self.storage_path.with_suffix('.key')

        self._encryption_key: Optional[bytes] = None
        self._lock = threading.Lock()

        logger.info(f"Secure storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            test_key = f"{self.service_name}_probe"
            keyring.set_password(self.service_name, test_key, "probe")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "probe"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_path(self) -> Path:
        """Get path for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            config_dir = Path(xdg_config) / 'authsync'
        else:
            config_dir = Path.home() / '.config' / 'authsync'

        return config_dir / 'state.enc'

    def _get_encryption_key(self) -> bytes:
        """Get or create the Fernet key for the encrypted file."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _read_file(self) -> Dict[str, str]:
        if not self.storage_path.exists():
            return {}

        try:
            encrypted_data = self.storage_path.read_bytes()
            decrypted_data = Fernet(self._get_encryption_key()).decrypt(encrypted_data)
            values = json.loads(decrypted_data.decode())
        except InvalidToken as e:
            raise StorageError(
                f"Cannot decrypt storage file {self.storage_path}",
                error_code=ErrorCode.STORAGE_CORRUPT_ENTRY,
                cause=e
            )
        except (OSError, ValueError) as e:
            raise StorageError(
                f"Cannot read storage file {self.storage_path}: {e}",
                error_code=ErrorCode.STORAGE_CORRUPT_ENTRY,
                cause=e
            )

        if not isinstance(values, dict):
            raise StorageError(
                f"Storage file {self.storage_path} does not contain a mapping",
                error_code=ErrorCode.STORAGE_CORRUPT_ENTRY
            )
        return values

    def _write_file(self, values: Dict[str, str]) -> None:
        if not values:
            if self.storage_path.exists():
                self.storage_path.unlink()
            return

        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        encrypted_data = Fernet(self._get_encryption_key()).encrypt(json.dumps(values).encode())
        self.storage_path.write_bytes(encrypted_data)

        # Set restrictive permissions
        os.chmod(self.storage_path, 0o600)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            if self.keyring_available:
                try:
                    return keyring.get_password(self.service_name, key)
                except KeyringError as e:
                    raise StorageError(f"Keyring read failed for {key}: {e}", key=key, cause=e)

            return self._read_file().get(key)

    def set(self, key: str, value: str) -> bool:
        with self._lock:
            try:
                if self.keyring_available:
                    keyring.set_password(self.service_name, key, value)
                    return True

                try:
                    values = self._read_file()
                except StorageError as e:
                    logger.warning(f"Discarding unreadable storage file: {e}")
                    values = {}
                values[key] = value
                self._write_file(values)
                return True

            except (KeyringError, OSError) as e:
                logger.error(f"Failed to store {key}: {e}")
                return False

    def remove(self, key: str) -> bool:
        with self._lock:
            try:
                if self.keyring_available:
                    try:
                        keyring.delete_password(self.service_name, key)
                    except PasswordDeleteError:
                        logger.debug(f"{key} was not present in keyring")
                    return True

                values = self._read_file()
                if key in values:
                    del values[key]
                    self._write_file(values)
                return True

            except (KeyringError, OSError, StorageError) as e:
                logger.error(f"Failed to remove {key}: {e}")
                return False
