"""
Configuration management for authsync.

Values come from an optional INI file, AUTHSYNC_* environment variables
and explicit overrides, layered over built-in defaults.
"""

import os
import json
import base64
import binascii
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from shared.exceptions import ConfigurationError, ErrorCode
from shared.interfaces import IConfigurationManager
from shared.logging_config import setup_logging, LogLevel, LogFormat

logger = logging.getLogger(__name__)

PUBLISHABLE_KEY_PREFIXES = ('pk_test_', 'pk_live_')
STORAGE_BACKENDS = ('memory', 'secure')


def decode_publishable_key(publishable_key: str) -> str:
    """
    Derive the Frontend API URL encoded in a publishable key.

    The part after the pk_test_/pk_live_ prefix is the base64 encoded
    host followed by a '$' terminator.

    Raises:
        ConfigurationError: If the key cannot be decoded
    """
    encoded = None
    for prefix in PUBLISHABLE_KEY_PREFIXES:
        if publishable_key.startswith(prefix):
            encoded = publishable_key[len(prefix):]
            break

    if not encoded:
        raise ConfigurationError(
            "Publishable key must start with pk_test_ or pk_live_",
            error_code=ErrorCode.CONFIG_INVALID_PUBLISHABLE_KEY,
            config_key='api.publishable_key'
        )

    try:
        padded = encoded + '=' * (-len(encoded) % 4)
        decoded = base64.b64decode(padded, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ConfigurationError(
            f"Publishable key is not valid base64: {e}",
            error_code=ErrorCode.CONFIG_INVALID_PUBLISHABLE_KEY,
            config_key='api.publishable_key',
            cause=e
        )

    host = decoded[:-1] if decoded.endswith('$') else ''
    if not host:
        raise ConfigurationError(
            "Publishable key does not encode a Frontend API host",
            error_code=ErrorCode.CONFIG_INVALID_PUBLISHABLE_KEY,
            config_key='api.publishable_key'
        )

    return f"https://{host}"


def _parse_value(value: str) -> Any:
    # Try to parse as JSON for numbers, booleans and lists
    try:
        return json.loads(value)
    except ValueError:
        return value


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for authsync.

    Supports configuration from:
    1. Explicit overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'AUTHSYNC_PUBLISHABLE_KEY': ('api', 'publishable_key'),
        'AUTHSYNC_BASE_URL': ('api', 'base_url'),
        'AUTHSYNC_TIMEOUT': ('api', 'timeout'),
        'AUTHSYNC_RETRY_ATTEMPTS': ('api', 'retry_attempts'),
        'AUTHSYNC_STORE_PREFIX': ('cache', 'store_prefix'),
        'AUTHSYNC_STORAGE': ('cache', 'storage'),
        'AUTHSYNC_STORAGE_PATH': ('cache', 'storage_path'),
        'AUTHSYNC_REVALIDATE_INTERVAL': ('cache', 'revalidate_interval'),
        'AUTHSYNC_LOG_LEVEL': ('logging', 'level'),
        'AUTHSYNC_LOG_FORMAT': ('logging', 'format'),
        'AUTHSYNC_LOG_FILE': ('logging', 'file'),
    }

    def __init__(self, config_file: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = dict(overrides or {})

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        config_dir = Path(xdg_config) if xdg_config else Path.home() / '.config'
        return str(config_dir / 'authsync' / 'authsync.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Cannot parse configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                cause=e
            )

        for section_name in config.sections():
            section_data = self._config_data.setdefault(section_name, {})
            for key, value in config[section_name].items():
                section_data[key] = _parse_value(value)

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is not None:
                self._config_data.setdefault(section, {})[key] = _parse_value(value)

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'api': {
                'publishable_key': None,
                'base_url': None,
                'timeout': 30.0,
                'retry_attempts': 3,
                'retry_delay': 1.0,
                'user_agent': 'authsync/0.1'
            },
            'cache': {
                'store_prefix': '',
                'storage': 'memory',
                'storage_path': None,
                'revalidate_interval': 900,  # 15 minutes
                'token_refresh_threshold': 10,
                'token_default_ttl': 60
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None
            }
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                section_data.setdefault(key, default_value)

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            raise ConfigurationError(
                f"Configuration key must be 'section.key': {key}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """Set configuration override (highest priority)."""
        self._overrides[key] = value

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def get_config_file_path(self) -> str:
        return self._config_file

    def validate(self) -> None:
        """
        Check values that would otherwise fail later at runtime.

        Raises:
            ConfigurationError: On the first invalid value
        """
        self.get_base_url()

        storage = self.get_storage_backend()
        if storage not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend '{storage}', expected one of {', '.join(STORAGE_BACKENDS)}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='cache.storage'
            )

        for key in ('api.timeout', 'cache.revalidate_interval', 'cache.token_default_ttl'):
            value = self.get_config(key)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(
                    f"{key} must be a positive number, got {value!r}",
                    error_code=ErrorCode.CONFIG_INVALID_VALUE,
                    config_key=key
                )

    # Convenience methods for common configuration values

    def get_publishable_key(self) -> Optional[str]:
        return self.get_config('api.publishable_key')

    def get_base_url(self) -> str:
        """Explicit base URL, or the one encoded in the publishable key."""
        base_url = self.get_config('api.base_url')
        if base_url:
            return str(base_url).rstrip('/')

        publishable_key = self.get_publishable_key()
        if not publishable_key:
            raise ConfigurationError(
                "Either api.publishable_key or api.base_url must be configured",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='api.publishable_key'
            )
        return decode_publishable_key(publishable_key)

    def get_timeout(self) -> float:
        return float(self.get_config('api.timeout', 30.0))

    def get_retry_attempts(self) -> int:
        return int(self.get_config('api.retry_attempts', 3))

    def get_retry_delay(self) -> float:
        return float(self.get_config('api.retry_delay', 1.0))

    def get_user_agent(self) -> str:
        return self.get_config('api.user_agent', 'authsync/0.1')

    def get_store_prefix(self) -> str:
        return str(self.get_config('cache.store_prefix', ''))

    def get_storage_backend(self) -> str:
        return str(self.get_config('cache.storage', 'memory')).lower()

    def get_storage_path(self) -> Optional[str]:
        return self.get_config('cache.storage_path')

    def get_revalidate_interval(self) -> float:
        """Seconds between background revalidation attempts."""
        return float(self.get_config('cache.revalidate_interval', 900))

    def get_token_refresh_threshold(self) -> float:
        return float(self.get_config('cache.token_refresh_threshold', 10))

    def get_token_default_ttl(self) -> float:
        return float(self.get_config('cache.token_default_ttl', 60))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')


def configure_logging(config: ClientConfiguration) -> logging.Logger:
    """Apply the [logging] section of a configuration."""
    try:
        log_level = LogLevel(config.get_log_level())
        log_format = LogFormat(config.get_log_format())
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid logging configuration: {e}",
            error_code=ErrorCode.CONFIG_INVALID_VALUE,
            config_key='logging',
            cause=e
        )

    return setup_logging(log_level=log_level, log_format=log_format,
                         log_file=config.get_log_file())
