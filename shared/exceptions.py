"""
Structured exception hierarchy for authsync.

This module defines exceptions with error codes, context information,
and recovery suggestions for consistent error handling across the
state cache, the sync engine and the Frontend API transport.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for authsync."""

    # Transport Errors (1000-1099)
    TRANSPORT_HTTP_ERROR = "TRANSPORT_1001"
    TRANSPORT_CONNECTION_FAILED = "TRANSPORT_1002"
    TRANSPORT_TIMEOUT = "TRANSPORT_1003"
    TRANSPORT_UNAUTHORIZED = "TRANSPORT_1004"
    TRANSPORT_INVALID_RESPONSE = "TRANSPORT_1005"

    # State Errors (2000-2099)
    STATE_NOT_LOADED = "STATE_2001"
    STATE_NO_ACTIVE_SESSION = "STATE_2002"

    # Storage Errors (3000-3099)
    STORAGE_READ_FAILED = "STORAGE_3001"
    STORAGE_CORRUPT_ENTRY = "STORAGE_3003"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_ARGUMENT = "VALIDATION_4001"
    VALIDATION_MISSING_TARGET = "VALIDATION_4002"
    VALIDATION_SESSION_NOT_FOUND = "VALIDATION_4003"
    VALIDATION_ORGANIZATION_NOT_FOUND = "VALIDATION_4004"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_VALUE = "CONFIG_8002"
    CONFIG_INVALID_PUBLISHABLE_KEY = "CONFIG_8003"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RELOAD_STATE = "reload_state"
    SIGN_IN = "sign_in"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class AuthSyncError(Exception):
    """
    Base exception class for all authsync errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }

    def get_http_status_code(self) -> int:
        """Get the HTTP status code that best describes this error."""
        code_mapping = {
            ErrorCode.TRANSPORT_UNAUTHORIZED: 401,
            ErrorCode.TRANSPORT_TIMEOUT: 408,
            ErrorCode.TRANSPORT_CONNECTION_FAILED: 503,
            ErrorCode.STATE_NOT_LOADED: 409,
            ErrorCode.STATE_NO_ACTIVE_SESSION: 401,
            ErrorCode.VALIDATION_INVALID_ARGUMENT: 400,
            ErrorCode.VALIDATION_MISSING_TARGET: 400,
            ErrorCode.VALIDATION_SESSION_NOT_FOUND: 404,
            ErrorCode.VALIDATION_ORGANIZATION_NOT_FOUND: 404,
        }

        return code_mapping.get(self.error_code, 500)


class TransportError(AuthSyncError):
    """
    Network/HTTP failure or an error payload reported by the server.

    Carries the HTTP status (None when the request never got a response),
    the first machine-readable error code and the full list of error details.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        errors: Optional[List[Any]] = None,
        **kwargs
    ):
        context = kwargs.pop('context', None) or {}
        context['status'] = status
        if code:
            context['code'] = code

        if 'error_code' not in kwargs:
            if status is None:
                kwargs['error_code'] = ErrorCode.TRANSPORT_CONNECTION_FAILED
            elif status == 401:
                kwargs['error_code'] = ErrorCode.TRANSPORT_UNAUTHORIZED
            else:
                kwargs['error_code'] = ErrorCode.TRANSPORT_HTTP_ERROR

        if 'recovery_actions' not in kwargs:
            if status is None or status >= 500:
                kwargs['recovery_actions'] = [RecoveryAction.RETRY_WITH_BACKOFF]
            elif status == 401:
                kwargs['recovery_actions'] = [RecoveryAction.SIGN_IN]
            else:
                kwargs['recovery_actions'] = [RecoveryAction.USER_INTERVENTION]

        super().__init__(
            message=message,
            severity=kwargs.pop('severity', ErrorSeverity.MEDIUM),
            context=context,
            **kwargs
        )

        self.status = status
        self.code = code
        self.errors = errors or []

    def get_http_status_code(self) -> int:
        if self.status:
            return self.status
        return super().get_http_status_code()


class NotLoadedError(AuthSyncError):
    """An operation needs state that has not been loaded yet."""

    def __init__(self, message: str = "Client state has not been loaded", **kwargs):
        super().__init__(
            message=message,
            error_code=kwargs.pop('error_code', ErrorCode.STATE_NOT_LOADED),
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.RELOAD_STATE],
            **kwargs
        )


class InvalidArgumentError(AuthSyncError):
    """The caller passed arguments that cannot be acted upon."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_ARGUMENT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class NoActiveSessionError(InvalidArgumentError):
    """No session id was given and no session is currently active."""

    def __init__(self, message: str = "No active session", **kwargs):
        super().__init__(
            message=message,
            field_name=kwargs.pop('field_name', 'session_id'),
            error_code=ErrorCode.STATE_NO_ACTIVE_SESSION,
            recovery_actions=[RecoveryAction.SIGN_IN],
            **kwargs
        )


class StorageError(AuthSyncError):
    """Persistence read/write failure. Never fatal to load or replace."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
                 key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if key:
            context['key'] = key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            context=context,
            **kwargs
        )


class ConfigurationError(AuthSyncError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> AuthSyncError:
    """
    Convert a generic exception to a structured AuthSyncError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured AuthSyncError
    """
    if isinstance(exception, AuthSyncError):
        return exception

    if isinstance(exception, (ConnectionError, TimeoutError)):
        error_code = (
            ErrorCode.TRANSPORT_TIMEOUT if isinstance(exception, TimeoutError)
            else ErrorCode.TRANSPORT_CONNECTION_FAILED
        )
        return TransportError(
            message=str(exception),
            error_code=error_code,
            context=context,
            cause=exception
        )

    if isinstance(exception, ValueError):
        return InvalidArgumentError(
            message=str(exception),
            context=context,
            cause=exception
        )

    if isinstance(exception, OSError):
        return StorageError(
            message=str(exception),
            context=context,
            cause=exception
        )

    return AuthSyncError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
