"""
Logging configuration for authsync.

This module provides structured logging with an audit trail of
authentication events, timed operation tracking and configurable
output formats.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from shared.exceptions import AuthSyncError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Types of events that should be audited."""
    SIGN_OUT = "sign_out"
    SESSION_ACTIVATION = "session_activation"
    STATE_REPLACEMENT = "state_replacement"
    TOKEN_ISSUED = "token_issued"
    ERROR_EVENT = "error_event"


_RESERVED_RECORD_FIELDS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'taskName', 'message',
    'exc_info', 'exc_text', 'stack_info', 'error_info', 'audit_info',
    'operation_context'
])


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record with consistent fields.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': os.getpid(),
            'thread': record.threadName
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, AuthSyncError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if hasattr(record, 'operation_context'):
            log_entry['operation'] = record.operation_context

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable formatter that appends structured error and audit details.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-24s | %(funcName)-18s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, AuthSyncError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        if hasattr(record, 'operation_context'):
            formatted += f"\n  Operation: {json.dumps(record.operation_context, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Logger for authentication events carrying structured audit information.
    """

    def __init__(self, logger_name: str = "authsync.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        client_id: Optional[str] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            client_id: ID of the client involved
            session_id: ID of the session involved
            user_id: ID of the user behind the session
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'client_id': client_id,
            'session_id': session_id,
            'user_id': user_id,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_sign_out(self, session_id: Optional[str], success: bool = True,
                     error_message: Optional[str] = None):
        """Log sign-out of one session, or of all sessions when session_id is None."""
        target = session_id or "all sessions"
        self.log_event(
            event_type=AuditEventType.SIGN_OUT,
            message=f"Sign-out {'succeeded' if success else 'failed'} for {target}",
            session_id=session_id,
            result="success" if success else "failure",
            additional_context={'error_message': error_message} if error_message else None
        )

    def log_session_activation(self, session_id: str, organization_id: Optional[str] = None,
                               previous_session_id: Optional[str] = None):
        context = {
            'organization_id': organization_id,
            'previous_session_id': previous_session_id
        }
        self.log_event(
            event_type=AuditEventType.SESSION_ACTIVATION,
            message=f"Session {session_id} activated",
            session_id=session_id,
            result="success",
            additional_context={k: v for k, v in context.items() if v is not None}
        )

    def log_state_replacement(self, client_id: Optional[str], version: int,
                              session_id: Optional[str] = None, user_id: Optional[str] = None,
                              source: str = "network"):
        self.log_event(
            event_type=AuditEventType.STATE_REPLACEMENT,
            message=f"Client state replaced (version {version}, source {source})",
            client_id=client_id,
            session_id=session_id,
            user_id=user_id,
            result="changed",
            additional_context={'version': version, 'source': source}
        )

    def log_token_issued(self, session_id: str, expires_at: datetime,
                         template: Optional[str] = None, organization_id: Optional[str] = None):
        context = {
            'template': template,
            'organization_id': organization_id,
            'expires_at': expires_at.isoformat()
        }
        self.log_event(
            event_type=AuditEventType.TOKEN_ISSUED,
            message=f"Session token issued for {session_id}",
            session_id=session_id,
            result="success",
            additional_context={k: v for k, v in context.items() if v is not None}
        )

    def log_error(self, error: AuthSyncError, session_id: Optional[str] = None):
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            session_id=session_id,
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions]
            }
        )


class OperationLogger:
    """
    Logger for tracking operations with context and timing.
    """

    def __init__(self, logger_name: str = "authsync.operations"):
        self.logger = logging.getLogger(logger_name)

    def log_operation_start(
        self,
        operation_type: str,
        operation_id: str,
        context: Optional[Dict[str, Any]] = None
    ):
        operation_context = {
            'operation_id': operation_id,
            'operation_type': operation_type,
            'stage': 'started',
            'start_time': datetime.now().isoformat(),
            'context': context or {}
        }
        self.logger.info(f"Operation {operation_type} started: {operation_id}",
                         extra={'operation_context': operation_context})

    def log_operation_complete(
        self,
        operation_id: str,
        success: bool,
        duration_seconds: Optional[float] = None,
        result_summary: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        operation_context = {
            'operation_id': operation_id,
            'stage': 'completed',
            'success': success,
            'duration_seconds': duration_seconds,
            'result_summary': result_summary,
            'end_time': datetime.now().isoformat(),
            'context': context or {}
        }

        status = "completed successfully" if success else "failed"
        message = f"Operation {operation_id} {status}"
        if duration_seconds:
            message += f" (took {duration_seconds:.2f}s)"
        if result_summary:
            message += f": {result_summary}"

        level = logging.INFO if success else logging.ERROR
        self.logger.log(level, message, extra={'operation_context': operation_context})


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    logger_name: str = "authsync"
) -> logging.Logger:
    """
    Configure the authsync logger hierarchy.

    Handlers are attached to the ``authsync`` logger rather than the root
    logger so that embedding applications keep control of their own
    logging setup.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to log to stderr
        logger_name: Logger to configure

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_structured_error(
    logger: logging.Logger,
    error: AuthSyncError,
    level: int = logging.ERROR,
    session_id: Optional[str] = None
):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        level: Log level to emit at
        session_id: Optional session ID for context
    """
    extra = {'error_info': error}
    if session_id:
        extra['session_id'] = session_id

    logger.log(level, error.message, extra=extra)
