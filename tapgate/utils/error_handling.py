"""
Error Handling Utilities for tapgate

Consistent error logging across modules:
1. Detailed error logging with context
2. Error categorization and severity levels
3. Stack trace preservation
4. Collected (never silent) failures for multi-step operations

USAGE:
    from tapgate.utils.error_handling import (
        handle_error,
        ErrorCategory,
        safe_execute,
    )

    # Context manager usage
    with safe_execute("removing hook", ErrorCategory.FILESYSTEM) as result:
        hook.unlink()
    if not result.success:
        failures.append(result.error)

    # Direct error handling
    try:
        notify()
    except OSError as e:
        handle_error(e, "notify", ErrorCategory.EXTERNAL)
"""

import logging
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Categories of errors for proper handling and reporting."""
    SECURITY = "security"
    AUTH = "authentication"
    FILESYSTEM = "filesystem"
    CONFIG = "configuration"
    EXTERNAL = "external"       # ykman, op, git, notification tools
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Detailed context information for an error."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace:
            self.stack_trace = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'timestamp': self.timestamp,
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        """Format a detailed log message."""
        lines = [
            f"ERROR [{self.severity.value.upper()}] in {self.operation}",
            f"  Category: {self.category.value}",
            f"  Type: {type(self.error).__name__}",
            f"  Message: {self.error}",
        ]
        if self.additional_context:
            lines.append("  Context:")
            for key, value in self.additional_context.items():
                lines.append(f"    {key}: {value}")
        if self.stack_trace and self.stack_trace.strip() != "NoneType: None":
            lines.append("  Stack Trace:")
            for line in self.stack_trace.split('\n'):
                if line.strip():
                    lines.append(f"    {line}")
        return '\n'.join(lines)

    def summary(self) -> str:
        return f"{self.operation}: {type(self.error).__name__}: {self.error}"


def determine_severity(error: Exception, category: ErrorCategory) -> ErrorSeverity:
    """Determine the severity level for an error based on type and category."""
    if category == ErrorCategory.SECURITY:
        return ErrorSeverity.CRITICAL
    if isinstance(error, FileNotFoundError):
        return ErrorSeverity.WARNING
    if 'timeout' in type(error).__name__.lower() or 'timed out' in str(error).lower():
        return ErrorSeverity.WARNING
    if category == ErrorCategory.EXTERNAL:
        return ErrorSeverity.WARNING
    return ErrorSeverity.ERROR


_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def handle_error(
    error: Exception,
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    reraise: bool = False,
) -> ErrorContext:
    """
    Handle an error with comprehensive logging.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed
        category: Category of the error
        severity: Severity level (auto-determined if not provided)
        additional_context: Additional context information
        reraise: Whether to re-raise the exception after logging

    Returns:
        ErrorContext with full error details
    """
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        additional_context=additional_context or {},
    )

    logger.log(_LOG_LEVELS.get(severity, logging.ERROR), context.format_log_message())

    if reraise:
        raise error

    return context


class ExecutionResult:
    """Outcome holder yielded by safe_execute()."""

    def __init__(self, default: Any = None):
        self.value = default
        self.error: Optional[ErrorContext] = None
        self.success = True


@contextmanager
def safe_execute(
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    default_return: Any = None,
    reraise: bool = False,
    additional_context: Optional[Dict[str, Any]] = None,
):
    """
    Context manager that logs and records a failure instead of propagating it.

    The caller must inspect `result.success`; failures are recorded, not hidden.
    """
    result = ExecutionResult(default_return)
    try:
        yield result
    except Exception as e:
        result.success = False
        result.error = handle_error(
            e,
            operation,
            category=category,
            additional_context=additional_context,
            reraise=reraise,
        )
        result.value = default_return


def log_security_error(error: Exception, operation: str, **context) -> ErrorContext:
    """Log a security-related error with critical severity."""
    return handle_error(
        error,
        operation,
        category=ErrorCategory.SECURITY,
        severity=ErrorSeverity.CRITICAL,
        additional_context=context,
    )


def log_filesystem_error(error: Exception, operation: str, **context) -> ErrorContext:
    """Log a filesystem error."""
    return handle_error(error, operation, category=ErrorCategory.FILESYSTEM, additional_context=context)


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ExecutionResult',
    'determine_severity',
    'handle_error',
    'safe_execute',
    'log_security_error',
    'log_filesystem_error',
]
