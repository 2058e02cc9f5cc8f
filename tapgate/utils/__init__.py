"""
Utility modules for tapgate.

Provides error handling with verbose logging and collected failures.
"""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ExecutionResult,
    determine_severity,
    handle_error,
    safe_execute,
    log_security_error,
    log_filesystem_error,
)

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
