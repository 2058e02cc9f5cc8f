"""
Logging Configuration for tapgate.

Centralized logging setup with a verbose toggle and text/JSON formatting.
Diagnostics always go to stderr: tapgate runs in front of git and gh, and
their stdout must stay untouched.

Usage:
    from tapgate.logging_config import setup_logging, get_logger

    setup_logging(verbose=True)
    logger = get_logger('tapgate.orchestrator')
    logger.security("Enforcement bypassed via TAPGATE_ENABLED")
"""

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import EnvVars, parse_bool

SECURITY = 55

logging.addLevelName(SECURITY, 'SECURITY')


@dataclass
class LoggingState:
    """Thread-safe logging configuration state."""
    verbose: bool = False
    log_file: Optional[str] = None
    json_format: bool = False
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)


_state = LoggingState()


class TapgateFormatter(logging.Formatter):
    """Formatter with color support and structured output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'SECURITY': '\033[35;1m', # Bold magenta
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        self.use_colors = use_colors and sys.stderr.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            level_str = f"{color}{level_name:8}{self.COLORS['RESET']}"
        else:
            level_str = f"{level_name:8}"

        message = f"{timestamp} {level_str} [{self._component(record.name)}] {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message

    def _format_json(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            'timestamp': datetime.now().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'component': self._component(record.name),
        }
        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)
        return json.dumps(data)

    @staticmethod
    def _component(logger_name: str) -> str:
        # tapgate.methods.yubikey -> methods
        parts = logger_name.split('.')
        if len(parts) >= 2 and parts[0] == 'tapgate':
            return parts[1]
        return parts[0] or 'core'


class TapgateLogger(logging.Logger):
    """Logger with a SECURITY level that is always emitted."""

    def security(self, msg: str, *args, **kwargs):
        """Log security-relevant events (bypasses, anomalies, rollbacks)."""
        self._log(SECURITY, msg, args, **kwargs)


logging.setLoggerClass(TapgateLogger)


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
) -> None:
    """
    Initialize the logging system.

    Args:
        verbose: Enable DEBUG output
        log_file: Optional file path for log output
        console: Enable stderr output
        json_format: Use JSON format for logs
    """
    with _state._lock:
        _state.verbose = verbose
        _state.log_file = log_file
        _state.json_format = json_format

        # Quiet by default: the CLI prints its own user-facing messages
        base_level = logging.DEBUG if verbose else logging.WARNING

        root = logging.getLogger()
        root.setLevel(base_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(TapgateFormatter(use_colors=True, json_format=json_format))
            root.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
            file_handler.setFormatter(TapgateFormatter(use_colors=False, json_format=json_format))
            root.addHandler(file_handler)
            root.setLevel(min(root.level, file_handler.level))

        _state.initialized = True


def get_logger(name: str) -> TapgateLogger:
    """Get a logger with the SECURITY helper."""
    logger = logging.getLogger(name)
    if not isinstance(logger, TapgateLogger):
        logging.setLoggerClass(TapgateLogger)
        logger = logging.getLogger(name)
    return logger


def configure_from_environment(verbose: bool = False) -> None:
    """Configure logging from TAPGATE_VERBOSE, TAPGATE_LOG_FILE and TAPGATE_LOG_JSON."""
    setup_logging(
        verbose=verbose or bool(parse_bool(os.environ.get(EnvVars.VERBOSE))),
        log_file=os.environ.get(EnvVars.LOG_FILE) or None,
        json_format=bool(parse_bool(os.environ.get(EnvVars.LOG_JSON))),
    )


__all__ = [
    'SECURITY',
    'TapgateFormatter',
    'TapgateLogger',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
]
