"""
Centralized Constants Module for tapgate.

Consolidates timeouts, paths, environment variable names and limits used by
the verification engine and the installer so they can be audited in one place.

Usage:
    from tapgate.constants import Timeouts, Paths, EnvVars

    runner.run(argv, timeout=Timeouts.PROBE)
    log_path = Paths.audit_log()
"""

import logging
import os
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

ENV_PREFIX = "TAPGATE_"

TRUTHY = frozenset({'1', 'true', 'yes', 'on'})
FALSY = frozenset({'0', 'false', 'no', 'off'})


def _env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> T:
    """Get a configuration value with environment variable override.

    SECURITY: Out-of-range values fall back to the default instead of
    weakening enforcement.

    Args:
        env_var: Environment variable name (will be prefixed with TAPGATE_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    env = os.environ if environ is None else environ
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = env.get(full_env_var)

    if env_value is None or env_value == "":
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(
                f"SECURITY: {full_env_var}={env_value} below minimum {min_value}, using default"
            )
            return default
        if max_value is not None and converted > max_value:
            logger.warning(
                f"SECURITY: {full_env_var}={env_value} above maximum {max_value}, using default"
            )
            return default

        logger.debug(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


def parse_bool(value: Optional[str]) -> Optional[bool]:
    """Parse a boolean-ish string. Returns None when the value is unset or unrecognized."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in TRUTHY:
        return True
    if normalized in FALSY:
        return False
    return None


# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

@dataclass(frozen=True)
class EnvVars:
    """Environment variables read by tapgate."""
    ENABLED: str = f"{ENV_PREFIX}ENABLED"           # Ambient override (highest precedence)
    TIMEOUT: str = f"{ENV_PREFIX}TIMEOUT"           # Per-call verification timeout override
    HOME: str = f"{ENV_PREFIX}HOME"                 # State directory override
    CONFIG: str = f"{ENV_PREFIX}CONFIG"             # Config file override
    AUDIT_LOG: str = f"{ENV_PREFIX}AUDIT_LOG"       # Audit log override
    GIT_BINARY: str = f"{ENV_PREFIX}GIT_BINARY"     # Real git binary for the interceptor
    GH_BINARY: str = f"{ENV_PREFIX}GH_BINARY"       # Real gh binary for the interceptor
    VERBOSE: str = f"{ENV_PREFIX}VERBOSE"
    LOG_FILE: str = f"{ENV_PREFIX}LOG_FILE"
    LOG_JSON: str = f"{ENV_PREFIX}LOG_JSON"


# =============================================================================
# TIMEOUT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """
    Centralized timeout values in seconds.

    SECURITY: A verification attempt must never outlive its timeout; every
    subprocess call made by a provider is bounded by one of these.
    """
    VERIFICATION_DEFAULT: int = 10      # enforcement.timeout_seconds default
    VERIFICATION_MIN: int = 1
    VERIFICATION_MAX: int = 300

    PROBE: float = 5.0                  # Availability checks (ykman list, op account list)
    NOTIFICATION: float = 5.0           # osascript / notify-send
    GIT_CONFIG: float = 10.0            # git config --file ...
    OTP_PROGRAMMING: float = 60.0       # ykman otp chalresp --generate

    ATTEMPT_GRACE: float = 1.0          # Backstop slack on top of the attempt timeout
    DEADLINE_TOLERANCE: float = 0.05    # Scheduling slack before a late result counts as a timeout
    TERMINATE_WAIT: float = 2.0         # SIGTERM -> SIGKILL escalation window


# =============================================================================
# FILE PERMISSION CONSTANTS
# =============================================================================

class Permissions(IntEnum):
    """Centralized file permission modes."""
    SECURE_FILE = 0o600                 # rw------- (config, audit log)
    SECURE_DIR = 0o700                  # rwx------ (state dir, backups)
    EXECUTABLE = 0o755                  # rwxr-xr-x (git hooks)


# =============================================================================
# LIMITS
# =============================================================================

@dataclass(frozen=True)
class Limits:
    """Centralized count limits."""
    MAX_FAILED_ATTEMPTS_DEFAULT: int = 5
    FAILURE_SCAN_WINDOW: int = 200      # Audit lines scanned for the failure streak
    STATUS_TAIL: int = 5                # Audit lines shown by `tapctl status`
    OPERATION_MAX_LENGTH: int = 512     # Operation descriptions are truncated in the log


# =============================================================================
# PATH CONSTANTS
# =============================================================================

class Paths:
    """
    Filesystem locations, resolved at call time so HOME and TAPGATE_*
    overrides are honored by every invocation.
    """

    STATE_DIR_NAME = ".tapgate"
    CONFIG_FILE_NAME = "enforcement.yml"
    AUDIT_LOG_NAME = "verifications.log"
    BACKUP_DIR_NAME = "backups"
    HOOK_TEMPLATE_DIR_NAME = ".git-templates"

    @staticmethod
    def home() -> Path:
        return Path(os.path.expanduser("~"))

    @classmethod
    def state_dir(cls) -> Path:
        override = os.environ.get(EnvVars.HOME)
        if override:
            return Path(override).expanduser()
        return cls.home() / cls.STATE_DIR_NAME

    @classmethod
    def config_file(cls) -> Path:
        override = os.environ.get(EnvVars.CONFIG)
        if override:
            return Path(override).expanduser()
        return cls.state_dir() / cls.CONFIG_FILE_NAME

    @classmethod
    def audit_log(cls) -> Path:
        override = os.environ.get(EnvVars.AUDIT_LOG)
        if override:
            return Path(override).expanduser()
        return cls.state_dir() / cls.AUDIT_LOG_NAME

    @classmethod
    def backup_dir(cls) -> Path:
        return cls.state_dir() / cls.BACKUP_DIR_NAME

    @classmethod
    def hook_template_dir(cls) -> Path:
        return cls.home() / cls.HOOK_TEMPLATE_DIR_NAME

    @classmethod
    def git_global_config(cls) -> Path:
        return cls.home() / ".gitconfig"


class RuntimeConfig:
    """Runtime values that may be overridden through the environment."""

    @staticmethod
    def get_timeout_override(environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
        """Per-call timeout from TAPGATE_TIMEOUT, or None when unset/invalid."""
        value = _env_override(
            "TIMEOUT", 0, int,
            min_value=Timeouts.VERIFICATION_MIN,
            max_value=Timeouts.VERIFICATION_MAX,
            environ=environ,
        )
        return value or None


DEFAULT_TIMEOUT = Timeouts.VERIFICATION_DEFAULT
SECURE_FILE_MODE = Permissions.SECURE_FILE
SECURE_DIR_MODE = Permissions.SECURE_DIR


__all__ = [
    'EnvVars',
    'Timeouts',
    'Permissions',
    'Limits',
    'Paths',
    'RuntimeConfig',
    'parse_bool',
    'DEFAULT_TIMEOUT',
    'SECURE_FILE_MODE',
    'SECURE_DIR_MODE',
]
