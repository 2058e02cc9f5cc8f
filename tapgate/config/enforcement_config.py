"""
Enforcement Configuration - YAML-backed settings for the verification engine.

Loaded once per invocation and read-only during a verification. Only the
installer's enable/disable/setup/remove actions write it, always atomically
(temp file + flock + fsync + rename) so a concurrent reader sees either the
old or the new file, never a partial one.

File layout:

    enforcement:
      enabled: true
      require_tap: false
      timeout_seconds: 10
      retry_attempts: 0
    operations:
      git:
        push: required
    security:
      alert_on_bypass_attempt: false
      max_failed_attempts: 5
    devices:
      allowed_serials: []
      require_specific_device: false
    workspace_repos: []
"""

import fcntl
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import yaml

from ..constants import Limits, Paths, Permissions, Timeouts
from ..exceptions import ConfigError
from ..models import OperationContext, OperationPolicy

logger = logging.getLogger(__name__)

DEFAULT_OPERATIONS: Dict[str, str] = {
    'git.push': OperationPolicy.REQUIRED.value,
    'git.pull': OperationPolicy.REQUIRED.value,
    'git.fetch': OperationPolicy.REQUIRED.value,
    'git.clone': OperationPolicy.REQUIRED.value,
}


@dataclass
class EnforcementConfig:
    """Enforcement settings; see module docstring for the file layout"""
    enabled: bool = True
    require_tap: bool = False
    timeout_seconds: int = Timeouts.VERIFICATION_DEFAULT
    retry_attempts: int = 0
    per_operation_policy: Dict[str, OperationPolicy] = field(default_factory=dict)
    allowed_serials: FrozenSet[str] = field(default_factory=frozenset)
    require_specific_device: bool = False
    max_failed_attempts: int = Limits.MAX_FAILED_ATTEMPTS_DEFAULT
    alert_on_bypass_attempt: bool = False
    workspace_repos: Tuple[str, ...] = ()

    def policy_for(self, context: OperationContext) -> OperationPolicy:
        """Resolve operations.<tool>.<verb>, then operations.<tool>, defaulting to REQUIRED"""
        for key in (context.policy_key, context.tool):
            policy = self.per_operation_policy.get(key)
            if policy is not None:
                return policy
        return OperationPolicy.REQUIRED

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EnforcementConfig':
        """Build a config from parsed YAML, raising ConfigError on bad values"""
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level config must be a mapping")

        enforcement = _section(data, 'enforcement')
        security = _section(data, 'security')
        devices = _section(data, 'devices')

        timeout = _int(enforcement, 'timeout_seconds', Timeouts.VERIFICATION_DEFAULT)
        if not Timeouts.VERIFICATION_MIN <= timeout <= Timeouts.VERIFICATION_MAX:
            raise ConfigError(
                f"enforcement.timeout_seconds must be between "
                f"{Timeouts.VERIFICATION_MIN} and {Timeouts.VERIFICATION_MAX}, got {timeout}"
            )
        retries = _int(enforcement, 'retry_attempts', 0)
        if retries < 0:
            raise ConfigError("enforcement.retry_attempts must not be negative")
        max_failed = _int(security, 'max_failed_attempts', Limits.MAX_FAILED_ATTEMPTS_DEFAULT)
        if max_failed < 1:
            raise ConfigError("security.max_failed_attempts must be at least 1")

        serials = devices.get('allowed_serials') or []
        if not isinstance(serials, list):
            raise ConfigError("devices.allowed_serials must be a list")
        repos = data.get('workspace_repos') or []
        if not isinstance(repos, list):
            raise ConfigError("workspace_repos must be a list")

        return cls(
            enabled=_bool(enforcement, 'enabled', True),
            require_tap=_bool(enforcement, 'require_tap', False),
            timeout_seconds=timeout,
            retry_attempts=retries,
            per_operation_policy=_parse_operations(data.get('operations')),
            allowed_serials=frozenset(str(s) for s in serials),
            require_specific_device=_bool(devices, 'require_specific_device', False),
            max_failed_attempts=max_failed,
            alert_on_bypass_attempt=_bool(security, 'alert_on_bypass_attempt', False),
            workspace_repos=tuple(str(r) for r in repos),
        )

    def to_dict(self) -> Dict[str, Any]:
        operations: Dict[str, Any] = {}
        for key, policy in sorted(self.per_operation_policy.items()):
            tool, _, verb = key.partition('.')
            if verb:
                entry = operations.setdefault(tool, {})
                if isinstance(entry, dict):
                    entry[verb] = policy.value
            else:
                operations[tool] = policy.value
        return {
            'enforcement': {
                'enabled': self.enabled,
                'require_tap': self.require_tap,
                'timeout_seconds': self.timeout_seconds,
                'retry_attempts': self.retry_attempts,
            },
            'operations': operations,
            'security': {
                'alert_on_bypass_attempt': self.alert_on_bypass_attempt,
                'max_failed_attempts': self.max_failed_attempts,
            },
            'devices': {
                'allowed_serials': sorted(self.allowed_serials),
                'require_specific_device': self.require_specific_device,
            },
            'workspace_repos': list(self.workspace_repos),
        }

    @classmethod
    def default(cls) -> 'EnforcementConfig':
        """Config written by a fresh setup"""
        return cls(per_operation_policy={
            key: OperationPolicy(value) for key, value in DEFAULT_OPERATIONS.items()
        })


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return section


def _bool(section: Dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    return value


def _int(section: Dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    return value


def _parse_operations(raw: Any) -> Dict[str, OperationPolicy]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("'operations' must be a mapping of tool -> verb -> policy")

    policies: Dict[str, OperationPolicy] = {}
    for tool, verbs in raw.items():
        if isinstance(verbs, str):
            policies[str(tool)] = _policy(f"operations.{tool}", verbs)
            continue
        if not isinstance(verbs, dict):
            raise ConfigError(f"operations.{tool} must be a mapping or a policy")
        for verb, value in verbs.items():
            policies[f"{tool}.{verb}"] = _policy(f"operations.{tool}.{verb}", value)
    return policies


def _policy(key: str, value: Any) -> OperationPolicy:
    try:
        return OperationPolicy(str(value).lower())
    except ValueError:
        allowed = ", ".join(p.value for p in OperationPolicy)
        raise ConfigError(f"{key} must be one of {allowed}, got {value!r}")


# =============================================================================
# LOAD / SAVE
# =============================================================================

def read_raw_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Parse the YAML file into a dict; an absent file yields {}"""
    config_path = Path(path) if path else Paths.config_file()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, 'r') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                data = yaml.safe_load(f)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top-level config must be a mapping")
    return data


def load_config(path: Optional[Path] = None) -> EnforcementConfig:
    """Load the enforcement config; an absent file yields defaults"""
    return EnforcementConfig.from_dict(read_raw_config(path))


def render_config(data: Dict[str, Any]) -> str:
    header = "# tapgate enforcement configuration\n# Managed by 'tapctl'; edits are preserved except comments.\n"
    return header + yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def save_config(data: Dict[str, Any], path: Optional[Path] = None) -> Path:
    """Write the config atomically with restrictive permissions"""
    config_path = Path(path) if path else Paths.config_file()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = config_path.with_name(config_path.name + '.tmp')
    try:
        with open(temp_file, 'w') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(render_config(data))
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.chmod(temp_file, Permissions.SECURE_FILE)
        temp_file.replace(config_path)
    except OSError as e:
        if temp_file.exists():
            temp_file.unlink()
        raise ConfigError(f"Cannot write {config_path}: {e}")
    logger.debug(f"Saved enforcement config to {config_path}")
    return config_path


def set_enabled(enabled: bool, path: Optional[Path] = None) -> Path:
    """Flip enforcement.enabled, keeping every other key; creates defaults if absent"""
    data = read_raw_config(path)
    if not data:
        data = EnforcementConfig.default().to_dict()
    enforcement = data.get('enforcement')
    if not isinstance(enforcement, dict):
        enforcement = {}
        data['enforcement'] = enforcement
    enforcement['enabled'] = enabled
    # Validate before writing so a bad edit is reported, not persisted further
    EnforcementConfig.from_dict(data)
    return save_config(data, path)


__all__ = [
    'EnforcementConfig',
    'DEFAULT_OPERATIONS',
    'load_config',
    'read_raw_config',
    'render_config',
    'save_config',
    'set_enabled',
]
