"""
Enforcement Gate - decides whether verification is enforced for this call.

The ambient override TAPGATE_ENABLED takes precedence over the config file in
both directions. It is read from the environment on every call and never cached.
"""

import logging
import os
from typing import Mapping, Optional

from .config import EnforcementConfig
from .constants import EnvVars, parse_bool

logger = logging.getLogger(__name__)


class EnforcementGate:
    """Resolves enforcement on/off from the ambient override and the config"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def override(self) -> Optional[bool]:
        """Parsed TAPGATE_ENABLED, or None when unset or unrecognized"""
        raw = self.environ.get(EnvVars.ENABLED)
        value = parse_bool(raw)
        if raw is not None and raw.strip() and value is None:
            logger.warning(f"Ignoring unrecognized {EnvVars.ENABLED}={raw!r}")
        return value

    def is_enabled(self, config: EnforcementConfig) -> bool:
        override = self.override()
        if override is not None:
            return override
        return config.enabled

    def override_active(self) -> bool:
        """True when the ambient override is what disabled enforcement"""
        return self.override() is False


__all__ = ['EnforcementGate']
