"""
Configuration Module for tapgate.

Loads and writes the YAML enforcement configuration.
"""

from .enforcement_config import (
    EnforcementConfig,
    DEFAULT_OPERATIONS,
    load_config,
    read_raw_config,
    render_config,
    save_config,
    set_enabled,
)

__all__ = [
    'EnforcementConfig',
    'DEFAULT_OPERATIONS',
    'load_config',
    'read_raw_config',
    'render_config',
    'save_config',
    'set_enabled',
]
