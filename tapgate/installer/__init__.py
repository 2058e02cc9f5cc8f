"""
Installer module for tapgate.

Transactional setup and removal of the shell wrappers, git hooks and config.
"""

from .installer import (
    TransactionalInstaller,
    InstallPolicy,
    SetupStatus,
    SetupResult,
    RemoveStatus,
    RemoveResult,
    InstallStatus,
    ProviderStatus,
)
from .saga import Compensation, CompensationStack
from .snapshot import ArtifactSnapshot, InstallationSnapshot

__all__ = [
    'TransactionalInstaller',
    'InstallPolicy',
    'SetupStatus',
    'SetupResult',
    'RemoveStatus',
    'RemoveResult',
    'InstallStatus',
    'ProviderStatus',
    'Compensation',
    'CompensationStack',
    'ArtifactSnapshot',
    'InstallationSnapshot',
]
