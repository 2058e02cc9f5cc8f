"""
tapgate - hardware presence enforcement for git and gh

Core components: the verification orchestrator with its method fallback
chain, the audit log, and the transactional installer.
"""

__version__ = "1.0.0"

# Installs the TapgateLogger class before the other modules create their loggers
from .logging_config import setup_logging, get_logger, SECURITY

from .constants import (
    EnvVars,
    Timeouts,
    Permissions,
    Limits,
    Paths,
    RuntimeConfig,
    DEFAULT_TIMEOUT,
    SECURE_FILE_MODE,
    SECURE_DIR_MODE,
)
from .exceptions import (
    TapgateError,
    ConfigError,
    ProviderError,
    DeviceUnavailable,
    ConfigurationMissing,
    ChallengeTimeout,
    ChallengeRejected,
    AllMethodsExhausted,
    InstallerError,
    PrerequisitesNotMet,
    SetupVerificationFailed,
    ArtifactError,
    RollbackPartialFailure,
)
from .models import (
    Classification,
    OperationPolicy,
    VerificationOutcome,
    MethodTag,
    SecurityTier,
    OperationContext,
    VerificationAttempt,
    Decision,
)
from .config import EnforcementConfig, load_config
from .audit_log import AuditLog
from .gate import EnforcementGate
from .classifier import OperationClassifier, ClassificationRule
from .orchestrator import VerificationOrchestrator
from .installer import TransactionalInstaller, InstallPolicy, SetupStatus, RemoveStatus

__all__ = [
    '__version__',
    'setup_logging',
    'get_logger',
    'SECURITY',
    'EnvVars',
    'Timeouts',
    'Permissions',
    'Limits',
    'Paths',
    'RuntimeConfig',
    'DEFAULT_TIMEOUT',
    'SECURE_FILE_MODE',
    'SECURE_DIR_MODE',
    'TapgateError',
    'ConfigError',
    'ProviderError',
    'DeviceUnavailable',
    'ConfigurationMissing',
    'ChallengeTimeout',
    'ChallengeRejected',
    'AllMethodsExhausted',
    'InstallerError',
    'PrerequisitesNotMet',
    'SetupVerificationFailed',
    'ArtifactError',
    'RollbackPartialFailure',
    'Classification',
    'OperationPolicy',
    'VerificationOutcome',
    'MethodTag',
    'SecurityTier',
    'OperationContext',
    'VerificationAttempt',
    'Decision',
    'EnforcementConfig',
    'load_config',
    'AuditLog',
    'EnforcementGate',
    'OperationClassifier',
    'ClassificationRule',
    'VerificationOrchestrator',
    'TransactionalInstaller',
    'InstallPolicy',
    'SetupStatus',
    'RemoveStatus',
]
