"""
Exception taxonomy for tapgate.

Provider-level errors (DeviceUnavailable, ConfigurationMissing, ChallengeTimeout,
ChallengeRejected) are recovered locally by the orchestrator, which falls through
to the next method. Only AllMethodsExhausted reaches the caller of a verification.
Installer errors are never retried automatically; they carry enough detail for an
operator to act.

Every error carries a `remediation` string: the concrete next step shown to the user.
"""

from pathlib import Path
from typing import List, Optional, Sequence


class TapgateError(Exception):
    """Base exception for tapgate"""

    default_remediation = ""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation if remediation is not None else self.default_remediation


class ConfigError(TapgateError):
    """Enforcement configuration could not be read or is invalid"""
    default_remediation = "Fix the enforcement config file or remove it to fall back to defaults"


# =============================================================================
# Provider-level errors (non-fatal, fall through)
# =============================================================================

class ProviderError(TapgateError):
    """Base class for errors raised by a verification method"""
    pass


class DeviceUnavailable(ProviderError):
    """The method's device or agent is not reachable"""
    default_remediation = "Connect your YubiKey and try again"


class ConfigurationMissing(DeviceUnavailable):
    """The method is installed but not provisioned (e.g. empty OTP slot, agent signed out)"""
    default_remediation = "Configure OTP slot 2: ykman otp chalresp --generate --touch 2"


class ChallengeTimeout(ProviderError):
    """The method did not answer within the verification timeout"""
    default_remediation = "Tap your YubiKey (or approve the biometric prompt) before the timeout"


class ChallengeRejected(ProviderError):
    """The method answered but verification failed (bad response or serial mismatch)"""
    default_remediation = "Use an allowed device or check devices.allowed_serials"


class OtpSlotError(TapgateError):
    """Programming or deleting the OTP slot failed or was refused"""
    default_remediation = "Check the key with 'tapctl otp status' and retry"


# =============================================================================
# Caller-level errors
# =============================================================================

class AllMethodsExhausted(TapgateError):
    """Every verification method was unavailable, failed or timed out"""
    default_remediation = "Connect your YubiKey, sign in with 'op signin', or set TAPGATE_ENABLED=false"


# =============================================================================
# Installer errors
# =============================================================================

class InstallerError(TapgateError):
    """Base class for setup/remove failures"""
    pass


class PrerequisitesNotMet(InstallerError):
    """Setup prerequisites are missing; nothing was changed"""

    def __init__(self, missing: Sequence[str], remediation: Optional[str] = None):
        self.missing: List[str] = list(missing)
        super().__init__(
            "Prerequisites not met: " + "; ".join(self.missing),
            remediation or "Install ykman (or the 1Password CLI) and git, then connect your device",
        )


class SetupVerificationFailed(InstallerError):
    """The live verification at the end of setup was denied"""
    default_remediation = "Fix the verification issue and run 'tapctl setup' again"


class ArtifactError(InstallerError):
    """An installation artifact could not be written, restored or removed"""

    def __init__(self, path: Path, message: str):
        self.path = Path(path)
        super().__init__(f"{self.path}: {message}")


class RollbackPartialFailure(InstallerError):
    """
    Automatic rollback could not restore every artifact.

    SECURITY: Must never be swallowed. Lists the inconsistent paths and the
    backup location so the operator can restore by hand.
    """

    def __init__(self, failed_paths: Sequence[Path], backup_dir: Optional[Path], errors: Sequence[str] = ()):
        self.failed_paths: List[Path] = [Path(p) for p in failed_paths]
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.errors: List[str] = list(errors)
        paths = ", ".join(str(p) for p in self.failed_paths)
        location = str(self.backup_dir) if self.backup_dir else "unavailable"
        super().__init__(
            f"Rollback incomplete; inconsistent artifacts: {paths} (backup: {location})",
            f"Restore manually with: tapctl restore {location}",
        )


__all__ = [
    'TapgateError',
    'ConfigError',
    'ProviderError',
    'DeviceUnavailable',
    'ConfigurationMissing',
    'ChallengeTimeout',
    'ChallengeRejected',
    'OtpSlotError',
    'AllMethodsExhausted',
    'InstallerError',
    'PrerequisitesNotMet',
    'SetupVerificationFailed',
    'ArtifactError',
    'RollbackPartialFailure',
]
