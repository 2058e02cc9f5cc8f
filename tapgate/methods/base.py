"""
Method Provider base class.

A provider is one way of proving physical presence. The orchestrator asks
check_availability() first (cheap, bounded, no user interaction), then
attempt() with the remaining timeout. Subclasses implement _challenge() and
signal failure by raising the provider-level exceptions; attempt() maps them
onto VerificationOutcome values so a provider never raises to its caller.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import FrozenSet, Optional

from ..config import EnforcementConfig
from ..exceptions import (
    ChallengeRejected,
    ChallengeTimeout,
    DeviceUnavailable,
    ProviderError,
)
from ..models import MethodTag, OperationContext, SecurityTier, VerificationOutcome
from .runner import CommandRunner

logger = logging.getLogger(__name__)


@dataclass
class Availability:
    """Result of a provider availability probe"""
    available: bool
    device_id: Optional[str] = None
    error: Optional[ProviderError] = None

    @property
    def reason(self) -> str:
        return str(self.error) if self.error else ""

    @property
    def remediation(self) -> str:
        return self.error.remediation if self.error else ""

    @classmethod
    def ready(cls, device_id: Optional[str] = None) -> 'Availability':
        return cls(available=True, device_id=device_id)

    @classmethod
    def unavailable(cls, error: ProviderError) -> 'Availability':
        return cls(available=False, error=error)


@dataclass
class AttemptResult:
    """Outcome of one provider attempt"""
    outcome: VerificationOutcome
    device_id: Optional[str] = None
    elapsed: float = 0.0
    error: Optional[ProviderError] = None

    @property
    def remediation(self) -> str:
        return self.error.remediation if self.error else ""


@dataclass(frozen=True)
class DevicePolicy:
    """Which hardware serials may answer a challenge"""
    allowed_serials: FrozenSet[str] = frozenset()
    require_specific_device: bool = False

    @classmethod
    def from_config(cls, config: EnforcementConfig) -> 'DevicePolicy':
        return cls(
            allowed_serials=config.allowed_serials,
            require_specific_device=config.require_specific_device,
        )

    @property
    def enforced(self) -> bool:
        return self.require_specific_device and bool(self.allowed_serials)

    def permits(self, serial: Optional[str]) -> bool:
        if not self.enforced:
            return True
        return serial is not None and serial in self.allowed_serials


class MethodProvider(ABC):
    """One verification method in the fallback chain"""

    name: str = "provider"
    method_tag: MethodTag
    security_tier: SecurityTier

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    @abstractmethod
    def check_availability(self) -> Availability:
        """Probe the device or agent without user interaction"""

    def is_available(self) -> bool:
        return self.check_availability().available

    @abstractmethod
    def _challenge(self, context: OperationContext, timeout: float,
                   availability: Availability) -> Optional[str]:
        """
        Run the challenge. Returns the responding device id on success.

        Raises:
            ChallengeTimeout: no answer within `timeout`
            ChallengeRejected: answered, but verification failed
            DeviceUnavailable: device vanished mid-attempt
        """

    def attempt(self, context: OperationContext, timeout: float,
                availability: Optional[Availability] = None) -> AttemptResult:
        """Run one bounded attempt and map the result to an outcome"""
        if availability is None:
            availability = self.check_availability()
        started = time.monotonic()
        try:
            device_id = self._challenge(context, timeout, availability)
        except ChallengeTimeout as e:
            logger.info(f"{self.name}: timed out after {timeout}s")
            return AttemptResult(VerificationOutcome.TIMEOUT, availability.device_id,
                                 time.monotonic() - started, e)
        except (ChallengeRejected, DeviceUnavailable) as e:
            logger.info(f"{self.name}: {e}")
            return AttemptResult(VerificationOutcome.FAILURE, availability.device_id,
                                 time.monotonic() - started, e)
        return AttemptResult(VerificationOutcome.SUCCESS, device_id, time.monotonic() - started)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.method_tag.value} {self.security_tier.value}>"


__all__ = ['MethodProvider', 'Availability', 'AttemptResult', 'DevicePolicy']
