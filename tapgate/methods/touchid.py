"""
Biometric unlock through the 1Password CLI.

With biometric unlock enabled in the 1Password app, any vault access from
`op` raises a Touch ID prompt. A successful `op item list` therefore proves a
fingerprint was accepted on this machine.
"""

import logging
from typing import Optional

from ..exceptions import ChallengeRejected, ChallengeTimeout, ConfigurationMissing, DeviceUnavailable
from ..constants import Timeouts
from ..models import MethodTag, OperationContext, SecurityTier
from .base import Availability, MethodProvider

logger = logging.getLogger(__name__)

OP = "op"
DEVICE_ID = "1password-cli"


class BiometricUnlock(MethodProvider):
    """Touch ID via 1Password CLI biometric unlock"""
    name = "touch-id"
    method_tag = MethodTag.TOUCH_ID
    security_tier = SecurityTier.SECURE

    def check_availability(self) -> Availability:
        if self.runner.which(OP) is None:
            return Availability.unavailable(DeviceUnavailable(
                "1Password CLI (op) not found", "Install with: brew install 1password-cli"
            ))
        result = self.runner.run([OP, "account", "list"], timeout=Timeouts.PROBE)
        if not result.ok:
            return Availability.unavailable(ConfigurationMissing(
                "1Password CLI not signed in", "Sign in with: op signin"
            ))
        return Availability.ready(DEVICE_ID)

    def _challenge(self, context: OperationContext, timeout: float,
                   availability: Availability) -> Optional[str]:
        logger.info("Touch ID required to verify operation")
        result = self.runner.run([OP, "item", "list", "--format=json"], timeout=timeout)
        if result.timed_out:
            raise ChallengeTimeout(f"Touch ID not confirmed within {timeout}s")
        if not result.ok or not result.stdout.strip():
            raise ChallengeRejected(
                f"Touch ID verification failed: {result.stderr.strip() or 'no vault access'}",
                "Try: op signin (to refresh authentication)",
            )
        return DEVICE_ID


__all__ = ['BiometricUnlock', 'OP', 'DEVICE_ID']
