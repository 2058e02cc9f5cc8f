"""
Verification methods for tapgate.

Providers are tried in a fixed order, strongest first:

    1. HardwareTouchChallenge   (SECURE)
    2. BiometricUnlock          (SECURE)
    3. HardwareChallengeNoTouch (DEGRADED)
    4. HardwarePresenceOnly     (INSECURE)
    5. GenericPresence          (INSECURE)
"""

from typing import List, Optional

from ..config import EnforcementConfig
from .base import Availability, AttemptResult, DevicePolicy, MethodProvider
from .runner import CommandResult, CommandRunner, terminate_tree
from .touchid import BiometricUnlock
from .yubikey import (
    GenericPresence,
    HardwareChallengeNoTouch,
    HardwarePresenceOnly,
    HardwareTouchChallenge,
    YubiKeyProbe,
)
from .otp_slot import OtpSlotManager, SlotState, SlotStatus


def default_providers(config: EnforcementConfig,
                      runner: Optional[CommandRunner] = None) -> List[MethodProvider]:
    """The fixed fallback chain, sharing one runner and one YubiKey probe"""
    runner = runner or CommandRunner()
    probe = YubiKeyProbe(runner, DevicePolicy.from_config(config))
    return [
        HardwareTouchChallenge(runner, probe=probe),
        BiometricUnlock(runner),
        HardwareChallengeNoTouch(runner, probe=probe),
        HardwarePresenceOnly(runner, probe=probe),
        GenericPresence(runner, probe=probe),
    ]


__all__ = [
    'MethodProvider',
    'Availability',
    'AttemptResult',
    'DevicePolicy',
    'CommandResult',
    'CommandRunner',
    'terminate_tree',
    'HardwareTouchChallenge',
    'HardwareChallengeNoTouch',
    'HardwarePresenceOnly',
    'GenericPresence',
    'BiometricUnlock',
    'YubiKeyProbe',
    'OtpSlotManager',
    'SlotState',
    'SlotStatus',
    'default_providers',
]
