"""
YubiKey verification methods, reached through the `ykman` CLI.

Four providers share one probe:

    HardwareTouchChallenge   OTP slot 2 challenge-response, slot programmed with --touch  (SECURE)
    HardwareChallengeNoTouch OTP slot 2 challenge-response, touch not guaranteed          (DEGRADED)
    HardwarePresenceOnly     FIDO2 application answers; no tap needed                     (INSECURE)
    GenericPresence          device is enumerated by `ykman list`                         (INSECURE)

The challenge itself is computed by the key; only ykman's exit status is
interpreted here.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from typing import List, Optional

from ..constants import Timeouts
from ..exceptions import (
    ChallengeRejected,
    ChallengeTimeout,
    ConfigurationMissing,
    DeviceUnavailable,
)
from ..models import MethodTag, OperationContext, SecurityTier
from .base import Availability, DevicePolicy, MethodProvider
from .runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

YKMAN = "ykman"
OTP_SLOT = 2

_SERIAL_RE = re.compile(r'Serial:\s*(\d+)')
_SLOT_RE = re.compile(r'Slot\s+%d:\s*(\S+)' % OTP_SLOT, re.IGNORECASE)

INSTALL_HINT = "Install ykman: brew install ykman (macOS) or pip install yubikey-manager"
CONFIGURE_HINT = f"Configure OTP slot {OTP_SLOT}: ykman otp chalresp --generate --touch {OTP_SLOT}"


@dataclass(frozen=True)
class YubiKeyDevice:
    """One line of `ykman list`"""
    description: str
    serial: Optional[str] = None


def parse_device_list(output: str) -> List[YubiKeyDevice]:
    devices = []
    for line in output.splitlines():
        line = line.strip()
        if "YubiKey" not in line:
            continue
        match = _SERIAL_RE.search(line)
        devices.append(YubiKeyDevice(description=line, serial=match.group(1) if match else None))
    return devices


def parse_slot_state(output: str) -> Optional[str]:
    """State word for OTP slot 2 in `ykman otp info` output ('programmed', 'empty'), or None"""
    match = _SLOT_RE.search(output)
    return match.group(1).lower() if match else None


class YubiKeyProbe:
    """Enumerates connected keys and builds ykman command lines"""

    def __init__(self, runner: Optional[CommandRunner] = None, policy: Optional[DevicePolicy] = None):
        self.runner = runner or CommandRunner()
        self.policy = policy or DevicePolicy()

    def command(self, serial: Optional[str], *args: str) -> List[str]:
        argv = [YKMAN]
        if serial:
            argv += ["--device", serial]
        return argv + list(args)

    def run(self, serial: Optional[str], *args: str, timeout: float = Timeouts.PROBE) -> CommandResult:
        result = self.runner.run(self.command(serial, *args), timeout=timeout)
        if result.not_found:
            raise DeviceUnavailable("ykman not found", INSTALL_HINT)
        return result

    def list_devices(self) -> List[YubiKeyDevice]:
        result = self.run(None, "list")
        if not result.ok:
            raise DeviceUnavailable(f"ykman list failed: {result.stderr.strip() or 'no output'}")
        return parse_device_list(result.stdout)

    def select_device(self) -> YubiKeyDevice:
        """First connected key, preferring one whose serial is allowed"""
        devices = self.list_devices()
        if not devices:
            raise DeviceUnavailable("No YubiKey detected")
        for device in devices:
            if self.policy.permits(device.serial):
                return device
        return devices[0]

    def otp_slot_state(self, serial: Optional[str]) -> Optional[str]:
        result = self.run(serial, "otp", "info")
        if not result.ok:
            raise ConfigurationMissing("OTP application not available on this YubiKey", CONFIGURE_HINT)
        return parse_slot_state(result.stdout)

    def require_permitted(self, serial: Optional[str]) -> None:
        if not self.policy.permits(serial):
            raise ChallengeRejected(
                f"YubiKey serial {serial or 'unknown'} is not in devices.allowed_serials"
            )


class _YubiKeyProvider(MethodProvider):
    """Shared construction for ykman-backed providers"""

    def __init__(self, runner: Optional[CommandRunner] = None,
                 policy: Optional[DevicePolicy] = None,
                 probe: Optional[YubiKeyProbe] = None):
        super().__init__(runner)
        self.probe = probe or YubiKeyProbe(self.runner, policy)

    def check_availability(self) -> Availability:
        try:
            device = self.probe.select_device()
        except DeviceUnavailable as e:
            return Availability.unavailable(e)
        return Availability.ready(device.serial)


class _OtpChallenge(_YubiKeyProvider):

    def check_availability(self) -> Availability:
        try:
            device = self.probe.select_device()
            state = self.probe.otp_slot_state(device.serial)
        except DeviceUnavailable as e:
            return Availability.unavailable(e)
        if state is None or state == "empty":
            return Availability.unavailable(ConfigurationMissing(
                f"OTP slot {OTP_SLOT} is not configured for challenge-response", CONFIGURE_HINT
            ))
        return Availability.ready(device.serial)

    def _challenge(self, context: OperationContext, timeout: float,
                   availability: Availability) -> Optional[str]:
        serial = availability.device_id
        challenge = secrets.token_hex(32)
        logger.debug(f"{self.name}: sending challenge to slot {OTP_SLOT} of {serial or 'unknown'}")
        result = self.probe.run(serial, "otp", "calculate", str(OTP_SLOT), challenge, timeout=timeout)
        if result.timed_out:
            raise ChallengeTimeout(f"No touch within {timeout}s")
        if not result.ok or not result.stdout.strip():
            raise ChallengeRejected(
                f"Challenge-response failed: {result.stderr.strip() or 'empty response'}",
                CONFIGURE_HINT,
            )
        self.probe.require_permitted(serial)
        return serial


class HardwareTouchChallenge(_OtpChallenge):
    """OTP challenge-response on a slot that requires a physical tap"""
    name = "yubikey-otp-touch"
    method_tag = MethodTag.OTP_TOUCH
    security_tier = SecurityTier.SECURE


class HardwareChallengeNoTouch(_OtpChallenge):
    """OTP challenge-response where the slot may not require touch"""
    name = "yubikey-otp"
    method_tag = MethodTag.OTP
    security_tier = SecurityTier.DEGRADED


class HardwarePresenceOnly(_YubiKeyProvider):
    """FIDO2 application answers; proves the key is plugged in, not that anyone tapped it"""
    name = "yubikey-fido2-presence"
    method_tag = MethodTag.FIDO2_PRESENCE_ONLY
    security_tier = SecurityTier.INSECURE

    def _challenge(self, context: OperationContext, timeout: float,
                   availability: Availability) -> Optional[str]:
        serial = availability.device_id
        result = self.probe.run(serial, "fido", "info", timeout=timeout)
        if result.timed_out:
            raise ChallengeTimeout(f"ykman fido info did not answer within {timeout}s")
        if not result.ok:
            raise ChallengeRejected("FIDO2 not available on this YubiKey", CONFIGURE_HINT)
        self.probe.require_permitted(serial)
        return serial


class GenericPresence(_YubiKeyProvider):
    """A YubiKey is enumerated; lowest assurance"""
    name = "yubikey-presence"
    method_tag = MethodTag.PRESENCE
    security_tier = SecurityTier.INSECURE

    def _challenge(self, context: OperationContext, timeout: float,
                   availability: Availability) -> Optional[str]:
        result = self.probe.run(None, "list", timeout=timeout)
        if result.timed_out:
            raise ChallengeTimeout(f"ykman list did not answer within {timeout}s")
        devices = parse_device_list(result.stdout) if result.ok else []
        if not devices:
            raise DeviceUnavailable("YubiKey no longer detected")
        serials = [d.serial for d in devices]
        serial = availability.device_id if availability.device_id in serials else devices[0].serial
        self.probe.require_permitted(serial)
        return serial


__all__ = [
    'YubiKeyDevice',
    'YubiKeyProbe',
    'HardwareTouchChallenge',
    'HardwareChallengeNoTouch',
    'HardwarePresenceOnly',
    'GenericPresence',
    'parse_device_list',
    'parse_slot_state',
    'YKMAN',
    'OTP_SLOT',
    'INSTALL_HINT',
    'CONFIGURE_HINT',
]
