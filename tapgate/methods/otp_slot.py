"""
OTP slot 2 management for tap-required challenge-response.

    status     -> ykman otp info
    configure  -> ykman otp chalresp --generate --touch --force 2
    delete     -> ykman otp delete --force 2

Deleting the slot disables HardwareTouchChallenge; verification then falls
back to the weaker methods.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..constants import Timeouts
from ..exceptions import OtpSlotError
from .runner import CommandRunner
from .yubikey import OTP_SLOT, YubiKeyProbe, parse_slot_state

logger = logging.getLogger(__name__)


class SlotState(Enum):
    PROGRAMMED = "programmed"
    EMPTY = "empty"
    UNKNOWN = "unknown"


@dataclass
class SlotStatus:
    state: SlotState
    serial: Optional[str] = None
    raw: str = ""


class OtpSlotManager:
    """Reads and programs OTP slot 2 on the connected YubiKey"""

    def __init__(self, runner: Optional[CommandRunner] = None, probe: Optional[YubiKeyProbe] = None):
        self.runner = runner or CommandRunner()
        self.probe = probe or YubiKeyProbe(self.runner)

    def status(self) -> SlotStatus:
        """
        Raises:
            DeviceUnavailable: ykman missing or no key connected
        """
        device = self.probe.select_device()
        result = self.probe.run(device.serial, "otp", "info")
        if not result.ok:
            logger.warning(f"ykman otp info failed: {result.stderr.strip()}")
            return SlotStatus(SlotState.UNKNOWN, device.serial, result.stderr)
        word = parse_slot_state(result.stdout)
        try:
            state = SlotState(word) if word else SlotState.UNKNOWN
        except ValueError:
            state = SlotState.UNKNOWN
        return SlotStatus(state, device.serial, result.stdout)

    def configure(self, force: bool = False) -> SlotStatus:
        """Program slot 2 with a generated secret and touch required"""
        current = self.status()
        if current.state == SlotState.PROGRAMMED and not force:
            raise OtpSlotError(
                f"OTP slot {OTP_SLOT} is already programmed",
                "Re-run with --force to overwrite it (existing uses of the slot will stop working)",
            )
        logger.info(f"Programming OTP slot {OTP_SLOT} on {current.serial or 'YubiKey'}; tap the key when it blinks")
        result = self.probe.run(
            current.serial, "otp", "chalresp", "--generate", "--touch", "--force", str(OTP_SLOT),
            timeout=Timeouts.OTP_PROGRAMMING,
        )
        if result.timed_out:
            raise OtpSlotError(f"Programming slot {OTP_SLOT} timed out", "Tap the key when it blinks and retry")
        if not result.ok:
            raise OtpSlotError(f"Programming slot {OTP_SLOT} failed: {result.stderr.strip()}")
        return self.status()

    def delete(self) -> SlotStatus:
        current = self.status()
        if current.state == SlotState.EMPTY:
            logger.info(f"OTP slot {OTP_SLOT} is already empty")
            return current
        result = self.probe.run(current.serial, "otp", "delete", "--force", str(OTP_SLOT),
                                timeout=Timeouts.OTP_PROGRAMMING)
        if not result.ok:
            raise OtpSlotError(f"Deleting slot {OTP_SLOT} failed: {result.stderr.strip() or 'timed out'}")
        logger.warning(f"OTP slot {OTP_SLOT} deleted; tap-required verification is no longer available")
        return self.status()


__all__ = ['OtpSlotManager', 'SlotState', 'SlotStatus']
