"""
Desktop notifications for security-relevant events.

macOS uses `osascript -e 'display notification ...'`, Linux uses `notify-send`.
Delivery is best effort: a failed notification is logged as a warning and
never changes a verification decision.
"""

import logging
import platform
from typing import List, Optional

from ..constants import Timeouts
from ..methods.runner import CommandRunner
from ..utils.error_handling import ErrorCategory, safe_execute

logger = logging.getLogger(__name__)

APP_NAME = "tapgate"


def _applescript_quote(text: str) -> str:
    return '"' + text.replace('\\', '\\\\').replace('"', '\\"') + '"'


class Notifier:
    """Sends one desktop notification per call"""

    def __init__(self, runner: Optional[CommandRunner] = None, system: Optional[str] = None):
        self.runner = runner or CommandRunner()
        self.system = system or platform.system()

    def command_for(self, title: str, message: str) -> Optional[List[str]]:
        if self.system == "Darwin":
            script = (
                f"display notification {_applescript_quote(message)} "
                f"with title {_applescript_quote(title)}"
            )
            return ["osascript", "-e", script]
        if self.system == "Linux":
            return ["notify-send", "--urgency=critical", "--app-name", APP_NAME, title, message]
        return None

    def notify(self, title: str, message: str) -> bool:
        """Show a notification; returns True when the tool reported success"""
        logger.warning(f"ALERT: {title}: {message}")
        argv = self.command_for(title, message)
        if argv is None:
            logger.warning(f"No notification tool for platform {self.system}")
            return False

        with safe_execute("desktop notification", ErrorCategory.EXTERNAL, default_return=False) as outcome:
            result = self.runner.run(argv, timeout=Timeouts.NOTIFICATION)
            if result.not_found:
                logger.warning(f"{argv[0]} not installed; alert shown in log only")
            elif result.timed_out:
                logger.warning(f"{argv[0]} timed out after {Timeouts.NOTIFICATION}s")
            elif not result.ok:
                logger.warning(f"{argv[0]} failed (exit {result.returncode}): {result.stderr.strip()}")
            outcome.value = result.ok
        return bool(outcome.value)


__all__ = ['Notifier', 'APP_NAME']
