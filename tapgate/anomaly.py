"""
Anomaly Detector - alerts on repeated verification failures.

The alert fires once per threshold crossing: only on the call whose appended
failures move the streak for an operation class from below
security.max_failed_attempts to at or above it. A later SUCCESS resets the
streak, which re-arms the alert.
"""

from typing import Optional

from .alerts import Notifier
from .audit_log import AuditLog
from .constants import Limits
from .logging_config import get_logger

logger = get_logger(__name__)


class AnomalyDetector:
    """Checks the audit log after failures and raises the user-visible alert"""

    def __init__(self, audit_log: AuditLog, notifier: Optional[Notifier] = None,
                 window: int = Limits.FAILURE_SCAN_WINDOW):
        self.audit_log = audit_log
        self.notifier = notifier or Notifier()
        self.window = window

    def crossed(self, streak: int, appended: int, threshold: int) -> bool:
        return appended > 0 and streak >= threshold and streak - appended < threshold

    def check(self, operation_class: str, appended_failures: int, threshold: int) -> bool:
        """
        Evaluate the streak after `appended_failures` new FAILURE/TIMEOUT
        entries were written for `operation_class` in this call.

        Returns:
            True if the alert fired on this call
        """
        if appended_failures <= 0:
            return False
        streak = self.audit_log.recent_failure_streak(operation_class, self.window)
        if not self.crossed(streak, appended_failures, threshold):
            logger.debug(f"Failure streak for '{operation_class}': {streak}/{threshold}")
            return False

        logger.security(
            f"{streak} consecutive failed verifications for '{operation_class}' "
            f"(threshold {threshold})"
        )
        self.notifier.notify(
            "tapgate: repeated verification failures",
            f"{streak} failed hardware verifications in a row for '{operation_class}'. "
            f"If this was not you, check {self.audit_log.path}",
        )
        return True

    def bypass_alert(self, operation: str) -> None:
        logger.security(f"Enforcement bypassed for '{operation}'")
        self.notifier.notify(
            "tapgate: enforcement bypassed",
            f"'{operation}' ran without hardware verification",
        )


__all__ = ['AnomalyDetector']
