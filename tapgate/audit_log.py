"""
Audit Log - Append-only record of every verification decision.

One line per attempt:

    2026-01-01T10:00:00+0000 [SUCCESS] git push origin main - OTP-TOUCH - Serial: 12345678

Appends are single O_APPEND writes made under an exclusive flock and fsynced,
so concurrent tapgate processes never interleave partial lines. Reads are a
lock-free sequential scan of the tail; a stale read is acceptable.
"""

import fcntl
import logging
import os
from collections import deque
from pathlib import Path
from typing import List, Optional

from .constants import Limits, Paths, Permissions
from .models import VerificationAttempt, VerificationOutcome, operation_class_of

logger = logging.getLogger(__name__)


class AuditLog:
    """File-backed verification log"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else Paths.audit_log()

    def append(self, attempt: VerificationAttempt) -> None:
        """
        Append one attempt to the log.

        Raises:
            OSError: if the line could not be written. Callers must not treat
                an unrecorded attempt as recorded.
        """
        line = (attempt.to_log_line() + "\n").encode('utf-8')
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, Permissions.SECURE_FILE)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                os.write(fd, line)
                os.fsync(fd)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.critical(f"Failed to write audit entry to {self.path}: {e}")
            raise
        finally:
            os.close(fd)
        logger.debug(f"Audit: {attempt.to_log_line()}")

    def tail(self, count: int = Limits.STATUS_TAIL) -> List[str]:
        """Last `count` raw lines, oldest first"""
        if count <= 0 or not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8', errors='replace') as f:
                lines = deque((line.rstrip("\n") for line in f if line.strip()), maxlen=count)
        except OSError as e:
            logger.warning(f"Cannot read audit log {self.path}: {e}")
            return []
        return list(lines)

    def read_attempts(self, window: int = Limits.FAILURE_SCAN_WINDOW) -> List[VerificationAttempt]:
        """Parsed attempts from the last `window` lines, oldest first"""
        attempts = []
        for line in self.tail(window):
            attempt = VerificationAttempt.from_log_line(line)
            if attempt is None:
                logger.debug(f"Skipping unparsable audit line: {line!r}")
                continue
            attempts.append(attempt)
        return attempts

    def recent_failure_streak(self, operation_class: str,
                              window: int = Limits.FAILURE_SCAN_WINDOW) -> int:
        """
        Consecutive FAILURE/TIMEOUT entries for `operation_class`, counted back
        from the end of the scanned window until the first SUCCESS.
        BYPASSED entries neither count nor break the streak.
        """
        target = operation_class_of(operation_class)
        streak = 0
        for attempt in reversed(self.read_attempts(window)):
            if attempt.operation_class != target:
                continue
            if attempt.outcome == VerificationOutcome.SUCCESS:
                break
            if attempt.outcome.is_failure:
                streak += 1
        return streak


__all__ = ['AuditLog']
