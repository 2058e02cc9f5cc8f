"""
Core data model for tapgate: operation contexts, verification attempts and
the decision returned to callers.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .constants import Limits

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
NO_DEVICE = "n/a"

_LOG_LINE_RE = re.compile(
    r'^(?P<timestamp>\S+) \[(?P<status>[A-Z]+)\] (?P<operation>.*) - '
    r'(?P<method>\S+) - Serial: (?P<serial>.*)$'
)


class Classification(Enum):
    """Whether an intercepted command needs proof of presence"""
    REQUIRES_VERIFICATION = "requires_verification"
    PASS_THROUGH = "pass_through"


class OperationPolicy(Enum):
    """Per-operation enforcement policy (operations.<tool>.<verb>)"""
    REQUIRED = "required"
    OPTIONAL = "optional"
    DISABLED = "disabled"


class VerificationOutcome(Enum):
    """Outcome of one verification attempt; the value is the audit status tag"""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"
    BYPASSED = "BYPASSED"

    @property
    def is_failure(self) -> bool:
        return self in (VerificationOutcome.FAILURE, VerificationOutcome.TIMEOUT)


class MethodTag(Enum):
    """Method tag written to the audit log"""
    OTP_TOUCH = "OTP-TOUCH"
    OTP = "OTP"
    TOUCH_ID = "TOUCH-ID"
    FIDO2_PRESENCE_ONLY = "FIDO2-PRESENCE-ONLY"
    PRESENCE = "PRESENCE"
    ENFORCEMENT_DISABLED = "enforcement_disabled"
    NO_DEVICE_OR_AGENT = "no_device_or_agent"


class SecurityTier(Enum):
    """Strength of a verification method"""
    SECURE = "secure"
    DEGRADED = "degraded"
    INSECURE = "insecure"


@dataclass(frozen=True)
class OperationContext:
    """One intercepted invocation. Built by the caller, never mutated."""
    tool: str
    verb: str = ""
    arguments: str = ""
    classification: Classification = Classification.REQUIRES_VERIFICATION

    @property
    def description(self) -> str:
        """Operation description as written to the audit log"""
        return " ".join(part for part in (self.tool, self.verb, self.arguments) if part)

    @property
    def operation_class(self) -> str:
        """Grouping key for failure streaks, e.g. 'git push'"""
        return operation_class_of(self.description)

    @property
    def policy_key(self) -> str:
        """Key into operations.<tool>.<verb>"""
        return f"{self.tool}.{self.verb}" if self.verb else self.tool

    @classmethod
    def from_description(cls, description: str,
                         classification: Classification = Classification.REQUIRES_VERIFICATION
                         ) -> 'OperationContext':
        """Build a context from a free-form description such as 'git push origin main'"""
        parts = description.split(None, 2)
        if not parts:
            return cls(tool="unknown", classification=classification)
        return cls(
            tool=parts[0],
            verb=parts[1] if len(parts) > 1 else "",
            arguments=parts[2] if len(parts) > 2 else "",
            classification=classification,
        )

    @classmethod
    def setup_verification(cls) -> 'OperationContext':
        return cls(tool="tapgate", verb="setup-verification")


def operation_class_of(description: str) -> str:
    """First two words of an operation description"""
    return " ".join(description.split()[:2])


def format_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _sanitize_operation(operation: str) -> str:
    single_line = " ".join(operation.split())
    return single_line[:Limits.OPERATION_MAX_LENGTH] or "unknown"


@dataclass(frozen=True)
class VerificationAttempt:
    """One audit record. Immutable once appended."""
    timestamp: datetime
    operation: str
    method: MethodTag
    outcome: VerificationOutcome
    device_id: Optional[str] = None

    @classmethod
    def record(cls, context: OperationContext, method: MethodTag,
               outcome: VerificationOutcome, device_id: Optional[str] = None) -> 'VerificationAttempt':
        return cls(
            timestamp=datetime.now(timezone.utc),
            operation=_sanitize_operation(context.description),
            method=method,
            outcome=outcome,
            device_id=device_id,
        )

    @property
    def operation_class(self) -> str:
        return operation_class_of(self.operation)

    def to_log_line(self) -> str:
        """Single audit line, without the trailing newline"""
        serial = self.device_id or NO_DEVICE
        return (
            f"{format_timestamp(self.timestamp)} [{self.outcome.value}] "
            f"{_sanitize_operation(self.operation)} - {self.method.value} - Serial: {serial}"
        )

    @classmethod
    def from_log_line(cls, line: str) -> Optional['VerificationAttempt']:
        """Parse an audit line; returns None for lines that are not audit records"""
        match = _LOG_LINE_RE.match(line.rstrip("\n"))
        if not match:
            return None
        try:
            serial = match.group('serial').strip()
            return cls(
                timestamp=parse_timestamp(match.group('timestamp')),
                operation=match.group('operation'),
                method=MethodTag(match.group('method')),
                outcome=VerificationOutcome(match.group('status')),
                device_id=None if serial == NO_DEVICE else serial,
            )
        except ValueError:
            return None


@dataclass
class Decision:
    """Result of VerificationOrchestrator.decide()"""
    allowed: bool
    operation: str
    method: Optional[MethodTag] = None
    tier: Optional[SecurityTier] = None
    device_id: Optional[str] = None
    bypassed: bool = False
    warnings: List[str] = field(default_factory=list)
    remediation: List[str] = field(default_factory=list)
    attempts: List[VerificationAttempt] = field(default_factory=list)
    alert_fired: bool = False

    @property
    def exit_code(self) -> int:
        return 0 if self.allowed else 1

    @property
    def degraded(self) -> bool:
        return self.tier in (SecurityTier.DEGRADED, SecurityTier.INSECURE)


__all__ = [
    'Classification',
    'OperationPolicy',
    'VerificationOutcome',
    'MethodTag',
    'SecurityTier',
    'OperationContext',
    'VerificationAttempt',
    'Decision',
    'operation_class_of',
    'format_timestamp',
    'parse_timestamp',
    'NO_DEVICE',
]
