"""
Tests for the tapgate data model: operation contexts, audit records, decisions.
"""

import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tapgate.models import (
    Classification,
    Decision,
    MethodTag,
    NO_DEVICE,
    OperationContext,
    SecurityTier,
    VerificationAttempt,
    VerificationOutcome,
    operation_class_of,
)


# ===========================================================================
# OperationContext
# ===========================================================================

class TestOperationContext:
    """Tests for OperationContext."""

    def test_description_joins_parts(self):
        context = OperationContext(tool="git", verb="push", arguments="origin main")
        assert context.description == "git push origin main"

    def test_description_without_arguments(self):
        assert OperationContext(tool="git", verb="fetch").description == "git fetch"

    def test_operation_class_is_first_two_words(self):
        context = OperationContext(tool="git", verb="push", arguments="--force origin main")
        assert context.operation_class == "git push"

    def test_policy_key(self):
        assert OperationContext(tool="gh", verb="pr", arguments="merge 12").policy_key == "gh.pr"
        assert OperationContext(tool="gh").policy_key == "gh"

    def test_from_description(self):
        context = OperationContext.from_description("git push origin main")
        assert context.tool == "git"
        assert context.verb == "push"
        assert context.arguments == "origin main"
        assert context.classification == Classification.REQUIRES_VERIFICATION

    def test_from_empty_description(self):
        assert OperationContext.from_description("   ").tool == "unknown"

    def test_setup_verification_context(self):
        context = OperationContext.setup_verification()
        assert context.description == "tapgate setup-verification"

    def test_is_immutable(self):
        context = OperationContext(tool="git", verb="push")
        with pytest.raises(Exception):
            context.verb = "pull"

    def test_operation_class_of_collapses_whitespace(self):
        assert operation_class_of("git   push  origin") == "git push"


# ===========================================================================
# VerificationAttempt
# ===========================================================================

class TestVerificationAttempt:
    """Tests for audit line formatting and parsing."""

    def test_log_line_format(self):
        attempt = VerificationAttempt(
            timestamp=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            operation="git push origin main",
            method=MethodTag.OTP_TOUCH,
            outcome=VerificationOutcome.SUCCESS,
            device_id="12345678",
        )
        assert attempt.to_log_line() == (
            "2026-01-02T03:04:05+0000 [SUCCESS] git push origin main - OTP-TOUCH - Serial: 12345678"
        )

    def test_missing_device_is_written_as_na(self):
        attempt = VerificationAttempt.record(
            OperationContext(tool="git", verb="push"),
            MethodTag.NO_DEVICE_OR_AGENT,
            VerificationOutcome.FAILURE,
        )
        assert attempt.to_log_line().endswith(" - no_device_or_agent - Serial: n/a")

    def test_parse_log_line(self):
        line = "2026-01-02T03:04:05+0000 [BYPASSED] gh pr merge 12 - enforcement_disabled - Serial: n/a"
        attempt = VerificationAttempt.from_log_line(line)
        assert attempt is not None
        assert attempt.outcome == VerificationOutcome.BYPASSED
        assert attempt.method == MethodTag.ENFORCEMENT_DISABLED
        assert attempt.operation == "gh pr merge 12"
        assert attempt.device_id is None
        assert attempt.operation_class == "gh pr"

    def test_parse_operation_containing_separator(self):
        line = "2026-01-02T03:04:05+0000 [FAILURE] git push origin feat - x - OTP - Serial: 42"
        attempt = VerificationAttempt.from_log_line(line)
        assert attempt.operation == "git push origin feat - x"
        assert attempt.method == MethodTag.OTP
        assert attempt.device_id == "42"

    @pytest.mark.parametrize("line", [
        "",
        "garbage",
        "2026-01-02T03:04:05+0000 [UNKNOWN] git push - OTP - Serial: 1",
        "2026-01-02T03:04:05+0000 [SUCCESS] git push - NOT-A-METHOD - Serial: 1",
    ])
    def test_unparsable_lines_return_none(self, line):
        assert VerificationAttempt.from_log_line(line) is None

    def test_multiline_operation_is_flattened(self):
        attempt = VerificationAttempt.record(
            OperationContext(tool="git", verb="push", arguments="origin\nmain"),
            MethodTag.OTP,
            VerificationOutcome.TIMEOUT,
            "1",
        )
        assert "\n" not in attempt.to_log_line()
        assert attempt.operation == "git push origin main"


# ===========================================================================
# Enums and Decision
# ===========================================================================

class TestOutcomes:
    """Tests for outcome helpers."""

    def test_failure_outcomes(self):
        assert VerificationOutcome.FAILURE.is_failure
        assert VerificationOutcome.TIMEOUT.is_failure
        assert not VerificationOutcome.SUCCESS.is_failure
        assert not VerificationOutcome.BYPASSED.is_failure

    def test_status_tags(self):
        assert [o.value for o in VerificationOutcome] == ["SUCCESS", "FAILURE", "TIMEOUT", "BYPASSED"]


class TestDecision:
    """Tests for Decision."""

    def test_exit_codes(self):
        assert Decision(allowed=True, operation="git push").exit_code == 0
        assert Decision(allowed=False, operation="git push").exit_code == 1

    def test_degraded(self):
        assert Decision(True, "git push", tier=SecurityTier.DEGRADED).degraded
        assert Decision(True, "git push", tier=SecurityTier.INSECURE).degraded
        assert not Decision(True, "git push", tier=SecurityTier.SECURE).degraded

    def test_no_device_marker(self):
        assert NO_DEVICE == "n/a"
