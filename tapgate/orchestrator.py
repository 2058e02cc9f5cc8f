"""
Verification Orchestrator - allow/deny decisions for intercepted operations.

decide() is the only entry point the interceptor and the installer use:

    1. Enforcement gate off      -> one BYPASSED entry, Allow, no provider invoked
    2. Pass-through / DISABLED   -> Allow, no provider, no audit entry
    3. Providers in fixed order  -> first SUCCESS wins; FAILURE/TIMEOUT fall through
    4. Exhaustion                -> FAILURE / no_device_or_agent, Deny

Each available provider gets the full timeout. Unavailable providers are
skipped without an audit entry. Every attempt is bounded twice: the provider's
own subprocess timeout, and a backstop wait here that abandons a stuck attempt
and records it as TIMEOUT.
"""

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .alerts import Notifier
from .anomaly import AnomalyDetector
from .audit_log import AuditLog
from .config import EnforcementConfig, load_config
from .constants import RuntimeConfig, Timeouts
from .exceptions import AllMethodsExhausted, ChallengeTimeout, ConfigError, ProviderError
from .gate import EnforcementGate
from .logging_config import get_logger
from .methods import AttemptResult, Availability, MethodProvider, default_providers
from .models import (
    Classification,
    Decision,
    MethodTag,
    NO_DEVICE,
    OperationContext,
    OperationPolicy,
    SecurityTier,
    VerificationAttempt,
    VerificationOutcome,
)
from .utils.error_handling import ErrorCategory, handle_error, log_security_error

logger = get_logger(__name__)

ProviderFactory = Callable[[EnforcementConfig], List[MethodProvider]]

TIER_WARNINGS: Dict[SecurityTier, str] = {
    SecurityTier.DEGRADED: (
        "Verified without guaranteed touch; configure slot 2 with: "
        "ykman otp chalresp --generate --touch 2"
    ),
    SecurityTier.INSECURE: (
        "INSECURE: device presence only, no tap was required; configure slot 2 with: "
        "ykman otp chalresp --generate --touch 2"
    ),
}

EXHAUSTED_STEPS = [
    "Connect your YubiKey and tap it when it blinks",
    "Configure OTP slot 2: ykman otp chalresp --generate --touch 2",
    "Or sign in to the 1Password CLI with Touch ID: op signin",
    "Emergency only: TAPGATE_ENABLED=false <command> (logged as BYPASSED)",
]


class VerificationOrchestrator:
    """Runs the provider fallback chain and writes the audit trail"""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        audit_log: Optional[AuditLog] = None,
        gate: Optional[EnforcementGate] = None,
        provider_factory: Optional[ProviderFactory] = None,
        notifier: Optional[Notifier] = None,
        grace: float = Timeouts.ATTEMPT_GRACE,
    ):
        self.config_path = config_path
        self.audit_log = audit_log or AuditLog()
        self.gate = gate or EnforcementGate()
        self.provider_factory = provider_factory or default_providers
        self.anomaly = AnomalyDetector(self.audit_log, notifier)
        self.grace = grace

    def load_config(self) -> EnforcementConfig:
        """Fresh config for this call; an unreadable file falls back to enforcing defaults"""
        try:
            return load_config(self.config_path)
        except ConfigError as e:
            handle_error(e, "loading enforcement config", ErrorCategory.CONFIG)
            return EnforcementConfig.default()

    def resolve_timeout(self, config: EnforcementConfig, timeout: Optional[float]) -> float:
        if timeout is not None and timeout > 0:
            return float(timeout)
        override = RuntimeConfig.get_timeout_override(self.gate.environ)
        if override is not None:
            return float(override)
        return float(config.timeout_seconds)

    def decide(self, context: OperationContext, timeout: Optional[float] = None,
               force: bool = False) -> Decision:
        """
        Decide whether `context` may proceed.

        Args:
            context: The intercepted operation
            timeout: Per-attempt timeout in seconds (default: TAPGATE_TIMEOUT,
                then enforcement.timeout_seconds)
            force: Skip the enforcement gate and per-operation policy; used for
                setup verification and `tapctl test`

        Returns:
            Decision; Decision.exit_code is 0 for allow, 1 for deny
        """
        config = self.load_config()
        decision = Decision(allowed=False, operation=context.description)

        if not force and not self.gate.is_enabled(config):
            return self._bypass(context, config, decision)

        policy = OperationPolicy.REQUIRED
        if not force:
            if context.classification == Classification.PASS_THROUGH:
                logger.debug(f"Pass-through: {context.description}")
                decision.allowed = True
                return decision
            policy = config.policy_for(context)
            if policy == OperationPolicy.DISABLED:
                logger.debug(f"Verification disabled for {context.policy_key}")
                decision.allowed = True
                return decision

        attempt_timeout = self.resolve_timeout(config, timeout)
        providers = self.provider_factory(config)
        if config.require_tap:
            providers = [p for p in providers if p.security_tier == SecurityTier.SECURE]

        failures = 0
        for pass_number in range(1 + config.retry_attempts):
            if pass_number:
                logger.info(f"Retrying verification (pass {pass_number + 1} of {1 + config.retry_attempts})")
            for provider in providers:
                availability = self._probe(provider)
                if not availability.available:
                    logger.debug(f"{provider.name} unavailable: {availability.reason}")
                    self._add_step(decision, availability.remediation)
                    continue

                result = self._bounded_attempt(provider, context, attempt_timeout, availability)
                self._record(decision, context, provider.method_tag, result.outcome,
                             result.device_id or availability.device_id)
                if result.outcome == VerificationOutcome.SUCCESS:
                    return self._allow(decision, provider, result)
                failures += 1
                self._add_step(decision, result.remediation)

        self._record(decision, context, MethodTag.NO_DEVICE_OR_AGENT, VerificationOutcome.FAILURE, None)
        failures += 1
        decision.alert_fired = self.anomaly.check(context.operation_class, failures, config.max_failed_attempts)
        for step in EXHAUSTED_STEPS:
            self._add_step(decision, step)

        if policy == OperationPolicy.OPTIONAL:
            decision.allowed = True
            decision.warnings.append(
                f"No verification method succeeded; '{context.policy_key}' is optional, proceeding"
            )
            logger.warning(f"Optional verification failed for {context.description}; allowing")
            return decision

        logger.security(f"Denied: {context.description} (no verification method succeeded)")
        return decision

    def verify(self, context: OperationContext, timeout: Optional[float] = None,
               force: bool = False) -> Decision:
        """decide(), raising AllMethodsExhausted on deny"""
        decision = self.decide(context, timeout=timeout, force=force)
        if not decision.allowed:
            raise AllMethodsExhausted(
                f"Hardware verification failed for '{context.description}'",
                "\n".join(decision.remediation),
            )
        return decision

    # ------------------------------------------------------------------

    def _bypass(self, context: OperationContext, config: EnforcementConfig,
                decision: Decision) -> Decision:
        source = "TAPGATE_ENABLED" if self.gate.override_active() else "config"
        logger.security(f"Enforcement disabled ({source}); bypassing verification for {context.description}")
        self._record(decision, context, MethodTag.ENFORCEMENT_DISABLED, VerificationOutcome.BYPASSED, None)
        decision.allowed = True
        decision.bypassed = True
        decision.method = MethodTag.ENFORCEMENT_DISABLED
        decision.warnings.append(f"Hardware verification bypassed (enforcement disabled via {source})")
        if config.alert_on_bypass_attempt:
            self.anomaly.bypass_alert(context.description)
            decision.alert_fired = True
        return decision

    def _allow(self, decision: Decision, provider: MethodProvider, result: AttemptResult) -> Decision:
        decision.allowed = True
        decision.method = provider.method_tag
        decision.tier = provider.security_tier
        decision.device_id = result.device_id
        decision.remediation = []
        warning = TIER_WARNINGS.get(provider.security_tier)
        if warning:
            decision.warnings.append(warning)
            logger.warning(f"{provider.method_tag.value}: {warning}")
        logger.info(
            f"Verified {decision.operation} via {provider.method_tag.value} "
            f"({result.device_id or NO_DEVICE}, {result.elapsed:.1f}s)"
        )
        return decision

    def _probe(self, provider: MethodProvider) -> Availability:
        try:
            return provider.check_availability()
        except ProviderError as e:
            return Availability.unavailable(e)

    def _bounded_attempt(self, provider: MethodProvider, context: OperationContext,
                         timeout: float, availability: Availability) -> AttemptResult:
        outcome: Dict[str, object] = {}

        def run():
            try:
                outcome['result'] = provider.attempt(context, timeout, availability)
            except Exception as e:
                outcome['error'] = e

        started = time.monotonic()
        worker = threading.Thread(target=run, name=f"tapgate-{provider.name}", daemon=True)
        worker.start()
        worker.join(timeout + self.grace)
        elapsed = time.monotonic() - started

        if worker.is_alive():
            logger.error(f"{provider.name} did not return within {timeout + self.grace:.1f}s; abandoning attempt")
            return AttemptResult(VerificationOutcome.TIMEOUT, availability.device_id, elapsed,
                                 ChallengeTimeout(f"{provider.name} exceeded {timeout}s"))
        if 'error' in outcome:
            error = outcome['error']
            handle_error(error, f"{provider.name} attempt", ErrorCategory.EXTERNAL)
            return AttemptResult(VerificationOutcome.FAILURE, availability.device_id, elapsed,
                                 ProviderError(str(error)))

        result = outcome['result']
        # Any result reported past the deadline is a timeout, including a late success
        late = elapsed > timeout + Timeouts.DEADLINE_TOLERANCE
        if result.outcome == VerificationOutcome.FAILURE and elapsed >= timeout:
            late = True
        if late and result.outcome != VerificationOutcome.TIMEOUT:
            logger.warning(f"{provider.name} returned {result.outcome.value} after {elapsed:.2f}s (timeout {timeout}s); recording TIMEOUT")
            result = AttemptResult(VerificationOutcome.TIMEOUT, result.device_id, elapsed,
                                   ChallengeTimeout(f"{provider.name} exceeded {timeout}s"))
        return result

    def _record(self, decision: Decision, context: OperationContext, method: MethodTag,
                outcome: VerificationOutcome, device_id: Optional[str]) -> None:
        attempt = VerificationAttempt.record(context, method, outcome, device_id)
        decision.attempts.append(attempt)
        try:
            self.audit_log.append(attempt)
        except OSError as e:
            log_security_error(e, "writing audit entry", path=str(self.audit_log.path))
            decision.warnings.append(f"Audit entry could not be written to {self.audit_log.path}")

    @staticmethod
    def _add_step(decision: Decision, step: str) -> None:
        if step and step not in decision.remediation:
            decision.remediation.append(step)


__all__ = ['VerificationOrchestrator', 'ProviderFactory', 'TIER_WARNINGS', 'EXHAUSTED_STEPS']
