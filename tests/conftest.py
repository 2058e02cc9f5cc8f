"""
Pytest configuration and shared fixtures for tapgate tests.

No test needs a YubiKey, the 1Password CLI or a real git: providers are
replaced by FakeProvider, and external commands go through ScriptedRunner.
"""

import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tapgate.alerts import Notifier
from tapgate.audit_log import AuditLog
from tapgate.exceptions import ChallengeRejected, ChallengeTimeout, ConfigurationMissing, DeviceUnavailable
from tapgate.gate import EnforcementGate
from tapgate.methods.base import Availability, MethodProvider
from tapgate.methods.runner import EXIT_NOT_FOUND, CommandResult, CommandRunner
from tapgate.models import MethodTag, OperationContext, SecurityTier
from tapgate.orchestrator import VerificationOrchestrator


# ===========================================================================
# Fakes
# ===========================================================================

class FakeProvider(MethodProvider):
    """
    Scripted provider.

    behavior: 'success' | 'failure' | 'timeout' | 'hang' | 'late' | 'unavailable' | 'unconfigured'
    """

    def __init__(self, tag: MethodTag, tier: SecurityTier, behavior: str = 'success',
                 device_id: Optional[str] = None, name: Optional[str] = None):
        super().__init__(runner=MagicMock(spec=CommandRunner))
        self.method_tag = tag
        self.security_tier = tier
        self.behavior = behavior
        self.device_id = device_id
        self.name = name or f"fake-{tag.value.lower()}"
        self.attempts: List[Tuple[OperationContext, float]] = []
        self.probes = 0
        self.release = threading.Event()

    def check_availability(self) -> Availability:
        self.probes += 1
        if self.behavior == 'unavailable':
            return Availability.unavailable(DeviceUnavailable("No YubiKey detected"))
        if self.behavior == 'unconfigured':
            return Availability.unavailable(ConfigurationMissing("OTP slot 2 is not configured"))
        return Availability.ready(self.device_id)

    def _challenge(self, context, timeout, availability):
        self.attempts.append((context, timeout))
        if self.behavior == 'success':
            return self.device_id
        if self.behavior == 'failure':
            raise ChallengeRejected("wrong response")
        if self.behavior == 'timeout':
            raise ChallengeTimeout(f"no touch within {timeout}s")
        if self.behavior == 'hang':
            # Ignores its timeout; only the orchestrator backstop ends the wait
            self.release.wait(30)
            return self.device_id
        if self.behavior == 'late':
            # Answers after its deadline but before the backstop gives up
            time.sleep(timeout + 0.2)
            return self.device_id
        raise AssertionError(f"unknown behavior {self.behavior}")

    @property
    def invoked(self) -> bool:
        return bool(self.attempts)


class ScriptedRunner(CommandRunner):
    """
    CommandRunner double.

    `responses` maps an argv prefix to a CommandResult (or a callable taking
    argv). The longest matching prefix wins. `git config --file` is emulated
    against the real file so installer tests can check byte-exact rollback.
    """

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], object]] = None,
                 binaries: Optional[Dict[str, str]] = None):
        self.responses: Dict[Tuple[str, ...], object] = dict(responses or {})
        self.binaries = {'git': '/usr/bin/git'} if binaries is None else binaries
        self.calls: List[List[str]] = []

    def which(self, binary: str) -> Optional[str]:
        return self.binaries.get(binary)

    def run(self, argv: Sequence[str], timeout: float, env=None, input_text=None) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        if argv[:3] == ['git', 'config', '--file']:
            return self._git_config(argv)
        best = None
        for prefix, response in self.responses.items():
            if tuple(argv[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, response)
        if best is None:
            return CommandResult(argv, EXIT_NOT_FOUND, stderr=f"{argv[0]}: not found", not_found=True)
        response = best[1]
        if callable(response):
            response = response(argv)
        response.argv = argv
        return response

    def called(self, *prefix: str) -> bool:
        return any(tuple(call[:len(prefix)]) == prefix for call in self.calls)

    def _git_config(self, argv: List[str]) -> CommandResult:
        path = Path(argv[3])
        args = argv[4:]
        key_line = "\ttemplateDir = "
        lines = path.read_text().splitlines(keepends=True) if path.exists() else []

        if args[:1] == ['--get']:
            for line in lines:
                if line.startswith(key_line):
                    return CommandResult(argv, 0, line[len(key_line):].rstrip("\n") + "\n")
            return CommandResult(argv, 1)

        if args[:1] == ['--unset']:
            kept = [line for line in lines if not line.startswith(key_line)]
            if len(kept) == len(lines):
                return CommandResult(argv, 5)
            if kept and kept[-1] == "[init]\n":
                kept.pop()
            path.write_text("".join(kept))
            return CommandResult(argv, 0)

        value = args[1]
        lines = [line for line in lines if not line.startswith(key_line)]
        if "[init]\n" not in lines:
            lines.append("[init]\n")
        lines.insert(lines.index("[init]\n") + 1, f"{key_line}{value}\n")
        path.write_text("".join(lines))
        return CommandResult(argv, 0)


def ok(stdout: str = "") -> CommandResult:
    return CommandResult([], 0, stdout)


def failed(stderr: str = "error", returncode: int = 1) -> CommandResult:
    return CommandResult([], returncode, "", stderr)


def timed_out() -> CommandResult:
    return CommandResult([], -15, timed_out=True)


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="tapgate_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def home(temp_dir: Path, monkeypatch) -> Path:
    """Isolated HOME with no TAPGATE_* variables leaking in from the caller."""
    home_dir = temp_dir / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    monkeypatch.setenv("SHELL", "/bin/bash")
    for name in list(os.environ):
        if name.startswith("TAPGATE_"):
            monkeypatch.delenv(name, raising=False)
    return home_dir


@pytest.fixture
def config_path(home: Path) -> Path:
    return home / ".tapgate" / "enforcement.yml"


@pytest.fixture
def write_config(config_path: Path) -> Callable[[str], Path]:
    """Write raw YAML to the isolated config path."""
    def _write(text: str) -> Path:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(text)
        return config_path
    return _write


@pytest.fixture
def audit_log(home: Path) -> AuditLog:
    return AuditLog()


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock(spec=Notifier)
    mock.notify.return_value = True
    return mock


# ===========================================================================
# Provider / Orchestrator Fixtures
# ===========================================================================

@pytest.fixture
def make_provider() -> Generator[Callable[..., FakeProvider], None, None]:
    """Factory for FakeProvider; hanging providers are released at teardown."""
    created: List[FakeProvider] = []

    def _make(tag: MethodTag = MethodTag.OTP_TOUCH, tier: SecurityTier = SecurityTier.SECURE,
              behavior: str = 'success', device_id: Optional[str] = None) -> FakeProvider:
        provider = FakeProvider(tag, tier, behavior, device_id)
        created.append(provider)
        return provider

    yield _make
    for provider in created:
        provider.release.set()


@pytest.fixture
def provider_chain(make_provider) -> Callable[..., List[FakeProvider]]:
    """The five-method chain in production order with per-method behaviors."""
    def _chain(touch='unavailable', biometric='unavailable', otp='unavailable',
               fido='unavailable', presence='unavailable', serial='12345678') -> List[FakeProvider]:
        return [
            make_provider(MethodTag.OTP_TOUCH, SecurityTier.SECURE, touch, serial),
            make_provider(MethodTag.TOUCH_ID, SecurityTier.SECURE, biometric, "1password-cli"),
            make_provider(MethodTag.OTP, SecurityTier.DEGRADED, otp, serial),
            make_provider(MethodTag.FIDO2_PRESENCE_ONLY, SecurityTier.INSECURE, fido, serial),
            make_provider(MethodTag.PRESENCE, SecurityTier.INSECURE, presence, serial),
        ]
    return _chain


@pytest.fixture
def make_orchestrator(home: Path, audit_log: AuditLog, notifier: MagicMock):
    """Build an orchestrator over fixed providers and an explicit environment."""
    def _make(providers: List[MethodProvider], environ: Optional[Dict[str, str]] = None,
              grace: float = 0.2) -> VerificationOrchestrator:
        return VerificationOrchestrator(
            audit_log=audit_log,
            gate=EnforcementGate(environ if environ is not None else {}),
            provider_factory=lambda config: list(providers),
            notifier=notifier,
            grace=grace,
        )
    return _make


@pytest.fixture
def scripted_runner() -> Callable[..., ScriptedRunner]:
    def _make(responses=None, binaries=None) -> ScriptedRunner:
        return ScriptedRunner(responses, binaries)
    return _make


# ===========================================================================
# Utility Functions
# ===========================================================================

def read_log_lines(path: Path) -> List[str]:
    """Read all non-empty lines from an audit log."""
    if not path.exists():
        return []
    return [line for line in path.read_text().splitlines() if line.strip()]


# ===========================================================================
# Markers Registration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "security: Security-specific tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
