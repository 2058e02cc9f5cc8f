"""
Transactional Installer - applies enforcement artifacts as a saga.

setup() never leaves a half-installed system: the prior state of every
artifact is persisted to a backup directory before the first mutation, each
mutation pushes a compensation, and one live forced verification decides
between commit and rollback. A rollback that cannot restore every artifact
raises RollbackPartialFailure naming the inconsistent paths and the backup.

Artifacts:
    shell config      wrapper functions routing git/gh through `tapctl exec`
    hook template     ~/.git-templates/hooks/pre-push
    workspace hooks   <repo>/.git/hooks/pre-push for each workspace_repos entry
    git config        init.templateDir in ~/.gitconfig
    enforcement.yml   the config file
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Mapping, Optional

from ..audit_log import AuditLog
from ..config import EnforcementConfig, load_config, save_config, set_enabled
from ..constants import Limits, Paths, Timeouts
from ..exceptions import (
    ArtifactError,
    ConfigError,
    InstallerError,
    PrerequisitesNotMet,
    RollbackPartialFailure,
    SetupVerificationFailed,
    TapgateError,
)
from ..logging_config import get_logger
from ..methods import CommandRunner
from ..models import Decision, OperationContext
from ..orchestrator import VerificationOrchestrator
from ..utils.error_handling import ErrorCategory, safe_execute
from .artifacts import (
    HOOK_NAME,
    atomic_write,
    detect_shell_config,
    has_shell_block,
    insert_shell_block,
    is_managed_hook,
    read_bytes,
    remove_file,
    render_shell_block,
    strip_shell_block,
    write_hook,
)
from .saga import CompensationStack
from .snapshot import BACKUP_TIMESTAMP_FORMAT, InstallationSnapshot

logger = get_logger(__name__)

TEMPLATE_DIR_KEY = "init.templateDir"


class InstallPolicy(Enum):
    """What setup does when the shell block is already present"""
    UPDATE = "update"
    SKIP = "skip"


class SetupStatus(Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


class RemoveStatus(Enum):
    REMOVED = "removed"
    PARTIAL_FAILURE = "partial_failure"


@dataclass
class SetupResult:
    status: SetupStatus
    reason: str = ""
    backup_dir: Optional[Path] = None
    decision: Optional[Decision] = None
    error: Optional[TapgateError] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == SetupStatus.COMMITTED else 1


@dataclass
class RemoveResult:
    status: RemoveStatus
    details: List[str] = field(default_factory=list)
    backup_dir: Optional[Path] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RemoveStatus.REMOVED else 1


@dataclass
class ProviderStatus:
    name: str
    method: str
    tier: str
    available: bool
    reason: str = ""


@dataclass
class InstallStatus:
    """Snapshot of the installation for `tapctl status`"""
    config_path: Path
    config_exists: bool
    config_enabled: bool
    override: Optional[bool]
    enforced: bool
    config_error: str = ""
    shell_config: Optional[Path] = None
    shell_block_installed: bool = False
    hook_installed: bool = False
    template_dir_configured: bool = False
    providers: List[ProviderStatus] = field(default_factory=list)
    recent_log: List[str] = field(default_factory=list)


class TransactionalInstaller:
    """setup / remove / enable / disable / restore / status"""

    def __init__(
        self,
        orchestrator: Optional[VerificationOrchestrator] = None,
        runner: Optional[CommandRunner] = None,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        system: Optional[str] = None,
        tapctl: str = "tapctl",
    ):
        self.config_path = Path(config_path) if config_path else Paths.config_file()
        self.orchestrator = orchestrator or VerificationOrchestrator(config_path=self.config_path)
        self.runner = runner or CommandRunner()
        self.environ = environ
        self.system = system
        self.tapctl = tapctl

    # ------------------------------------------------------------------
    # Artifact locations
    # ------------------------------------------------------------------

    @property
    def home(self) -> Path:
        return Paths.home()

    @property
    def shell_config(self) -> Path:
        return detect_shell_config(self.home, self.environ, self.system)

    @property
    def template_dir(self) -> Path:
        return Paths.hook_template_dir()

    @property
    def template_hook(self) -> Path:
        return self.template_dir / "hooks" / HOOK_NAME

    @property
    def git_config(self) -> Path:
        return Paths.git_global_config()

    def workspace_repos(self) -> List[Path]:
        try:
            repos = load_config(self.config_path).workspace_repos
        except ConfigError as e:
            logger.warning(f"Ignoring workspace_repos: {e}")
            return []
        return [Path(r).expanduser() for r in repos]

    def repo_hooks(self) -> List[Path]:
        hooks = []
        for repo in self.workspace_repos():
            if (repo / ".git").is_dir():
                hooks.append(repo / ".git" / "hooks" / HOOK_NAME)
            else:
                logger.warning(f"Skipping non-git directory: {repo}")
        return hooks

    def artifact_paths(self) -> List[Path]:
        return [self.shell_config, self.template_hook] + self.repo_hooks() + [self.git_config, self.config_path]

    def _snapshot(self, operation: str, paths: Optional[List[Path]] = None) -> InstallationSnapshot:
        snapshot = InstallationSnapshot.capture(operation, paths or self.artifact_paths())
        snapshot.persist(Paths.backup_dir())
        return snapshot

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        """
        Raises:
            PrerequisitesNotMet: git missing or no verification method available
        """
        missing = []
        if self.runner.which("git") is None:
            missing.append("git not found on PATH")

        config = self.orchestrator.load_config()
        hints = []
        available = False
        for provider in self.orchestrator.provider_factory(config):
            availability = provider.check_availability()
            if availability.available:
                available = True
                break
            if availability.remediation and availability.remediation not in hints:
                hints.append(availability.remediation)
        if not available:
            missing.append("no verification method available (YubiKey or 1Password CLI)")

        if missing:
            raise PrerequisitesNotMet(missing, "; ".join(hints) or None)

    def setup(self, policy: InstallPolicy = InstallPolicy.UPDATE,
              timeout: Optional[float] = None) -> SetupResult:
        """
        Install enforcement and prove it works with one live verification.

        Returns:
            SetupResult COMMITTED, ROLLED_BACK or ABORTED

        Raises:
            RollbackPartialFailure: rollback could not restore every artifact
        """
        try:
            self.check_prerequisites()
        except PrerequisitesNotMet as e:
            logger.error(f"Setup aborted: {e}")
            return SetupResult(SetupStatus.ABORTED, str(e), error=e)

        try:
            snapshot = self._snapshot("setup")
        except ArtifactError as e:
            logger.error(f"Setup aborted, backup failed: {e}")
            return SetupResult(SetupStatus.ABORTED, f"backup failed: {e}", error=e)

        stack = CompensationStack()
        try:
            self._apply(snapshot, stack, policy)
        except (InstallerError, ConfigError) as e:
            logger.error(f"Setup failed while applying artifacts: {e}")
            self._rollback(snapshot, stack)
            return SetupResult(SetupStatus.ROLLED_BACK, f"applying artifacts failed: {e}",
                               snapshot.backup_dir, error=e)

        logger.info("Artifacts applied; running setup verification")
        decision = self.orchestrator.decide(OperationContext.setup_verification(),
                                            timeout=timeout, force=True)
        if not decision.allowed:
            error = SetupVerificationFailed(
                "Setup verification failed; all changes were rolled back",
                "\n".join(decision.remediation) or None,
            )
            self._rollback(snapshot, stack)
            return SetupResult(SetupStatus.ROLLED_BACK, str(error), snapshot.backup_dir, decision, error)

        try:
            set_enabled(True, self.config_path)
        except ConfigError as e:
            self._rollback(snapshot, stack)
            return SetupResult(SetupStatus.ROLLED_BACK, f"enabling enforcement failed: {e}",
                               snapshot.backup_dir, decision, e)

        stack.clear()
        logger.info(f"Setup committed; backup kept at {snapshot.backup_dir}")
        return SetupResult(SetupStatus.COMMITTED, "", snapshot.backup_dir, decision)

    def _apply(self, snapshot: InstallationSnapshot, stack: CompensationStack,
               policy: InstallPolicy) -> None:
        self._apply_config(snapshot, stack)
        self._apply_shell_block(snapshot, stack, policy)
        self._apply_hook(snapshot, stack, self.template_hook)
        self._apply_git_config(snapshot, stack)
        for hook in self.repo_hooks():
            self._apply_hook(snapshot, stack, hook)

    def _compensate(self, snapshot: InstallationSnapshot, stack: CompensationStack,
                    path: Path, description: str) -> None:
        artifact = snapshot.get(path)
        if artifact is None:
            raise ArtifactError(path, "not captured in the setup snapshot")
        stack.push(description, path, artifact.restore)

    def _ensure_dir(self, stack: CompensationStack, directory: Path) -> None:
        """Create `directory` and its parents, compensating with rmdir of what was created"""
        missing = []
        current = directory
        while not current.exists():
            missing.append(current)
            current = current.parent
        for created in reversed(missing):
            try:
                created.mkdir()
            except OSError as e:
                raise ArtifactError(created, f"cannot create directory: {e}")
            stack.push("remove created directory", created, created.rmdir)

    def _apply_config(self, snapshot: InstallationSnapshot, stack: CompensationStack) -> None:
        if self.config_path.exists():
            # Validated here so a broken file aborts setup instead of being enabled
            load_config(self.config_path)
            return
        self._ensure_dir(stack, self.config_path.parent)
        self._compensate(snapshot, stack, self.config_path, "remove created config")
        config = EnforcementConfig.default()
        config.enabled = False
        save_config(config.to_dict(), self.config_path)
        logger.info(f"Created {self.config_path}")

    def _apply_shell_block(self, snapshot: InstallationSnapshot, stack: CompensationStack,
                           policy: InstallPolicy) -> None:
        path = self.shell_config
        current = (read_bytes(path) or b"").decode()
        if has_shell_block(current) and policy == InstallPolicy.SKIP:
            logger.info(f"Shell wrappers already present in {path}; leaving them")
            return
        updated = insert_shell_block(current, render_shell_block(self.tapctl, zsh=path.name == ".zshrc"))
        if updated == current:
            return
        self._compensate(snapshot, stack, path, "restore shell config")
        atomic_write(path, updated.encode())
        logger.info(f"Installed shell wrappers in {path}")

    def _apply_hook(self, snapshot: InstallationSnapshot, stack: CompensationStack, path: Path) -> None:
        self._ensure_dir(stack, path.parent)
        self._compensate(snapshot, stack, path, "restore pre-push hook")
        write_hook(path, self.tapctl)
        logger.info(f"Installed pre-push hook: {path}")

    def _git_config(self, *args: str):
        argv = ["git", "config", "--file", str(self.git_config)] + list(args)
        result = self.runner.run(argv, timeout=Timeouts.GIT_CONFIG)
        if result.timed_out or result.not_found:
            raise ArtifactError(self.git_config, f"'{' '.join(argv)}' did not complete")
        return result

    def configured_template_dir(self) -> Optional[str]:
        if not self.git_config.exists():
            return None
        result = self._git_config("--get", TEMPLATE_DIR_KEY)
        return result.stdout.strip() if result.ok else None

    def _template_dir_is_ours(self, value: Optional[str]) -> bool:
        return bool(value) and Path(value).expanduser() == self.template_dir

    def _apply_git_config(self, snapshot: InstallationSnapshot, stack: CompensationStack) -> None:
        if self._template_dir_is_ours(self.configured_template_dir()):
            return
        self._compensate(snapshot, stack, self.git_config, "restore git config")
        result = self._git_config(TEMPLATE_DIR_KEY, str(self.template_dir))
        if not result.ok:
            raise ArtifactError(self.git_config, f"git config failed: {result.stderr.strip()}")
        logger.info(f"Set {TEMPLATE_DIR_KEY}={self.template_dir}")

    def _rollback(self, snapshot: InstallationSnapshot, stack: CompensationStack) -> None:
        try:
            self._snapshot("rollback", snapshot.paths)
        except ArtifactError as e:
            logger.error(f"Could not back up state before rollback: {e}")
        failures = stack.unwind()
        if failures:
            raise RollbackPartialFailure(
                [item.path for item, _ in failures],
                snapshot.backup_dir,
                [f"{item.description}: {error}" for item, error in failures],
            )
        logger.security(f"Setup rolled back; prior state restored from {snapshot.backup_dir}")

    # ------------------------------------------------------------------
    # remove
    # ------------------------------------------------------------------

    def remove(self) -> RemoveResult:
        """Back up, then strip every tapgate artifact. Step failures are collected."""
        try:
            snapshot = self._snapshot("removal")
        except ArtifactError as e:
            return RemoveResult(RemoveStatus.PARTIAL_FAILURE, [f"backup failed, nothing removed: {e}"])

        details: List[str] = []
        failures: List[str] = []

        def step(description: str, action):
            with safe_execute(description, ErrorCategory.FILESYSTEM) as result:
                outcome = action()
                if outcome:
                    details.append(outcome)
            if not result.success:
                failures.append(f"{description}: {result.error.error}")

        step("removing shell wrappers", self._remove_shell_block)
        for hook in [self.template_hook] + self.repo_hooks():
            step(f"removing hook {hook}", lambda hook=hook: self._remove_hook(hook))
        step("unsetting init.templateDir", self._remove_git_config)
        step("archiving config", self._archive_config)
        step("pruning template directory", self._prune_template_dir)

        status = RemoveStatus.PARTIAL_FAILURE if failures else RemoveStatus.REMOVED
        if failures:
            logger.error(f"Removal incomplete; backup at {snapshot.backup_dir}")
        return RemoveResult(status, details + [f"FAILED {f}" for f in failures], snapshot.backup_dir)

    def _remove_shell_block(self) -> Optional[str]:
        path = self.shell_config
        content = read_bytes(path)
        if content is None or not has_shell_block(content.decode()):
            return None
        atomic_write(path, strip_shell_block(content.decode()).encode())
        return f"removed shell wrappers from {path}"

    def _remove_hook(self, hook: Path) -> Optional[str]:
        content = read_bytes(hook)
        if content is None:
            return None
        if not is_managed_hook(content):
            logger.warning(f"Leaving {hook}: not installed by tapgate")
            return None
        remove_file(hook)
        return f"removed {hook}"

    def _remove_git_config(self) -> Optional[str]:
        if not self._template_dir_is_ours(self.configured_template_dir()):
            return None
        result = self._git_config("--unset", TEMPLATE_DIR_KEY)
        if not result.ok:
            raise ArtifactError(self.git_config, f"git config --unset failed: {result.stderr.strip()}")
        return f"unset {TEMPLATE_DIR_KEY} in {self.git_config}"

    def _archive_config(self) -> Optional[str]:
        if not self.config_path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime(BACKUP_TIMESTAMP_FORMAT)
        archived = self.config_path.with_name(f"{self.config_path.name}.disabled.{stamp}")
        self.config_path.rename(archived)
        return f"archived config to {archived}"

    def _prune_template_dir(self) -> Optional[str]:
        pruned = []
        for directory in (self.template_dir / "hooks", self.template_dir):
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
                pruned.append(str(directory))
        return f"removed empty {', '.join(pruned)}" if pruned else None

    # ------------------------------------------------------------------
    # restore / enable / disable / status
    # ------------------------------------------------------------------

    def restore(self, backup_dir: Path) -> List[Path]:
        """
        Write a persisted snapshot back into the live artifacts.

        Raises:
            ArtifactError: the backup is missing or corrupt (nothing restored)
            RollbackPartialFailure: some artifacts could not be restored
        """
        snapshot = InstallationSnapshot.load(backup_dir)
        try:
            self._snapshot("restore", snapshot.paths)
        except ArtifactError as e:
            logger.warning(f"Could not back up current state before restore: {e}")
        errors = snapshot.restore_all()
        if errors:
            raise RollbackPartialFailure([e.path for e in errors], snapshot.backup_dir, [str(e) for e in errors])
        logger.info(f"Restored {len(snapshot.paths)} artifacts from {backup_dir}")
        return snapshot.paths

    def enable(self) -> Path:
        path = set_enabled(True, self.config_path)
        logger.info("Enforcement enabled")
        return path

    def disable(self) -> Path:
        path = set_enabled(False, self.config_path)
        logger.security("Enforcement disabled in config")
        return path

    def status(self, tail: int = Limits.STATUS_TAIL) -> InstallStatus:
        config_error = ""
        try:
            config = load_config(self.config_path)
        except ConfigError as e:
            config_error = str(e)
            config = EnforcementConfig.default()

        gate = self.orchestrator.gate
        shell_content = (read_bytes(self.shell_config) or b"").decode(errors='replace')

        template_configured = False
        with safe_execute("reading init.templateDir", ErrorCategory.EXTERNAL):
            template_configured = self._template_dir_is_ours(self.configured_template_dir())

        providers = []
        for provider in self.orchestrator.provider_factory(config):
            availability = provider.check_availability()
            providers.append(ProviderStatus(
                name=provider.name,
                method=provider.method_tag.value,
                tier=provider.security_tier.value,
                available=availability.available,
                reason=availability.reason,
            ))

        audit_log: AuditLog = self.orchestrator.audit_log
        return InstallStatus(
            config_path=self.config_path,
            config_exists=self.config_path.exists(),
            config_enabled=config.enabled,
            override=gate.override(),
            enforced=gate.is_enabled(config),
            config_error=config_error,
            shell_config=self.shell_config,
            shell_block_installed=has_shell_block(shell_content),
            hook_installed=is_managed_hook(read_bytes(self.template_hook)),
            template_dir_configured=template_configured,
            providers=providers,
            recent_log=audit_log.tail(tail),
        )


__all__ = [
    'TransactionalInstaller',
    'InstallPolicy',
    'SetupStatus',
    'SetupResult',
    'RemoveStatus',
    'RemoveResult',
    'InstallStatus',
    'ProviderStatus',
    'TEMPLATE_DIR_KEY',
]
