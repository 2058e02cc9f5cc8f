"""
Tests for the transactional installer: setup as a saga with byte-exact
rollback, removal, restore from backup, enable/disable and status.

git is reached only through ScriptedRunner, which edits ~/.gitconfig the way
`git config --file` would for init.templateDir.
"""

import json
import os
import stat
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tapgate.config import load_config
from tapgate.exceptions import ArtifactError, RollbackPartialFailure
from tapgate.installer import (
    InstallationSnapshot,
    InstallPolicy,
    RemoveStatus,
    SetupStatus,
    TransactionalInstaller,
)
from tapgate.installer.artifacts import BLOCK_BEGIN, HOOK_MARKER, render_shell_block
from tapgate.installer.snapshot import MANIFEST_NAME
from tapgate.models import Decision

from conftest import ScriptedRunner, read_log_lines

BASHRC = b"export PATH=/usr/local/bin:$PATH\nalias ll='ls -l'\n"
GITCONFIG = b"[user]\n\tname = Dev\n\temail = dev@example.com\n"


@pytest.fixture
def make_installer(home, make_orchestrator):
    def _make(chain, runner=None):
        return TransactionalInstaller(
            orchestrator=make_orchestrator(chain),
            runner=runner or ScriptedRunner(),
            environ={"SHELL": "/bin/bash"},
            system="Linux",
        )
    return _make


@pytest.fixture
def dotfiles(home):
    """A home directory with an existing .bashrc and .gitconfig"""
    (home / ".bashrc").write_bytes(BASHRC)
    os.chmod(home / ".bashrc", 0o640)
    (home / ".gitconfig").write_bytes(GITCONFIG)
    return home


def template_hook(home):
    return home / ".git-templates" / "hooks" / "pre-push"


# ===========================================================================
# setup
# ===========================================================================

class TestSetupCommit:
    """Setup with a working verification method."""

    def test_committed_setup_installs_everything(self, make_installer, provider_chain,
                                                 dotfiles, config_path, audit_log):
        result = make_installer(provider_chain(touch='success')).setup()

        assert result.status == SetupStatus.COMMITTED
        assert result.exit_code == 0
        bashrc = (dotfiles / ".bashrc").read_text()
        assert bashrc.startswith(BASHRC.decode())
        assert 'git() { command tapctl exec git "$@"; }' in bashrc
        assert "TAPGATE_ENABLED" not in bashrc
        hook = template_hook(dotfiles)
        assert HOOK_MARKER in hook.read_text()
        assert stat.S_IMODE(hook.stat().st_mode) == 0o755
        assert f"templateDir = {dotfiles / '.git-templates'}" in (dotfiles / ".gitconfig").read_text()
        assert load_config(config_path).enabled is True
        assert "[SUCCESS] tapgate setup-verification - OTP-TOUCH" in read_log_lines(audit_log.path)[0]

    def test_backup_manifest(self, make_installer, provider_chain, dotfiles, config_path):
        result = make_installer(provider_chain(touch='success')).setup()
        manifest = json.loads((result.backup_dir / MANIFEST_NAME).read_text())
        entries = {entry['path']: entry for entry in manifest['artifacts']}

        assert manifest['operation'] == "setup"
        assert entries[str(dotfiles / ".bashrc")]['existed'] is True
        assert entries[str(dotfiles / ".bashrc")]['mode'] == 0o640
        assert entries[str(config_path)]['existed'] is False
        assert stat.S_IMODE(result.backup_dir.stat().st_mode) == 0o700

    def test_setup_is_idempotent(self, make_installer, provider_chain, dotfiles):
        installer = make_installer(provider_chain(touch='success'))
        assert installer.setup().status == SetupStatus.COMMITTED
        assert installer.setup().status == SetupStatus.COMMITTED
        assert (dotfiles / ".bashrc").read_text().count(BLOCK_BEGIN) == 1
        assert (dotfiles / ".gitconfig").read_text().count("templateDir") == 1

    def test_existing_disabled_config_is_enabled(self, make_installer, provider_chain,
                                                 dotfiles, write_config, config_path):
        write_config("enforcement:\n  enabled: false\n  timeout_seconds: 20\n")
        make_installer(provider_chain(touch='success')).setup()
        config = load_config(config_path)
        assert config.enabled is True
        assert config.timeout_seconds == 20

    def test_skip_policy_keeps_existing_block(self, make_installer, provider_chain, dotfiles):
        old_block = render_shell_block("/opt/old/tapctl")
        (dotfiles / ".bashrc").write_text(BASHRC.decode() + "\n" + old_block)
        make_installer(provider_chain(touch='success')).setup(policy=InstallPolicy.SKIP)
        assert "/opt/old/tapctl" in (dotfiles / ".bashrc").read_text()

    def test_update_policy_replaces_block(self, make_installer, provider_chain, dotfiles):
        (dotfiles / ".bashrc").write_text(BASHRC.decode() + "\n" + render_shell_block("/opt/old/tapctl"))
        make_installer(provider_chain(touch='success')).setup(policy=InstallPolicy.UPDATE)
        text = (dotfiles / ".bashrc").read_text()
        assert "/opt/old/tapctl" not in text
        assert text.count(BLOCK_BEGIN) == 1

    def test_workspace_repo_hooks(self, make_installer, provider_chain, dotfiles, write_config, temp_dir):
        repo = temp_dir / "project"
        (repo / ".git").mkdir(parents=True)
        write_config(f"workspace_repos:\n  - {repo}\n")
        make_installer(provider_chain(touch='success')).setup()
        assert HOOK_MARKER in (repo / ".git" / "hooks" / "pre-push").read_text()

    def test_zsh_config_gets_completion_lines(self, home, make_orchestrator, provider_chain):
        (home / ".zshrc").write_text("# zsh\n")
        installer = TransactionalInstaller(
            orchestrator=make_orchestrator(provider_chain(touch='success')),
            runner=ScriptedRunner(), environ={"SHELL": "/bin/zsh"}, system="Darwin",
        )
        installer.setup()
        assert "compdef _git git=git" in (home / ".zshrc").read_text()


@pytest.mark.security
class TestSetupRollback:
    """Setup whose live verification fails leaves every artifact byte-identical."""

    def test_failed_verification_rolls_back(self, make_installer, provider_chain,
                                            dotfiles, config_path):
        result = make_installer(provider_chain(touch='failure')).setup()

        assert result.status == SetupStatus.ROLLED_BACK
        assert result.exit_code == 1
        assert result.decision is not None and not result.decision.allowed
        assert (dotfiles / ".bashrc").read_bytes() == BASHRC
        assert stat.S_IMODE((dotfiles / ".bashrc").stat().st_mode) == 0o640
        assert (dotfiles / ".gitconfig").read_bytes() == GITCONFIG
        assert not config_path.exists()
        assert not (dotfiles / ".git-templates").exists()
        assert result.backup_dir.is_dir()

    def test_rollback_without_prior_files(self, make_installer, provider_chain, home, config_path):
        make_installer(provider_chain(touch='timeout')).setup()
        assert not (home / ".bashrc").exists()
        assert not (home / ".gitconfig").exists()
        assert not config_path.exists()

    def test_rollback_removes_created_repo_hook_dir(self, make_installer, provider_chain,
                                                    dotfiles, write_config, temp_dir):
        repo = temp_dir / "project"
        (repo / ".git").mkdir(parents=True)
        write_config(f"workspace_repos:\n  - {repo}\n")
        make_installer(provider_chain(touch='failure')).setup()
        assert not (repo / ".git" / "hooks").exists()
        assert load_config().workspace_repos == (str(repo),)

    def test_failed_verification_reports_remediation(self, make_installer, provider_chain, dotfiles):
        result = make_installer(provider_chain(touch='failure')).setup()
        assert "rolled back" in result.reason
        assert "TAPGATE_ENABLED=false" in result.error.remediation

    def test_partial_rollback_raises(self, make_installer, provider_chain, dotfiles):
        installer = make_installer(provider_chain(touch='failure'))
        bashrc = dotfiles / ".bashrc"

        def sabotage(*args, **kwargs):
            # A directory in place of the file cannot be replaced by a rename
            bashrc.unlink()
            bashrc.mkdir()
            return Decision(allowed=False, operation="tapgate setup-verification")

        with patch.object(installer.orchestrator, 'decide', side_effect=sabotage):
            with pytest.raises(RollbackPartialFailure) as exc_info:
                installer.setup()

        error = exc_info.value
        assert bashrc in error.failed_paths
        assert error.backup_dir is not None and error.backup_dir.is_dir()
        assert str(error.backup_dir) in error.remediation
        # The remaining compensations still ran
        assert not template_hook(dotfiles).exists()
        assert (dotfiles / ".gitconfig").read_bytes() == GITCONFIG


class TestSetupAborted:
    """Prerequisite failures change nothing."""

    def test_git_missing(self, make_installer, provider_chain, dotfiles):
        result = make_installer(provider_chain(touch='success'), ScriptedRunner(binaries={})).setup()
        assert result.status == SetupStatus.ABORTED
        assert result.exit_code == 1
        assert "git not found" in result.reason
        assert (dotfiles / ".bashrc").read_bytes() == BASHRC
        assert not (dotfiles / ".tapgate" / "backups").exists()

    def test_no_method_available(self, make_installer, provider_chain, dotfiles):
        result = make_installer(provider_chain(touch='unconfigured')).setup()
        assert result.status == SetupStatus.ABORTED
        assert "no verification method" in result.reason
        assert result.error.missing

    def test_invalid_existing_config_rolls_back(self, make_installer, provider_chain,
                                                dotfiles, write_config):
        write_config("enforcement:\n  timeout_seconds: 0\n")
        result = make_installer(provider_chain(touch='success')).setup()
        assert result.status == SetupStatus.ROLLED_BACK
        assert (dotfiles / ".bashrc").read_bytes() == BASHRC


# ===========================================================================
# remove / restore
# ===========================================================================

class TestRemove:

    def test_remove_after_setup(self, make_installer, provider_chain, dotfiles, config_path):
        installer = make_installer(provider_chain(touch='success'))
        installer.setup()
        result = installer.remove()

        assert result.status == RemoveStatus.REMOVED
        assert result.exit_code == 0
        assert (dotfiles / ".bashrc").read_bytes() == BASHRC
        assert (dotfiles / ".gitconfig").read_bytes() == GITCONFIG
        assert not (dotfiles / ".git-templates").exists()
        assert not config_path.exists()
        assert len(list(config_path.parent.glob("enforcement.yml.disabled.*"))) == 1
        assert result.backup_dir.name.startswith("removal-")

    def test_remove_keeps_foreign_hook(self, make_installer, provider_chain, dotfiles):
        hook = template_hook(dotfiles)
        hook.parent.mkdir(parents=True)
        hook.write_text("#!/bin/sh\nrun-my-linter\n")
        result = make_installer(provider_chain()).remove()
        assert result.status == RemoveStatus.REMOVED
        assert hook.read_text() == "#!/bin/sh\nrun-my-linter\n"

    def test_remove_on_clean_home(self, make_installer, provider_chain, home):
        result = make_installer(provider_chain()).remove()
        assert result.status == RemoveStatus.REMOVED
        assert result.details == []

    def test_step_failure_is_reported(self, make_installer, provider_chain, dotfiles):
        installer = make_installer(provider_chain(touch='success'))
        installer.setup()
        with patch.object(installer, '_remove_git_config', side_effect=OSError("locked")):
            result = installer.remove()
        assert result.status == RemoveStatus.PARTIAL_FAILURE
        assert result.exit_code == 1
        assert any(d.startswith("FAILED unsetting init.templateDir") for d in result.details)
        assert BLOCK_BEGIN not in (dotfiles / ".bashrc").read_text()


class TestRestore:

    def test_restore_setup_backup(self, make_installer, provider_chain, dotfiles, config_path):
        installer = make_installer(provider_chain(touch='success'))
        result = installer.setup()
        restored = installer.restore(result.backup_dir)

        assert dotfiles / ".bashrc" in restored
        assert (dotfiles / ".bashrc").read_bytes() == BASHRC
        assert (dotfiles / ".gitconfig").read_bytes() == GITCONFIG
        assert not template_hook(dotfiles).exists()
        assert not config_path.exists()

    def test_corrupt_backup_is_refused(self, make_installer, provider_chain, dotfiles):
        installer = make_installer(provider_chain(touch='success'))
        backup = installer.setup().backup_dir
        stored = [p for p in backup.iterdir() if p.name != MANIFEST_NAME]
        stored[0].write_bytes(b"tampered")
        live = (dotfiles / ".bashrc").read_bytes()

        with pytest.raises(ArtifactError, match="checksum"):
            installer.restore(backup)
        assert (dotfiles / ".bashrc").read_bytes() == live

    def test_missing_manifest(self, temp_dir):
        with pytest.raises(ArtifactError, match="manifest"):
            InstallationSnapshot.load(temp_dir)


# ===========================================================================
# enable / disable / status
# ===========================================================================

class TestEnableDisable:

    def test_disable_then_enable(self, make_installer, provider_chain, config_path):
        installer = make_installer(provider_chain())
        installer.disable()
        assert load_config(config_path).enabled is False
        installer.enable()
        assert load_config(config_path).enabled is True


class TestStatus:

    def test_status_after_setup(self, make_installer, provider_chain, dotfiles, config_path):
        installer = make_installer(provider_chain(touch='success'))
        installer.setup()
        status = installer.status()

        assert status.config_exists and status.config_enabled and status.enforced
        assert status.override is None
        assert status.shell_config == dotfiles / ".bashrc"
        assert status.shell_block_installed
        assert status.hook_installed
        assert status.template_dir_configured
        assert [p.method for p in status.providers][0] == "OTP-TOUCH"
        assert status.providers[0].available
        assert not status.providers[1].available
        assert len(status.recent_log) == 1

    def test_status_before_setup(self, make_installer, provider_chain, home):
        status = make_installer(provider_chain()).status()
        assert not status.config_exists
        assert status.enforced
        assert not status.shell_block_installed
        assert not status.hook_installed
        assert status.recent_log == []

    def test_status_reports_config_error(self, make_installer, provider_chain, write_config):
        write_config("enforcement: [oops]\n")
        status = make_installer(provider_chain()).status()
        assert "must be a mapping" in status.config_error
