#!/usr/bin/env python3
"""
tapctl - tapgate control CLI

Gates git and gh operations behind a YubiKey tap or Touch ID.

Commands:
    verify          Verify one operation (exit 0 allow, 1 deny)
    exec            Interceptor: classify, verify if needed, run the real git/gh
    setup           Install shell wrappers and hooks, prove with one verification
    remove          Remove all tapgate artifacts (backup kept)
    enable          Enable enforcement in the config file
    disable         Disable enforcement in the config file
    status          Show enforcement state, methods and recent log
    test            Run one forced verification
    log             Show recent audit log entries
    restore         Restore artifacts from a backup directory
    otp             Manage YubiKey OTP slot 2

Usage:
    tapctl verify "git push origin main"
    tapctl exec git push origin main
    tapctl setup
    tapctl status
    tapctl otp configure
    TAPGATE_ENABLED=false git push      # emergency bypass, logged as BYPASSED

Environment:
    TAPGATE_ENABLED     Override enforcement (true/false), highest precedence
    TAPGATE_TIMEOUT     Per-attempt verification timeout in seconds
    TAPGATE_HOME        State directory (default ~/.tapgate)
    TAPGATE_CONFIG      Config file (default ~/.tapgate/enforcement.yml)
    TAPGATE_AUDIT_LOG   Audit log (default ~/.tapgate/verifications.log)
    TAPGATE_GIT_BINARY  Real git binary used by `tapctl exec git`
    TAPGATE_GH_BINARY   Real gh binary used by `tapctl exec gh`
    TAPGATE_VERBOSE     Debug logging to stderr
"""

import argparse
import os
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from ..classifier import OperationClassifier
from ..constants import EnvVars
from ..exceptions import (
    AllMethodsExhausted,
    ConfigError,
    DeviceUnavailable,
    InstallerError,
    OtpSlotError,
    TapgateError,
)
from ..installer import InstallPolicy, SetupStatus, TransactionalInstaller
from ..logging_config import configure_from_environment
from ..methods import OtpSlotManager, SlotState
from ..models import Classification, Decision, OperationContext
from ..orchestrator import VerificationOrchestrator

BINARY_OVERRIDES = {
    'git': EnvVars.GIT_BINARY,
    'gh': EnvVars.GH_BINARY,
}


class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    GRAY = '\033[90m'

    @classmethod
    def disable(cls):
        for attr in ['RESET', 'BOLD', 'RED', 'GREEN', 'YELLOW', 'BLUE', 'GRAY']:
            setattr(cls, attr, '')


# User-facing messages go to stderr: under `exec`, stdout belongs to git/gh.
def print_success(message: str):
    print(f"{Colors.GREEN}✓{Colors.RESET} {message}", file=sys.stderr)


def print_error(message: str):
    print(f"{Colors.RED}✗{Colors.RESET} {message}", file=sys.stderr)


def print_warning(message: str):
    print(f"{Colors.YELLOW}⚠{Colors.RESET} {message}", file=sys.stderr)


def print_info(message: str):
    print(f"{Colors.BLUE}ℹ{Colors.RESET} {message}", file=sys.stderr)


def print_steps(steps: List[str]):
    if not steps:
        return
    print("Next steps:", file=sys.stderr)
    for number, step in enumerate(steps, 1):
        print(f"  {number}. {step}", file=sys.stderr)


def confirm(question: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    if not sys.stdin.isatty():
        print_error(f"{question} (re-run with --yes to confirm non-interactively)")
        return False
    answer = input(f"{question} [y/N] ").strip().lower()
    return answer in ('y', 'yes')


def report_decision(decision: Decision) -> int:
    for warning in decision.warnings:
        print_warning(warning)
    if decision.allowed:
        if decision.bypassed or decision.method is None:
            return 0
        device = f" (serial {decision.device_id})" if decision.device_id else ""
        print_success(f"Verified via {decision.method.value}{device}")
        return 0
    print_error(f"Hardware verification failed for: {decision.operation}")
    print_steps(decision.remediation)
    if decision.alert_fired:
        print_warning("Repeated failures detected; an alert was raised")
    return 1


# =============================================================================
# Commands
# =============================================================================

def cmd_verify(args, orchestrator: VerificationOrchestrator) -> int:
    """Verify a free-form operation description."""
    context = OperationContext.from_description(args.operation)
    decision = orchestrator.decide(context, timeout=args.timeout)
    return report_decision(decision)


def resolve_binary(tool: str) -> Optional[str]:
    override = os.environ.get(BINARY_OVERRIDES.get(tool, ''))
    if override:
        return override
    return shutil.which(tool)


def cmd_exec(args, orchestrator: VerificationOrchestrator) -> int:
    """Classify an intercepted git/gh call, verify if needed, then exec the real binary."""
    context = OperationClassifier().classify(args.tool, args.args)

    if context.classification == Classification.REQUIRES_VERIFICATION:
        print_info(f"Hardware verification required for: {context.description}")
        try:
            decision = orchestrator.verify(context)
        except AllMethodsExhausted as e:
            print_error(str(e))
            print_steps(e.remediation.splitlines())
            return 1
        report_decision(decision)

    binary = resolve_binary(args.tool)
    if binary is None:
        print_error(f"{args.tool} not found on PATH")
        return 127
    os.execve(binary, [args.tool] + list(args.args), dict(os.environ))
    return 0


def cmd_test(args, orchestrator: VerificationOrchestrator) -> int:
    """Run one forced verification."""
    print_info("Testing hardware verification; tap your YubiKey or approve Touch ID")
    decision = orchestrator.decide(OperationContext.from_description("tapgate test"),
                                   timeout=args.timeout, force=True)
    return report_decision(decision)


def cmd_setup(args, installer: TransactionalInstaller) -> int:
    """Install enforcement transactionally."""
    policy = InstallPolicy.SKIP if args.skip_existing else InstallPolicy.UPDATE
    print_info("Installing tapgate enforcement; a verification will be requested at the end")
    result = installer.setup(policy, timeout=args.timeout)

    if result.status == SetupStatus.COMMITTED:
        report_decision(result.decision)
        print_success("Enforcement installed and enabled")
        print_info(f"Backup of prior state: {result.backup_dir}")
        print_info(f"Reload your shell: source {installer.shell_config}")
        return 0

    if result.status == SetupStatus.ABORTED:
        print_error(f"Setup aborted, nothing changed: {result.reason}")
    else:
        print_error(f"Setup rolled back: {result.reason}")
        print_info(f"Prior state restored; backup at {result.backup_dir}")
    if result.error is not None and result.error.remediation:
        print_steps(result.error.remediation.splitlines())
    return result.exit_code


def cmd_remove(args, installer: TransactionalInstaller) -> int:
    """Remove all tapgate artifacts."""
    if not confirm("Remove tapgate enforcement (shell wrappers, hooks, config)?", args.yes):
        print_info("Removal cancelled")
        return 1
    result = installer.remove()
    for detail in result.details:
        if detail.startswith("FAILED"):
            print_error(detail)
        else:
            print_success(detail)
    if result.backup_dir:
        print_info(f"Backup: {result.backup_dir} (restore with: tapctl restore {result.backup_dir})")
    if result.exit_code:
        print_error("Removal incomplete; see errors above")
    return result.exit_code


def cmd_enable(args, installer: TransactionalInstaller) -> int:
    path = installer.enable()
    print_success(f"Enforcement enabled ({path})")
    if os.environ.get(EnvVars.ENABLED):
        print_warning(f"{EnvVars.ENABLED}={os.environ[EnvVars.ENABLED]} is set and takes precedence")
    return 0


def cmd_disable(args, installer: TransactionalInstaller) -> int:
    path = installer.disable()
    print_warning(f"Enforcement disabled ({path}); operations will be logged as BYPASSED")
    return 0


def cmd_restore(args, installer: TransactionalInstaller) -> int:
    """Restore artifacts from a backup directory."""
    if not confirm(f"Overwrite current artifacts with {args.backup_dir}?", args.yes):
        print_info("Restore cancelled")
        return 1
    restored = installer.restore(Path(args.backup_dir).expanduser())
    for path in restored:
        print_success(f"Restored {path}")
    return 0


def cmd_status(args, installer: TransactionalInstaller) -> int:
    """Show enforcement state."""
    status = installer.status()
    yes = f"{Colors.GREEN}yes{Colors.RESET}"
    no = f"{Colors.RED}no{Colors.RESET}"

    print(f"{Colors.BOLD}tapgate status{Colors.RESET}")
    state = f"{Colors.GREEN}ENFORCED{Colors.RESET}" if status.enforced else f"{Colors.YELLOW}BYPASSED{Colors.RESET}"
    print(f"  Enforcement:      {state}")
    print(f"  Config:           {status.config_path}{'' if status.config_exists else ' (missing, defaults)'}")
    if status.config_error:
        print(f"  Config error:     {Colors.RED}{status.config_error}{Colors.RESET}")
    if status.override is not None:
        print(f"  Override:         {EnvVars.ENABLED}={'true' if status.override else 'false'}")
    print(f"  Shell wrappers:   {yes if status.shell_block_installed else no} ({status.shell_config})")
    print(f"  Pre-push hook:    {yes if status.hook_installed else no}")
    print(f"  Template dir set: {yes if status.template_dir_configured else no}")

    print(f"\n{Colors.BOLD}Verification methods{Colors.RESET} (in order)")
    for provider in status.providers:
        mark = yes if provider.available else no
        reason = f" {Colors.GRAY}{provider.reason}{Colors.RESET}" if provider.reason else ""
        print(f"  {provider.method:<20} {provider.tier:<9} {mark}{reason}")

    print(f"\n{Colors.BOLD}Recent verifications{Colors.RESET}")
    for line in status.recent_log or ["(none)"]:
        print(f"  {line}")
    return 0


def cmd_log(args, orchestrator: VerificationOrchestrator) -> int:
    for line in orchestrator.audit_log.tail(args.lines):
        print(line)
    return 0


def cmd_otp(args, manager: OtpSlotManager) -> int:
    """Manage OTP slot 2."""
    if args.otp_command == 'status':
        status = manager.status()
        print(f"YubiKey serial: {status.serial or 'unknown'}")
        print(f"OTP slot 2:     {status.state.value}")
        if status.state == SlotState.EMPTY:
            print_warning("Slot 2 is not configured; run: tapctl otp configure")
        return 0

    if args.otp_command == 'configure':
        print_info("Tap your YubiKey when it blinks")
        status = manager.configure(force=args.force)
        print_success(f"OTP slot 2 is {status.state.value}; tap-required verification available")
        return 0

    if args.otp_command == 'delete':
        if not confirm("Delete OTP slot 2? Tap-required verification will stop working", args.yes):
            print_info("Delete cancelled")
            return 1
        status = manager.delete()
        print_success(f"OTP slot 2 is {status.state.value}")
        return 0
    return 1


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tapctl',
        description='Hardware presence enforcement for git and gh',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging to stderr')
    parser.add_argument('--no-color', action='store_true', help='Disable colors')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    verify_parser = subparsers.add_parser('verify', help='Verify one operation')
    verify_parser.add_argument('operation', help='Operation description, e.g. "git push origin main"')
    verify_parser.add_argument('--timeout', '-t', type=int, help='Per-attempt timeout in seconds')
    verify_parser.set_defaults(func=cmd_verify, needs='orchestrator')

    exec_parser = subparsers.add_parser('exec', help='Run git/gh behind verification')
    exec_parser.add_argument('tool', choices=sorted(BINARY_OVERRIDES), help='Wrapped tool')
    exec_parser.add_argument('args', nargs=argparse.REMAINDER, help='Arguments for the tool')
    exec_parser.set_defaults(func=cmd_exec, needs='orchestrator')

    setup_parser = subparsers.add_parser('setup', help='Install enforcement')
    setup_parser.add_argument('--skip-existing', action='store_true',
                              help='Leave an existing shell block untouched')
    setup_parser.add_argument('--timeout', '-t', type=int, help='Verification timeout in seconds')
    setup_parser.set_defaults(func=cmd_setup, needs='installer')

    remove_parser = subparsers.add_parser('remove', help='Remove enforcement')
    remove_parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')
    remove_parser.set_defaults(func=cmd_remove, needs='installer')

    enable_parser = subparsers.add_parser('enable', help='Enable enforcement')
    enable_parser.set_defaults(func=cmd_enable, needs='installer')

    disable_parser = subparsers.add_parser('disable', help='Disable enforcement')
    disable_parser.set_defaults(func=cmd_disable, needs='installer')

    status_parser = subparsers.add_parser('status', help='Show enforcement status')
    status_parser.set_defaults(func=cmd_status, needs='installer')

    test_parser = subparsers.add_parser('test', help='Run one forced verification')
    test_parser.add_argument('--timeout', '-t', type=int, help='Per-attempt timeout in seconds')
    test_parser.set_defaults(func=cmd_test, needs='orchestrator')

    log_parser = subparsers.add_parser('log', help='Show recent audit entries')
    log_parser.add_argument('--lines', '-n', type=int, default=20, help='Number of entries')
    log_parser.set_defaults(func=cmd_log, needs='orchestrator')

    restore_parser = subparsers.add_parser('restore', help='Restore artifacts from a backup')
    restore_parser.add_argument('backup_dir', help='Backup directory under ~/.tapgate/backups')
    restore_parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')
    restore_parser.set_defaults(func=cmd_restore, needs='installer')

    otp_parser = subparsers.add_parser('otp', help='Manage YubiKey OTP slot 2')
    otp_sub = otp_parser.add_subparsers(dest='otp_command')
    otp_sub.add_parser('status', help='Show slot 2 state')
    configure_parser = otp_sub.add_parser('configure', help='Program slot 2 (touch required)')
    configure_parser.add_argument('--force', action='store_true', help='Overwrite a programmed slot')
    delete_parser = otp_sub.add_parser('delete', help='Delete slot 2')
    delete_parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')
    otp_parser.set_defaults(func=cmd_otp, needs='otp')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stderr.isatty():
        Colors.disable()
    configure_from_environment(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 0
    if args.command == 'otp' and not args.otp_command:
        parser.parse_args(['otp', '--help'])
        return 0

    try:
        if args.needs == 'installer':
            return args.func(args, TransactionalInstaller()) or 0
        if args.needs == 'otp':
            return args.func(args, OtpSlotManager()) or 0
        return args.func(args, VerificationOrchestrator()) or 0
    except (InstallerError, ConfigError, OtpSlotError, DeviceUnavailable) as e:
        print_error(str(e))
        if e.remediation:
            print_steps(e.remediation.splitlines())
        return 1
    except TapgateError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        print_error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
