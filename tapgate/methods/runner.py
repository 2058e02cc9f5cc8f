"""
Bounded subprocess execution for verification methods and the installer.

Every external tool (ykman, op, git, osascript, notify-send) is reached through
CommandRunner.run(). A call never outlives its timeout: on expiry the child and
all of its descendants get SIGTERM, then SIGKILL after a short grace period,
and are reaped before the call returns.
"""

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import psutil

from ..constants import Timeouts

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Outcome of one external command"""
    argv: Sequence[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    elapsed: float = 0.0
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


def terminate_tree(pid: int, wait: float = Timeouts.TERMINATE_WAIT) -> None:
    """SIGTERM a process and its descendants, SIGKILL whatever survives"""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        procs = [parent]

    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    _, alive = psutil.wait_procs(procs, timeout=wait)
    for proc in alive:
        logger.debug(f"Process {proc.pid} ignored SIGTERM, sending SIGKILL")
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if alive:
        psutil.wait_procs(alive, timeout=wait)


class CommandRunner:
    """Runs external commands with a hard timeout"""

    def which(self, binary: str) -> Optional[str]:
        return shutil.which(binary)

    def run(
        self,
        argv: Sequence[str],
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """
        Run `argv`, capturing output.

        Args:
            argv: Command and arguments; no shell is involved
            timeout: Seconds before the process tree is terminated
            env: Optional full environment for the child
            input_text: Optional text written to stdin

        Returns:
            CommandResult; a missing binary yields returncode 127 and
            not_found=True rather than an exception.
        """
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                list(argv),
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=dict(env) if env is not None else None,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            logger.debug(f"{argv[0]} not found: {e}")
            return CommandResult(argv, EXIT_NOT_FOUND, stderr=str(e), not_found=True,
                                 elapsed=time.monotonic() - started)
        except OSError as e:
            logger.warning(f"Cannot execute {argv[0]}: {e}")
            return CommandResult(argv, EXIT_NOT_FOUND, stderr=str(e),
                                 elapsed=time.monotonic() - started)

        try:
            stdout, stderr = proc.communicate(input=input_text, timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.debug(f"{argv[0]} exceeded {timeout}s, terminating process tree")
            terminate_tree(proc.pid)
            try:
                stdout, stderr = proc.communicate(timeout=Timeouts.TERMINATE_WAIT)
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, stderr = proc.communicate()
            return CommandResult(argv, proc.returncode, stdout or "", stderr or "",
                                 timed_out=True, elapsed=time.monotonic() - started)

        return CommandResult(argv, proc.returncode, stdout or "", stderr or "",
                             elapsed=time.monotonic() - started)


__all__ = ['CommandResult', 'CommandRunner', 'terminate_tree', 'EXIT_NOT_FOUND']
