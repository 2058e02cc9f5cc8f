"""
Installation artifacts: the shell wrapper block, the pre-push hook and the
file primitives used to write them.

Shell block (appended to the detected shell config):

    # >>> tapgate enforcement >>>
    # Managed by 'tapctl setup'; remove with 'tapctl remove'.
    git() { command tapctl exec git "$@"; }
    gh() { command tapctl exec gh "$@"; }
    # <<< tapgate enforcement <<<

The block never exports TAPGATE_ENABLED; enable/disable only change the
config file, so the ambient override stays an explicit per-command choice.
"""

import fcntl
import logging
import os
import platform
from pathlib import Path
from typing import Mapping, Optional

from ..constants import Permissions
from ..exceptions import ArtifactError

logger = logging.getLogger(__name__)

BLOCK_BEGIN = "# >>> tapgate enforcement >>>"
BLOCK_END = "# <<< tapgate enforcement <<<"
HOOK_MARKER = "# tapgate pre-push hook"
HOOK_NAME = "pre-push"


def render_shell_block(tapctl: str = "tapctl", zsh: bool = False) -> str:
    lines = [
        BLOCK_BEGIN,
        "# Managed by 'tapctl setup'; remove with 'tapctl remove'.",
        f'git() {{ command {tapctl} exec git "$@"; }}',
        f'gh() {{ command {tapctl} exec gh "$@"; }}',
    ]
    if zsh:
        lines += [
            "if (( $+functions[compdef] )); then",
            "  compdef _git git=git",
            "  compdef _gh gh=gh",
            "fi",
        ]
    lines.append(BLOCK_END)
    return "\n".join(lines) + "\n"


def find_shell_block(text: str) -> Optional[slice]:
    """Span of the managed block including its trailing newline, or None"""
    start = text.find(BLOCK_BEGIN)
    if start < 0:
        return None
    end = text.find(BLOCK_END, start)
    if end < 0:
        return None
    end += len(BLOCK_END)
    if text[end:end + 1] == "\n":
        end += 1
    return slice(start, end)


def has_shell_block(text: str) -> bool:
    return find_shell_block(text) is not None


def insert_shell_block(text: str, block: str) -> str:
    """Replace an existing block in place, or append one"""
    span = find_shell_block(text)
    if span is not None:
        return text[:span.start] + block + text[span.stop:]
    if text and not text.endswith("\n"):
        text += "\n"
    separator = "\n" if text else ""
    return text + separator + block


def strip_shell_block(text: str) -> str:
    """Remove the managed block and the blank separator line added before it"""
    span = find_shell_block(text)
    if span is None:
        return text
    head = text[:span.start]
    if head.endswith("\n\n"):
        head = head[:-1]
    return head + text[span.stop:]


def render_pre_push_hook(tapctl: str = "tapctl") -> str:
    return (
        "#!/bin/sh\n"
        f"{HOOK_MARKER} (managed by tapctl; do not edit)\n"
        f'exec {tapctl} verify "git push $1"\n'
    )


def is_managed_hook(content: Optional[bytes]) -> bool:
    return content is not None and HOOK_MARKER.encode() in content


def detect_shell_config(home: Path, environ: Optional[Mapping[str, str]] = None,
                        system: Optional[str] = None) -> Path:
    """zsh -> .zshrc; bash -> .bash_profile (macOS) or .bashrc; otherwise .profile"""
    env = os.environ if environ is None else environ
    system = system or platform.system()
    shell = Path(env.get("SHELL", "")).name
    if shell == "zsh" or (home / ".zshrc").exists():
        return home / ".zshrc"
    if shell == "bash":
        return home / (".bash_profile" if system == "Darwin" else ".bashrc")
    return home / ".profile"


def read_bytes(path: Path) -> Optional[bytes]:
    """Content of `path`, or None if it does not exist"""
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ArtifactError(path, f"cannot read: {e}")


def atomic_write(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """Write via temp file + flock + fsync + rename, preserving or setting the mode"""
    path = Path(path)
    if mode is None:
        try:
            mode = path.stat().st_mode & 0o7777
        except FileNotFoundError:
            mode = 0o644
    temp_file = path.with_name(f".{path.name}.tapgate.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_file, 'wb') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.chmod(temp_file, mode)
        temp_file.replace(path)
    except OSError as e:
        if temp_file.exists():
            temp_file.unlink()
        raise ArtifactError(path, f"cannot write: {e}")
    logger.debug(f"Wrote {path} ({len(content)} bytes, mode {oct(mode)})")


def remove_file(path: Path) -> bool:
    """Delete `path`; returns False if it was already absent"""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise ArtifactError(path, f"cannot remove: {e}")
    return True


def write_hook(path: Path, tapctl: str = "tapctl") -> None:
    atomic_write(path, render_pre_push_hook(tapctl).encode(), Permissions.EXECUTABLE)


__all__ = [
    'BLOCK_BEGIN',
    'BLOCK_END',
    'HOOK_MARKER',
    'HOOK_NAME',
    'render_shell_block',
    'find_shell_block',
    'has_shell_block',
    'insert_shell_block',
    'strip_shell_block',
    'render_pre_push_hook',
    'is_managed_hook',
    'detect_shell_config',
    'read_bytes',
    'atomic_write',
    'remove_file',
    'write_hook',
]
