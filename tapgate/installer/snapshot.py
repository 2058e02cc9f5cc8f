"""
Installation snapshots - byte-exact copies of every artifact the installer touches.

A snapshot is persisted to ~/.tapgate/backups/<operation>-<YYYYmmddTHHMMSSZ>/
before any mutation:

    manifest.json     operation, timestamp, and per artifact: path, existed,
                      mode, sha256, stored file name
    000-.zshrc        prior content of each artifact that existed
    001-pre-push
    ...

Snapshot content is written back into live artifacts only by rollback or by an
explicit `tapctl restore <dir>`.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..constants import Permissions
from ..exceptions import ArtifactError
from ..utils.error_handling import log_filesystem_error
from .artifacts import atomic_write, read_bytes, remove_file

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
MANIFEST_VERSION = 1


def _sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class ArtifactSnapshot:
    """Prior state of one artifact; prior_content None means it did not exist"""
    path: Path
    prior_content: Optional[bytes]
    prior_mode: Optional[int] = None

    @property
    def existed(self) -> bool:
        return self.prior_content is not None

    @classmethod
    def capture(cls, path: Path) -> 'ArtifactSnapshot':
        path = Path(path)
        content = read_bytes(path)
        mode = None
        if content is not None:
            mode = path.stat().st_mode & 0o7777
        return cls(path=path, prior_content=content, prior_mode=mode)

    def restore(self) -> None:
        """Put the artifact back exactly as captured"""
        if self.prior_content is None:
            if remove_file(self.path):
                logger.debug(f"Removed {self.path} (did not exist before)")
            return
        atomic_write(self.path, self.prior_content, self.prior_mode)


@dataclass
class InstallationSnapshot:
    """Ordered snapshot of every artifact an installer operation may touch"""
    operation: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    artifacts: List[ArtifactSnapshot] = field(default_factory=list)
    backup_dir: Optional[Path] = None

    @classmethod
    def capture(cls, operation: str, paths: Iterable[Path]) -> 'InstallationSnapshot':
        seen = set()
        artifacts = []
        for path in paths:
            path = Path(path)
            if path in seen:
                continue
            seen.add(path)
            artifacts.append(ArtifactSnapshot.capture(path))
        return cls(operation=operation, artifacts=artifacts)

    @property
    def paths(self) -> List[Path]:
        return [a.path for a in self.artifacts]

    def get(self, path: Path) -> Optional[ArtifactSnapshot]:
        path = Path(path)
        for artifact in self.artifacts:
            if artifact.path == path:
                return artifact
        return None

    def _new_backup_dir(self, backup_root: Path) -> Path:
        stamp = self.created_at.strftime(BACKUP_TIMESTAMP_FORMAT)
        candidate = backup_root / f"{self.operation}-{stamp}"
        counter = 1
        while candidate.exists():
            candidate = backup_root / f"{self.operation}-{stamp}-{counter}"
            counter += 1
        return candidate

    def persist(self, backup_root: Path) -> Path:
        """
        Write the snapshot to a new backup directory.

        Raises:
            ArtifactError: if any part of the backup could not be written;
                callers must not mutate artifacts in that case.
        """
        backup_root = Path(backup_root)
        try:
            backup_root.mkdir(parents=True, exist_ok=True)
            os.chmod(backup_root, Permissions.SECURE_DIR)
            target = self._new_backup_dir(backup_root)
            target.mkdir(mode=Permissions.SECURE_DIR)
        except OSError as e:
            raise ArtifactError(backup_root, f"cannot create backup directory: {e}")

        entries = []
        for index, artifact in enumerate(self.artifacts):
            entry: Dict[str, object] = {
                'path': str(artifact.path),
                'existed': artifact.existed,
                'mode': artifact.prior_mode,
                'file': None,
                'sha256': None,
            }
            if artifact.existed:
                stored = f"{index:03d}-{artifact.path.name.lstrip('.') or 'artifact'}"
                atomic_write(target / stored, artifact.prior_content, Permissions.SECURE_FILE)
                entry['file'] = stored
                entry['sha256'] = _sha256(artifact.prior_content)
            entries.append(entry)

        manifest = {
            'version': MANIFEST_VERSION,
            'operation': self.operation,
            'created_at': self.created_at.isoformat(),
            'artifacts': entries,
        }
        atomic_write(target / MANIFEST_NAME, json.dumps(manifest, indent=2).encode(), Permissions.SECURE_FILE)
        self.backup_dir = target
        logger.info(f"Backed up {len(self.artifacts)} artifacts to {target}")
        return target

    @classmethod
    def load(cls, backup_dir: Path) -> 'InstallationSnapshot':
        """
        Read a persisted snapshot, verifying every stored copy.

        Raises:
            ArtifactError: missing/invalid manifest or a checksum mismatch
        """
        backup_dir = Path(backup_dir)
        manifest_path = backup_dir / MANIFEST_NAME
        raw = read_bytes(manifest_path)
        if raw is None:
            raise ArtifactError(manifest_path, "backup manifest not found")
        try:
            manifest = json.loads(raw.decode())
            entries = manifest['artifacts']
            created_at = datetime.fromisoformat(manifest['created_at'])
            operation = manifest['operation']
        except (ValueError, KeyError, TypeError) as e:
            raise ArtifactError(manifest_path, f"invalid manifest: {e}")

        artifacts = []
        for entry in entries:
            path = Path(entry['path'])
            if not entry.get('existed'):
                artifacts.append(ArtifactSnapshot(path, None))
                continue
            stored = backup_dir / entry['file']
            content = read_bytes(stored)
            if content is None:
                raise ArtifactError(stored, f"backup copy of {path} is missing")
            if _sha256(content) != entry.get('sha256'):
                raise ArtifactError(stored, f"backup copy of {path} fails checksum verification")
            artifacts.append(ArtifactSnapshot(path, content, entry.get('mode')))

        return cls(operation=operation, created_at=created_at, artifacts=artifacts, backup_dir=backup_dir)

    def restore_all(self) -> List[ArtifactError]:
        """Restore every artifact, collecting (not raising) per-artifact failures"""
        errors = []
        for artifact in self.artifacts:
            try:
                artifact.restore()
            except ArtifactError as e:
                log_filesystem_error(e, "restoring artifact", path=str(e.path))
                errors.append(e)
        return errors


__all__ = [
    'ArtifactSnapshot',
    'InstallationSnapshot',
    'MANIFEST_NAME',
    'BACKUP_TIMESTAMP_FORMAT',
]
