"""
Backup manager for jetswitch

Snapshots the live boot files and the active kernel module tree before an
install, and restores a chosen snapshot on revert. Each record lives in
``<backup root>/<release>_backup`` and mirrors the live layout::

    35.3.1_backup/
        boot/Image
        boot/initrd
        boot/dtb/...
        lib/modules/<uname -r>/...
        backup.json

``backup.json`` is written last and marks the record complete.
"""

import json
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from jetswitch.updater.decisions import DecisionProvider
from jetswitch.updater.errors import (
    AmbiguousInput,
    BackupIOError,
    BackupNotFound,
    RestoreFailure,
)
from jetswitch.updater.safety import validate_backup_path
from jetswitch.updater.verifier import checksum_tree, verify_checksum
from jetswitch.updater.version import ReleaseIdentifier

logger = logging.getLogger(__name__)

MANIFEST_NAME = 'backup.json'
BOOT_FILES = ('Image', 'initrd')
BOOT_DIRS = ('dtb',)
MODULES_SUBDIR = Path('lib') / 'modules'

_RECORD_RE = re.compile(r'^(\d+\.\d+(?:\.\d+)?)_backup$')


@dataclass(frozen=True)
class BackupRecord:
    """One stored snapshot of boot and module state."""

    source_release: ReleaseIdentifier
    path: Path
    created_at: Optional[str] = None
    complete: bool = False

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_NAME

    def describe(self) -> str:
        label = f"Jetson Linux {self.source_release}"
        if self.created_at:
            label += f" (backed up {self.created_at})"
        if not self.complete:
            label += " [incomplete]"
        return label


def _ignore_symlinks(directory: str, names: List[str]) -> List[str]:
    return [name for name in names if (Path(directory) / name).is_symlink()]


def _copy_tree(source: Path, dest: Path, skip: Iterable[Path] = ()):
    """Copy a directory tree without following or copying symlinks."""
    skipped = {Path(p) for p in skip}

    def ignore(directory: str, names: List[str]) -> List[str]:
        ignored = _ignore_symlinks(directory, names)
        ignored += [n for n in names if Path(directory) / n in skipped]
        return ignored

    shutil.copytree(source, dest, ignore=ignore, dirs_exist_ok=True)


def _directory_list(root: Path) -> List[str]:
    return sorted(p.relative_to(root).as_posix() for p in root.rglob('*')
                  if p.is_dir() and not p.is_symlink())


def _unlisted_entries(root: Path, files: Iterable[str], directories: Iterable[str]) -> List[str]:
    """Entries under a record that its manifest does not account for."""
    listed = set(files) | set(directories) | {MANIFEST_NAME}
    return sorted(rel for rel in (p.relative_to(root).as_posix() for p in root.rglob('*'))
                  if rel not in listed)


class BackupManager:
    """
    Creates, lists, selects and restores backup records.

    Every read or write of a record directory is preceded by
    ``validate_backup_path``.
    """

    def __init__(self, backup_root: Path, boot_dir: Path = Path('/boot'),
                 modules_root: Path = Path('/lib/modules')):
        """
        Args:
            backup_root: Fixed directory holding ``<release>_backup`` records
            boot_dir: Live boot directory
            modules_root: Live kernel module root
        """
        self.backup_root = Path(backup_root)
        self.boot_dir = Path(boot_dir)
        self.modules_root = Path(modules_root)

    def record_path(self, release: ReleaseIdentifier) -> Path:
        return self.backup_root / release.backup_name

    def source_trees(self, kernel_release: str) -> List[Path]:
        """Live trees a backup copies from, in copy order."""
        return [self.boot_dir, self.modules_root / kernel_release]

    def create_backup(self, current: ReleaseIdentifier, kernel_release: str,
                      skip: Iterable[Path] = ()) -> BackupRecord:
        """
        Back up the live boot files and active module tree.

        An existing complete record for the same release is kept as is and
        returned. An incomplete one is discarded and rewritten.

        Args:
            current: Release currently installed; names the record
            kernel_release: Active kernel (``uname -r``) whose modules to copy
            skip: Live paths to leave out (e.g. symlinks the operator skipped)

        Returns:
            The complete BackupRecord

        Raises:
            UnsafePath: If the record path or its contents fail validation
            BackupIOError: If any copy fails; the partial directory is left
                in place and must not be installed over
        """
        path = self.record_path(current)
        validate_backup_path(path, self.backup_root)

        if path.is_dir():
            existing = self.load_record(path)
            if existing is not None and existing.complete:
                logger.info("Backup for %s already exists at %s, keeping it", current, path)
                return existing
            logger.warning("Discarding incomplete backup at %s", path)
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise BackupIOError(f"Could not remove incomplete backup {path}: {e}", path=path)

        skip = [Path(p) for p in skip]
        logger.info("Backing up current system files to %s", path)
        try:
            boot_backup = path / 'boot'
            boot_backup.mkdir(parents=True)

            for name in BOOT_FILES:
                source = self.boot_dir / name
                if source.is_file() and not source.is_symlink() and source not in skip:
                    shutil.copy2(source, boot_backup / name)

            for name in BOOT_DIRS:
                source = self.boot_dir / name
                if source.is_dir() and not source.is_symlink() and source not in skip:
                    _copy_tree(source, boot_backup / name, skip)

            modules = self.modules_root / kernel_release
            if modules.is_dir() and not modules.is_symlink():
                _copy_tree(modules, path / MODULES_SUBDIR / kernel_release, skip)
            else:
                logger.warning("No module tree at %s, backing up boot files only", modules)
        except (OSError, shutil.Error) as e:
            raise BackupIOError(
                f"Backup to {path} failed: {e}",
                path=path,
                remediation=f"The backup at {path} is incomplete. Free space or fix "
                            f"permissions and re-run; nothing was installed.")

        validate_backup_path(path, self.backup_root)

        created_at = datetime.now(timezone.utc).isoformat()
        manifest = {
            'release': str(current),
            'kernel_release': kernel_release,
            'created_at': created_at,
            'files': checksum_tree(path),
            'directories': _directory_list(path),
        }
        try:
            with open(path / MANIFEST_NAME, 'w') as f:
                json.dump(manifest, f, indent=2)
        except OSError as e:
            raise BackupIOError(f"Could not write backup manifest in {path}: {e}", path=path)

        logger.info("Backup created: %s (%d files)", path, len(manifest['files']))
        return BackupRecord(current, path, created_at, complete=True)

    def load_record(self, path: Path) -> Optional[BackupRecord]:
        """Record for a directory named ``<release>_backup``, else None."""
        match = _RECORD_RE.match(path.name)
        if not match:
            return None

        release = ReleaseIdentifier.parse(match.group(1))
        created_at = None
        complete = False
        manifest = self._read_manifest(path)
        if manifest is not None:
            created_at = manifest.get('created_at')
            complete = True
        return BackupRecord(release, path, created_at, complete)

    def list_backups(self) -> List[BackupRecord]:
        """
        Backup records under the backup root, in filesystem enumeration order.

        Symlinked directories and names not matching ``<release>_backup``
        are ignored.
        """
        if not self.backup_root.is_dir():
            return []

        records = []
        for entry in self.backup_root.iterdir():
            if entry.is_symlink() or not entry.is_dir():
                continue
            record = self.load_record(entry)
            if record is not None:
                records.append(record)
        return records

    def select_backup(self, requested: Optional[Union[str, ReleaseIdentifier]] = None,
                      decisions: Optional[DecisionProvider] = None) -> BackupRecord:
        """
        Pick the record to restore.

        Args:
            requested: Release to revert to; exact (numeric) match required
            decisions: Asked to choose when several records exist and none
                was requested

        Raises:
            BackupNotFound: No records, or none for the requested release
            AmbiguousInput: Several records and no selection was made
        """
        records = self.list_backups()
        available = [str(r.source_release) for r in records]
        if not records:
            raise BackupNotFound(f"No backup directories found in {self.backup_root}. Cannot revert.")

        if requested is not None:
            if isinstance(requested, ReleaseIdentifier):
                release = requested
            else:
                try:
                    release = ReleaseIdentifier.parse(requested)
                except ValueError:
                    release = None
            for record in records:
                if record.source_release == release:
                    return record
            raise BackupNotFound(
                f"Specified backup version {requested} not found under {self.backup_root}.",
                available=available,
                remediation="Available backups: " + ', '.join(available))

        if len(records) == 1:
            return records[0]

        choice = None
        if decisions is not None:
            choice = decisions.choose("Multiple backups are available. "
                                      "Please choose which version to revert to:",
                                      [r.describe() for r in records])
        if choice is None or not 0 <= choice < len(records):
            raise AmbiguousInput(
                f"{len(records)} backups are available: {', '.join(available)}",
                candidates=[r.source_release for r in records],
                remediation="Pass the release to restore, e.g. --revert " + available[0])
        return records[choice]

    def verify(self, record: BackupRecord) -> Dict[str, Any]:
        """
        Validate a record's path and check every file against its manifest.

        Returns:
            The parsed manifest

        Raises:
            UnsafePath: If the record fails path validation
            RestoreFailure: If the record is incomplete or corrupted
        """
        validate_backup_path(record.path, self.backup_root)

        manifest = self._read_manifest(record.path)
        if manifest is None:
            raise RestoreFailure(
                f"Backup {record.path} is incomplete (no {MANIFEST_NAME}).",
                remediation="This backup was interrupted and cannot be restored safely.")

        expected = manifest.get('files', {})
        for name, checksum in expected.items():
            if not verify_checksum(record.path / name, checksum):
                raise RestoreFailure(f"Backup verification failed: {name} is missing or modified.",
                                     remediation="The backup is corrupted; choose another one.")

        # Restore copies whole trees, so nothing may exist beyond the manifest
        unlisted = _unlisted_entries(record.path, expected, manifest.get('directories', []))
        if unlisted:
            raise RestoreFailure(
                f"Backup verification failed: {', '.join(unlisted)} not listed in {MANIFEST_NAME}.",
                remediation="The backup was modified after it was taken; choose another one.")
        return manifest

    def restore(self, record: BackupRecord):
        """
        Copy a verified record back to the live boot and module locations.

        Boot files are restored first, then modules.

        Raises:
            UnsafePath: If the record fails path validation
            RestoreFailure: On any failure; ``partial`` is True when live
                files were already overwritten
        """
        self.verify(record)

        restored: List[str] = []
        written = False
        try:
            boot_backup = record.path / 'boot'
            if boot_backup.is_dir():
                logger.info("Restoring %s files (kernel Image, initrd, dtb)", self.boot_dir)
                self.boot_dir.mkdir(parents=True, exist_ok=True)
                for entry in sorted(boot_backup.iterdir()):
                    written = True
                    if entry.is_dir():
                        _copy_tree(entry, self.boot_dir / entry.name)
                    else:
                        shutil.copy2(entry, self.boot_dir / entry.name)
                restored.append('boot')

            modules_backup = record.path / MODULES_SUBDIR
            if modules_backup.is_dir():
                logger.info("Restoring %s for %s", self.modules_root, record.source_release)
                self.modules_root.mkdir(parents=True, exist_ok=True)
                for entry in sorted(modules_backup.iterdir()):
                    written = True
                    _copy_tree(entry, self.modules_root / entry.name)
                restored.append('modules')
        except (OSError, shutil.Error) as e:
            if written:
                raise RestoreFailure(
                    f"Restore from {record.path} failed part-way: {e}. "
                    f"Completed: {', '.join(restored) or 'nothing'}.",
                    partial=True, restored=restored,
                    remediation="The live system is now inconsistent. Do not reboot; "
                                "fix the cause and run the revert again.")
            raise RestoreFailure(f"Restore from {record.path} failed: {e}",
                                 partial=False, restored=restored)

        logger.info("Restored %s from %s", ', '.join(restored), record.path)

    @staticmethod
    def _read_manifest(path: Path) -> Optional[Dict[str, Any]]:
        manifest_file = path / MANIFEST_NAME
        if not manifest_file.is_file():
            return None
        try:
            with open(manifest_file, 'r') as f:
                manifest = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Unreadable backup manifest %s: %s", manifest_file, e)
            return None
        return manifest if isinstance(manifest, dict) else None

    def __repr__(self) -> str:
        return f"BackupManager(root={self.backup_root})"
