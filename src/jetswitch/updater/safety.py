"""
Path safety checks for jetswitch backups and restores

Every backup read or write goes through here first. A backup path must sit
strictly inside the backup root, contain no symlinks in the boot and module
subtrees, and contain nothing that resolves outside its own directory.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Union

from jetswitch.updater.decisions import DecisionProvider, SymlinkAction
from jetswitch.updater.errors import UnsafePath

logger = logging.getLogger(__name__)

# Subtrees of a backup record that mirror live boot-critical locations
PROTECTED_SUBTREES = ('boot', os.path.join('lib', 'modules'))


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def scan_for_symlinks(directory: Union[str, Path]) -> List[Path]:
    """
    Find every symbolic link below a directory without following any.

    Args:
        directory: Tree to scan; a missing directory yields an empty list

    Returns:
        Sorted list of symlink paths
    """
    directory = Path(directory)
    if directory.is_symlink():
        return [directory]
    if not directory.is_dir():
        return []

    found = []
    for dirpath, dirnames, filenames in os.walk(directory, followlinks=False):
        for name in dirnames + filenames:
            entry = Path(dirpath) / name
            if entry.is_symlink():
                found.append(entry)
    return sorted(found)


def validate_backup_path(path: Union[str, Path], root: Union[str, Path]) -> Path:
    """
    Check that a backup directory is safe to read from or write to.

    Args:
        path: Backup record directory (need not exist yet)
        root: Fixed backup root directory

    Returns:
        The resolved backup path

    Raises:
        UnsafePath: If the path escapes the root, contains symlinks in the
            protected subtrees, or holds entries resolving outside itself
    """
    path = Path(path)
    root_resolved = Path(root).resolve()

    if path.is_symlink():
        raise UnsafePath(f"Backup directory is a symbolic link: {path}")

    resolved = path.resolve()
    if resolved == root_resolved or not _is_within(resolved, root_resolved):
        raise UnsafePath(f"Backup directory path is invalid: {path}",
                         remediation=f"Backups must live directly under {root_resolved}.")

    if not resolved.exists():
        return resolved

    for subtree in PROTECTED_SUBTREES:
        links = scan_for_symlinks(resolved / subtree)
        if links:
            raise UnsafePath(
                f"Backup contains symlinks, which are not allowed: {links[0]}",
                remediation="Remove the symlinks from the backup or take a fresh backup.")

    for dirpath, dirnames, filenames in os.walk(resolved, followlinks=False):
        for name in dirnames + filenames:
            entry = Path(dirpath) / name
            if not _is_within(entry.resolve(), resolved):
                raise UnsafePath(f"Backup contains an entry outside its directory: {entry}")

    return resolved


def remediate_symlinks(directories: Iterable[Union[str, Path]],
                       decisions: DecisionProvider) -> List[Path]:
    """
    Ask the operator what to do with each symlink in backup source trees.

    Removed symlinks are deleted from the live tree. Skipped symlinks stay
    in place and are excluded from the backup copy.

    Args:
        directories: Live trees about to be backed up
        decisions: Provider answering one remove/skip/abort question per link

    Returns:
        Symlinks that were skipped

    Raises:
        UnsafePath: If the operator chooses to abort
    """
    skipped = []
    for directory in directories:
        for link in scan_for_symlinks(directory):
            action = decisions.remediate_symlink(link)
            if action is SymlinkAction.ABORT:
                raise UnsafePath(f"Backup aborted at symlink {link}.",
                                 remediation="Resolve the symlink manually and re-run.")
            if action is SymlinkAction.REMOVE:
                link.unlink()
                logger.info("Removed symlink %s", link)
            else:
                logger.info("Skipping symlink %s", link)
                skipped.append(link)
    return skipped
