"""
Defensive archive extraction for jetswitch

Release archives are never unpacked straight into the workspace. Each one
is expanded into a private scratch directory first, and only allow-listed
top-level entries are moved into the destination. Anything else in the
archive is discarded.
"""

import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Sequence, Union

from jetswitch.updater.errors import ExtractionError

logger = logging.getLogger(__name__)

L4T_ROOT = 'Linux_for_Tegra'

BSP_ENTRIES = (L4T_ROOT,)
SOURCES_ENTRIES = (L4T_ROOT,)
KERNEL_SOURCE_ENTRIES = (
    'kernel',
    'hardware',
    'nvidia-oot',
    'nvgpu',
    'nvethernetrm',
    'hwpm',
    'nvdisplay',
    'Makefile',
    'kernel_src_build_env.sh',
    'generic_rt_build.sh',
)

KERNEL_SOURCE_ARCHIVE = 'kernel_src.tbz2'
# Where public_sources.tbz2 places kernel_src.tbz2, across release lines
KERNEL_SOURCE_LOCATIONS = (
    Path(L4T_ROOT) / 'source' / 'public',
    Path(L4T_ROOT) / 'source',
)


def _check_members(tar: tarfile.TarFile, archive: Path):
    for member in tar.getmembers():
        name = PurePosixPath(member.name)
        if name.is_absolute() or '..' in name.parts:
            raise ExtractionError(
                f"Archive {archive.name} contains an unsafe path: {member.name}",
                remediation="Re-download the archive from NVIDIA.")


def _merge_tree(source: Path, destination: Path):
    """Move ``source`` into ``destination``, merging existing directories."""
    if not destination.exists() and not destination.is_symlink():
        shutil.move(str(source), str(destination))
        return

    if source.is_dir() and not source.is_symlink() and destination.is_dir() \
            and not destination.is_symlink():
        for child in source.iterdir():
            _merge_tree(child, destination / child.name)
        return

    if destination.is_dir() and not destination.is_symlink():
        shutil.rmtree(destination)
    else:
        destination.unlink()
    shutil.move(str(source), str(destination))


class ArchiveExtractor:
    """Unpacks tarballs through a scratch directory and an entry allow-list."""

    def __init__(self, scratch_root: Optional[Union[str, Path]] = None):
        self.scratch_root = Path(scratch_root) if scratch_root else None

    def extract(self, archive: Union[str, Path], destination: Union[str, Path],
                allowed: Iterable[str]) -> List[Path]:
        """
        Extract an archive and move its allow-listed entries into place.

        Args:
            archive: Tarball to unpack
            destination: Existing directory receiving the entries
            allowed: Top-level entry names that may reach the destination

        Returns:
            Destination paths of the entries moved in

        Raises:
            ExtractionError: If the archive is missing, unreadable, contains
                unsafe members, or holds none of the allowed entries
        """
        archive = Path(archive)
        destination = Path(destination)
        allowed = set(allowed)

        if not archive.is_file():
            raise ExtractionError(f"Archive not found: {archive}")
        if not hasattr(tarfile, 'data_filter'):
            raise ExtractionError(
                "This Python has no tarfile extraction filters; refusing to unpack untrusted archives.",
                remediation="Use Python 3.9.17, 3.10.12, 3.11.4, 3.12 or newer.")

        logger.info("Extracting %s into %s", archive.name, destination)
        moved: List[Path] = []
        try:
            destination.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix='jetswitch-', dir=self.scratch_root) as scratch:
                scratch_dir = Path(scratch)
                with tarfile.open(archive) as tar:
                    _check_members(tar, archive)
                    tar.extractall(scratch_dir, filter='data')

                for entry in sorted(scratch_dir.iterdir()):
                    if entry.name not in allowed:
                        logger.warning("Discarding unexpected entry '%s' from %s",
                                       entry.name, archive.name)
                        continue
                    target = destination / entry.name
                    _merge_tree(entry, target)
                    moved.append(target)
        except (tarfile.TarError, OSError, shutil.Error) as e:
            raise ExtractionError(f"Failed to extract {archive.name}: {e}",
                                  remediation="Check free disk space and re-download the archive.")

        if not moved:
            raise ExtractionError(
                f"Archive {archive.name} contains none of the expected entries: "
                + ', '.join(sorted(allowed)))
        return moved


def find_kernel_source_archive(workspace: Union[str, Path],
                               locations: Sequence[Path] = KERNEL_SOURCE_LOCATIONS) -> Path:
    """
    Locate kernel_src.tbz2 inside an extracted public_sources tree.

    Raises:
        ExtractionError: If no known location holds the archive
    """
    workspace = Path(workspace)
    for location in locations:
        candidate = workspace / location / KERNEL_SOURCE_ARCHIVE
        if candidate.is_file():
            return candidate
    raise ExtractionError(
        f"{KERNEL_SOURCE_ARCHIVE} not found in the public_sources package under {workspace}.",
        remediation="Extraction might have failed; re-download public_sources.tbz2.")


def kernel_source_root(workspace: Union[str, Path]) -> Path:
    """Directory kernel sources are extracted into (the archive's directory)."""
    return Path(workspace) / KERNEL_SOURCE_LOCATIONS[0]


def describe_entries(entries: Iterable[Path]) -> str:
    return ', '.join(os.path.basename(str(e)) for e in entries)
