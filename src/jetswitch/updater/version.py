"""
Release identifier parsing and ordering for jetswitch
"""

import re
from typing import NamedTuple

_VERSION_RE = re.compile(r'^(\d+)\.(\d+)(?:\.(\d+))?$')


class ReleaseIdentifier(NamedTuple):
    """
    Canonical Jetson Linux release as a numeric triple.

    Ordering is tuple ordering over (major, minor, patch), so
    ``35.10.0 > 35.4.1`` holds where plain string comparison would not.

    Examples:
        >>> ReleaseIdentifier.parse("36.4")
        ReleaseIdentifier(major=36, minor=4, patch=0)
        >>> str(ReleaseIdentifier.parse("35.4.1"))
        '35.4.1'
    """

    major: int
    minor: int
    patch: int = 0

    @classmethod
    def parse(cls, version: str) -> 'ReleaseIdentifier':
        """
        Parse "X.Y" or "X.Y.Z" into a release identifier.

        Args:
            version: Version string, surrounding whitespace ignored

        Returns:
            ReleaseIdentifier with an implicit zero patch for two components

        Raises:
            ValueError: If the string is not a dotted numeric version
        """
        match = _VERSION_RE.match(version.strip()) if isinstance(version, str) else None
        if not match:
            raise ValueError(f"Invalid release format: {version!r}")

        major, minor, patch = match.groups()
        return cls(int(major), int(minor), int(patch or 0))

    @property
    def display(self) -> str:
        """Short form used in messages: a trailing ".0" is dropped."""
        if self.patch == 0:
            return f"{self.major}.{self.minor}"
        return str(self)

    @property
    def url_slug(self) -> str:
        """Digits used by NVIDIA release page URLs, e.g. 36.4.4 -> "3644"."""
        return self.display.replace('.', '')

    @property
    def backup_name(self) -> str:
        """Directory name of the backup record taken from this release."""
        return f"{self}_backup"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def compare_versions(version1: str, version2: str) -> int:
    """
    Compare two release strings numerically.

    Returns:
        -1 if version1 < version2, 0 if equal, 1 if version1 > version2

    Examples:
        >>> compare_versions("35.3.1", "35.4.1")
        -1
        >>> compare_versions("36.4", "36.4.0")
        0
    """
    v1 = ReleaseIdentifier.parse(version1)
    v2 = ReleaseIdentifier.parse(version2)

    if v1 < v2:
        return -1
    elif v1 > v2:
        return 1
    return 0
