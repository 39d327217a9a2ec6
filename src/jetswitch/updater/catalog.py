"""
Static version catalog for jetswitch

Maps between the four version namespaces a user may type: Jetson Linux
release, JetPack (SDK) label, kernel branch and OS distribution.
"""

from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from jetswitch.updater.version import ReleaseIdentifier


@dataclass(frozen=True)
class CatalogEntry:
    """One known Jetson Linux release and its secondary identifiers."""

    release: ReleaseIdentifier
    sdk: Optional[str]
    kernel_branch: str
    distribution: str
    codename: str

    def describe(self) -> str:
        """One-line label used in selection lists."""
        details = []
        if self.sdk:
            details.append(f"JetPack {self.sdk}")
        details.append(f"kernel {self.kernel_branch}")
        details.append(self.distribution)
        return f"Jetson Linux {self.release.display} ({', '.join(details)})"


_R = ReleaseIdentifier.parse

DEFAULT_ENTRIES: Tuple[CatalogEntry, ...] = (
    CatalogEntry(_R('35.3.1'), '5.1.1', '5.10', 'Ubuntu 20.04', 'focal'),
    CatalogEntry(_R('35.4.1'), '5.1.2', '5.10', 'Ubuntu 20.04', 'focal'),
    CatalogEntry(_R('36.2'), '6.0', '5.15', 'Ubuntu 22.04', 'jammy'),
    CatalogEntry(_R('36.4'), '6.1', '5.15', 'Ubuntu 22.04', 'jammy'),
    CatalogEntry(_R('36.4.3'), '6.2', '5.15', 'Ubuntu 22.04', 'jammy'),
    CatalogEntry(_R('36.4.4'), '6.2.1', '5.15', 'Ubuntu 22.04', 'jammy'),
)

# Minor-only SDK labels resolve to their latest known patch
DEFAULT_SDK_ALIASES: Dict[str, str] = {
    '5.1': '5.1.2',
}


class VersionCatalog:
    """
    Read-only lookup tables between release, SDK, kernel and OS namespaces.

    Built once from a sequence of entries. Every multi-release lookup keeps
    the order in which entries were given.
    """

    def __init__(self, entries: Iterable[CatalogEntry],
                 sdk_aliases: Optional[Mapping[str, str]] = None):
        self._entries: Tuple[CatalogEntry, ...] = tuple(entries)

        by_release: Dict[ReleaseIdentifier, CatalogEntry] = {}
        sdk_to_release: Dict[str, ReleaseIdentifier] = {}
        for entry in self._entries:
            if entry.release in by_release:
                raise ValueError(f"Duplicate catalog release: {entry.release}")
            by_release[entry.release] = entry
            if entry.sdk:
                sdk_to_release[entry.sdk] = entry.release

        self._by_release = MappingProxyType(by_release)
        self._sdk_to_release = MappingProxyType(sdk_to_release)
        self._sdk_aliases = MappingProxyType(dict(sdk_aliases or {}))

    @classmethod
    def default(cls) -> 'VersionCatalog':
        return cls(DEFAULT_ENTRIES, DEFAULT_SDK_ALIASES)

    @property
    def entries(self) -> Tuple[CatalogEntry, ...]:
        return self._entries

    @property
    def sdk_labels(self) -> List[str]:
        return list(self._sdk_to_release)

    def releases(self) -> List[ReleaseIdentifier]:
        return [entry.release for entry in self._entries]

    def entry(self, release: ReleaseIdentifier) -> Optional[CatalogEntry]:
        return self._by_release.get(release)

    def __contains__(self, release) -> bool:
        return release in self._by_release

    def canonical_sdk(self, label: str) -> str:
        """Apply the SDK alias table; unknown labels pass through unchanged."""
        return self._sdk_aliases.get(label, label)

    def release_for_sdk(self, label: str) -> Optional[ReleaseIdentifier]:
        return self._sdk_to_release.get(self.canonical_sdk(label))

    def distributions(self) -> List[Tuple[str, str]]:
        """Distinct (distribution, codename) pairs in catalog order."""
        seen: List[Tuple[str, str]] = []
        for entry in self._entries:
            pair = (entry.distribution, entry.codename)
            if pair not in seen:
                seen.append(pair)
        return seen

    def kernel_branches(self) -> List[str]:
        branches: List[str] = []
        for entry in self._entries:
            if entry.kernel_branch not in branches:
                branches.append(entry.kernel_branch)
        return branches

    def releases_for_distribution(self, distribution: str) -> List[ReleaseIdentifier]:
        key = distribution.lower()
        return [e.release for e in self._entries
                if e.distribution.lower() == key or e.codename.lower() == key]

    def releases_for_kernel_branch(self, branch: str) -> List[ReleaseIdentifier]:
        return [e.release for e in self._entries if e.kernel_branch == branch]

    def __repr__(self) -> str:
        return f"VersionCatalog(releases={len(self._entries)})"


@lru_cache(maxsize=None)
def default_catalog() -> VersionCatalog:
    """Process-wide catalog, constructed on first use and never mutated."""
    return VersionCatalog.default()
