"""
Free-form version input resolution for jetswitch

Turns inputs such as "35.4.1", "L4T 36.4", "JetPack 5.1.2", "jp6.2",
"Ubuntu 22.04" or "kernel 5.10" into one canonical ReleaseIdentifier.

Classification is an ordered list of matchers; the first one that
recognises the input decides how it is resolved. The release pattern
requires a two-digit major and the SDK pattern a one-digit major, so the
numeric matchers never overlap.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from jetswitch.updater.catalog import VersionCatalog, default_catalog
from jetswitch.updater.decisions import DecisionProvider
from jetswitch.updater.errors import AmbiguousInput, UnknownInput, UnsupportedVersion
from jetswitch.updater.version import ReleaseIdentifier

logger = logging.getLogger(__name__)

RELEASE = 'release'
SDK = 'sdk'
DISTRIBUTION = 'distribution'
KERNEL_BRANCH = 'kernel_branch'

HELP_TEXT = (
    "Specify a Jetson Linux release (e.g. 35.4.1), a JetPack version "
    "(e.g. 'JetPack 5.1.2'), an OS release ('Ubuntu 22.04') or a kernel "
    "branch ('kernel 5.15')."
)


@dataclass(frozen=True)
class Candidate:
    """Parsed result of a matcher: which namespace, and the key within it."""

    namespace: str
    value: Optional[str]
    text: str


@dataclass(frozen=True)
class ResolvedRelease:
    """A resolved target plus best-effort labels for display."""

    release: ReleaseIdentifier
    sdk: Optional[str] = None
    kernel_branch: Optional[str] = None
    distribution: Optional[str] = None

    def describe(self) -> str:
        lines = [f"Jetson Linux {self.release.display}"]
        if self.sdk:
            lines.append(f"(JetPack {self.sdk})")
        if self.kernel_branch and self.distribution:
            lines.append(f"Kernel: {self.kernel_branch}, OS: {self.distribution}")
        return '\n'.join(lines)


class ReleaseMatcher:
    """`NN.N[.N]`, optionally prefixed by "jetson", "jetson linux" or "l4t"."""

    namespace = RELEASE
    _prefix = re.compile(r'^(jetson|l4t)')
    _bare = re.compile(r'^\d{2}\.\d')
    _digits = re.compile(r'(\d{2}\.\d+(?:\.\d+)?)')

    def match(self, text: str, catalog: VersionCatalog) -> Optional[Candidate]:
        if not (self._prefix.match(text) or self._bare.match(text)):
            return None
        found = self._digits.search(text)
        return Candidate(self.namespace, found.group(1) if found else None, text)


class SdkMatcher:
    """"jetpack"/"jp" prefix, or a bare version with a one-digit major."""

    namespace = SDK
    _prefix = re.compile(r'^(jetpack|jp)')
    _bare = re.compile(r'^\d\.\d')
    _digits = re.compile(r'(\d+\.\d+(?:\.\d+)?)')

    def match(self, text: str, catalog: VersionCatalog) -> Optional[Candidate]:
        if not (self._prefix.match(text) or self._bare.match(text)):
            return None
        found = self._digits.search(text)
        return Candidate(self.namespace, found.group(1) if found else None, text)


class DistributionMatcher:
    """OS keyword such as "ubuntu 22.04" or its codename "jammy"."""

    namespace = DISTRIBUTION

    def match(self, text: str, catalog: VersionCatalog) -> Optional[Candidate]:
        for distribution, codename in catalog.distributions():
            if distribution.lower() in text or re.search(rf'\b{codename}\b', text):
                return Candidate(self.namespace, distribution, text)
        return None


class KernelBranchMatcher:
    """Kernel branch keyword such as "5.10" anywhere in the input."""

    namespace = KERNEL_BRANCH

    def match(self, text: str, catalog: VersionCatalog) -> Optional[Candidate]:
        for branch in catalog.kernel_branches():
            if re.search(rf'(?<![\d.]){re.escape(branch)}(?![\d])', text):
                return Candidate(self.namespace, branch, text)
        return None


DEFAULT_MATCHERS = (ReleaseMatcher(), SdkMatcher(), DistributionMatcher(), KernelBranchMatcher())


class VersionResolver:
    """
    Resolves free-form version input against a VersionCatalog.

    Keyword inputs shared by several releases are never auto-selected: the
    resolver asks the decision provider to choose, and raises
    AmbiguousInput if it cannot.
    """

    def __init__(self, catalog: Optional[VersionCatalog] = None,
                 matchers: Sequence = DEFAULT_MATCHERS):
        self.catalog = catalog if catalog else default_catalog()
        self.matchers = tuple(matchers)

    @staticmethod
    def normalize(raw: str) -> str:
        return ' '.join((raw or '').split()).lower()

    def classify(self, raw: str) -> Candidate:
        """
        Run the matchers in order and return the first match.

        Raises:
            UnknownInput: If no matcher recognises the input
        """
        text = self.normalize(raw)
        if text:
            for matcher in self.matchers:
                candidate = matcher.match(text, self.catalog)
                if candidate is not None:
                    logger.debug("Classified %r as %s (%s)", raw, candidate.namespace, candidate.value)
                    return candidate

        raise UnknownInput(f"Could not interpret target version input '{raw}'.",
                           remediation=HELP_TEXT)

    def candidates(self, raw: str) -> List[ReleaseIdentifier]:
        """
        All releases the input could refer to, in catalog order.

        Does not prompt. Release and SDK inputs yield at most one candidate.
        """
        candidate = self.classify(raw)

        if candidate.namespace == RELEASE:
            return [self._release_from_digits(candidate)]
        if candidate.namespace == SDK:
            return [self._release_from_sdk(candidate)]
        if candidate.namespace == DISTRIBUTION:
            releases = self.catalog.releases_for_distribution(candidate.value)
        else:
            releases = self.catalog.releases_for_kernel_branch(candidate.value)

        if not releases:
            raise UnsupportedVersion(f"No known Jetson Linux release uses {candidate.value}.",
                                     remediation=HELP_TEXT)
        return releases

    def resolve(self, raw: str, decisions: Optional[DecisionProvider] = None) -> ResolvedRelease:
        """
        Resolve input to exactly one release.

        Args:
            raw: Free-form user input
            decisions: Provider asked to pick among several candidates

        Returns:
            ResolvedRelease with display labels filled in where known

        Raises:
            UnknownInput: No namespace pattern matched
            UnsupportedVersion: SDK label or keyword with no catalog entry
            AmbiguousInput: Several candidates and no selection was made
        """
        releases = self.candidates(raw)

        if len(releases) == 1:
            return self.describe(releases[0])

        labels = [self._label(release) for release in releases]
        choice = None
        if decisions is not None:
            prompt = f"'{raw.strip()}' matches several Jetson Linux releases:"
            choice = decisions.choose(prompt, labels)

        if choice is None or not 0 <= choice < len(releases):
            raise AmbiguousInput(
                f"'{raw.strip()}' matches {len(releases)} releases: "
                + ', '.join(str(r) for r in releases),
                candidates=releases,
                remediation="Pass an explicit release, e.g. --target " + str(releases[-1]),
            )

        return self.describe(releases[choice])

    def describe(self, release: ReleaseIdentifier) -> ResolvedRelease:
        """Attach SDK, kernel and OS labels; missing entries are not an error."""
        entry = self.catalog.entry(release)
        if entry is None:
            return ResolvedRelease(release)
        return ResolvedRelease(release, entry.sdk, entry.kernel_branch, entry.distribution)

    def _label(self, release: ReleaseIdentifier) -> str:
        entry = self.catalog.entry(release)
        return entry.describe() if entry else f"Jetson Linux {release.display}"

    def _release_from_digits(self, candidate: Candidate) -> ReleaseIdentifier:
        if not candidate.value:
            raise UnknownInput(f"Failed to determine a release number from '{candidate.text}'.",
                               remediation=HELP_TEXT)

        return ReleaseIdentifier.parse(candidate.value)

    def _release_from_sdk(self, candidate: Candidate) -> ReleaseIdentifier:
        if not candidate.value:
            raise UnknownInput(f"Failed to determine a JetPack version from '{candidate.text}'.",
                               remediation=HELP_TEXT)

        release = self.catalog.release_for_sdk(candidate.value)
        if release is None:
            known = ', '.join(self.catalog.sdk_labels)
            raise UnsupportedVersion(
                f"Unknown or unsupported JetPack version: {self.catalog.canonical_sdk(candidate.value)}",
                remediation=f"Known JetPack versions: {known}")
        return release
