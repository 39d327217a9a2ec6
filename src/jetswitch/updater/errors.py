"""
Exception hierarchy for jetswitch

Resolution and validation errors stop a run before the live system is
touched. Pipeline errors are fatal and never retried automatically.
"""

from typing import List, Optional, Sequence


class JetswitchError(Exception):
    """Base exception for all jetswitch failures."""

    exit_code = 1

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation


class OperationCancelled(JetswitchError):
    """Raised when the operator declines to continue. Not a failure."""

    exit_code = 0


class ConfigError(JetswitchError):
    """Raised for an unreadable or malformed configuration file."""


# --- Resolution and validation ---

class UnknownInput(JetswitchError):
    """Raised when input matches no version namespace pattern."""


class AmbiguousInput(JetswitchError):
    """Raised when input maps to several candidates and nobody picked one."""

    def __init__(self, message: str, candidates: Sequence = (),
                 remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.candidates = list(candidates)


class UnsupportedVersion(JetswitchError):
    """Raised when input matches a pattern but has no catalog entry."""


class UnsafePath(JetswitchError):
    """Raised when a path fails symlink or containment checks."""


class MissingToolchain(JetswitchError):
    """Raised when cross-compiling without a CROSS_COMPILE prefix."""


class InsufficientPrivileges(JetswitchError):
    """Raised when a location the run must write to is not writable."""


# --- Pipeline ---

class MissingArtifact(JetswitchError):
    """Raised when required release archives are not in the download dir."""

    def __init__(self, message: str, missing: Sequence[str] = (),
                 remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.missing: List[str] = list(missing)


class ExtractionError(JetswitchError):
    """Raised when a release archive cannot be unpacked safely."""


class BuildFailure(JetswitchError):
    """Raised when the kernel configure or build step exits non-zero."""


class BackupIOError(JetswitchError):
    """Raised when a backup cannot be written completely.

    The partially written directory is left in place and reported.
    """

    def __init__(self, message: str, path=None, remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.path = path


class BackupNotFound(JetswitchError):
    """Raised when no backup matches the requested release."""

    def __init__(self, message: str, available: Sequence = (),
                 remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.available = list(available)


class InstallFailure(JetswitchError):
    """Raised when copying new artifacts or refreshing boot metadata fails."""


class RestoreFailure(JetswitchError):
    """Raised when a backup cannot be restored.

    ``partial`` is True when some live locations were already overwritten,
    leaving the system in a mixed state.
    """

    def __init__(self, message: str, partial: bool = False,
                 restored: Sequence[str] = (), remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.partial = partial
        self.restored = list(restored)
