"""
Operator decision boundary for jetswitch

The core never prompts directly. When it needs a decision it asks a
DecisionProvider for one of a small set of decision kinds; the CLI supplies
an interactive provider, and unattended runs use a provider that answers
with fixed defaults and fails fast where no safe default exists.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Sequence


class SymlinkAction(Enum):
    """Operator choice for a symlink found in a backup source tree."""

    REMOVE = 'remove'
    SKIP = 'skip'
    ABORT = 'abort'


class DecisionProvider:
    """Interface for suspension points in resolution, backup and install."""

    #: True when nobody can answer prompts (e.g. ``--yes``)
    unattended = False

    def confirm(self, prompt: str, default: bool = True) -> bool:
        """Yes/no confirmation before a destructive or long-running step."""
        raise NotImplementedError

    def choose(self, prompt: str, options: Sequence[str]) -> Optional[int]:
        """
        Pick one of several options.

        Args:
            prompt: Question shown above the option list
            options: Display labels, in the order they must be shown

        Returns:
            Zero-based index of the chosen option, or None to cancel
        """
        raise NotImplementedError

    def remediate_symlink(self, path: Path) -> SymlinkAction:
        """Decide what to do with a symlink found before a backup."""
        raise NotImplementedError


class UnattendedDecisions(DecisionProvider):
    """
    Non-blocking provider used with ``--yes``.

    Confirmations are accepted, symlinks are skipped (left in place and
    excluded from the backup). Choices cannot be defaulted safely, so
    ``choose`` returns None and the caller raises AmbiguousInput.
    """

    unattended = True

    def confirm(self, prompt: str, default: bool = True) -> bool:
        return True

    def choose(self, prompt: str, options: Sequence[str]) -> Optional[int]:
        return None

    def remediate_symlink(self, path: Path) -> SymlinkAction:
        return SymlinkAction.SKIP
