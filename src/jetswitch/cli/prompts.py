"""
Interactive decision provider backed by rich prompts
"""

from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.prompt import Confirm, Prompt

from jetswitch.updater.decisions import DecisionProvider, SymlinkAction

_SYMLINK_KEYS = {
    'r': SymlinkAction.REMOVE,
    's': SymlinkAction.SKIP,
    'a': SymlinkAction.ABORT,
}


class ConsoleDecisions(DecisionProvider):
    """Asks the operator on the terminal."""

    def __init__(self, console: Console):
        self.console = console
        self._symlink_help_shown = False

    def confirm(self, prompt: str, default: bool = True) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)

    def choose(self, prompt: str, options: Sequence[str]) -> Optional[int]:
        self.console.print(prompt)
        for number, label in enumerate(options, start=1):
            self.console.print(f"  {number}) {label}")

        answer = Prompt.ask("Enter the number of your choice", console=self.console)
        if answer.strip().isdigit() and 1 <= int(answer) <= len(options):
            return int(answer) - 1

        self.console.print("[red]Invalid selection.[/red]")
        return None

    def remediate_symlink(self, path: Path) -> SymlinkAction:
        if not self._symlink_help_shown:
            self.console.print("[yellow]Symlinks detected in backup source directories.[/yellow]")
            self.console.print("For each symlink, you can:")
            self.console.print("  [r] Remove the symlink", markup=False)
            self.console.print("  [s] Skip backing up this symlink", markup=False)
            self.console.print("  [a] Abort backup process", markup=False)
            self._symlink_help_shown = True

        answer = Prompt.ask(f"Symlink: {path} - remove, skip, abort?",
                            choices=list(_SYMLINK_KEYS), console=self.console)
        return _SYMLINK_KEYS[answer]
