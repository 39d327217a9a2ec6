"""
External command runner for jetswitch

Thin wrapper over subprocess so that build and install steps can be
exercised in tests with a fake runner. Every call blocks until the command
exits; callers turn a non-zero exit status into the right error type.
Commands run with the privileges of the jetswitch process itself.
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional, Sequence, Union

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs external tools such as make, depmod and update-initramfs."""

    def run(self, args: Sequence[str], cwd: Optional[Union[str, Path]] = None,
            capture: bool = False) -> subprocess.CompletedProcess:
        """
        Run a command to completion.

        Args:
            args: Program and arguments
            cwd: Working directory
            capture: Capture stdout/stderr as text instead of streaming them

        Returns:
            CompletedProcess; a missing program yields return code 127
        """
        command = [str(a) for a in args]
        logger.debug("Running: %s (cwd=%s)", ' '.join(command), cwd)

        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=capture,
                text=True,
            )
        except FileNotFoundError as e:
            logger.error("Command not found: %s", command[0])
            return subprocess.CompletedProcess(command, 127, stdout='', stderr=str(e))

        if result.returncode != 0:
            logger.warning("Command exited with %d: %s", result.returncode, ' '.join(command))
        return result
