"""
Kernel configure and build steps for jetswitch

The kernel build system is an opaque external tool: each step either exits
zero or the run fails with BuildFailure.
"""

import logging
from pathlib import Path
from typing import List, Optional

from jetswitch.updater.commands import CommandRunner
from jetswitch.updater.errors import BuildFailure, ExtractionError

logger = logging.getLogger(__name__)

DEFCONFIG = 'tegra_defconfig'
LOCALVERSION = '-tegra'
BUILD_DIR_NAME = 'kernel_build'


def locate_kernel_tree(source_root: Path, kernel_branch: Optional[str]) -> Path:
    """
    Find the kernel source directory below ``<...>/source/public``.

    Prefers ``kernel/kernel-<branch>``; otherwise the first ``kernel/kernel-*``
    directory found.

    Raises:
        ExtractionError: If no kernel tree is present
    """
    kernel_dir = Path(source_root) / 'kernel'
    if kernel_branch:
        preferred = kernel_dir / f'kernel-{kernel_branch}'
        if preferred.is_dir():
            return preferred

    candidates = sorted(p for p in kernel_dir.glob('kernel-*') if p.is_dir())
    if not candidates:
        raise ExtractionError(f"No kernel source tree found under {kernel_dir}",
                              remediation="Re-extract the public sources package.")
    return candidates[0]


def expected_kernel_tree(source_root: Path, kernel_branch: Optional[str]) -> Path:
    """Kernel tree path used when nothing has been extracted (dry runs)."""
    return Path(source_root) / 'kernel' / f'kernel-{kernel_branch or "unknown"}'


def simulated_kernel_release(kernel_branch: Optional[str]) -> str:
    return f"{kernel_branch or 'unknown'}.x{LOCALVERSION}"


class KernelBuilder:
    """Runs ``make`` for the Tegra kernel with an out-of-tree build directory."""

    def __init__(self, runner: Optional[CommandRunner] = None, jobs: int = 1,
                 cross_compile: Optional[str] = None):
        self.runner = runner if runner else CommandRunner()
        self.jobs = jobs
        self.cross_compile = cross_compile

    def make_args(self, build_dir: Path, *targets: str) -> List[str]:
        args = ['make', 'ARCH=arm64', f'O={build_dir}']
        if self.cross_compile:
            args.append(f'CROSS_COMPILE={self.cross_compile}')
        return args + list(targets)

    def configure_command(self, build_dir: Path) -> List[str]:
        return self.make_args(build_dir, DEFCONFIG)

    def build_command(self, build_dir: Path) -> List[str]:
        return self.make_args(build_dir, f'-j{self.jobs}', f'LOCALVERSION={LOCALVERSION}')

    def configure(self, kernel_tree: Path, build_dir: Path):
        """Apply NVIDIA's default configuration into ``build_dir``."""
        result = self.runner.run(self.configure_command(build_dir), cwd=kernel_tree)
        if result.returncode != 0:
            raise BuildFailure(f"Kernel configuration failed (exit {result.returncode}).",
                               remediation=f"Inspect the make output in {kernel_tree}.")

    def build(self, kernel_tree: Path, build_dir: Path):
        """Compile kernel image, device trees and modules."""
        logger.info("Building kernel with %d job(s)", self.jobs)
        result = self.runner.run(self.build_command(build_dir), cwd=kernel_tree)
        if result.returncode != 0:
            raise BuildFailure(f"Kernel compilation failed (exit {result.returncode}). Aborting.",
                               remediation="Fix the build error and re-run; nothing was installed.")

    def kernel_release(self, kernel_tree: Path, build_dir: Path,
                       kernel_branch: Optional[str] = None) -> str:
        """
        Kernel release string of the finished build, e.g. "5.10.120-tegra".

        Falls back to "<branch>-tegra" if make prints nothing.
        """
        result = self.runner.run(['make', '-s'] + self.make_args(build_dir, 'kernelrelease')[1:],
                                 cwd=kernel_tree, capture=True)
        if result.returncode != 0:
            raise BuildFailure(f"Could not determine the kernel release (exit {result.returncode}).")

        release = (result.stdout or '').strip().splitlines()
        if release and release[-1].strip():
            return release[-1].strip()
        return f"{kernel_branch or 'unknown'}{LOCALVERSION}"
