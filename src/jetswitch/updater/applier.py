"""
Live-system installation for jetswitch

Copies a finished kernel build into the live boot and module trees,
refreshes module dependency metadata and regenerates the initramfs.
Every step is fatal on failure; the backup taken beforehand is the only
recovery path.
"""

import logging
import shutil
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from jetswitch.updater.commands import CommandRunner
from jetswitch.updater.config import ManagerConfig
from jetswitch.updater.errors import InstallFailure

logger = logging.getLogger(__name__)

DEFAULT_MODULES_ROOT = Path('/lib/modules')

InstallStep = Tuple[str, Callable[[], None]]


def build_image(build_dir: Path) -> Path:
    return Path(build_dir) / 'arch' / 'arm64' / 'boot' / 'Image'


def build_dtbs(build_dir: Path) -> List[Path]:
    dts_dir = Path(build_dir) / 'arch' / 'arm64' / 'boot' / 'dts'
    if not dts_dir.is_dir():
        return []
    return sorted(p for p in dts_dir.rglob('*.dtb') if p.is_file())


def _atomic_copy(source: Path, dest: Path):
    # Rename is atomic on the same filesystem
    temp_dest = dest.with_name(dest.name + '.tmp')
    shutil.copy2(source, temp_dest)
    temp_dest.replace(dest)


class KernelInstaller:
    """Installs kernel image, device trees, modules and initramfs."""

    def __init__(self, config: ManagerConfig, runner: Optional[CommandRunner] = None,
                 cross_compile: Optional[str] = None):
        self.config = config
        self.runner = runner if runner else CommandRunner()
        self.cross_compile = cross_compile

    @property
    def _install_prefix(self) -> Optional[Path]:
        """Root prefix for module installs when modules_root is not /lib/modules."""
        if self.config.modules_root == DEFAULT_MODULES_ROOT:
            return None
        return self.config.modules_root.parent.parent

    def steps(self, build_dir: Path, kernel_release: str) -> List[InstallStep]:
        """
        Ordered install actions with a description of each.

        Nothing runs until the returned callables are invoked, so the
        descriptions double as the dry-run report.
        """
        boot_dir = self.config.boot_dir
        return [
            (f"copy {build_image(build_dir)} to {boot_dir / 'Image'}",
             lambda: self.install_image(build_dir)),
            (f"copy device tree blobs to {boot_dir / 'dtb'}",
             lambda: self.install_dtbs(build_dir)),
            (f"run make ARCH=arm64 O={build_dir} modules_install",
             lambda: self.install_modules(build_dir)),
            (f"run depmod {kernel_release}",
             lambda: self.refresh_module_dependencies(kernel_release)),
            (f"run update-initramfs -c -k {kernel_release} and update {boot_dir / 'initrd'}",
             lambda: self.regenerate_initramfs(kernel_release)),
        ]

    def install_image(self, build_dir: Path):
        image = build_image(build_dir)
        if not image.is_file():
            raise InstallFailure(f"Built kernel image not found: {image}")
        try:
            self.config.boot_dir.mkdir(parents=True, exist_ok=True)
            _atomic_copy(image, self.config.boot_dir / 'Image')
        except OSError as e:
            raise InstallFailure(f"Failed to install kernel image: {e}",
                                 remediation="Re-run as root, or revert with --revert.")
        logger.info("Installed kernel image %s", image)

    def install_dtbs(self, build_dir: Path):
        """Copy built DTBs; skipped when the device has no /boot/dtb directory."""
        dtb_dir = self.config.boot_dir / 'dtb'
        if not dtb_dir.is_dir():
            logger.info("No %s directory, skipping device tree install", dtb_dir)
            return

        dtbs = build_dtbs(build_dir)
        if not dtbs:
            raise InstallFailure(f"No device tree blobs found in {build_dir}")
        try:
            for dtb in dtbs:
                shutil.copy2(dtb, dtb_dir / dtb.name)
        except OSError as e:
            raise InstallFailure(f"Failed to install device tree blobs: {e}",
                                 remediation="Revert with --revert before rebooting.")
        logger.info("Installed %d device tree blob(s)", len(dtbs))

    def install_modules(self, build_dir: Path):
        args = ['make', 'ARCH=arm64', f'O={build_dir}']
        if self.cross_compile:
            args.append(f'CROSS_COMPILE={self.cross_compile}')
        if self._install_prefix is not None:
            args.append(f'INSTALL_MOD_PATH={self._install_prefix}')
        args.append('modules_install')
        self._check(self.runner.run(args), "Kernel module installation")

    def refresh_module_dependencies(self, kernel_release: str):
        args = ['depmod']
        if self._install_prefix is not None:
            args += ['-b', str(self._install_prefix)]
        args.append(kernel_release)
        self._check(self.runner.run(args), "depmod")

    def regenerate_initramfs(self, kernel_release: str):
        result = self.runner.run(['update-initramfs', '-c', '-k', kernel_release])
        self._check(result, "update-initramfs")

        # Replace the generic initrd when a versioned one was produced
        versioned = self.config.boot_dir / f'initrd.img-{kernel_release}'
        if versioned.is_file():
            try:
                shutil.copy2(versioned, self.config.boot_dir / 'initrd')
            except OSError as e:
                raise InstallFailure(f"Failed to update initrd: {e}",
                                     remediation="Revert with --revert before rebooting.")

    @staticmethod
    def _check(result, step: str):
        if result.returncode != 0:
            raise InstallFailure(
                f"{step} failed (exit {result.returncode}).",
                remediation="The live system may be inconsistent. Do not reboot; "
                            "restore the previous kernel with --revert.")

    def manual_instructions(self, build_dir: Path, kernel_release: str) -> List[str]:
        """Copy instructions for cross builds, where the host is not the target."""
        boot = build_image(build_dir)
        return [
            f"Kernel image: {boot}  ->  /boot/Image (on Jetson)",
            f"Device Tree blobs: {boot.parent / 'dts'}/**/*.dtb  ->  /boot/dtb/ (on Jetson)",
            f"Modules: copy {Path(build_dir) / 'lib' / 'modules' / kernel_release} "
            f"to /lib/modules/ on the Jetson",
        ]
