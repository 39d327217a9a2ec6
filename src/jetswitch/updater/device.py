"""
Device detection for jetswitch

Reads the device identity and model files (never writes them) and works
out whether the run is native on a Jetson or a cross-build on another host.
"""

import logging
import os
import platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional

from jetswitch.updater.config import ManagerConfig
from jetswitch.updater.errors import InsufficientPrivileges, MissingToolchain, UnsupportedVersion
from jetswitch.updater.version import ReleaseIdentifier

logger = logging.getLogger(__name__)

NATIVE_ARCHITECTURE = 'aarch64'
UNKNOWN_MODEL = 'Unknown Jetson'

SIMULATED_RELEASE = ReleaseIdentifier(35, 3, 1)
SIMULATED_MODEL = 'Jetson AGX Orin (Simulated)'

# First release supporting the Jetson AGX Orin Industrial module
INDUSTRIAL_MIN_RELEASE = ReleaseIdentifier(35, 4, 1)
INDUSTRIAL_MARKER = 'orin industrial'

# "# R35 (release), REVISION: 3.1, GCID: 32827747, BOARD: t186ref, ..."
_TEGRA_RELEASE_RE = re.compile(r'R(\d+)\s.*REVISION:\s*(\d+)\.(\d+)')


@dataclass(frozen=True)
class DeviceInfo:
    """What jetswitch knows about the machine it runs on."""

    model: str
    current_release: Optional[ReleaseIdentifier]
    architecture: str
    kernel_release: str
    cross_compile: Optional[str] = None
    simulated: bool = False

    @property
    def native(self) -> bool:
        return self.architecture == NATIVE_ARCHITECTURE

    @property
    def cross_build(self) -> bool:
        return not self.native

    @property
    def is_orin_industrial(self) -> bool:
        return INDUSTRIAL_MARKER in self.model.lower()

    def describe_release(self) -> str:
        if self.current_release is None:
            return "Unknown (non-NVIDIA or non-L4T OS)"
        return str(self.current_release)


def parse_tegra_release(text: str) -> Optional[ReleaseIdentifier]:
    """
    Parse the first line of /etc/nv_tegra_release.

    Examples:
        >>> parse_tegra_release("# R35 (release), REVISION: 3.1, GCID: 1")
        ReleaseIdentifier(major=35, minor=3, patch=1)
    """
    first_line = text.splitlines()[0] if text else ''
    match = _TEGRA_RELEASE_RE.search(first_line)
    if not match:
        return None
    major, minor, patch = match.groups()
    return ReleaseIdentifier(int(major), int(minor), int(patch))


def read_device_model(path: Path) -> Optional[str]:
    """Device-tree model string with NUL bytes stripped."""
    try:
        raw = Path(path).read_bytes()
    except OSError:
        return None
    model = raw.replace(b'\0', b'').decode('utf-8', errors='replace').strip()
    return model or None


def read_current_release(path: Path) -> Optional[ReleaseIdentifier]:
    try:
        text = Path(path).read_text(errors='replace')
    except OSError:
        return None
    return parse_tegra_release(text)


def detect_device(config: ManagerConfig, simulate: bool = False,
                  environ: Optional[Mapping[str, str]] = None,
                  architecture: Optional[str] = None) -> DeviceInfo:
    """
    Inspect the current machine.

    Args:
        config: Supplies the identity and model file locations
        simulate: When the release is unknown, pretend to be a 35.3.1 AGX Orin
        environ: Environment mapping for ``CROSS_COMPILE``
        architecture: Override for ``uname -m``

    Returns:
        DeviceInfo describing the device
    """
    env = os.environ if environ is None else environ
    release = read_current_release(config.tegra_release_file)
    model = read_device_model(config.device_model_file) or UNKNOWN_MODEL
    simulated = False

    if simulate and release is None:
        release = SIMULATED_RELEASE
        model = SIMULATED_MODEL
        simulated = True

    device = DeviceInfo(
        model=model,
        current_release=release,
        architecture=architecture or platform.machine(),
        kernel_release=platform.release(),
        cross_compile=env.get('CROSS_COMPILE') or None,
        simulated=simulated,
    )
    logger.debug("Detected device: %s", device)
    return device


def require_toolchain(device: DeviceInfo):
    """
    Raises:
        MissingToolchain: If cross-building without a CROSS_COMPILE prefix
    """
    if device.cross_build and not device.cross_compile:
        raise MissingToolchain(
            f"CROSS_COMPILE is not set and this host is {device.architecture}, not a Jetson.",
            remediation="Export your aarch64 toolchain prefix, e.g. "
                        "CROSS_COMPILE=/usr/bin/aarch64-linux-gnu-, and re-run.")


def industrial_warning(device: DeviceInfo) -> Optional[str]:
    """Warning text for an Orin Industrial module on a release that predates it."""
    if not device.is_orin_industrial or device.current_release is None:
        return None
    if device.current_release >= INDUSTRIAL_MIN_RELEASE:
        return None
    return (f"Your Jetson AGX Orin Industrial is running {device.current_release}, "
            f"which does not support the Industrial module. Upgrading to "
            f"{INDUSTRIAL_MIN_RELEASE} or newer is required for full support.")


def check_target_supported(device: DeviceInfo, target: ReleaseIdentifier):
    """
    Raises:
        UnsupportedVersion: If the target release cannot run on this module
    """
    if device.is_orin_industrial and target < INDUSTRIAL_MIN_RELEASE:
        raise UnsupportedVersion(
            f"Jetson AGX Orin Industrial is not supported on Jetson Linux {target}.",
            remediation=f"Please choose {INDUSTRIAL_MIN_RELEASE} or later.")


def _nearest_existing(path: Path) -> Path:
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def require_write_access(paths: Iterable[Path]):
    """
    Check that every location (or its nearest existing parent) is writable.

    All copies into the boot, module and work trees run in this process,
    so a non-root run fails here rather than part-way through a stage.

    Raises:
        InsufficientPrivileges: If any location is not writable
    """
    denied = [str(p) for p in paths if not os.access(_nearest_existing(p), os.W_OK)]
    if denied:
        raise InsufficientPrivileges(
            f"No write access to {', '.join(denied)}.",
            remediation="Re-run jetswitch as root, e.g. with sudo.")
