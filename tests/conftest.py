"""Pytest configuration and fixtures."""
import io
import subprocess
import tarfile
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from jetswitch.updater.config import ManagerConfig
from jetswitch.updater.decisions import DecisionProvider, SymlinkAction
from jetswitch.updater.device import DeviceInfo
from jetswitch.updater.version import ReleaseIdentifier

KERNEL_RELEASE = '5.10.120-tegra'


class ScriptedDecisions(DecisionProvider):
    """Decision provider answering from pre-set queues and recording prompts."""

    def __init__(self, confirms=(), choices=(), symlink_actions=(), unattended=False,
                 default_confirm=True):
        self.confirms = list(confirms)
        self.choices = list(choices)
        self.symlink_actions = list(symlink_actions)
        self.unattended = unattended
        self.default_confirm = default_confirm
        self.prompts = []
        self.options = []

    def confirm(self, prompt, default=True):
        self.prompts.append(prompt)
        if self.confirms:
            return self.confirms.pop(0)
        return self.default_confirm

    def choose(self, prompt, options):
        self.prompts.append(prompt)
        self.options.append(list(options))
        if self.choices:
            return self.choices.pop(0)
        return None

    def remediate_symlink(self, path):
        self.prompts.append(str(path))
        if self.symlink_actions:
            return self.symlink_actions.pop(0)
        return SymlinkAction.SKIP


class FakeRunner:
    """Command runner that records commands instead of executing them."""

    def __init__(self, failures=(), kernel_release=KERNEL_RELEASE, on_run=None):
        self.failures = set(failures)
        self.kernel_release = kernel_release
        self.on_run = on_run
        self.commands = []

    def run(self, args, cwd=None, capture=False):
        command = [str(a) for a in args]
        self.commands.append(command)
        if self.on_run:
            self.on_run(command)
        if any(word in command for word in self.failures):
            return subprocess.CompletedProcess(command, 2, stdout='', stderr='failed')
        stdout = self.kernel_release + '\n' if 'kernelrelease' in command else ''
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr='')

    def ran(self, word):
        return any(word in command for command in self.commands)


def add_bytes(tar, name, data=b'data'):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def add_dir(tar, name):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    tar.addfile(info)


def make_release_archives(download_dir, release, kernel_branch='5.10'):
    """Write minimal BSP and public_sources archives for a release."""
    download_dir = Path(download_dir)
    download_dir.mkdir(parents=True, exist_ok=True)

    kernel_src = io.BytesIO()
    with tarfile.open(fileobj=kernel_src, mode='w:bz2') as tar:
        add_dir(tar, 'kernel')
        add_dir(tar, f'kernel/kernel-{kernel_branch}')
        add_bytes(tar, f'kernel/kernel-{kernel_branch}/Makefile', b'all:\n')
        add_bytes(tar, 'hardware/nvidia/readme.txt')

    with tarfile.open(download_dir / f'Jetson_Linux_R{release}_aarch64.tbz2', 'w:bz2') as tar:
        add_bytes(tar, 'Linux_for_Tegra/flash.sh', b'#!/bin/sh\n')
        add_bytes(tar, 'Linux_for_Tegra/bootloader/readme.txt')

    with tarfile.open(download_dir / 'public_sources.tbz2', 'w:bz2') as tar:
        add_bytes(tar, 'Linux_for_Tegra/source/public/kernel_src.tbz2', kernel_src.getvalue())


def snapshot(root):
    """Map of every path under ``root`` to its bytes (None for directories)."""
    root = Path(root)
    if not root.exists():
        return {}
    return {
        p.relative_to(root).as_posix(): (None if p.is_dir() else p.read_bytes())
        for p in sorted(root.rglob('*'))
    }


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def live_system(temp_dir):
    """Fake live boot and module trees."""
    boot = temp_dir / 'system' / 'boot'
    modules = temp_dir / 'system' / 'lib' / 'modules'
    (boot / 'dtb').mkdir(parents=True)
    (boot / 'Image').write_bytes(b'old-image')
    (boot / 'initrd').write_bytes(b'old-initrd')
    (boot / 'dtb' / 'tegra234-p3701.dtb').write_bytes(b'old-dtb')

    active = modules / KERNEL_RELEASE / 'kernel'
    active.mkdir(parents=True)
    (active / 'nvgpu.ko').write_bytes(b'old-module')

    return SimpleNamespace(boot=boot, modules=modules, root=temp_dir / 'system')


@pytest.fixture
def config(temp_dir, live_system):
    """ManagerConfig pointing every location into the temp directory."""
    etc = temp_dir / 'etc'
    etc.mkdir()
    (etc / 'nv_tegra_release').write_text(
        '# R35 (release), REVISION: 3.1, GCID: 32827747, BOARD: t186ref, EABI: aarch64\n')
    (etc / 'model').write_bytes(b'NVIDIA Jetson AGX Orin Developer Kit\0')

    return ManagerConfig(
        environ={},
        work_root=str(temp_dir / 'L4T'),
        download_dir=str(temp_dir / 'Downloads'),
        boot_dir=str(live_system.boot),
        modules_root=str(live_system.modules),
        tegra_release_file=str(etc / 'nv_tegra_release'),
        device_model_file=str(etc / 'model'),
        make_jobs=4,
    )


@pytest.fixture
def device():
    """Native Jetson on 35.3.1."""
    return DeviceInfo(
        model='NVIDIA Jetson AGX Orin Developer Kit',
        current_release=ReleaseIdentifier(35, 3, 1),
        architecture='aarch64',
        kernel_release=KERNEL_RELEASE,
    )
