"""Tests for the kernel build steps."""
import pytest

from conftest import KERNEL_RELEASE, FakeRunner
from jetswitch.updater.builder import (
    KernelBuilder,
    expected_kernel_tree,
    locate_kernel_tree,
    simulated_kernel_release,
)
from jetswitch.updater.errors import BuildFailure, ExtractionError


class TestKernelBuilder:
    """Test KernelBuilder."""

    def test_configure_command(self, temp_dir):
        runner = FakeRunner()
        KernelBuilder(runner).configure(temp_dir, temp_dir / 'build')
        assert runner.commands == [
            ['make', 'ARCH=arm64', f'O={temp_dir / "build"}', 'tegra_defconfig']]

    def test_build_command(self, temp_dir):
        runner = FakeRunner()
        KernelBuilder(runner, jobs=6).build(temp_dir, temp_dir / 'build')
        assert runner.commands[0][-2:] == ['-j6', 'LOCALVERSION=-tegra']

    def test_cross_compile_prefix(self, temp_dir):
        builder = KernelBuilder(FakeRunner(), cross_compile='/usr/bin/aarch64-linux-gnu-')
        assert 'CROSS_COMPILE=/usr/bin/aarch64-linux-gnu-' in builder.build_command(temp_dir)

    def test_configure_failure(self, temp_dir):
        with pytest.raises(BuildFailure):
            KernelBuilder(FakeRunner(failures=['tegra_defconfig'])).configure(temp_dir, temp_dir)

    def test_build_failure(self, temp_dir):
        with pytest.raises(BuildFailure):
            KernelBuilder(FakeRunner(failures=['LOCALVERSION=-tegra'])).build(temp_dir, temp_dir)

    def test_kernel_release(self, temp_dir):
        runner = FakeRunner()
        assert KernelBuilder(runner).kernel_release(temp_dir, temp_dir / 'build') == KERNEL_RELEASE
        assert runner.commands[0][:2] == ['make', '-s']
        assert runner.commands[0][-1] == 'kernelrelease'

    def test_kernel_release_fallback(self, temp_dir):
        builder = KernelBuilder(FakeRunner(kernel_release=''))
        assert builder.kernel_release(temp_dir, temp_dir, '5.15') == '5.15-tegra'

    def test_kernel_release_failure(self, temp_dir):
        with pytest.raises(BuildFailure):
            KernelBuilder(FakeRunner(failures=['kernelrelease'])).kernel_release(temp_dir, temp_dir)


class TestKernelTree:
    """Kernel source tree lookup."""

    def test_prefers_branch_directory(self, temp_dir):
        (temp_dir / 'kernel' / 'kernel-5.10').mkdir(parents=True)
        (temp_dir / 'kernel' / 'kernel-4.9').mkdir()
        assert locate_kernel_tree(temp_dir, '5.10') == temp_dir / 'kernel' / 'kernel-5.10'

    def test_falls_back_to_any_kernel_directory(self, temp_dir):
        (temp_dir / 'kernel' / 'kernel-jammy-src').mkdir(parents=True)
        assert locate_kernel_tree(temp_dir, '5.15') == temp_dir / 'kernel' / 'kernel-jammy-src'

    def test_missing_tree(self, temp_dir):
        with pytest.raises(ExtractionError):
            locate_kernel_tree(temp_dir, '5.10')

    def test_simulated_values(self, temp_dir):
        assert expected_kernel_tree(temp_dir, '5.15') == temp_dir / 'kernel' / 'kernel-5.15'
        assert simulated_kernel_release('5.15') == '5.15.x-tegra'
