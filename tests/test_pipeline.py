"""Tests for the staged install pipeline."""
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import KERNEL_RELEASE, FakeRunner, ScriptedDecisions, make_release_archives, snapshot
from jetswitch.updater import device as device_module
from jetswitch.updater.decisions import SymlinkAction, UnattendedDecisions
from jetswitch.updater.errors import (
    AmbiguousInput,
    BackupIOError,
    BuildFailure,
    InstallFailure,
    InsufficientPrivileges,
    MissingArtifact,
    MissingToolchain,
    OperationCancelled,
    UnsafePath,
    UnsupportedVersion,
)
from jetswitch.updater.pipeline import PipelineOrchestrator, PipelineRun, Stage
from jetswitch.updater.version import ReleaseIdentifier

R = ReleaseIdentifier.parse


def fake_build(command):
    """Produce build outputs when the kernel build command runs."""
    if 'LOCALVERSION=-tegra' not in command:
        return
    build_dir = Path(next(arg[2:] for arg in command if arg.startswith('O=')))
    boot = build_dir / 'arch' / 'arm64' / 'boot'
    (boot / 'dts' / 'nvidia').mkdir(parents=True, exist_ok=True)
    (boot / 'Image').write_bytes(b'new-image')
    (boot / 'dts' / 'nvidia' / 'tegra234-p3701.dtb').write_bytes(b'new-dtb')


@pytest.fixture
def runner():
    return FakeRunner(on_run=fake_build)


@pytest.fixture
def archives(config):
    make_release_archives(config.download_dir, '35.4.1', kernel_branch='5.10')


def orchestrator(config, device, runner, decisions=None, simulate=False, messages=None):
    return PipelineOrchestrator(
        config, device,
        decisions=decisions if decisions else UnattendedDecisions(),
        simulate=simulate,
        status=messages.append if messages is not None else None,
        runner=runner,
    )


class TestPipelineRun:
    """Test the stage cursor."""

    def test_advances_one_stage_at_a_time(self):
        run = PipelineRun()
        run.advance(Stage.ARTIFACTS_READY)
        assert run.stage == Stage.ARTIFACTS_READY
        with pytest.raises(RuntimeError):
            run.advance(Stage.BUILT)
        with pytest.raises(RuntimeError):
            run.advance(Stage.RESOLVING)


class TestFullRun:
    """End-to-end runs with a fake command runner."""

    def test_upgrade_from_sdk_label(self, config, device, runner, archives, live_system):
        pipeline = orchestrator(config, device, runner)
        run = pipeline.run('JetPack 5.1.2')

        assert run.done
        assert run.target.release == R('35.4.1')
        assert not run.rebuild
        assert run.kernel_release == KERNEL_RELEASE

        workspace = config.work_root / '35.4.1'
        assert (workspace / 'Linux_for_Tegra' / 'flash.sh').is_file()
        assert run.kernel_tree == (workspace / 'Linux_for_Tegra' / 'source' / 'public'
                                   / 'kernel' / 'kernel-5.10')

        assert run.backup.path == config.work_root / '35.3.1_backup'
        assert (run.backup.path / 'boot' / 'Image').read_bytes() == b'old-image'
        assert (live_system.boot / 'Image').read_bytes() == b'new-image'
        assert (live_system.boot / 'dtb' / 'tegra234-p3701.dtb').read_bytes() == b'new-dtb'

        assert runner.ran('tegra_defconfig')
        assert runner.ran('modules_install')
        assert runner.ran('depmod')
        assert runner.ran('update-initramfs')

    def test_rebuild_of_current_release(self, config, device, runner, archives):
        device = replace(device, current_release=R('35.4.1'))
        messages = []
        run = orchestrator(config, device, runner, messages=messages).run('35.4.1')
        assert run.done
        assert run.rebuild
        assert run.backup.path == config.work_root / '35.4.1_backup'
        assert any('rebuilt' in m for m in messages)

    def test_uncatalogued_release_uses_first_kernel_tree(self, config, device, runner):
        make_release_archives(config.download_dir, '36.3.0', kernel_branch='5.15')
        messages = []
        run = orchestrator(config, device, runner, messages=messages).run('36.3')

        assert run.done
        assert run.target.release == R('36.3.0')
        assert run.target.kernel_branch is None
        assert any('not in the release table' in m for m in messages)
        assert run.kernel_tree.name == 'kernel-5.15'
        assert (config.work_root / '36.3.0' / 'Linux_for_Tegra' / 'flash.sh').is_file()

    def test_interactive_confirmations(self, config, device, runner, archives):
        decisions = ScriptedDecisions()
        orchestrator(config, device, runner, decisions).run('35.4.1')
        assert decisions.prompts[0] == 'Proceed with this target version?'
        assert 'Install Jetson Linux 35.4.1' in decisions.prompts[-1]

    def test_existing_workspace_reused(self, config, device, runner, archives):
        workspace = config.work_root / '35.4.1'
        workspace.mkdir(parents=True)
        (workspace / 'my_patch.diff').write_text('keep me')
        orchestrator(config, device, runner).run('35.4.1')
        assert (workspace / 'my_patch.diff').read_text() == 'keep me'


class TestSimulate:
    """Simulate-only runs."""

    def test_reaches_done_without_side_effects(self, config, device, runner, archives, live_system):
        before_work = snapshot(config.work_root)
        before_live = snapshot(live_system.root)
        before_downloads = snapshot(config.download_dir)

        run = orchestrator(config, device, runner, simulate=True).run('JetPack 5.1.2')

        assert run.stage == Stage.DONE
        assert snapshot(config.work_root) == before_work
        assert snapshot(live_system.root) == before_live
        assert snapshot(config.download_dir) == before_downloads
        assert not config.work_root.exists()
        assert runner.commands == []

    def test_records_every_action(self, config, device, runner, archives):
        run = orchestrator(config, device, runner, simulate=True).run('35.4.1')
        actions = '\n'.join(run.simulated_actions)
        assert 'tegra_defconfig' in actions
        assert 'back up' in actions
        assert f'depmod {run.kernel_release}' in actions
        assert run.kernel_release == '5.10.x-tegra'

    def test_still_validates_input(self, config, device, runner, archives):
        with pytest.raises(UnsupportedVersion):
            orchestrator(config, device, runner, simulate=True).run('JetPack 9.9')

    def test_symlinks_reported_not_removed(self, config, device, runner, archives, live_system):
        link = live_system.boot / 'Image.link'
        link.symlink_to('Image')
        decisions = ScriptedDecisions(symlink_actions=[SymlinkAction.REMOVE])
        orchestrator(config, device, runner, decisions, simulate=True).run('35.4.1')
        assert link.is_symlink()


class TestFailures:
    """Failures halt the pipeline where they occur."""

    def test_ambiguous_target_unattended(self, config, device, runner):
        pipeline = orchestrator(config, device, runner)
        with pytest.raises(AmbiguousInput):
            pipeline.run('Ubuntu 20.04')
        assert pipeline.last_run.stage == Stage.RESOLVING

    def test_ambiguous_target_with_choice(self, config, device, runner, archives):
        decisions = ScriptedDecisions(choices=[1])
        run = orchestrator(config, device, runner, decisions, simulate=True).run('Ubuntu 20.04')
        assert run.target.release == R('35.4.1')

    def test_target_declined(self, config, device, runner, archives):
        decisions = ScriptedDecisions(confirms=[False])
        pipeline = orchestrator(config, device, runner, decisions)
        with pytest.raises(OperationCancelled):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.RESOLVING
        assert runner.commands == []

    def test_industrial_module_rejects_old_target(self, config, device, runner, archives):
        device = replace(device, model='NVIDIA Jetson AGX Orin Industrial')
        with pytest.raises(UnsupportedVersion):
            orchestrator(config, device, runner).run('JetPack 5.1.1')

    def test_cross_build_without_toolchain(self, config, device, runner, archives):
        device = replace(device, architecture='x86_64')
        with pytest.raises(MissingToolchain):
            orchestrator(config, device, runner).run('35.4.1')

    def test_missing_artifacts_unattended(self, config, device, runner):
        pipeline = orchestrator(config, device, runner)
        with pytest.raises(MissingArtifact) as exc_info:
            pipeline.run('36.4.4')
        assert exc_info.value.missing == ['Jetson_Linux_R36.4.4_aarch64.tbz2', 'public_sources.tbz2']
        assert 'jetson-linux-r3644' in exc_info.value.remediation
        assert pipeline.last_run.stage == Stage.RESOLVING

    def test_missing_artifacts_operator_aborts(self, config, device, runner):
        decisions = ScriptedDecisions(confirms=[True, False])
        with pytest.raises(OperationCancelled):
            orchestrator(config, device, runner, decisions).run('35.4.1')

    def test_missing_artifacts_rechecked_until_present(self, config, device, runner):
        class DownloadingDecisions(ScriptedDecisions):
            def confirm(self, prompt, default=True):
                if prompt.startswith('Press Y'):
                    if len(self.prompts) >= 2:
                        make_release_archives(config.download_dir, '35.4.1')
                self.prompts.append(prompt)
                return True

        decisions = DownloadingDecisions()
        run = orchestrator(config, device, runner, decisions, simulate=True).run('35.4.1')
        assert run.done
        assert sum(p.startswith('Press Y') for p in decisions.prompts) == 2

    def test_build_failure_before_backup(self, config, device, archives, live_system):
        runner = FakeRunner(failures=['LOCALVERSION=-tegra'])
        pipeline = orchestrator(config, device, runner)
        with pytest.raises(BuildFailure):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.CONFIGURED
        assert not (config.work_root / '35.3.1_backup').exists()
        assert (live_system.boot / 'Image').read_bytes() == b'old-image'

    def test_backup_failure_blocks_install(self, config, device, runner, archives,
                                           live_system, monkeypatch):
        pipeline = orchestrator(config, device, runner)

        def fail(*args, **kwargs):
            raise BackupIOError('disk full', path=config.work_root / '35.3.1_backup')

        monkeypatch.setattr(pipeline.backup_manager, 'create_backup', fail)
        with pytest.raises(BackupIOError):
            pipeline.run('35.4.1')

        assert pipeline.last_run.stage == Stage.BUILT
        assert not runner.ran('modules_install')
        assert not runner.ran('depmod')
        assert (live_system.boot / 'Image').read_bytes() == b'old-image'

    def test_unknown_current_release_blocks_install(self, config, device, runner, archives, live_system):
        device = replace(device, current_release=None)
        pipeline = orchestrator(config, device, runner)
        with pytest.raises(BackupIOError):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.BUILT
        assert (live_system.boot / 'Image').read_bytes() == b'old-image'

    def test_symlink_abort(self, config, device, runner, archives, live_system):
        (live_system.boot / 'Image.link').symlink_to('Image')
        decisions = ScriptedDecisions(symlink_actions=[SymlinkAction.ABORT])
        pipeline = orchestrator(config, device, runner, decisions)
        with pytest.raises(UnsafePath):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.BUILT
        assert not runner.ran('modules_install')

    def test_install_declined_keeps_backup(self, config, device, runner, archives, live_system):
        decisions = ScriptedDecisions(confirms=[True, False])
        pipeline = orchestrator(config, device, runner, decisions)
        with pytest.raises(OperationCancelled):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.BACKED_UP
        assert (config.work_root / '35.3.1_backup' / 'backup.json').is_file()
        assert (live_system.boot / 'Image').read_bytes() == b'old-image'

    def test_install_failure_is_not_rolled_back(self, config, device, archives, live_system):
        runner = FakeRunner(failures=['depmod'], on_run=fake_build)
        pipeline = orchestrator(config, device, runner)
        with pytest.raises(InstallFailure):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.BACKED_UP
        assert (live_system.boot / 'Image').read_bytes() == b'new-image'
        assert not runner.ran('update-initramfs')


class TestCrossBuild:
    """Runs on a non-Jetson host."""

    def test_host_system_untouched(self, config, device, runner, archives, live_system):
        device = replace(device, architecture='x86_64', cross_compile='aarch64-linux-gnu-')
        before_live = snapshot(live_system.root)
        messages = []

        run = orchestrator(config, device, runner, messages=messages).run('35.4.1')

        assert run.done
        assert run.backup is None
        assert snapshot(live_system.root) == before_live
        assert not (config.work_root / '35.3.1_backup').exists()
        assert all('CROSS_COMPILE=aarch64-linux-gnu-' in c for c in runner.commands)
        assert any('manually copy' in m for m in messages)


class TestPrivileges:
    """Write access is checked before any stage does work."""

    def deny(self, monkeypatch, denied):
        monkeypatch.setattr(device_module.os, 'access', lambda path, mode: path != denied)

    def test_unwritable_boot_dir_stops_at_resolving(self, config, device, runner, archives,
                                                    live_system, monkeypatch):
        self.deny(monkeypatch, live_system.boot)
        pipeline = orchestrator(config, device, runner)
        with pytest.raises(InsufficientPrivileges):
            pipeline.run('35.4.1')
        assert pipeline.last_run.stage == Stage.RESOLVING
        assert not config.work_root.exists()

    def test_simulate_skips_write_check(self, config, device, runner, archives,
                                        live_system, monkeypatch):
        self.deny(monkeypatch, live_system.boot)
        assert orchestrator(config, device, runner, simulate=True).run('35.4.1').done

    def test_cross_build_only_needs_work_root(self, config, device, runner, archives,
                                              live_system, monkeypatch):
        self.deny(monkeypatch, live_system.boot)
        device = replace(device, architecture='x86_64', cross_compile='aarch64-linux-gnu-')
        assert orchestrator(config, device, runner).run('35.4.1').done
