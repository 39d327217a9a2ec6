"""Tests for backup path safety checks."""
import os

import pytest

from conftest import ScriptedDecisions
from jetswitch.updater.decisions import SymlinkAction, UnattendedDecisions
from jetswitch.updater.errors import UnsafePath
from jetswitch.updater.safety import remediate_symlinks, scan_for_symlinks, validate_backup_path


@pytest.fixture
def backup_root(temp_dir):
    root = temp_dir / 'L4T'
    root.mkdir()
    return root


def make_record(root, name='35.3.1_backup'):
    record = root / name
    (record / 'boot' / 'dtb').mkdir(parents=True)
    (record / 'boot' / 'Image').write_bytes(b'image')
    (record / 'lib' / 'modules' / '5.10.120-tegra').mkdir(parents=True)
    return record


class TestValidateBackupPath:
    """Test validate_backup_path."""

    def test_valid_record(self, backup_root):
        record = make_record(backup_root)
        assert validate_backup_path(record, backup_root) == record.resolve()

    def test_record_need_not_exist(self, backup_root):
        path = backup_root / '36.4.4_backup'
        assert validate_backup_path(path, backup_root) == path.resolve()

    @pytest.mark.parametrize("relative", [
        '../35.3.1_backup',
        '../../etc',
        '35.3.1_backup/../../outside_backup',
        '.',
        '..',
    ])
    def test_rejects_traversal(self, backup_root, relative):
        with pytest.raises(UnsafePath):
            validate_backup_path(backup_root / relative, backup_root)

    def test_rejects_absolute_path_elsewhere(self, backup_root, temp_dir):
        elsewhere = temp_dir / 'elsewhere' / '35.3.1_backup'
        elsewhere.mkdir(parents=True)
        with pytest.raises(UnsafePath):
            validate_backup_path(elsewhere, backup_root)

    def test_rejects_symlinked_record(self, backup_root, temp_dir):
        target = make_record(temp_dir, 'real_backup')
        link = backup_root / '35.3.1_backup'
        os.symlink(target, link)
        with pytest.raises(UnsafePath):
            validate_backup_path(link, backup_root)

    def test_rejects_symlink_in_boot(self, backup_root):
        record = make_record(backup_root)
        os.symlink('Image', record / 'boot' / 'Image.link')
        with pytest.raises(UnsafePath) as exc_info:
            validate_backup_path(record, backup_root)
        assert 'symlinks' in str(exc_info.value)

    def test_rejects_symlink_in_modules(self, backup_root, temp_dir):
        record = make_record(backup_root)
        os.symlink(temp_dir, record / 'lib' / 'modules' / '5.10.120-tegra' / 'build')
        with pytest.raises(UnsafePath):
            validate_backup_path(record, backup_root)

    def test_rejects_entry_resolving_outside(self, backup_root, temp_dir):
        record = make_record(backup_root)
        (record / 'extra').mkdir()
        outside = temp_dir / 'secret'
        outside.write_text('x')
        os.symlink(outside, record / 'extra' / 'secret')
        with pytest.raises(UnsafePath):
            validate_backup_path(record, backup_root)


class TestScanForSymlinks:
    """Test scan_for_symlinks."""

    def test_sorted_links(self, temp_dir):
        (temp_dir / 'sub').mkdir()
        os.symlink('x', temp_dir / 'sub' / 'b')
        os.symlink('x', temp_dir / 'a')
        (temp_dir / 'file').write_text('x')
        assert scan_for_symlinks(temp_dir) == [temp_dir / 'a', temp_dir / 'sub' / 'b']

    def test_missing_directory(self, temp_dir):
        assert scan_for_symlinks(temp_dir / 'missing') == []

    def test_does_not_follow_directory_links(self, temp_dir):
        real = temp_dir / 'real'
        (real / 'inner').mkdir(parents=True)
        os.symlink('target', real / 'inner' / 'link')
        scanned = temp_dir / 'scanned'
        scanned.mkdir()
        os.symlink(real, scanned / 'dirlink')
        assert scan_for_symlinks(scanned) == [scanned / 'dirlink']


class TestRemediateSymlinks:
    """Test per-symlink remove/skip/abort decisions."""

    def setup_links(self, temp_dir):
        boot = temp_dir / 'boot'
        boot.mkdir()
        os.symlink('Image', boot / 'a.link')
        os.symlink('Image', boot / 'b.link')
        return boot

    def test_remove_and_skip(self, temp_dir):
        boot = self.setup_links(temp_dir)
        decisions = ScriptedDecisions(symlink_actions=[SymlinkAction.REMOVE, SymlinkAction.SKIP])
        skipped = remediate_symlinks([boot], decisions)
        assert not (boot / 'a.link').is_symlink()
        assert skipped == [boot / 'b.link']

    def test_abort_stops_immediately(self, temp_dir):
        boot = self.setup_links(temp_dir)
        decisions = ScriptedDecisions(symlink_actions=[SymlinkAction.ABORT, SymlinkAction.REMOVE])
        with pytest.raises(UnsafePath):
            remediate_symlinks([boot], decisions)
        assert decisions.prompts == [str(boot / 'a.link')]
        assert (boot / 'b.link').is_symlink()

    def test_unattended_skips(self, temp_dir):
        boot = self.setup_links(temp_dir)
        skipped = remediate_symlinks([boot, temp_dir / 'missing'], UnattendedDecisions())
        assert len(skipped) == 2
        assert (boot / 'a.link').is_symlink()
