"""
Install pipeline for jetswitch

Drives one upgrade, downgrade or rebuild as a strict sequence of stages::

    RESOLVING -> ARTIFACTS_READY -> EXTRACTED -> CONFIGURED -> BUILT
              -> BACKED_UP -> INSTALLED -> DONE

A failure at any stage halts the run where it is; nothing already applied
is undone. The backup stage must succeed before anything is installed.

In simulate mode every stage still makes its decisions, but each action
with a filesystem or process side effect is recorded in
``PipelineRun.simulated_actions`` instead of being executed.
"""

import logging
import shutil
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable, List, Optional

from jetswitch.updater.applier import KernelInstaller
from jetswitch.updater.backup import BackupManager, BackupRecord
from jetswitch.updater.builder import (
    BUILD_DIR_NAME,
    KernelBuilder,
    expected_kernel_tree,
    locate_kernel_tree,
    simulated_kernel_release,
)
from jetswitch.updater.commands import CommandRunner
from jetswitch.updater.config import ManagerConfig
from jetswitch.updater.decisions import DecisionProvider, UnattendedDecisions
from jetswitch.updater.device import (
    DeviceInfo,
    check_target_supported,
    require_toolchain,
    require_write_access,
)
from jetswitch.updater.errors import (
    BackupIOError,
    ExtractionError,
    MissingArtifact,
    OperationCancelled,
)
from jetswitch.updater.extractor import (
    BSP_ENTRIES,
    KERNEL_SOURCE_ENTRIES,
    SOURCES_ENTRIES,
    ArchiveExtractor,
    describe_entries,
    find_kernel_source_archive,
    kernel_source_root,
)
from jetswitch.updater.resolver import ResolvedRelease, VersionResolver
from jetswitch.updater.safety import remediate_symlinks, scan_for_symlinks
from jetswitch.updater.version import ReleaseIdentifier

logger = logging.getLogger(__name__)


class Stage(IntEnum):
    RESOLVING = 0
    ARTIFACTS_READY = 1
    EXTRACTED = 2
    CONFIGURED = 3
    BUILT = 4
    BACKED_UP = 5
    INSTALLED = 6
    DONE = 7


@dataclass
class PipelineRun:
    """State of one pipeline execution. The stage cursor only moves forward."""

    current: Optional[ReleaseIdentifier] = None
    simulate: bool = False
    target: Optional[ResolvedRelease] = None
    stage: Stage = Stage.RESOLVING
    rebuild: bool = False
    workspace: Optional[Path] = None
    kernel_tree: Optional[Path] = None
    build_dir: Optional[Path] = None
    kernel_release: Optional[str] = None
    backup: Optional[BackupRecord] = None
    simulated_actions: List[str] = field(default_factory=list)

    def advance(self, stage: Stage):
        if stage != self.stage + 1:
            raise RuntimeError(f"Invalid stage transition {self.stage.name} -> {stage.name}")
        logger.debug("Stage %s -> %s", self.stage.name, stage.name)
        self.stage = stage

    @property
    def done(self) -> bool:
        return self.stage == Stage.DONE


class PipelineOrchestrator:
    """
    Runs the resolve, extract, build, backup and install stages in order.

    Collaborators default to real implementations built from ``config``;
    tests substitute fakes for the command runner and decision provider.
    """

    def __init__(self, config: ManagerConfig, device: DeviceInfo,
                 decisions: Optional[DecisionProvider] = None,
                 simulate: bool = False,
                 status: Optional[Callable[[str], None]] = None,
                 resolver: Optional[VersionResolver] = None,
                 runner: Optional[CommandRunner] = None,
                 extractor: Optional[ArchiveExtractor] = None,
                 backup_manager: Optional[BackupManager] = None):
        self.config = config
        self.device = device
        self.decisions = decisions if decisions else UnattendedDecisions()
        self.simulate = simulate
        self.status = status if status else (lambda message: None)
        self.resolver = resolver if resolver else VersionResolver()

        runner = runner if runner else CommandRunner()
        self.extractor = extractor if extractor else ArchiveExtractor()
        self.builder = KernelBuilder(runner, jobs=config.make_jobs,
                                     cross_compile=device.cross_compile if device.cross_build else None)
        self.installer = KernelInstaller(config, runner)
        self.backup_manager = backup_manager if backup_manager else BackupManager(
            config.backup_root, config.boot_dir, config.modules_root)

        self.last_run: Optional[PipelineRun] = None

    def run(self, target_input: str) -> PipelineRun:
        """
        Execute every stage for the requested target.

        Args:
            target_input: Free-form version input ("36.4.4", "JetPack 6.2", ...)

        Returns:
            The finished PipelineRun, at Stage.DONE

        Raises:
            JetswitchError: Any failure; ``last_run.stage`` shows how far
                the run got
        """
        run = PipelineRun(current=self.device.current_release, simulate=self.simulate)
        self.last_run = run

        self._resolve(run, target_input)
        self._require_artifacts(run)
        run.advance(Stage.ARTIFACTS_READY)
        self._extract(run)
        run.advance(Stage.EXTRACTED)
        self._configure(run)
        run.advance(Stage.CONFIGURED)
        self._build(run)
        run.advance(Stage.BUILT)
        self._backup(run)
        run.advance(Stage.BACKED_UP)
        self._install(run)
        run.advance(Stage.INSTALLED)
        self._finish(run)
        run.advance(Stage.DONE)
        return run

    def _perform(self, run: PipelineRun, description: str, action: Callable[[], object]):
        """Execute a side-effecting action, or record it when simulating."""
        if run.simulate:
            run.simulated_actions.append(description)
            self.status(f"[DRY-RUN] Would {description}")
            return None
        return action()

    def _resolve(self, run: PipelineRun, target_input: str):
        resolved = self.resolver.resolve(target_input, self.decisions)
        run.target = resolved
        release = resolved.release

        self.status("Target selection:")
        for line in resolved.describe().splitlines():
            self.status(f" -> {line}")
        if release not in self.resolver.catalog:
            self.status(f"NOTE: Jetson Linux {release.display} is not in the release table; "
                        f"the kernel source tree will be detected after extraction.")

        check_target_supported(self.device, release)

        if self.decisions.unattended:
            self.status("Auto-confirming target version (running with --yes).")
        elif not self.decisions.confirm("Proceed with this target version?", default=True):
            raise OperationCancelled("Aborted by user.")

        if run.current == release:
            run.rebuild = True
            self.status(f"NOTE: The target version is the same as the current system version. "
                        f"The kernel for Jetson Linux {release} will be rebuilt and reinstalled.")

        require_toolchain(self.device)

        if not run.simulate:
            writable = [self.config.work_root]
            if self.device.native:
                writable += [self.config.boot_dir, self.config.modules_root]
            require_write_access(writable)

    def _require_artifacts(self, run: PipelineRun):
        release = run.target.release
        archives = [self.config.bsp_archive(release), self.config.sources_archive()]
        missing = [a for a in archives if not a.is_file()]
        if not missing:
            return

        download_dir = self.config.download_dir
        self.status(f"The required files for Jetson Linux {release.display} need to be in {download_dir}:")
        for archive in missing:
            self.status(f" - {archive.name}")
        self.status(f"Please download the files from NVIDIA's website: "
                    f"{self.config.download_page(release)}")

        if self.decisions.unattended:
            raise MissingArtifact(
                f"{', '.join(a.name for a in missing)} not found in {download_dir}. "
                f"(Unattended mode, cannot prompt.)",
                missing=[a.name for a in missing],
                remediation=f"Download them from {self.config.download_page(release)}.")

        while missing:
            if not self.decisions.confirm(
                    f"Press Y after you have downloaded the required file(s) to "
                    f"{download_dir}, or N to abort", default=True):
                raise OperationCancelled(
                    "Aborting as requested. Please download the files and run again.")
            missing = [a for a in missing if not a.is_file()]
            if missing:
                self.status(f"Still missing: {', '.join(a.name for a in missing)}.")

        self.status("All required files are now present. Continuing.")

    def _extract(self, run: PipelineRun):
        release = run.target.release
        workspace = self.config.workspace_path(release)
        run.workspace = workspace

        if workspace.is_dir():
            self.status(f"Working directory {workspace} already exists and will be reused.")
        else:
            self._perform(run, f"create working directory {workspace}",
                          lambda: workspace.mkdir(parents=True))

        bsp = self.config.bsp_archive(release)
        sources = self.config.sources_archive()
        self.status(f"Extracting Jetson Linux BSP and sources into {workspace} ...")
        self._perform(run, f"extract {bsp.name} into {workspace}",
                      lambda: self._extract_archive(bsp, workspace, BSP_ENTRIES))
        self._perform(run, f"extract {sources.name} into {workspace}",
                      lambda: self._extract_archive(sources, workspace, SOURCES_ENTRIES))

        if run.simulate:
            run.simulated_actions.append(f"extract kernel_src.tbz2 into {kernel_source_root(workspace)}")
            self.status("[DRY-RUN] Would extract the kernel sources from public_sources.")
            return

        kernel_archive = find_kernel_source_archive(workspace)
        self._extract_archive(kernel_archive, kernel_archive.parent, KERNEL_SOURCE_ENTRIES)
        self.status("Extraction complete.")

    def _extract_archive(self, archive: Path, destination: Path, allowed):
        moved = self.extractor.extract(archive, destination, allowed)
        logger.info("Extracted %s: %s", archive.name, describe_entries(moved))

    def _configure(self, run: PipelineRun):
        branch = run.target.kernel_branch
        source_root = kernel_source_root(run.workspace)
        if run.simulate:
            run.kernel_tree = expected_kernel_tree(source_root, branch)
        else:
            run.kernel_tree = locate_kernel_tree(source_root, branch)

        build_dir = run.workspace / BUILD_DIR_NAME
        run.build_dir = build_dir
        self._perform(run, f"recreate build directory {build_dir}",
                      lambda: self._fresh_directory(build_dir))

        self.status("Configuring the kernel source (applying default NVIDIA config)...")
        self._perform(run, "run " + ' '.join(self.builder.configure_command(build_dir)),
                      lambda: self.builder.configure(run.kernel_tree, build_dir))

    @staticmethod
    def _fresh_directory(path: Path):
        try:
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True)
        except OSError as e:
            raise ExtractionError(f"Could not prepare build directory {path}: {e}")

    def _build(self, run: PipelineRun):
        self.status("Building the kernel and modules. This can take a while...")
        self._perform(run, "run " + ' '.join(self.builder.build_command(run.build_dir)),
                      lambda: self.builder.build(run.kernel_tree, run.build_dir))

        branch = run.target.kernel_branch
        if run.simulate:
            run.kernel_release = simulated_kernel_release(branch)
        else:
            run.kernel_release = self.builder.kernel_release(run.kernel_tree, run.build_dir, branch)
        self.status(f"Kernel build completed. New kernel version string: {run.kernel_release}")

    def _backup(self, run: PipelineRun):
        if self.device.cross_build:
            self.status("Cross-build mode: the host system is not backed up or modified.")
            return

        current = run.current
        if current is None:
            raise BackupIOError(
                "The current Jetson Linux release is unknown, so no backup can be named.",
                remediation=f"Check {self.config.tegra_release_file}; the install will not "
                            f"proceed without a backup.")

        path = self.backup_manager.record_path(current)
        sources = self.backup_manager.source_trees(self.device.kernel_release)
        self.status(f"Backing up current system files (kernel, DTBs, modules) to {path}")

        if run.simulate:
            links = [link for tree in sources for link in scan_for_symlinks(tree)]
            if links:
                self.status(f"[DRY-RUN] {len(links)} symlink(s) would need remove/skip decisions.")
            self._perform(run, f"back up {', '.join(str(s) for s in sources)} to {path}", lambda: None)
            return

        skipped = remediate_symlinks(sources, self.decisions)
        run.backup = self.backup_manager.create_backup(
            current, self.device.kernel_release, skip=skipped)

    def _install(self, run: PipelineRun):
        if self.device.cross_build:
            self.status("Cross-build mode: skipping direct installation to system.")
            self.status("Please manually copy the following files to your Jetson device:")
            for line in self.installer.manual_instructions(run.build_dir, run.kernel_release):
                self.status(f" - {line}")
            return

        release = run.target.release
        if self.decisions.unattended:
            self.status("Auto-confirming installation (running with --yes).")
        elif not self.decisions.confirm(
                f"Install Jetson Linux {release.display} kernel {run.kernel_release}? "
                f"This will overwrite {self.config.boot_dir / 'Image'} and the boot files.",
                default=True):
            raise OperationCancelled("Installation canceled by user. The backup is kept.")

        self.status("Installing new kernel, device trees and modules...")
        for description, action in self.installer.steps(run.build_dir, run.kernel_release):
            self._perform(run, description, action)

    def _finish(self, run: PipelineRun):
        release = run.target.release
        if run.simulate:
            self.status("[DRY-RUN] Simulation complete. No changes were made to the system.")
            return
        if self.device.cross_build:
            self.status(f"Cross build of Jetson Linux {release.display} is complete.")
            return

        self.status(f"Installation of Jetson Linux {release.display} is complete.")
        self.status(f"The new kernel (version {run.kernel_release}) has been installed.")
        if run.backup is not None:
            self.status(f"A backup of the previous system is saved at {run.backup.path}.")
        self.status("Please reboot the system to start using the new kernel.")
