"""
Revert operation for jetswitch

Restores the live system from a backup record. A revert is a fresh
operation, not a special case: it lists, selects, validates and verifies
the record through the same checks as any other backup access.
"""

import logging
from typing import Callable, Optional

from jetswitch.updater.backup import BackupManager, BackupRecord
from jetswitch.updater.decisions import DecisionProvider, UnattendedDecisions
from jetswitch.updater.device import require_write_access
from jetswitch.updater.errors import OperationCancelled

logger = logging.getLogger(__name__)


class RevertOperation:
    """
    Restores a previously backed-up Jetson Linux kernel and modules.

    In simulate mode the chosen record is validated and verified but no
    live file is written.
    """

    def __init__(self, backup_manager: BackupManager,
                 decisions: Optional[DecisionProvider] = None,
                 simulate: bool = False,
                 status: Optional[Callable[[str], None]] = None):
        self.backup_manager = backup_manager
        self.decisions = decisions if decisions else UnattendedDecisions()
        self.simulate = simulate
        self.status = status if status else (lambda message: None)

    def revert(self, requested: Optional[str] = None) -> BackupRecord:
        """
        Select, confirm, verify and restore a backup.

        Args:
            requested: Release to revert to; None picks the only backup or
                asks the operator to choose

        Returns:
            The record that was (or, when simulating, would be) restored

        Raises:
            InsufficientPrivileges: The live trees are not writable
            BackupNotFound: No matching backup
            AmbiguousInput: Several backups and no choice made
            OperationCancelled: The operator declined
            UnsafePath: The record failed path validation
            RestoreFailure: The record is corrupt or the copy failed
        """
        self.status("*** Revert Mode Selected ***")
        if not self.simulate:
            require_write_access([self.backup_manager.boot_dir, self.backup_manager.modules_root])

        record = self.backup_manager.select_backup(requested, self.decisions)
        release = record.source_release

        if self.decisions.unattended:
            self.status(f"Auto-confirming revert to {release} (--yes was used).")
        elif not self.decisions.confirm(
                f"Restore Jetson Linux {release} from backup? "
                f"This will overwrite current kernel and modules.", default=True):
            raise OperationCancelled("Revert canceled by user.")

        self.status(f"Verifying backup {record.path} ...")
        self.backup_manager.verify(record)

        if self.simulate:
            self.status(f"[DRY-RUN] Would restore {self.backup_manager.boot_dir} and "
                        f"{self.backup_manager.modules_root} from {record.path}")
            return record

        self.status(f"Reverting to Jetson Linux {release} ...")
        self.backup_manager.restore(record)
        logger.info("Reverted to %s from %s", release, record.path)

        self.status(f"Revert completed. The system has been restored to Jetson Linux {release}.")
        self.status("Please reboot the device to start using the restored kernel and system.")
        return record
