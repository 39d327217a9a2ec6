"""
jetswitch updater - version resolution, staged install pipeline and revert
"""

from .version import ReleaseIdentifier, compare_versions
from .catalog import VersionCatalog, default_catalog
from .resolver import VersionResolver
from .backup import BackupManager, BackupRecord
from .rollback import RevertOperation
from .pipeline import PipelineOrchestrator, PipelineRun, Stage

__all__ = [
    "ReleaseIdentifier",
    "compare_versions",
    "VersionCatalog",
    "default_catalog",
    "VersionResolver",
    "BackupManager",
    "BackupRecord",
    "RevertOperation",
    "PipelineOrchestrator",
    "PipelineRun",
    "Stage",
]
