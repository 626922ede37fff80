from .backup_manager import BackupManager
from .cli import cli
from .daemon import DaemonManager, Detacher, ForkingDetacher
from .errors import BackupError, DaemonError, FassBackupError, IndexLockError
from .hasher import calculate_hash
from .metadata_store import MetadataStore
from .models import (
    BackupIndex,
    BackupPaths,
    BackupSettings,
    BackupStats,
    DaemonState,
    FileRecord,
    FrequencyUnit,
)
from .scheduler import FileScheduler, ScheduledBackupService
from .settings import load_settings, save_settings

__version__ = "0.1.0"

__all__ = [
    "BackupIndex",
    "BackupPaths",
    "BackupSettings",
    "BackupStats",
    "DaemonState",
    "FileRecord",
    "FrequencyUnit",
    "BackupManager",
    "MetadataStore",
    "calculate_hash",
    "load_settings",
    "save_settings",
    "FileScheduler",
    "ScheduledBackupService",
    "DaemonManager",
    "Detacher",
    "ForkingDetacher",
    "FassBackupError",
    "BackupError",
    "IndexLockError",
    "DaemonError",
    "cli",
]
