import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

DEFAULT_PERIOD_SECONDS = 3600
UNKNOWN_FILE_TYPE = "unknown"


class FrequencyUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    @property
    def seconds(self) -> int:
        return _UNIT_SECONDS[self]


_UNIT_SECONDS = {
    FrequencyUnit.MINUTES: 60,
    FrequencyUnit.HOURS: 60 * 60,
    FrequencyUnit.DAYS: 60 * 60 * 24,
}


class DaemonState(str, Enum):
    NOT_RUNNING = "not_running"
    RUNNING = "running"
    STALE_RECORD = "stale_record"
    STOPPING = "stopping"


def file_type_for(path: Path) -> str:
    suffix = Path(path).suffix
    return suffix[1:].lower() if suffix else UNKNOWN_FILE_TYPE


class FileRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_path: Path
    backup_path: Path
    file_type: str = UNKNOWN_FILE_TYPE
    # "hash" is the key written by older releases
    content_hash: str = Field(default="", validation_alias=AliasChoices("content_hash", "hash"))
    auto_backup_enabled: bool = False
    backup_interval: int = Field(default=1, gt=0)
    backup_frequency_unit: str = FrequencyUnit.HOURS.value

    @property
    def key(self) -> str:
        return str(self.original_path)

    def period_seconds(self) -> int:
        """Seconds between two per-file checks of this record."""
        try:
            unit = FrequencyUnit(self.backup_frequency_unit.strip().lower())
        except ValueError:
            logger.warning(
                f"Unknown frequency unit '{self.backup_frequency_unit}' for {self.original_path}, "
                f"using {DEFAULT_PERIOD_SECONDS}s"
            )
            return DEFAULT_PERIOD_SECONDS
        return self.backup_interval * unit.seconds


class BackupIndex:
    """In-memory view of the metadata store, keyed by original path."""

    def __init__(self, files: dict[str, FileRecord] | None = None):
        self.files: dict[str, FileRecord] = dict(files or {})
        self.dirty = False

    def upsert(self, record: FileRecord) -> None:
        self.files[record.key] = record
        self.dirty = True

    def remove(self, path: str | Path) -> FileRecord | None:
        record = self.files.pop(str(path), None)
        if record is not None:
            self.dirty = True
        return record

    def get(self, path: str | Path) -> FileRecord | None:
        return self.files.get(str(path))

    def auto_enabled(self) -> list[FileRecord]:
        return [record for record in self.files.values() if record.auto_backup_enabled]

    def records(self) -> list[FileRecord]:
        return [self.files[key] for key in sorted(self.files)]

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(list(self.files.values()))

    def __contains__(self, path: object) -> bool:
        return str(path) in self.files

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BackupIndex):
            return NotImplemented
        return self.files == other.files


class BackupSettings(BaseModel):
    auto_backup_enabled: bool = False
    interval_minutes: int = Field(default=60, gt=0)


@dataclass
class BackupStats:
    files_copied: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    dirs_created: int = 0
    duration: timedelta = field(default_factory=lambda: timedelta())


def _default_home() -> Path:
    return Path(os.environ.get("FASS_BACKUP_HOME", Path.home() / ".fass_backup")).expanduser()


def _default_backup_root() -> Path:
    return Path(os.environ.get("FASS_BACKUP_ROOT", Path.home() / "Backup")).expanduser()


@dataclass
class BackupPaths:
    home: Path = field(default_factory=_default_home)
    backup_root: Path = field(default_factory=_default_backup_root)

    def __post_init__(self):
        self.home = Path(self.home).expanduser().absolute()
        self.backup_root = Path(self.backup_root).expanduser().absolute()

    @property
    def index_file(self) -> Path:
        return self.home / "backup_metadata.json"

    @property
    def settings_file(self) -> Path:
        return self.home / "backup_settings.json"

    @property
    def pid_file(self) -> Path:
        return self.home / "fass_backup_daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.home / "fass_backup_daemon.log"

    @property
    def err_file(self) -> Path:
        return self.home / "fass_backup_daemon.err"

    def ensure(self) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
