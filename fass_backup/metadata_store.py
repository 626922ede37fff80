import json
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from loguru import logger
from pydantic import ValidationError

from .errors import IndexLockError
from .hasher import calculate_hash
from .models import BackupIndex, FileRecord, FrequencyUnit

FORMAT_VERSION = 2

# Frequency labels written by releases that stored the index as a flat list
LEGACY_FREQUENCIES = {
    "Minute(s)": FrequencyUnit.MINUTES.value,
    "Hour(s)": FrequencyUnit.HOURS.value,
    "Day(s)": FrequencyUnit.DAYS.value,
}


class MetadataStore:
    """JSON-backed index of backed-up files.

    Every read-modify-persist sequence goes through ``transaction()``, which
    holds a thread lock for this process and a file lock for the others
    (the GUI and the daemon share the same document).
    """

    def __init__(self, index_path: Path, lock_timeout: float = 30.0):
        self.index_path = Path(index_path)
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._file_lock = FileLock(str(self.index_path) + ".lock")

    @contextmanager
    def locked(self, timeout: float | None = None) -> Iterator[None]:
        timeout = self.lock_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=timeout):
            raise IndexLockError(f"Timed out after {timeout}s waiting for index lock")
        try:
            try:
                self._file_lock.acquire(timeout=timeout)
            except Timeout:
                raise IndexLockError(
                    f"Index {self.index_path} is locked by another process"
                ) from None
            try:
                yield
            finally:
                self._file_lock.release()
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self, timeout: float | None = None) -> Iterator[BackupIndex]:
        """Load the index under the writer lock and save it on exit if it changed."""
        with self.locked(timeout):
            index = self._read()
            yield index
            if index.dirty:
                self._write(index)

    def load(self) -> BackupIndex:
        index = self._read()
        if index.dirty:
            index = self._upgrade_document()
        return index

    def save(self, index: BackupIndex, timeout: float | None = None) -> None:
        with self.locked(timeout):
            self._write(index)

    def upsert(self, index: BackupIndex, record: FileRecord) -> None:
        index.upsert(record)

    def remove(self, index: BackupIndex, path: str | Path) -> FileRecord | None:
        return index.remove(path)

    def _upgrade_document(self) -> BackupIndex:
        """Rewrite a legacy list document in the keyed format, once."""
        try:
            with self.locked():
                # Re-read under the lock: another writer may have upgraded it already
                index = self._read()
                if index.dirty:
                    self._write(index)
                    logger.info(f"Upgraded {self.index_path} to format version {FORMAT_VERSION}")
                return index
        except (IndexLockError, OSError) as e:
            logger.warning(f"Could not upgrade legacy index {self.index_path}: {e}")
            return self._read()

    def _read(self) -> BackupIndex:
        if not self.index_path.exists():
            logger.debug(f"No index at {self.index_path}, starting empty")
            return BackupIndex()

        try:
            with open(self.index_path, encoding="utf-8") as f:
                raw = json.load(f)
            return self._parse(raw)
        except (OSError, json.JSONDecodeError, ValidationError, ValueError, TypeError) as e:
            logger.error(f"Index {self.index_path} is unreadable, starting with an EMPTY index: {e}")
            self._quarantine()
            return BackupIndex()

    def _parse(self, raw: Any) -> BackupIndex:
        for loader in (self._load_keyed, self._load_legacy_list):
            index = loader(raw)
            if index is not None:
                return index
        raise ValueError(f"unrecognized document shape ({type(raw).__name__})")

    def _load_keyed(self, raw: Any) -> BackupIndex | None:
        if not isinstance(raw, dict) or not isinstance(raw.get("files"), dict):
            return None

        version = raw.get("version", 1)
        if not isinstance(version, int) or version > FORMAT_VERSION:
            raise ValueError(f"unsupported index version {version!r}")

        index = BackupIndex()
        for value in raw["files"].values():
            record = FileRecord.model_validate(value)
            index.files[record.key] = record
        return index

    def _load_legacy_list(self, raw: Any) -> BackupIndex | None:
        if not isinstance(raw, list):
            return None

        index = BackupIndex()
        for item in raw:
            record = FileRecord.model_validate(self._upgrade_legacy_record(item))
            if not record.content_hash:
                new_hash = calculate_hash(record.original_path)
                if new_hash:
                    record.content_hash = new_hash
            index.files[record.key] = record

        # Dirty so that load() rewrites the document in the keyed shape
        index.dirty = True
        logger.info(f"Migrated {len(index)} records from legacy list format")
        return index

    def _upgrade_legacy_record(self, item: Any) -> dict[str, Any]:
        if not isinstance(item, dict):
            raise ValueError(f"legacy record is not an object: {item!r}")

        data = dict(item)
        if "auto_backup" in data:
            data.setdefault("auto_backup_enabled", bool(data.pop("auto_backup")))

        backup_time = data.pop("backup_time", None)
        if isinstance(backup_time, dict) and backup_time.get("secs", 0) > 0:
            data.setdefault("backup_interval", backup_time["secs"])

        frequency = data.pop("backup_frequency", None)
        if frequency:
            data.setdefault("backup_frequency_unit", LEGACY_FREQUENCIES.get(frequency, frequency))

        return data

    def _write(self, index: BackupIndex) -> None:
        document = {
            "version": FORMAT_VERSION,
            "files": {
                key: record.model_dump(mode="json") for key, record in index.files.items()
            },
        }

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".index_tmp_", dir=self.index_path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.index_path)
            index.dirty = False
            logger.debug(f"Saved {len(index)} records to {self.index_path}")
        except OSError as e:
            logger.error(f"Failed to save index {self.index_path}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _quarantine(self) -> None:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = self.index_path.with_name(f"{self.index_path.name}.corrupt-{stamp}")
        try:
            os.replace(self.index_path, target)
            logger.error(f"Moved unreadable index aside to {target}")
        except OSError as e:
            logger.error(f"Could not move unreadable index aside: {e}")
