import contextlib
import os
import shutil
import tempfile
import time
from datetime import timedelta
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .errors import BackupError
from .hasher import calculate_hash
from .metadata_store import MetadataStore
from .models import BackupIndex, BackupPaths, BackupStats, FileRecord, FrequencyUnit, file_type_for


class BackupManager:
    def __init__(self, paths: BackupPaths, store: MetadataStore | None = None):
        self.paths = paths
        self.backup_root = paths.backup_root
        self.store = store or MetadataStore(paths.index_file)

    def backup(self, source_root: Path) -> BackupStats:
        """Mirror source_root into the backup root, copying only changed files."""
        start_time = time.time()
        source_root = Path(source_root).expanduser().absolute()
        self._validate_source(source_root)
        self.backup_root.mkdir(parents=True, exist_ok=True)

        stats = BackupStats()
        snapshot = self.store.load()
        updates: dict[str, FileRecord] = {}

        logger.info(f"Backing up {source_root} into {self.backup_root}")

        # followlinks=False keeps symlinked directories from forming cycles
        for dirpath, dirnames, filenames in os.walk(source_root, followlinks=False):
            current = Path(dirpath)
            if self._is_backup_root(current):
                dirnames[:] = []
                continue

            dest_dir = self.backup_root / current.relative_to(source_root)
            if not dest_dir.is_dir():
                try:
                    dest_dir.mkdir(parents=True, exist_ok=True)
                    stats.dirs_created += 1
                except OSError as e:
                    logger.error(f"Failed to create backup directory {dest_dir}: {e}")

            for name in sorted(filenames):
                file_path = current / name
                record = self._backup_file(snapshot, file_path, source_root, stats)
                if record is not None:
                    updates[record.key] = record

        self._commit_records(updates)

        stats.duration = timedelta(seconds=time.time() - start_time)
        logger.info(
            f"Backup of {source_root} finished in {stats.duration.total_seconds():.2f}s: "
            f"{stats.files_copied} copied, {stats.files_unchanged} unchanged, "
            f"{stats.files_failed} failed"
        )
        return stats

    def backup_now(self, skip_scheduled: bool = False) -> int:
        """Re-check every known record and copy the ones whose content changed.

        Does not discover new files. Returns the number of files copied.
        """
        logger.info("Running immediate backup...")
        snapshot = self.store.load()
        changed: dict[str, str] = {}

        for record in snapshot.records():
            if skip_scheduled and record.auto_backup_enabled:
                continue
            new_hash = self._resync_record(record)
            if new_hash:
                changed[record.key] = new_hash

        if changed:
            self._commit_hashes(changed)

        logger.info(f"Backup complete: {len(changed)} file(s) backed up")
        return len(changed)

    def backup_record(self, original_path: str | Path) -> bool:
        record = self.store.load().get(original_path)
        if record is None:
            logger.warning(f"No record for {original_path}")
            return False

        new_hash = self._resync_record(record)
        if not new_hash:
            return False
        self._commit_hashes({record.key: new_hash})
        return True

    def delete_selected(self, backup_path: str | Path) -> bool:
        backup_path = Path(backup_path)
        if not backup_path.exists():
            return False
        backup_path.unlink()
        logger.info(f"Deleted: {backup_path}")
        return True

    def forget(self, original_path: str | Path) -> bool:
        """Delete a file's backup copy and drop its record."""
        with self._transaction() as index:
            record = index.remove(original_path)
            if record is None:
                logger.warning(f"No record for {original_path}")
                return False
            try:
                self.delete_selected(record.backup_path)
            except OSError as e:
                raise BackupError(f"Failed to delete {record.backup_path}: {e}") from e
        return True

    def restore(self, original_path: str | Path, overwrite: bool = False) -> Path:
        record = self.store.load().get(original_path)
        if record is None:
            raise BackupError(f"No backup record for {original_path}")
        if not record.backup_path.exists():
            raise BackupError(f"Backup copy is missing: {record.backup_path}")
        if record.original_path.exists() and not overwrite:
            raise BackupError(
                f"{record.original_path} already exists. Use overwrite=True to force."
            )

        try:
            self._copy_file(record.backup_path, record.original_path)
        except OSError as e:
            raise BackupError(f"Failed to restore {record.original_path}: {e}") from e

        logger.info(f"Restored: {record.original_path}")
        return record.original_path

    def list_records(self) -> list[FileRecord]:
        return self.store.load().records()

    def configure_schedule(
        self,
        original_path: str | Path,
        enabled: bool | None = None,
        interval: int | None = None,
        unit: str | None = None,
    ) -> FileRecord:
        updates = {}
        if enabled is not None:
            updates["auto_backup_enabled"] = enabled
        if interval is not None:
            updates["backup_interval"] = interval
        if unit is not None:
            try:
                updates["backup_frequency_unit"] = FrequencyUnit(unit.lower()).value
            except ValueError:
                raise BackupError(f"Unknown frequency unit: {unit}") from None

        with self._transaction() as index:
            record = index.get(original_path)
            if record is None:
                raise BackupError(f"No backup record for {original_path}")
            try:
                record = FileRecord.model_validate({**record.model_dump(), **updates})
            except ValidationError as e:
                raise BackupError(f"Invalid schedule for {original_path}: {e}") from e
            index.upsert(record)

        logger.info(
            f"Schedule for {record.original_path}: enabled={record.auto_backup_enabled}, "
            f"every {record.backup_interval} {record.backup_frequency_unit}"
        )
        return record

    def _backup_file(
        self, snapshot: BackupIndex, file_path: Path, source_root: Path, stats: BackupStats
    ) -> FileRecord | None:
        dest_path = self.backup_root / file_path.relative_to(source_root)
        new_hash = calculate_hash(file_path)
        existing = snapshot.get(file_path)

        should_copy = (
            existing is None
            or not existing.content_hash
            or new_hash is None
            or new_hash != existing.content_hash
            or not dest_path.exists()
        )

        if should_copy:
            try:
                self._copy_file(file_path, dest_path)
                stats.files_copied += 1
                logger.debug(f"Copied: {dest_path}")
            except OSError as e:
                stats.files_failed += 1
                logger.warning(f"Failed to copy {file_path}: {e}")
                return None
        else:
            stats.files_unchanged += 1
            logger.debug(f"Skipped (unchanged): {file_path}")

        if new_hash is None:
            return None

        fields = {
            "original_path": file_path,
            "backup_path": dest_path,
            "file_type": file_type_for(file_path),
            "content_hash": new_hash,
        }
        if existing is not None:
            return existing.model_copy(update=fields)
        return FileRecord(**fields)

    def _resync_record(self, record: FileRecord) -> str | None:
        """Copy one record's source if it changed and return the new hash."""
        if not record.original_path.exists():
            logger.warning(f"Original file missing: {record.original_path}")
            return None

        current_hash = calculate_hash(record.original_path)
        if current_hash is None:
            logger.warning(f"Hash check failed for {record.original_path}")
            return None

        if record.content_hash and current_hash == record.content_hash:
            logger.debug(f"No changes in {record.original_path}")
            return None

        try:
            self._copy_file(record.original_path, record.backup_path)
        except OSError as e:
            logger.error(f"Backup error ({record.original_path}): {e}")
            return None

        logger.info(f"Backed up: {record.original_path}")
        return current_hash

    def _commit_records(self, updates: dict[str, FileRecord]) -> None:
        with self._transaction() as index:
            for key, record in updates.items():
                current = index.get(key)
                if current is not None:
                    # Keep scheduling fields that changed while we were copying
                    record = record.model_copy(
                        update={
                            "auto_backup_enabled": current.auto_backup_enabled,
                            "backup_interval": current.backup_interval,
                            "backup_frequency_unit": current.backup_frequency_unit,
                        }
                    )
                if record != current:
                    index.upsert(record)

    def _commit_hashes(self, changed: dict[str, str]) -> None:
        with self._transaction() as index:
            for key, new_hash in changed.items():
                record = index.get(key)
                if record is None:
                    logger.debug(f"Record {key} was removed during backup")
                    continue
                index.upsert(record.model_copy(update={"content_hash": new_hash}))

    @contextlib.contextmanager
    def _transaction(self):
        try:
            with self.store.transaction() as index:
                yield index
        except OSError as e:
            raise BackupError(f"Failed to save metadata: {e}") from e

    def _copy_file(self, src: Path, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=dest.parent)
        os.close(fd)
        try:
            shutil.copy2(src, tmp_path)
            os.replace(tmp_path, dest)
        except BaseException:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
            raise

    def _is_backup_root(self, path: Path) -> bool:
        try:
            return path.resolve() == self.backup_root.resolve()
        except OSError:
            return False

    def _validate_source(self, source_root: Path):
        if not source_root.exists():
            raise BackupError(f"Source path does not exist: {source_root}")
        if not source_root.is_dir():
            raise BackupError(f"Source path is not a directory: {source_root}")
        if not os.access(source_root, os.R_OK):
            raise BackupError(f"Cannot read source path: {source_root}")
