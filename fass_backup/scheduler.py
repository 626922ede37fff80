import threading
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from .backup_manager import BackupManager
from .models import BackupPaths
from .settings import load_settings


@dataclass
class ScheduledTask:
    path: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None

    def cancel(self):
        self.cancel_event.set()

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class FileScheduler:
    """Registry of per-file auto-backup loops, at most one per path."""

    def __init__(self, backup_manager: BackupManager):
        self.backup_manager = backup_manager
        self.store = backup_manager.store
        self._tasks: dict[str, ScheduledTask] = {}
        self._tasks_lock = threading.Lock()

    def sweep(self) -> int:
        """Start a loop for every auto-enabled record that does not have one yet."""
        index = self.store.load()
        enabled = {record.key: record for record in index.auto_enabled()}
        logger.info(f"Found {len(enabled)} files with auto-backup enabled")

        started = 0
        with self._tasks_lock:
            for path in list(self._tasks):
                task = self._tasks[path]
                if path not in enabled or not task.is_alive():
                    logger.info(f"Stopping auto-backup loop for: {path}")
                    task.cancel()
                    del self._tasks[path]

            for path, record in enabled.items():
                if path in self._tasks:
                    logger.debug(f"Already backing up: {path}")
                    continue

                task = ScheduledTask(path=path)
                task.thread = threading.Thread(
                    target=self._run_task,
                    args=(task,),
                    name=f"auto-backup:{Path(path).name}",
                    daemon=True,
                )
                self._tasks[path] = task
                task.thread.start()
                started += 1
                logger.info(
                    f"Starting auto-backup loop for: {path} "
                    f"(every {record.period_seconds()}s)"
                )

        return started

    def cancel(self, path: str | Path) -> bool:
        with self._tasks_lock:
            task = self._tasks.pop(str(path), None)
        if task is None:
            return False
        task.cancel()
        return True

    def stop(self, timeout: float = 5.0):
        with self._tasks_lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()

        for task in tasks:
            task.cancel()
        for task in tasks:
            if task.thread is not None:
                task.thread.join(timeout=timeout)

        if tasks:
            logger.info(f"Stopped {len(tasks)} auto-backup loop(s)")

    def active_paths(self) -> set[str]:
        with self._tasks_lock:
            return set(self._tasks)

    def _run_task(self, task: ScheduledTask):
        while not task.cancel_event.is_set():
            record = self.store.load().get(task.path)
            if record is None or not record.auto_backup_enabled:
                logger.info(f"Auto-backup no longer enabled for: {task.path}")
                break

            if task.cancel_event.wait(record.period_seconds()):
                break

            try:
                if self.backup_manager.backup_record(task.path):
                    logger.info(f"Auto-backed up: {task.path}")
            except Exception as e:
                logger.error(f"Failed to auto-backup {task.path}: {e}")

        with self._tasks_lock:
            if self._tasks.get(task.path) is task:
                del self._tasks[task.path]


class ScheduledBackupService:
    """Global interval loop: reload settings, sweep, re-sync, sleep."""

    def __init__(
        self,
        paths: BackupPaths,
        backup_manager: BackupManager | None = None,
        file_scheduler: FileScheduler | None = None,
    ):
        self.paths = paths
        self.backup_manager = backup_manager or BackupManager(paths)
        self.file_scheduler = file_scheduler or FileScheduler(self.backup_manager)
        self._schedule_thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self):
        logger.info("Starting scheduled backup service")
        self._stop_event.clear()
        self._schedule_thread = threading.Thread(
            target=self.run, args=(self._stop_event,), daemon=True
        )
        self._schedule_thread.start()

    def stop(self):
        if self._schedule_thread:
            logger.info("Stopping scheduled backup service...")
            self._stop_event.set()
            self._schedule_thread.join(timeout=5.0)
            self._schedule_thread = None

    def run(self, stop_event: threading.Event):
        try:
            while not stop_event.is_set():
                settings = load_settings(self.paths.settings_file)

                if settings.auto_backup_enabled:
                    logger.info("Running auto-backup...")
                    self.run_cycle()
                else:
                    logger.info("Auto-backup disabled; sleeping...")

                # Sleep in 1s steps so a shutdown signal is honoured promptly
                for _ in range(settings.interval_minutes * 60):
                    if stop_event.wait(1.0):
                        break
        finally:
            self.file_scheduler.stop()

    def run_cycle(self):
        try:
            self.file_scheduler.sweep()
            self.backup_manager.backup_now(skip_scheduled=True)
        except Exception as e:
            logger.error(f"Scheduled backup failed: {e}")
