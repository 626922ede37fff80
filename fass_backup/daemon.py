import functools
import os
import signal
import tempfile
import threading
import time
import traceback
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

import daemon
import psutil
from loguru import logger

from .errors import DaemonError
from .metadata_store import MetadataStore
from .models import BackupPaths, DaemonState
from .scheduler import ScheduledBackupService
from .settings import load_settings

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"
KILL_TIMEOUT = 1.0


def pid_alive(pid: int) -> bool:
    """Non-destructive liveness check; zombies count as dead."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class Detacher(ABC):
    """Runs ``target(stop_event)`` outside the calling process's terminal session."""

    @abstractmethod
    def spawn(
        self,
        target: Callable[[threading.Event], None],
        log_file: Path,
        err_file: Path,
        working_directory: Path,
    ) -> None:
        ...


class ForkingDetacher(Detacher):
    def spawn(self, target, log_file, err_file, working_directory):
        # Opened before forking so an unwritable log aborts start() in the caller
        with open(log_file, "a", buffering=1) as stdout, open(err_file, "a", buffering=1) as stderr:
            pid = os.fork()
            if pid:
                # The launcher exits as soon as DaemonContext forks the real daemon
                os.waitpid(pid, 0)
                return

            exit_code = 0
            try:
                stop_event = threading.Event()

                def request_stop(signum, frame):
                    stop_event.set()

                context = daemon.DaemonContext(
                    working_directory=str(working_directory),
                    umask=0o027,
                    detach_process=True,
                    stdout=stdout,
                    stderr=stderr,
                    signal_map={
                        signal.SIGTERM: request_stop,
                        signal.SIGINT: request_stop,
                    },
                )
                with context:
                    logger.remove()
                    logger.add(log_file, level="INFO", format=LOG_FORMAT)
                    logger.add(err_file, level="ERROR", format=LOG_FORMAT)
                    try:
                        target(stop_event)
                    finally:
                        # Flush the file sinks before os._exit
                        logger.remove()
            except Exception:
                traceback.print_exc(file=stderr)
                exit_code = 1
            finally:
                os._exit(exit_code)


class DaemonManager:
    def __init__(
        self,
        paths: BackupPaths,
        detacher: Detacher | None = None,
        stop_timeout: float = 10.0,
        poll_interval: float = 0.5,
        start_timeout: float = 5.0,
        settle_delay: float = 2.0,
    ):
        self.paths = paths
        self.paths.ensure()
        self.detacher = detacher or ForkingDetacher()
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.start_timeout = start_timeout
        self.settle_delay = settle_delay
        self._stopping = False

    def read_pid(self) -> int | None:
        return self._read_pid_file()[0]

    def is_running(self) -> bool:
        pid = self.read_pid()
        if pid is None:
            return False
        if pid_alive(pid):
            return True

        logger.info(f"Removing stale PID file for PID {pid}")
        self._remove_pid_file(pid)
        return False

    def state(self) -> DaemonState:
        pid = self.read_pid()
        if pid is None:
            return DaemonState.NOT_RUNNING
        if self._stopping:
            return DaemonState.STOPPING
        if pid_alive(pid):
            return DaemonState.RUNNING
        return DaemonState.STALE_RECORD

    def start(self) -> int:
        if self.is_running():
            raise DaemonError("Daemon is already running. Use 'restart' to restart it.")
        if self.paths.pid_file.exists() and self.read_pid() is None:
            logger.warning(f"Removing unreadable PID file {self.paths.pid_file}")
            self._remove_pid_file()

        settings = load_settings(self.paths.settings_file)
        if not settings.auto_backup_enabled:
            raise DaemonError("Auto-backup is disabled in settings. Please enable it first.")

        index = MetadataStore(self.paths.index_file).load()
        if not len(index):
            raise DaemonError("No files to backup. Please perform an initial backup first.")

        # Identifies the PID file written by the daemon this call spawns
        token = uuid.uuid4().hex
        logger.info("Starting FASS Backup daemon...")
        logger.info(f"Working directory: {self.paths.home}")
        logger.info(f"Backup interval: {settings.interval_minutes} minutes")

        try:
            self.detacher.spawn(
                functools.partial(self.serve, token=token),
                self.paths.log_file,
                self.paths.err_file,
                self.paths.home,
            )
        except OSError as e:
            raise DaemonError(f"Failed to daemonize: {e}") from e

        return self._wait_for_start(token)

    def stop(self) -> None:
        if not self.is_running():
            raise DaemonError("Daemon is not running")

        pid = self.read_pid()
        if pid is None:
            raise DaemonError("Failed to read PID")

        self._stopping = True
        try:
            logger.info(f"Sending SIGTERM to PID {pid}...")
            self._send_signal(pid, signal.SIGTERM)

            if self._wait_for_exit(pid, self.stop_timeout):
                logger.info("Daemon stopped gracefully")
                self._remove_pid_file(pid)
                return

            logger.warning("Daemon didn't stop gracefully, sending SIGKILL...")
            self._send_signal(pid, signal.SIGKILL)
            if not self._wait_for_exit(pid, KILL_TIMEOUT):
                raise DaemonError(f"Failed to kill daemon process {pid}")
            self._remove_pid_file(pid)
        finally:
            self._stopping = False

    def kill(self) -> None:
        pid = self.read_pid()
        if pid is None:
            raise DaemonError("Daemon is not running")

        self._send_signal(pid, signal.SIGKILL)
        if not self._wait_for_exit(pid, KILL_TIMEOUT):
            raise DaemonError(f"Failed to kill daemon process {pid}")
        self._remove_pid_file(pid)

    def restart(self) -> int:
        logger.info("Restarting daemon...")
        if self.is_running():
            self.stop()
            time.sleep(self.settle_delay)
        return self.start()

    def status(self) -> str:
        pid = self.read_pid()
        if pid is None:
            return "Daemon is not running"
        if not pid_alive(pid):
            return "Stale PID file found (daemon not running)"

        settings = load_settings(self.paths.settings_file)
        if settings.auto_backup_enabled:
            return f"Daemon is running (PID {pid}, interval {settings.interval_minutes} min)"
        return f"Daemon is running (PID {pid}) but auto-backup is disabled"

    def serve(self, stop_event: threading.Event, token: str | None = None) -> bool:
        """Body of the daemon process: own the PID file and run the global loop.

        The PID file records ``token`` under the PID so that the ``start()`` call
        which spawned this process can tell its own daemon from a concurrent one.
        Returns False without running when another daemon already owns the PID file.
        """
        if not self._claim_pid_file(token or uuid.uuid4().hex):
            return False

        logger.info("=" * 60)
        logger.info(f"Daemon started with PID {os.getpid()}")
        logger.info("=" * 60)

        try:
            ScheduledBackupService(self.paths).run(stop_event)
        finally:
            logger.info("Daemon shutting down gracefully...")
            try:
                self.paths.pid_file.unlink()
                logger.info("PID file removed successfully")
            except OSError as e:
                logger.error(f"Failed to remove PID file: {e}")
            logger.info("Daemon stopped")
        return True

    def _claim_pid_file(self, token: str) -> bool:
        # Linking a fully written file creates the PID file atomically, with its content
        fd, tmp_path = tempfile.mkstemp(prefix=".pid_tmp_", dir=self.paths.home)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n{token}\n")
            try:
                os.link(tmp_path, self.paths.pid_file)
            except FileExistsError:
                logger.error(f"PID file {self.paths.pid_file} exists, another daemon is starting")
                return False
        finally:
            os.remove(tmp_path)
        return True

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            time.sleep(self.poll_interval)
            if not pid_alive(pid):
                return True
            logger.debug(f"Waiting for PID {pid} to exit...")
        return not pid_alive(pid)

    def _wait_for_start(self, token: str) -> int:
        deadline = time.monotonic() + self.start_timeout
        while time.monotonic() < deadline:
            pid, owner = self._read_pid_file()
            if pid is not None and pid_alive(pid):
                if owner != token:
                    raise DaemonError(
                        f"Daemon is already running (PID {pid} was started concurrently)"
                    )
                logger.info(f"Daemon started with PID {pid}")
                return pid
            time.sleep(0.1)
        raise DaemonError(f"Daemon failed to start, see {self.paths.err_file}")

    def _read_pid_file(self) -> tuple[int | None, str | None]:
        """Return the PID and start token from the PID file."""
        try:
            lines = self.paths.pid_file.read_text().splitlines()
        except OSError:
            return None, None
        try:
            pid = int(lines[0].strip())
        except (IndexError, ValueError):
            return None, None
        token = lines[1].strip() if len(lines) > 1 else None
        return pid, token

    def _send_signal(self, pid: int, sig: signal.Signals) -> None:
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess:
            logger.debug(f"PID {pid} exited before {sig.name}")
        except psutil.AccessDenied as e:
            raise DaemonError(f"Failed to send {sig.name} to PID {pid}: {e}") from e

    def _remove_pid_file(self, expected_pid: int | None = None) -> None:
        if expected_pid is not None and self.read_pid() != expected_pid:
            return
        try:
            self.paths.pid_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove PID file {self.paths.pid_file}: {e}")

