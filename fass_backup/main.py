#!/usr/bin/env python3

import signal
import threading

from loguru import logger

from .cli import cli
from .daemon import DaemonManager
from .errors import DaemonError
from .models import BackupPaths


def run_daemon_mode(paths: BackupPaths) -> bool:
    """Run the global backup loop in the foreground until SIGINT/SIGTERM."""
    logger.info("Starting backup daemon in the foreground...")

    manager = DaemonManager(paths)
    if manager.is_running():
        raise DaemonError("Daemon is already running. Use 'restart' to restart it.")

    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received shutdown signal, stopping services...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("Press Ctrl+C to stop")
    return manager.serve(stop_event)


def main():
    """Main entry point"""
    cli(prog_name="fass-backup")


if __name__ == "__main__":
    main()
