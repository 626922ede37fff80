import json
import os
import tempfile
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .models import BackupSettings


def load_settings(settings_path: Path) -> BackupSettings:
    """Read the global settings, falling back to defaults (auto-backup off)."""
    if not settings_path.exists():
        return BackupSettings()

    try:
        with open(settings_path, encoding="utf-8") as f:
            return BackupSettings.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Invalid settings file {settings_path}, using defaults: {e}")
        return BackupSettings()


def save_settings(settings_path: Path, settings: BackupSettings) -> None:
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".settings_tmp_", dir=settings_path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(settings.model_dump(mode="json"), f, indent=2)
        os.replace(tmp_path, settings_path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    logger.debug(f"Saved settings to {settings_path}")
