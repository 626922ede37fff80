import hashlib
from pathlib import Path

from loguru import logger

CHUNK_SIZE = 8192


def calculate_hash(file_path: Path) -> str | None:
    """Return the SHA-256 hex digest of a file, or None if it cannot be read."""
    try:
        hasher = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()
    except (OSError, PermissionError) as e:
        logger.debug(f"Hash unavailable for {file_path}: {e}")
        return None
