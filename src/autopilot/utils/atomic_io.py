"""Atomic file I/O for aggregate state documents."""

import json
import logging
import os
from pathlib import Path
from typing import Any

from ..errors import PersistenceError

logger = logging.getLogger(__name__)


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Atomically replace a file's content using temp file + rename.

    Readers observe either the previous document or the new one, never a
    partially written file. The temp file lives next to the target so the
    rename stays on one filesystem.

    Args:
        file_path: Target file path
        content: Full replacement content
        max_retries: Maximum number of attempts before giving up

    Raises:
        PersistenceError: If the write fails after all retries
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    # PID suffix keeps concurrent writers from clobbering each other's temp file
    tmp_file = file_path.with_suffix(f"{file_path.suffix}.tmp.{os.getpid()}")

    last_error = None
    for attempt in range(max_retries):
        try:
            with open(tmp_file, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise PersistenceError(f"Could not write {file_path}: {last_error}") from last_error


def atomic_write_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """Serialize ``data`` to JSON and write it atomically."""
    atomic_write_text(file_path, json.dumps(data, indent=indent, default=str))
