"""Whole-file JSON persistence with atomic replacement."""

import json
import logging
import os
import tempfile
from typing import Any

logger = logging.getLogger(__name__)


def write_json_atomic(path: str, data: Any, indent: int = 2) -> None:
    """Serialize `data` to a temp file next to `path`, then rename it over `path`.

    Readers see either the previous file or the new one, never a partial write.

    Args:
        path: Destination file path. Parent directories are created.
        data: JSON-serializable value.
        indent: Indentation passed to ``json.dump``.
    """
    dir_name = os.path.dirname(path) or "."
    os.makedirs(dir_name, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=dir_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmpf:
            json.dump(data, tmpf, ensure_ascii=False, indent=indent)
            tmpf.flush()
            os.fsync(tmpf.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temp file {tmp_path}: {e}")


def read_json(path: str, default: Any = None) -> Any:
    """Load JSON from `path`, returning `default` when the file does not exist."""
    if not os.path.exists(path):
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
