"""Storage paths and JSON helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any

from platformdirs import user_config_path, user_state_path

APP_NAME = "connwatch"

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    return Path(user_config_path(APP_NAME))


def get_state_dir() -> Path:
    return Path(user_state_path(APP_NAME))


def get_logs_dir() -> Path:
    return get_state_dir() / "logs"


def ensure_dirs() -> None:
    for path in (get_config_dir(), get_state_dir(), get_logs_dir()):
        path.mkdir(parents=True, exist_ok=True)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` to ``path`` via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path_str = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_path_str)
    try:
        if os.name == "posix":
            os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            logger.exception("Failed to remove temporary file: %s", tmp_path)
        raise
