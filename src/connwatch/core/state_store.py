"""Durable key-value state (last state, history, pulse snapshot) in one JSON file."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from connwatch.core.errors import StateStoreError
from connwatch.core.storage import atomic_write_json, get_state_dir

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
STATE_SCHEMA_VERSION = 1

KEY_LAST_STATE = "last_state"
KEY_TRANSITION_HISTORY = "transition_history"
KEY_HEALTH_SAMPLES = "health_samples"
KEY_PULSE_SNAPSHOT = "pulse_snapshot"


class StateStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_state_dir() / STATE_FILE)
        self.last_load_error: str | None = None
        self._values: dict[str, Any] | None = None

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def get_list(self, key: str) -> list[Any]:
        value = self.get(key)
        return value if isinstance(value, list) else []

    def get_dict(self, key: str) -> dict[str, Any] | None:
        value = self.get(key)
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: Any) -> None:
        values = self._load()
        values[key] = value
        self._flush(values)

    def remove(self, key: str) -> None:
        values = self._load()
        if values.pop(key, None) is not None:
            self._flush(values)

    def _load(self) -> dict[str, Any]:
        if self._values is not None:
            return self._values

        self.last_load_error = None
        self._values = {}
        if not self.path.exists():
            return self._values

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            backup_path = self.path.with_suffix(".json.bak")
            try:
                if backup_path.exists():
                    backup_path.unlink()
                os.replace(self.path, backup_path)
            except OSError:
                logger.exception("Failed to back up corrupted state file")
            self.last_load_error = f"State file is corrupted ({exc}). Starting cold."
            logger.warning(self.last_load_error)
            return self._values
        except OSError as exc:
            self.last_load_error = f"State file is unreadable ({exc}). Starting cold."
            logger.warning(self.last_load_error)
            return self._values

        if not isinstance(payload, dict) or not isinstance(payload.get("values"), dict):
            self.last_load_error = "State file format is invalid. Starting cold."
            logger.warning(self.last_load_error)
            return self._values

        self._values = dict(payload["values"])
        return self._values

    def _flush(self, values: dict[str, Any]) -> None:
        payload = {"schema_version": STATE_SCHEMA_VERSION, "values": values}
        try:
            atomic_write_json(self.path, payload)
        except (OSError, TypeError, ValueError) as exc:
            raise StateStoreError(
                f"Failed to write state file {self.path}: {exc}",
                user_message="Could not save monitoring history.",
            ) from exc
