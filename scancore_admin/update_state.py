from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from .file_utils import atomic_write_text


def _default_state() -> dict[str, Any]:
    return {
        "status": "idle",
        "update_in_progress": False,
        "stage": None,
        "failed_stage": None,
        "last_error": None,
        "last_success": None,
        "job_started": None,
        "log": [],
    }


class UpdateStateManager:
    """Persists the progress of the last update rollout as a JSON file."""

    def __init__(self, path: Path, *, log_limit: int = 400) -> None:
        self.path = path
        self.log_limit = log_limit
        self._lock = threading.Lock()

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return _default_state()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return _default_state()
        if not isinstance(data, dict):
            return _default_state()
        state = _default_state()
        state.update({k: data.get(k, state[k]) for k in state.keys()})
        if not isinstance(state.get("log"), list):
            state["log"] = []
        return state

    def write(self, state: dict[str, Any]) -> dict[str, Any]:
        atomic_write_text(self.path, json.dumps(state, ensure_ascii=False, indent=2) + "\n")
        return state

    def merge(self, *, log_append: list[str] | None = None, **updates: Any) -> dict[str, Any]:
        with self._lock:
            state = self.read()
            if log_append:
                log = state["log"]
                log.extend(log_append)
                if len(log) > self.log_limit:
                    log = log[-self.log_limit :]
                state["log"] = log
            for key, value in updates.items():
                state[key] = value
            return self.write(state)


__all__ = ["UpdateStateManager"]
