"""Run-state artifact persistence."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from task_loop.orchestrator.models import LoopState


def new_run_id() -> str:
    return f"{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%SZ')}-{uuid4().hex[:8]}"


class RunStateStore:
    """Writes the ``LoopState`` snapshot after every attempt.

    Writes go to a temporary file in the target directory followed by an
    atomic rename, so readers never observe a partial document.  The store is
    never read back automatically; use ``load`` to inspect a snapshot.
    """

    def __init__(self, path: Path, *, run_id: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._state = LoopState(run_id=run_id)

    @property
    def state(self) -> LoopState:
        with self._lock:
            return LoopState(
                run_id=self._state.run_id,
                current_task=self._state.current_task,
                iteration=self._state.iteration,
                completed_tasks=list(self._state.completed_tasks),
                timestamp=self._state.timestamp,
            )

    def record_attempt(self, task_id: str, iteration: int) -> None:
        with self._lock:
            self._state.current_task = task_id
            self._state.iteration = iteration
            self._flush()

    def mark_completed(self, task_id: str) -> None:
        with self._lock:
            if task_id not in self._state.completed_tasks:
                self._state.completed_tasks.append(task_id)
            self._flush()

    def _flush(self) -> None:
        self._state.timestamp = datetime.now(tz=UTC)
        write_json_atomic(self.path, self._state.to_payload())

    @staticmethod
    def load(path: Path) -> LoopState:
        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {path}")
        return LoopState.from_payload(payload)


def write_json_atomic(path: Path, payload: dict[str, object]) -> None:
    """Persist JSON payload with deterministic formatting via write-temp-then-rename."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
