from __future__ import annotations

import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class WorkflowStateError(RuntimeError):
    """Raised when persisted workflow state cannot be read or written."""


class WorkflowStore:
    """One JSON envelope per workflow under the state directory."""

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _path(self, workflow_id: str) -> Path:
        if not WORKFLOW_ID_PATTERN.fullmatch(workflow_id):
            raise WorkflowStateError(f"Invalid workflow id: {workflow_id!r}")
        return self.state_dir / f"{workflow_id}.json"

    @contextmanager
    def _state_lock(self, workflow_id: str, timeout_seconds: float = 3.0) -> Iterator[None]:
        lock_file = self.state_dir / f".{workflow_id}.lock"
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise WorkflowStateError(
                        f"Timed out waiting for state lock of {workflow_id}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def get_envelope(self, workflow_id: str) -> dict[str, Any] | None:
        path = self._path(workflow_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise WorkflowStateError(f"Corrupt state file for {workflow_id}: {exc}") from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise WorkflowStateError(f"Unrecognized state file for {workflow_id}")
        return payload

    def exists(self, workflow_id: str) -> bool:
        return self._path(workflow_id).exists()

    def load(self, workflow_id: str) -> dict[str, Any]:
        envelope = self.get_envelope(workflow_id)
        if envelope is None:
            raise WorkflowStateError(f"Unknown workflow: {workflow_id}")
        data = envelope["data"]
        if not isinstance(data, dict):
            raise WorkflowStateError(f"Unrecognized state payload for {workflow_id}")
        return data

    def save(self, workflow_id: str, data: dict[str, Any]) -> int:
        path = self._path(workflow_id)
        with self._state_lock(workflow_id):
            current = self.get_envelope(workflow_id)
            revision = int(current.get("revision", 0)) + 1 if current else 1
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            temp_path = path.with_name(f".{path.name}.tmp")
            temp_path.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8"
            )
            os.replace(temp_path, path)
        return revision

    def list_ids(self) -> list[str]:
        return sorted(path.stem for path in self.state_dir.glob("*.json"))
