"""Filesystem artifacts exchanged with external workers.

Every artifact name carries the invocation id so concurrent invocations can
share one output directory without any in-process locking.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "foreman"
CONTEXT_PREFIX = f"{ARTIFACT_PREFIX}-context-"
OUTPUT_PREFIX = f"{ARTIFACT_PREFIX}-output-"
LOCK_PREFIX = f"{ARTIFACT_PREFIX}-lock-"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def new_invocation_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class ContextArtifact:
    story_ref: str = ""
    related_files: tuple[str, ...] = ()
    instructions: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> ContextArtifact:
        """Normalize loosely shaped caller data into a context artifact."""
        files = data.get("files")
        metadata = data.get("metadata")
        return cls(
            story_ref=str(data.get("story") or ""),
            related_files=tuple(str(item) for item in files) if isinstance(files, list) else (),
            instructions=str(data.get("instructions") or ""),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "story": self.story_ref,
            "files": list(self.related_files),
            "instructions": self.instructions,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
        }


class ArtifactStore:
    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def context_path(self, invocation_id: str) -> Path:
        return self.output_dir / f"{CONTEXT_PREFIX}{invocation_id}.json"

    def output_path(self, invocation_id: str) -> Path:
        return self.output_dir / f"{OUTPUT_PREFIX}{invocation_id}.md"

    def lock_path(self, invocation_id: str) -> Path:
        return self.output_dir / f"{LOCK_PREFIX}{invocation_id}"

    def write_context(self, artifact: ContextArtifact, invocation_id: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.context_path(invocation_id)
        # Exclusive create: a context artifact is never rewritten.
        with path.open("x", encoding="utf-8") as handle:
            json.dump(artifact.to_dict(), handle, ensure_ascii=False, indent=2)
        logger.debug("Created context file: %s", path)
        return path

    @staticmethod
    def read_context(path: Path) -> ContextArtifact:
        payload = json.loads(path.read_text(encoding="utf-8"))
        files = payload.get("files", [])
        metadata = payload.get("metadata", {})
        return ContextArtifact(
            story_ref=str(payload.get("story", "")),
            related_files=tuple(str(item) for item in files) if isinstance(files, list) else (),
            instructions=str(payload.get("instructions", "")),
            metadata=metadata if isinstance(metadata, dict) else {},
            created_at=str(payload.get("createdAt", "")),
        )

    @staticmethod
    def create_lock(path: Path, invocation_id: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{invocation_id}\n", encoding="utf-8")

    @staticmethod
    def discard(path: Path | None) -> bool:
        """Remove an artifact, ignoring errors. Returns True when a file was removed."""
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.debug("Could not remove %s: %s", path, exc)
            return False
        return True

    def sweep(self, max_age_ms: int = 3_600_000) -> int:
        now = time.time()
        cleaned = 0
        try:
            entries = list(self.output_dir.iterdir())
        except OSError as exc:
            logger.debug("Cannot list %s for cleanup: %s", self.output_dir, exc)
            return 0

        for entry in entries:
            if not entry.name.startswith((CONTEXT_PREFIX, OUTPUT_PREFIX, LOCK_PREFIX)):
                continue
            try:
                age_ms = (now - entry.stat().st_mtime) * 1000
                if age_ms > max_age_ms:
                    entry.unlink()
                    cleaned += 1
            except OSError:
                continue
        if cleaned:
            logger.info("Removed %d stale artifact(s) from %s", cleaned, self.output_dir)
        return cleaned
