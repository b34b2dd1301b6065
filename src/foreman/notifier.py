"""Fire-and-forget workflow notifications for dashboards and other observers.

``Notifier.emit`` only enqueues; a separate consumer task hands events to the
sinks on worker threads. Sink failures are logged and never reach the
orchestrator.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class NotificationType(StrEnum):
    WORKFLOW_STARTED = "workflow_started"
    STATE_CHANGED = "state_changed"
    STAGE_STARTED = "stage_started"
    INVOCATION = "invocation"
    GATE_EVALUATED = "gate_evaluated"
    RECOVERY_DECIDED = "recovery_decided"
    AWAITING_INPUT = "awaiting_input"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_ABORTED = "workflow_aborted"


class NotifierError(RuntimeError):
    """Raised by a sink that could not deliver a notification."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass(frozen=True, slots=True)
class Notification:
    type: NotificationType
    workflow_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "at": self.at,
            "payload": self.payload,
        }


NotificationSink = Callable[[Notification], None]


class JsonlEventSink:
    """Appends every notification to a JSON-lines log."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, notification: Notification) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(notification.to_dict(), ensure_ascii=False) + "\n")
        except OSError as exc:
            raise NotifierError(f"Cannot append to {self.path}: {exc}") from exc


class StatusFileSink:
    """Keeps the latest status of each workflow in one JSON file for a dashboard to poll."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, notification: Notification) -> None:
        try:
            snapshot = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            snapshot = {}
        workflows = snapshot.get("workflows") if isinstance(snapshot, dict) else None
        if not isinstance(workflows, dict):
            workflows = {}

        entry = workflows.get(notification.workflow_id, {})
        entry["last_event"] = notification.type.value
        entry["updated_at"] = notification.at
        if "status" in notification.payload:
            entry["status"] = notification.payload["status"]
        if "stage" in notification.payload:
            entry["stage"] = notification.payload["stage"]
        workflows[notification.workflow_id] = entry

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({"workflows": workflows}, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            raise NotifierError(f"Cannot write status file {self.path}: {exc}") from exc


class Notifier:
    def __init__(
        self,
        sinks: Iterable[NotificationSink] = (),
        *,
        queue_size: int = 1024,
        drain_timeout_seconds: float = 5.0,
    ) -> None:
        self.sinks: list[NotificationSink] = list(sinks)
        self.drain_timeout_seconds = drain_timeout_seconds
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=max(1, queue_size))
        self._consumer: asyncio.Task[None] | None = None
        self._users = 0

    def emit(
        self,
        notification_type: NotificationType,
        workflow_id: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        notification = Notification(
            type=notification_type, workflow_id=workflow_id, payload=payload or {}
        )
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.warning(
                "Notification queue full; dropped %s for %s", notification_type, workflow_id
            )
        except Exception:
            logger.exception("Failed to enqueue %s notification", notification_type)

    async def start(self) -> None:
        """Start delivering events. Each call must be paired with one `aclose`."""
        if self._consumer is not None and not self._consumer.done():
            self._users += 1
            return
        self._users = 1
        # A queue is bound to the loop that first waits on it; carry pending events over.
        pending = self._queue
        self._queue = asyncio.Queue(maxsize=pending.maxsize)
        while not pending.empty():
            self._queue.put_nowait(pending.get_nowait())
        self._consumer = asyncio.create_task(self._consume(), name="foreman-notifier")

    async def _deliver(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await asyncio.to_thread(sink, notification)
            except Exception as exc:
                logger.warning(
                    "Notifier sink %s failed on %s: %s",
                    getattr(sink, "__name__", type(sink).__name__),
                    notification.type.value,
                    exc,
                )

    async def _consume(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def aclose(self) -> None:
        if self._consumer is None:
            return
        self._users -= 1
        if self._users > 0:
            # Another workflow still emits through this notifier.
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self.drain_timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Notifier did not drain within %.1fs; %d event(s) dropped",
                self.drain_timeout_seconds,
                self._queue.qsize(),
            )
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None

    async def __aenter__(self) -> Notifier:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
