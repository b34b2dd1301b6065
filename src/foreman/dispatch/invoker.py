from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from foreman.config import DispatchConfig
from foreman.dispatch.base import (
    DispatchError,
    Dispatcher,
    FailureKind,
)
from foreman.dispatch.watcher import CompletionWatcher
from foreman.state.artifacts import ArtifactStore, ContextArtifact, new_invocation_id

logger = logging.getLogger(__name__)

InvocationEventHook = Callable[[dict[str, Any]], None]


class InvocationStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in {
            InvocationStatus.SUCCEEDED,
            InvocationStatus.FAILED,
            InvocationStatus.TIMED_OUT,
        }


class InvocationStateError(RuntimeError):
    """Raised on an attempt to move an invocation out of a terminal status."""


@dataclass(slots=True)
class Invocation:
    id: str
    worker_id: str
    task_name: str
    timeout_ms: int
    context_ref: Path | None = None
    started_at: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat(timespec="milliseconds")
    )
    attempt: int = 0
    status: InvocationStatus = InvocationStatus.PENDING

    def transition(self, status: InvocationStatus) -> None:
        if self.status.terminal:
            raise InvocationStateError(
                f"Invocation {self.id} is already {self.status.value}; cannot move to "
                f"{status.value}"
            )
        self.status = status


@dataclass(slots=True)
class InvocationResult:
    success: bool
    output: str
    output_ref: str
    duration_ms: int
    error: str | None = None
    error_kind: FailureKind | None = None
    attempts: int = 0
    invocation_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output_ref": self.output_ref,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "attempts": self.attempts,
            "invocation_id": self.invocation_id,
        }


class InvocationController:
    """Dispatches a worker, waits for its lock to clear and retries retryable failures.

    ``invoke`` never raises: callers branch on ``InvocationResult.success``.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        settings: DispatchConfig,
        *,
        watcher: CompletionWatcher | None = None,
        artifacts: ArtifactStore | None = None,
        event_hook: InvocationEventHook | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.settings = settings
        self.watcher = watcher or CompletionWatcher(settings.poll_interval_ms)
        self.artifacts = artifacts or ArtifactStore(settings.resolved_output_dir())
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if not self.event_hook:
            return
        try:
            self.event_hook(event)
        except Exception as exc:
            logger.debug("Invocation event hook failed on %s: %s", event.get("event"), exc)

    async def invoke(
        self,
        worker_id: str,
        task_name: str,
        *,
        extra_args: list[str] | str | None = None,
        context: ContextArtifact | dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        retries: int | None = None,
    ) -> InvocationResult:
        started = time.monotonic()
        timeout = int(timeout_ms if timeout_ms is not None else self.settings.timeout_ms)
        max_attempts = max(1, int(retries if retries is not None else self.settings.retries))
        invocation = Invocation(
            id=new_invocation_id(),
            worker_id=str(worker_id),
            task_name=str(task_name),
            timeout_ms=timeout,
        )

        def _duration_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            if context is not None:
                artifact = (
                    context
                    if isinstance(context, ContextArtifact)
                    else ContextArtifact.from_data(context)
                )
                invocation.context_ref = self.artifacts.write_context(artifact, invocation.id)
        except (OSError, TypeError, ValueError) as exc:
            invocation.transition(InvocationStatus.FAILED)
            return self._finish(
                invocation,
                InvocationResult(
                    success=False,
                    output="",
                    output_ref="",
                    duration_ms=_duration_ms(),
                    error=f"Failed to write context artifact: {exc}",
                    error_kind=FailureKind.SYSTEM,
                ),
            )

        last_error: Exception | None = None
        try:
            for attempt in range(1, max_attempts + 1):
                invocation.attempt = attempt
                invocation.transition(InvocationStatus.RUNNING)
                self._emit(
                    {
                        "event": "invocation_attempt",
                        "invocation_id": invocation.id,
                        "worker": invocation.worker_id,
                        "task": invocation.task_name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                    }
                )
                try:
                    handle = await self.dispatcher.dispatch(
                        invocation.worker_id,
                        invocation.task_name,
                        invocation.context_ref,
                        extra_args,
                    )
                    output = await self.watcher.await_completion(
                        handle.output_ref, handle.lock_ref, timeout
                    )
                except DispatchError as exc:
                    last_error = exc
                    self._record_failure(invocation, attempt, exc, exc.retriable)
                    if not exc.retriable:
                        break
                except Exception as exc:
                    last_error = exc
                    self._record_failure(invocation, attempt, exc, True)
                else:
                    invocation.transition(InvocationStatus.SUCCEEDED)
                    return self._finish(
                        invocation,
                        InvocationResult(
                            success=True,
                            output=output,
                            output_ref=str(handle.output_ref),
                            duration_ms=_duration_ms(),
                            attempts=attempt,
                        ),
                    )

                if attempt < max_attempts:
                    invocation.transition(InvocationStatus.RETRYING)
                    delay_ms = self.settings.retry_delay_ms * attempt
                    self._emit(
                        {
                            "event": "invocation_retry",
                            "invocation_id": invocation.id,
                            "attempt": attempt,
                            "delay_ms": delay_ms,
                        }
                    )
                    await asyncio.sleep(delay_ms / 1000)
        finally:
            self.artifacts.discard(invocation.context_ref)

        kind = last_error.kind if isinstance(last_error, DispatchError) else FailureKind.SYSTEM
        invocation.transition(
            InvocationStatus.TIMED_OUT if kind is FailureKind.TIMEOUT else InvocationStatus.FAILED
        )
        return self._finish(
            invocation,
            InvocationResult(
                success=False,
                output="",
                output_ref="",
                duration_ms=_duration_ms(),
                error=str(last_error) if last_error else "Unknown error",
                error_kind=kind,
                attempts=invocation.attempt,
            ),
        )

    def _record_failure(
        self, invocation: Invocation, attempt: int, exc: Exception, retriable: bool
    ) -> None:
        logger.debug("Attempt %d of %s failed: %s", attempt, invocation.id, exc)
        self._emit(
            {
                "event": "invocation_attempt_failed",
                "invocation_id": invocation.id,
                "attempt": attempt,
                "error": str(exc),
                "retriable": retriable,
            }
        )

    def _finish(self, invocation: Invocation, result: InvocationResult) -> InvocationResult:
        result.invocation_id = invocation.id
        self._emit(
            {
                "event": "invocation_finished",
                "invocation_id": invocation.id,
                "worker": invocation.worker_id,
                "task": invocation.task_name,
                "status": invocation.status.value,
                "attempts": invocation.attempt,
                "duration_ms": result.duration_ms,
                "error": result.error,
            }
        )
        return result
