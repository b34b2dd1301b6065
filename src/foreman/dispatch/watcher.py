from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from foreman.config import DEFAULT_POLL_INTERVAL_MS
from foreman.dispatch.base import InvocationTimeoutError
from foreman.state.artifacts import ArtifactStore

logger = logging.getLogger(__name__)

NO_OUTPUT = "No output captured"


def derive_lock_ref(output_ref: Path) -> Path:
    return output_ref.with_name(output_ref.name.replace("output", "lock", 1))


class CompletionWatcher:
    """Waits for a worker to remove its lock sentinel.

    Only the absence of the lock counts as completion. Exit codes are never
    consulted since the worker runs detached in its own terminal.
    """

    def __init__(self, poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS) -> None:
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    async def await_completion(
        self,
        output_ref: Path,
        lock_ref: Path | None = None,
        timeout_ms: int = 300_000,
    ) -> str:
        lock = lock_ref if lock_ref is not None else derive_lock_ref(output_ref)
        logger.debug("Polling for output %s (lock %s)", output_ref, lock)
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            if not lock.exists():
                logger.debug("Lock removed, reading output %s", output_ref)
                try:
                    return output_ref.read_text(encoding="utf-8")
                except OSError as exc:
                    logger.debug("Output file not readable: %s", exc)
                    return NO_OUTPUT

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval_ms / 1000, remaining))

        ArtifactStore.discard(lock)
        raise InvocationTimeoutError(f"Timeout waiting for worker output after {timeout_ms}ms")
