from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*$")


class FailureKind(StrEnum):
    INVALID_ARGUMENT = "invalid_argument"
    LAUNCHER_NOT_FOUND = "launcher_not_found"
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    DISPATCH = "dispatch"
    TIMEOUT = "timeout"
    SYSTEM = "system"


FATAL_FAILURE_KINDS = frozenset(
    {
        FailureKind.INVALID_ARGUMENT,
        FailureKind.LAUNCHER_NOT_FOUND,
        FailureKind.UNSUPPORTED_PLATFORM,
    }
)


class DispatchError(RuntimeError):
    """Raised when a worker invocation cannot be dispatched or completed."""

    kind: FailureKind = FailureKind.SYSTEM

    def __init__(
        self,
        message: str,
        *,
        worker_id: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker_id = worker_id
        self.exit_code = exit_code
        self.retriable = retriable


class InvalidArgumentError(DispatchError):
    """Raised for worker or task identifiers that are unsafe to pass to the launcher."""

    kind = FailureKind.INVALID_ARGUMENT

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class LauncherNotFoundError(DispatchError):
    """Raised when the launcher script does not exist."""

    kind = FailureKind.LAUNCHER_NOT_FOUND

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class UnsupportedPlatformError(DispatchError):
    """Raised when workers cannot be spawned on this host platform."""

    kind = FailureKind.UNSUPPORTED_PLATFORM

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class DispatchFailureError(DispatchError):
    """Raised when the launcher process fails to start or exits unsuccessfully."""

    kind = FailureKind.DISPATCH


class InvocationTimeoutError(DispatchError):
    """Raised when a worker does not release its lock within the timeout."""

    kind = FailureKind.TIMEOUT


def validate_identifier(value: Any, label: str) -> str:
    if not value or not isinstance(value, str):
        raise InvalidArgumentError(f"{label} is required and must be a string")
    if not IDENTIFIER_PATTERN.fullmatch(value):
        raise InvalidArgumentError(f"Invalid {label} format: {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class DispatchHandle:
    """Expected output and lock locations; neither is verified to exist yet."""

    invocation_id: str
    output_ref: Path
    lock_ref: Path


class Dispatcher(ABC):
    @abstractmethod
    async def dispatch(
        self,
        worker_id: str,
        task_name: str,
        context_ref: Path | None = None,
        extra_args: list[str] | str | None = None,
    ) -> DispatchHandle:
        """Spawn one external worker and return where its output will appear."""
