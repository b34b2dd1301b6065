from foreman.dispatch.base import (
    DispatchError,
    DispatchFailureError,
    DispatchHandle,
    Dispatcher,
    FailureKind,
    InvalidArgumentError,
    InvocationTimeoutError,
    LauncherNotFoundError,
    UnsupportedPlatformError,
)
from foreman.dispatch.invoker import (
    Invocation,
    InvocationController,
    InvocationResult,
    InvocationStatus,
)
from foreman.dispatch.terminal import TerminalDispatcher, is_dispatch_available, platform_name
from foreman.dispatch.watcher import NO_OUTPUT, CompletionWatcher, derive_lock_ref

__all__ = [
    "NO_OUTPUT",
    "CompletionWatcher",
    "DispatchError",
    "DispatchFailureError",
    "DispatchHandle",
    "Dispatcher",
    "FailureKind",
    "InvalidArgumentError",
    "Invocation",
    "InvocationController",
    "InvocationResult",
    "InvocationStatus",
    "InvocationTimeoutError",
    "LauncherNotFoundError",
    "TerminalDispatcher",
    "UnsupportedPlatformError",
    "derive_lock_ref",
    "is_dispatch_available",
    "platform_name",
]
