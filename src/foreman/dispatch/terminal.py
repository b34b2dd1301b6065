from __future__ import annotations

import asyncio
import logging
import os
import shlex
import sys
from pathlib import Path

from foreman.config import DispatchConfig
from foreman.dispatch.base import (
    DispatchFailureError,
    DispatchHandle,
    Dispatcher,
    LauncherNotFoundError,
    UnsupportedPlatformError,
    validate_identifier,
)
from foreman.dispatch.watcher import derive_lock_ref
from foreman.state.artifacts import ArtifactStore, new_invocation_id

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = {"darwin": "macos", "linux": "linux", "win32": "windows"}


def is_dispatch_available() -> bool:
    return sys.platform in SUPPORTED_PLATFORMS


def platform_name() -> str:
    return SUPPORTED_PLATFORMS.get(sys.platform, "unknown")


def _normalize_extra_args(extra_args: list[str] | str | None) -> list[str]:
    if not extra_args:
        return []
    if isinstance(extra_args, str):
        return shlex.split(extra_args)
    return [str(item) for item in extra_args]


class TerminalDispatcher(Dispatcher):
    """Runs the launcher script, which opens a detached terminal for the worker."""

    def __init__(
        self,
        settings: DispatchConfig,
        *,
        project_root: Path | None = None,
        artifacts: ArtifactStore | None = None,
    ) -> None:
        self.settings = settings
        self.project_root = (project_root or Path.cwd()).resolve()
        self.artifacts = artifacts or ArtifactStore(settings.resolved_output_dir())

    def launcher_path(self) -> Path:
        launcher = Path(self.settings.launcher).expanduser()
        if not launcher.is_absolute():
            launcher = self.project_root / launcher
        return launcher

    def build_command(
        self,
        worker_id: str,
        task_name: str,
        context_ref: Path | None = None,
        extra_args: list[str] | str | None = None,
    ) -> list[str]:
        command = [
            self.settings.shell,
            str(self.launcher_path()),
            validate_identifier(worker_id, "worker ID"),
            validate_identifier(task_name, "task"),
            *_normalize_extra_args(extra_args),
        ]
        if context_ref is not None:
            command.extend(["--context", str(context_ref)])
        return command

    def _environment(self, handle: DispatchHandle) -> dict[str, str]:
        env = os.environ.copy()
        env["FOREMAN_DEBUG"] = "true" if self.settings.debug else "false"
        env["FOREMAN_OUTPUT_DIR"] = str(self.artifacts.output_dir)
        env["FOREMAN_OUTPUT_FILE"] = str(handle.output_ref)
        env["FOREMAN_LOCK_FILE"] = str(handle.lock_ref)
        env["FOREMAN_INVOCATION_ID"] = handle.invocation_id
        return env

    async def dispatch(
        self,
        worker_id: str,
        task_name: str,
        context_ref: Path | None = None,
        extra_args: list[str] | str | None = None,
    ) -> DispatchHandle:
        command = self.build_command(worker_id, task_name, context_ref, extra_args)
        if not is_dispatch_available():
            raise UnsupportedPlatformError(
                f"Worker dispatch is not supported on platform: {sys.platform}",
                worker_id=worker_id,
            )
        launcher = self.launcher_path()
        if not launcher.is_file():
            raise LauncherNotFoundError(
                f"Launcher script not found at: {launcher}", worker_id=worker_id
            )

        invocation_id = new_invocation_id()
        handle = DispatchHandle(
            invocation_id=invocation_id,
            output_ref=self.artifacts.output_path(invocation_id),
            lock_ref=self.artifacts.lock_path(invocation_id),
        )
        self.artifacts.create_lock(handle.lock_ref, invocation_id)
        logger.debug("Executing: %s", shlex.join(command))

        try:
            stdout = await self._run_launcher(command, handle, worker_id)
        except BaseException:
            self.artifacts.discard(handle.lock_ref)
            raise

        printed = stdout.strip().splitlines()
        if not printed:
            return handle
        output_ref = Path(printed[-1].strip())
        if output_ref == handle.output_ref:
            return handle
        # The launcher picked its own output location; its lock is derived from that name.
        self.artifacts.discard(handle.lock_ref)
        if "output" not in output_ref.name:
            raise DispatchFailureError(
                f"Launcher reported an output file without 'output' in its name: {output_ref}",
                worker_id=worker_id,
            )
        logger.debug("Launcher reported output file: %s", output_ref)
        return DispatchHandle(
            invocation_id=invocation_id,
            output_ref=output_ref,
            lock_ref=derive_lock_ref(output_ref),
        )

    async def _run_launcher(
        self, command: list[str], handle: DispatchHandle, worker_id: str
    ) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.project_root),
                env=self._environment(handle),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DispatchFailureError(
                f"Failed to start launcher: {exc}", worker_id=worker_id
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.settings.timeout_ms / 1000
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise DispatchFailureError(
                f"Launcher did not return within {self.settings.timeout_ms}ms",
                worker_id=worker_id,
            ) from exc

        if process.returncode != 0:
            stderr_output = stderr.decode("utf-8", errors="replace").strip()
            raise DispatchFailureError(
                f"Launcher failed with exit code {process.returncode}: {stderr_output}",
                worker_id=worker_id,
                exit_code=process.returncode,
            )
        return stdout.decode("utf-8", errors="replace")
