from __future__ import annotations

import contextvars
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from foreman.assignment import assign_executor_from_content
from foreman.config import ForemanConfig, GateConfig, StageConfig
from foreman.dispatch.invoker import InvocationController, InvocationResult
from foreman.gates import GateEvaluator, GateResult, GateVerdict, OutputArtifact
from foreman.notifier import NotificationType, Notifier
from foreman.recovery import RecoveryDecision, RecoveryHandler, RecoveryStrategy
from foreman.state.artifacts import ContextArtifact
from foreman.state.store import WorkflowStore

logger = logging.getLogger(__name__)

AUTO_WORKER = "auto"

_current_workflow: contextvars.ContextVar[str] = contextvars.ContextVar(
    "foreman_workflow_id", default=""
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class OrchestratorError(RuntimeError):
    """Raised for operations that the workflow's current state does not allow."""


class WorkflowStopped(OrchestratorError):
    """Raised inside a running workflow once `stop` has aborted it."""


class OrchestratorStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    GATED_FAIL = "gated_fail"
    RECOVERING = "recovering"
    AWAITING_INPUT = "awaiting_input"
    ABORTED = "aborted"
    COMPLETED = "completed"
    COMPLETED_WITH_SKIPS = "completed_with_skips"

    @property
    def terminal(self) -> bool:
        return self in {
            OrchestratorStatus.ABORTED,
            OrchestratorStatus.COMPLETED,
            OrchestratorStatus.COMPLETED_WITH_SKIPS,
        }


_DONE = {OrchestratorStatus.COMPLETED, OrchestratorStatus.COMPLETED_WITH_SKIPS}
ALLOWED_TRANSITIONS: dict[OrchestratorStatus, set[OrchestratorStatus]] = {
    OrchestratorStatus.PENDING: {OrchestratorStatus.RUNNING, OrchestratorStatus.ABORTED} | _DONE,
    OrchestratorStatus.RUNNING: {
        OrchestratorStatus.RUNNING,
        OrchestratorStatus.GATED_FAIL,
        OrchestratorStatus.RECOVERING,
        OrchestratorStatus.ABORTED,
    }
    | _DONE,
    OrchestratorStatus.GATED_FAIL: {OrchestratorStatus.RECOVERING, OrchestratorStatus.ABORTED},
    OrchestratorStatus.RECOVERING: {
        OrchestratorStatus.RUNNING,
        OrchestratorStatus.AWAITING_INPUT,
        OrchestratorStatus.ABORTED,
    }
    | _DONE,
    OrchestratorStatus.AWAITING_INPUT: {
        OrchestratorStatus.RUNNING,
        OrchestratorStatus.ABORTED,
    }
    | _DONE,
}


class Resolution(StrEnum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    WAIVE = "waive"


@dataclass(slots=True)
class StageResult:
    stage: str
    worker: str
    verdict: str
    attempts: int
    skipped: bool = False
    reasons: list[str] = field(default_factory=list)
    output_ref: str = ""

    @property
    def label(self) -> str:
        return "SKIPPED" if self.skipped else self.verdict


@dataclass(slots=True)
class WorkflowState:
    workflow_id: str
    story_ref: str
    status: OrchestratorStatus = OrchestratorStatus.PENDING
    stage_index: int = 0
    stage_results: list[StageResult] = field(default_factory=list)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    resolutions: list[dict[str, Any]] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    assignment: dict[str, str] | None = None
    pending_failure: dict[str, Any] | None = None
    failing_stage: str | None = None
    last_reasons: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "story_ref": self.story_ref,
            "status": self.status.value,
            "stage_index": self.stage_index,
            "stage_results": [
                {
                    "stage": result.stage,
                    "worker": result.worker,
                    "verdict": result.verdict,
                    "attempts": result.attempts,
                    "skipped": result.skipped,
                    "reasons": list(result.reasons),
                    "output_ref": result.output_ref,
                }
                for result in self.stage_results
            ],
            "history": {stage: list(items) for stage, items in self.history.items()},
            "resolutions": list(self.resolutions),
            "files": list(self.files),
            "metadata": dict(self.metadata),
            "assignment": self.assignment,
            "pending_failure": self.pending_failure,
            "failing_stage": self.failing_stage,
            "last_reasons": list(self.last_reasons),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowState:
        return cls(
            workflow_id=str(payload["workflow_id"]),
            story_ref=str(payload.get("story_ref", "")),
            status=OrchestratorStatus(payload.get("status", "pending")),
            stage_index=int(payload.get("stage_index", 0)),
            stage_results=[StageResult(**item) for item in payload.get("stage_results", [])],
            history={
                str(stage): list(items) for stage, items in payload.get("history", {}).items()
            },
            resolutions=list(payload.get("resolutions", [])),
            files=[str(item) for item in payload.get("files", [])],
            metadata=dict(payload.get("metadata", {})),
            assignment=payload.get("assignment"),
            pending_failure=payload.get("pending_failure"),
            failing_stage=payload.get("failing_stage"),
            last_reasons=[str(item) for item in payload.get("last_reasons", [])],
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
        )


@dataclass(slots=True)
class WorkflowReport:
    workflow_id: str
    status: OrchestratorStatus
    stage_verdicts: dict[str, str]
    failing_stage: str | None = None
    last_reasons: list[str] = field(default_factory=list)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @classmethod
    def from_state(cls, state: WorkflowState) -> WorkflowReport:
        return cls(
            workflow_id=state.workflow_id,
            status=state.status,
            stage_verdicts={result.stage: result.label for result in state.stage_results},
            failing_stage=state.failing_stage,
            last_reasons=list(state.last_reasons),
            history={stage: list(items) for stage, items in state.history.items()},
        )

    @property
    def completed(self) -> bool:
        return self.status in _DONE

    @property
    def awaiting_input(self) -> bool:
        return self.status is OrchestratorStatus.AWAITING_INPUT

    @property
    def aborted(self) -> bool:
        return self.status is OrchestratorStatus.ABORTED


class MasterOrchestrator:
    """Drives a story through the configured stages, one invocation at a time.

    Gate failures are ordinary control flow routed to the recovery handler.
    Only ABORT ends a workflow early; ESCALATE parks it in AWAITING_INPUT until
    ``resume`` is called with a human decision.
    """

    def __init__(
        self,
        invoker: InvocationController,
        config: ForemanConfig,
        *,
        store: WorkflowStore,
        evaluator: GateEvaluator | None = None,
        recovery: RecoveryHandler | None = None,
        notifier: Notifier | None = None,
        project_root: Path | None = None,
    ) -> None:
        self.invoker = invoker
        self.config = config
        self.store = store
        self.evaluator = evaluator or GateEvaluator()
        self.recovery = recovery or RecoveryHandler(config.recovery)
        self.notifier = notifier or Notifier()
        self.project_root = (project_root or Path.cwd()).resolve()
        if self.invoker.event_hook is None:
            self.invoker.event_hook = self._forward_invocation_event

    @property
    def stages(self) -> list[StageConfig]:
        return self.config.stages

    def _forward_invocation_event(self, event: dict[str, Any]) -> None:
        workflow_id = _current_workflow.get()
        if workflow_id:
            self.notifier.emit(NotificationType.INVOCATION, workflow_id, dict(event))

    def _persist(self, state: WorkflowState) -> None:
        state.updated_at = _utcnow_iso()
        self.store.save(state.workflow_id, state.to_dict())

    def _stop_requested(self, workflow_id: str) -> bool:
        payload = self.store.load(workflow_id) if self.store.exists(workflow_id) else {}
        return payload.get("status") == OrchestratorStatus.ABORTED.value

    def _transition(
        self, state: WorkflowState, status: OrchestratorStatus, **payload: Any
    ) -> None:
        previous = state.status
        if status not in ALLOWED_TRANSITIONS.get(previous, set()):
            raise OrchestratorError(
                f"Illegal workflow transition {previous.value} -> {status.value} "
                f"for {state.workflow_id}"
            )
        if status is not OrchestratorStatus.ABORTED and self._stop_requested(state.workflow_id):
            raise WorkflowStopped(f"Workflow {state.workflow_id} was stopped.")
        state.status = status
        self._persist(state)
        logger.info("Workflow %s: %s -> %s", state.workflow_id, previous.value, status.value)
        self.notifier.emit(
            NotificationType.STATE_CHANGED,
            state.workflow_id,
            {"from": previous.value, "status": status.value, **payload},
        )

    def _stage_history(self, state: WorkflowState, stage: StageConfig) -> list[RecoveryDecision]:
        return [
            RecoveryDecision.from_dict(item["decision"])
            for item in state.history.get(stage.name, [])
        ]

    def _gate_config(self, stage: StageConfig) -> GateConfig:
        if stage.required_checks:
            return replace(self.config.gates, required_checks=list(stage.required_checks))
        return self.config.gates

    def _story_content(self, story_ref: str) -> str:
        candidate = Path(story_ref)
        if not candidate.is_absolute():
            candidate = self.project_root / candidate
        try:
            return candidate.read_text(encoding="utf-8")
        except (OSError, ValueError):
            return story_ref

    def _resolve_worker(self, state: WorkflowState, stage: StageConfig) -> str:
        if stage.worker != AUTO_WORKER:
            return stage.worker
        if state.assignment is None:
            assignment = assign_executor_from_content(self._story_content(state.story_ref))
            state.assignment = {
                "story_type": assignment.story_type,
                "executor": assignment.executor,
                "quality_gate": assignment.quality_gate,
            }
            logger.info(
                "Workflow %s: %s story assigned to %s (gate %s)",
                state.workflow_id,
                assignment.story_type,
                assignment.executor,
                assignment.quality_gate,
            )
        return state.assignment["executor"]

    def _stage_context(self, state: WorkflowState, stage: StageConfig) -> ContextArtifact:
        metadata: dict[str, Any] = dict(state.metadata)
        metadata.update(
            {
                "workflow_id": state.workflow_id,
                "stage": stage.name,
                "attempt": len(state.history.get(stage.name, [])) + 1,
            }
        )
        if stage.worker == AUTO_WORKER and state.assignment:
            metadata["quality_gate"] = state.assignment["quality_gate"]
        return ContextArtifact(
            story_ref=state.story_ref,
            related_files=tuple(state.files),
            instructions=stage.instructions,
            metadata=metadata,
        )

    def _record_stage(
        self,
        state: WorkflowState,
        stage: StageConfig,
        worker: str,
        gate: GateResult,
        *,
        output_ref: str = "",
        skipped: bool = False,
    ) -> None:
        state.stage_results.append(
            StageResult(
                stage=stage.name,
                worker=worker,
                verdict=gate.verdict.value,
                attempts=len(state.history.get(stage.name, [])) + (0 if skipped else 1),
                skipped=skipped,
                reasons=list(gate.reasons),
                output_ref=output_ref,
            )
        )
        state.stage_index += 1
        state.pending_failure = None

    def _complete(self, state: WorkflowState) -> None:
        if all(not result.skipped for result in state.stage_results):
            status = OrchestratorStatus.COMPLETED
        else:
            status = OrchestratorStatus.COMPLETED_WITH_SKIPS
        state.failing_stage = None
        self._transition(state, status)
        self.notifier.emit(
            NotificationType.WORKFLOW_COMPLETED,
            state.workflow_id,
            {
                "status": status.value,
                "stages": {result.stage: result.label for result in state.stage_results},
            },
        )

    def _abort(self, state: WorkflowState, stage_name: str | None, reason: str) -> None:
        state.failing_stage = stage_name
        self._transition(state, OrchestratorStatus.ABORTED, stage=stage_name, reason=reason)
        self.notifier.emit(
            NotificationType.WORKFLOW_ABORTED,
            state.workflow_id,
            {
                "status": OrchestratorStatus.ABORTED.value,
                "stage": stage_name,
                "reasons": list(state.last_reasons),
            },
        )

    async def _run_stage(self, state: WorkflowState, stage: StageConfig) -> None:
        self._transition(state, OrchestratorStatus.RUNNING, stage=stage.name)
        worker = self._resolve_worker(state, stage)
        self.notifier.emit(
            NotificationType.STAGE_STARTED,
            state.workflow_id,
            {
                "stage": stage.name,
                "worker": worker,
                "task": stage.task,
                "attempt": len(state.history.get(stage.name, [])) + 1,
            },
        )
        result = await self.invoker.invoke(
            worker,
            stage.task,
            extra_args=stage.params or None,
            context=self._stage_context(state, stage),
        )

        failure: InvocationResult | GateResult
        if result.success:
            output = OutputArtifact(
                ref=result.output_ref, content=result.output, completed_at=_utcnow_iso()
            )
            gate = self.evaluator.evaluate(output, self._gate_config(stage))
            self.notifier.emit(
                NotificationType.GATE_EVALUATED,
                state.workflow_id,
                {"stage": stage.name, **gate.to_dict()},
            )
            if gate.verdict.passed:
                self._record_stage(state, stage, worker, gate, output_ref=result.output_ref)
                return
            state.pending_failure = {
                "kind": "gate",
                "worker": worker,
                "gate": gate.to_dict(),
                "output": {
                    "ref": output.ref,
                    "content": output.content,
                    "completed_at": output.completed_at,
                },
            }
            state.last_reasons = list(gate.reasons)
            self._transition(
                state, OrchestratorStatus.GATED_FAIL, stage=stage.name, verdict=gate.verdict.value
            )
            failure = gate
        else:
            state.pending_failure = {
                "kind": "invocation",
                "worker": worker,
                "invocation": result.to_dict(),
            }
            state.last_reasons = [result.error or "invocation failed"]
            failure = result

        self._transition(state, OrchestratorStatus.RECOVERING, stage=stage.name)
        decision = self.recovery.decide(
            failure, self._stage_history(state, stage), stage=stage
        )
        state.history.setdefault(stage.name, []).append(
            {
                "decision": decision.to_dict(),
                "failure": state.pending_failure["kind"],
                "reasons": list(state.last_reasons),
                "at": _utcnow_iso(),
            }
        )
        self.notifier.emit(
            NotificationType.RECOVERY_DECIDED,
            state.workflow_id,
            {"stage": stage.name, **decision.to_dict()},
        )
        logger.info(
            "Workflow %s stage %s: %s (%s)",
            state.workflow_id,
            stage.name,
            decision.strategy.value,
            decision.reason,
        )

        if decision.strategy is RecoveryStrategy.RETRY:
            return
        if decision.strategy is RecoveryStrategy.SKIP:
            skipped_gate = failure if isinstance(failure, GateResult) else None
            self._record_stage(
                state,
                stage,
                worker,
                skipped_gate
                or GateResult(GateVerdict.FAIL, tuple(state.last_reasons), _utcnow_iso()),
                skipped=True,
            )
            return
        if decision.strategy is RecoveryStrategy.ESCALATE:
            state.failing_stage = stage.name
            self._transition(state, OrchestratorStatus.AWAITING_INPUT, stage=stage.name)
            self.notifier.emit(
                NotificationType.AWAITING_INPUT,
                state.workflow_id,
                {
                    "stage": stage.name,
                    "status": OrchestratorStatus.AWAITING_INPUT.value,
                    "reasons": list(state.last_reasons),
                },
            )
            return
        self._abort(state, stage.name, decision.reason)

    async def _drive(self, state: WorkflowState) -> WorkflowReport:
        token = _current_workflow.set(state.workflow_id)
        try:
            while not state.status.terminal:
                if state.status is OrchestratorStatus.AWAITING_INPUT:
                    break
                if state.stage_index >= len(self.stages):
                    self._complete(state)
                    break
                await self._run_stage(state, self.stages[state.stage_index])
        except WorkflowStopped:
            logger.info(
                "Workflow %s was stopped during stage %d", state.workflow_id, state.stage_index
            )
            return WorkflowReport.from_state(self.status(state.workflow_id))
        except Exception as exc:
            if not state.status.terminal:
                state.last_reasons = [f"unrecoverable error: {exc}"]
                stage_name = (
                    self.stages[state.stage_index].name
                    if state.stage_index < len(self.stages)
                    else None
                )
                self._abort(state, stage_name, str(exc))
            raise
        finally:
            _current_workflow.reset(token)
        return WorkflowReport.from_state(state)

    async def run(
        self,
        story_ref: str,
        *,
        workflow_id: str | None = None,
        files: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowReport:
        if not self.stages:
            raise OrchestratorError("No stages configured.")
        workflow_id = (
            workflow_id or f"wf-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        )
        if self.store.exists(workflow_id):
            raise OrchestratorError(f"Workflow already exists: {workflow_id}")

        state = WorkflowState(
            workflow_id=workflow_id,
            story_ref=story_ref,
            files=list(files or []),
            metadata=dict(metadata or {}),
        )
        self._persist(state)
        await self.notifier.start()
        try:
            self.notifier.emit(
                NotificationType.WORKFLOW_STARTED,
                workflow_id,
                {
                    "status": state.status.value,
                    "story": story_ref,
                    "stages": [stage.name for stage in self.stages],
                },
            )
            return await self._drive(state)
        finally:
            await self.notifier.aclose()

    def status(self, workflow_id: str) -> WorkflowState:
        return WorkflowState.from_dict(self.store.load(workflow_id))

    async def resume(
        self,
        workflow_id: str,
        resolution: Resolution | str,
        *,
        reason: str = "",
    ) -> WorkflowReport:
        state = self.status(workflow_id)
        if state.status is not OrchestratorStatus.AWAITING_INPUT:
            raise OrchestratorError(
                f"Workflow {workflow_id} is {state.status.value}, not awaiting input."
            )
        if state.stage_index >= len(self.stages):
            raise OrchestratorError(f"Workflow {workflow_id} has no pending stage.")
        resolution = Resolution(resolution)
        stage = self.stages[state.stage_index]
        pending = state.pending_failure or {}

        waived_gate: GateResult | None = None
        if resolution is Resolution.WAIVE:
            if pending.get("kind") != "gate":
                raise OrchestratorError("Only a gate result can be waived.")
            output = OutputArtifact(**pending["output"])
            waived_gate = self.evaluator.evaluate(
                output, self._gate_config(stage), waiver=reason or "approved by operator"
            )
            if waived_gate.verdict is not GateVerdict.WAIVED:
                raise OrchestratorError("Waivers are disabled by the gate configuration.")

        state.resolutions.append(
            {
                "stage": stage.name,
                "resolution": resolution.value,
                "reason": reason,
                "at": _utcnow_iso(),
            }
        )

        await self.notifier.start()
        token = _current_workflow.set(workflow_id)
        try:
            worker = str(pending.get("worker") or stage.worker)
            if resolution is Resolution.ABORT:
                self._abort(state, stage.name, reason or "aborted by operator")
                return WorkflowReport.from_state(state)
            if resolution is Resolution.RETRY:
                # A human retry starts a fresh attempt budget for the stage.
                state.history.pop(stage.name, None)
                state.pending_failure = None
            elif resolution is Resolution.SKIP:
                gate = (
                    GateResult.from_dict(pending["gate"])
                    if pending.get("kind") == "gate"
                    else GateResult(GateVerdict.FAIL, tuple(state.last_reasons), _utcnow_iso())
                )
                self._record_stage(state, stage, worker, gate, skipped=True)
            elif waived_gate is not None:
                self._record_stage(
                    state, stage, worker, waived_gate, output_ref=str(pending["output"]["ref"])
                )
            state.failing_stage = None
            if state.stage_index < len(self.stages):
                self._transition(state, OrchestratorStatus.RUNNING, resolution=resolution.value)
            return await self._drive(state)
        finally:
            _current_workflow.reset(token)
            await self.notifier.aclose()

    async def stop(self, workflow_id: str, *, reason: str = "") -> WorkflowReport:
        """Abort a workflow that has not finished yet.

        A run in flight notices the stop at its next state transition and
        returns the aborted report without starting further stages.
        """
        state = self.status(workflow_id)
        if state.status.terminal:
            raise OrchestratorError(f"Workflow {workflow_id} is already {state.status.value}.")
        stage_name = (
            self.stages[state.stage_index].name if state.stage_index < len(self.stages) else None
        )
        reason = reason or "stopped by operator"
        state.last_reasons = [*state.last_reasons, f"stopped: {reason}"]
        state.resolutions.append(
            {"stage": stage_name, "resolution": "stop", "reason": reason, "at": _utcnow_iso()}
        )
        await self.notifier.start()
        try:
            self._abort(state, stage_name, reason)
        finally:
            await self.notifier.aclose()
        return WorkflowReport.from_state(state)
