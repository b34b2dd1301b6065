from foreman.state.artifacts import ArtifactStore, ContextArtifact
from foreman.state.store import WorkflowStateError, WorkflowStore

__all__ = ["ArtifactStore", "ContextArtifact", "WorkflowStateError", "WorkflowStore"]
