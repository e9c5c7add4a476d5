"""Core data models for the coordinator."""

from maci.models.poll import (
    ArtifactKind,
    ArtifactRecord,
    Keypair,
    Phase,
    PhaseCheckpoint,
    PollSizing,
    TreeSizingSpec,
    VoteCommand,
)
from maci.models.scenario import ExecutionResult, StepOutcome, StepResult
from maci.models.state import StateLeaf, StateSnapshot

__all__ = [
    "ArtifactKind",
    "ArtifactRecord",
    "ExecutionResult",
    "Keypair",
    "Phase",
    "PhaseCheckpoint",
    "PollSizing",
    "StateLeaf",
    "StateSnapshot",
    "StepOutcome",
    "StepResult",
    "TreeSizingSpec",
    "VoteCommand",
]
