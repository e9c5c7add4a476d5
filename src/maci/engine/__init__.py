"""Poll lifecycle engine: phase machine, orchestrator, recovery, fast path."""

from maci.engine.fast_path import FastPathResult, FastPathRunner
from maci.engine.orchestrator import KeygenResult, PhaseOrchestrator, PollSession
from maci.engine.phase_machine import Operation, PollStateMachine
from maci.engine.recovery import RecoveryController, RecoveryReport

__all__ = [
    "FastPathResult",
    "FastPathRunner",
    "KeygenResult",
    "Operation",
    "PhaseOrchestrator",
    "PollSession",
    "PollStateMachine",
    "RecoveryController",
    "RecoveryReport",
]
