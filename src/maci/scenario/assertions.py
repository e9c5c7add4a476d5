"""Post-condition checks a scenario step may declare under ``expect``.

Each handler takes the expected value and an AssertionContext and returns
None when the check holds, or a short description of the mismatch.
Values come from the step's own result first and fall back to the poll's
committed checkpoints, so ``phase`` or ``tally`` can be asserted after any
step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from maci.engine.orchestrator import PhaseOrchestrator
from maci.models.poll import Phase


@dataclass(frozen=True)
class AssertionContext:
    orchestrator: PhaseOrchestrator
    poll_id: str
    data: dict[str, Any]

    def artifact(self, phase: Phase, key: str) -> Any:
        cp = self.orchestrator.store.checkpoint(self.poll_id, phase)
        return cp.artifacts.get(key) if cp else None


Handler = Callable[[Any, AssertionContext], Optional[str]]


def _compare(label: str, expected: Any, actual: Any) -> Optional[str]:
    if actual != expected:
        return f"{label}: expected {expected!r}, got {actual!r}"
    return None


def _from_data_or_phase(key: str, phase: Phase, artifact_key: str) -> Handler:
    def check(expected: Any, ctx: AssertionContext) -> Optional[str]:
        actual = ctx.data.get(key)
        if actual is None:
            actual = ctx.artifact(phase, artifact_key)
        return _compare(key, expected, actual)
    return check


def _from_data(key: str) -> Handler:
    def check(expected: Any, ctx: AssertionContext) -> Optional[str]:
        return _compare(key, expected, ctx.data.get(key))
    return check


def _depth(artifact_key: str, label: str) -> Handler:
    def check(expected: Any, ctx: AssertionContext) -> Optional[str]:
        return _compare(label, expected, ctx.artifact(Phase.POLL_CREATED, artifact_key))
    return check


def _phase(expected: Any, ctx: AssertionContext) -> Optional[str]:
    return _compare("phase", expected, ctx.orchestrator.current_phase(ctx.poll_id).value)


def _tally(expected: Any, ctx: AssertionContext) -> Optional[str]:
    actual = ctx.data.get("tally")
    if actual is None:
        actual = ctx.artifact(Phase.TALLIED, "results")
    if actual is None:
        return "tally: poll has not been tallied"
    if not isinstance(expected, list) or len(expected) > len(actual):
        return f"tally: expected {expected!r} does not fit {len(actual)} vote options"
    head, rest = list(actual[:len(expected)]), actual[len(expected):]
    if head != expected or any(rest):
        return f"tally: expected {expected!r} (rest zero), got {list(actual)!r}"
    return None


def _proven(expected: Any, ctx: AssertionContext) -> Optional[str]:
    actual = ctx.data.get("proven")
    if actual is None:
        latest = ctx.orchestrator.store.latest(ctx.poll_id)
        actual = latest is not None and not latest.unproven
    return _compare("proven", expected, actual)


def _verified(expected: Any, ctx: AssertionContext) -> Optional[str]:
    actual = ctx.orchestrator.store.checkpoint(ctx.poll_id, Phase.VERIFIED) is not None
    return _compare("verified", expected, actual)


def _checkpoint_count(expected: Any, ctx: AssertionContext) -> Optional[str]:
    return _compare("checkpointCount", expected, len(ctx.orchestrator.checkpoints(ctx.poll_id)))


# ``error`` is evaluated by the engine against the raised exception.
ERROR_ASSERTION = "error"

ASSERTIONS: dict[str, Handler] = {
    "phase": _phase,
    "stateRoot": _from_data_or_phase("stateRoot", Phase.PROCESSED, "state_root"),
    "tally": _tally,
    "spentVoiceCredits": _from_data_or_phase(
        "spentVoiceCredits", Phase.TALLIED, "spent_voice_credits",
    ),
    "stateTreeDepth": _depth("state_tree_depth", "stateTreeDepth"),
    "messageTreeDepth": _depth("message_tree_depth", "messageTreeDepth"),
    "voteOptionTreeDepth": _depth("vote_option_tree_depth", "voteOptionTreeDepth"),
    "stateIndex": _from_data("stateIndex"),
    "messageIndex": _from_data("messageIndex"),
    "proven": _proven,
    "verified": _verified,
    "checkpointCount": _checkpoint_count,
}

ASSERTION_NAMES = frozenset([*ASSERTIONS, ERROR_ASSERTION])


def evaluate(name: str, expected: Any, ctx: AssertionContext) -> Optional[str]:
    return ASSERTIONS[name](expected, ctx)
