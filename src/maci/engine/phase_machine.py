"""Poll phase state machine — enforces legal lifecycle transitions.

Poll lifecycle:
    UNINITIALIZED → KEYS_GENERATED → POLL_CREATED → SIGNUP_OPEN
        → MESSAGES_PUBLISHED → PROCESSED → TALLIED → VERIFIED

Phase semantics:
- KEYS_GENERATED: coordinator keypair exists; its public key is committed.
- POLL_CREATED: poll deployed with derived tree depths.
- SIGNUP_OPEN: at least one voter signed up; more signups may follow.
- MESSAGES_PUBLISHED: signups closed, messages accumulating.
- PROCESSED / TALLIED: off-chain computation committed.
- VERIFIED: terminal, proofs checked.

Each operation declares the phases it may run in and the phase it commits.
Signup and publish are multi-call: they append artifacts and commit their
phase only on the first call. A poll marked failed in some phase accepts
only a retry of that phase's operation until it is reset.

Pure computation: validates only. Checkpointing and locking are the
orchestrator's job.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from maci.errors import IllegalTransitionError
from maci.models.poll import PHASE_ORDER, Phase


class Operation(str, enum.Enum):
    GENERATE_KEYPAIR = "generateKeypair"
    CREATE_POLL = "createPoll"
    SIGNUP = "signup"
    PUBLISH = "publish"
    CHECK_STATE_ROOT = "checkStateRoot"
    PROCESS = "process"
    TALLY = "tally"
    VERIFY = "verify"


# Valid commits: {from_phase: {allowed_to_phases}}
_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.UNINITIALIZED: {Phase.KEYS_GENERATED},
    Phase.KEYS_GENERATED: {Phase.POLL_CREATED},
    Phase.POLL_CREATED: {Phase.SIGNUP_OPEN},
    Phase.SIGNUP_OPEN: {Phase.MESSAGES_PUBLISHED},
    Phase.MESSAGES_PUBLISHED: {Phase.PROCESSED},
    Phase.PROCESSED: {Phase.TALLIED},
    Phase.TALLIED: {Phase.VERIFIED},
    # Terminal
    Phase.VERIFIED: set(),
}


@dataclass(frozen=True)
class OperationRule:
    required: tuple[Phase, ...]
    commits: Optional[Phase]
    multi_call: bool = False


_AFTER_CREATION = PHASE_ORDER[PHASE_ORDER.index(Phase.POLL_CREATED):]

_OPERATIONS: dict[Operation, OperationRule] = {
    Operation.GENERATE_KEYPAIR: OperationRule(
        (Phase.UNINITIALIZED,), Phase.KEYS_GENERATED,
    ),
    Operation.CREATE_POLL: OperationRule(
        (Phase.KEYS_GENERATED,), Phase.POLL_CREATED,
    ),
    Operation.SIGNUP: OperationRule(
        (Phase.POLL_CREATED, Phase.SIGNUP_OPEN), Phase.SIGNUP_OPEN, multi_call=True,
    ),
    Operation.PUBLISH: OperationRule(
        (Phase.SIGNUP_OPEN, Phase.MESSAGES_PUBLISHED), Phase.MESSAGES_PUBLISHED,
        multi_call=True,
    ),
    Operation.CHECK_STATE_ROOT: OperationRule(_AFTER_CREATION, None),
    Operation.PROCESS: OperationRule((Phase.MESSAGES_PUBLISHED,), Phase.PROCESSED),
    Operation.TALLY: OperationRule((Phase.PROCESSED,), Phase.TALLIED),
    Operation.VERIFY: OperationRule((Phase.TALLIED,), Phase.VERIFIED),
}


class PollStateMachine:
    """Validates phase commits and operation preconditions."""

    @staticmethod
    def validate_transition(current: Phase, target: Phase) -> list[str]:
        """Check if committing ``target`` after ``current`` is valid. Returns errors (empty = OK)."""
        allowed = _TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_str = ", ".join(p.value for p in sorted(allowed, key=lambda p: p.order))
            return [
                f"Invalid phase transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def require_transition(
        current: Phase,
        target: Phase,
        *,
        poll_id: Optional[str] = None,
    ) -> None:
        """Raise IllegalTransitionError unless ``target`` may be committed now."""
        errors = PollStateMachine.validate_transition(current, target)
        if errors:
            required = tuple(p for p in PHASE_ORDER if target in _TRANSITIONS[p])
            raise IllegalTransitionError(
                f"commit {target.value}", required, current, poll_id=poll_id,
            )

    @staticmethod
    def next_phase(phase: Phase) -> Optional[Phase]:
        """The only phase that may be committed after ``phase`` (None when terminal)."""
        allowed = _TRANSITIONS.get(phase, set())
        return next(iter(allowed), None)

    @staticmethod
    def rule(operation: Operation) -> OperationRule:
        return _OPERATIONS[operation]

    @staticmethod
    def validate_operation(
        operation: Operation,
        current: Phase,
        failed: Optional[Phase] = None,
    ) -> list[str]:
        """Check if ``operation`` may run now. Returns errors (empty = OK)."""
        rule = _OPERATIONS[operation]
        errors: list[str] = []
        if current not in rule.required:
            required_str = " | ".join(p.value for p in rule.required)
            errors.append(
                f"{operation.value} requires phase {required_str}, poll is in {current.value}"
            )
        if failed is not None and rule.commits is not None and rule.commits != failed:
            errors.append(
                f"poll failed during {failed.value}; retry that phase or reset the poll"
            )
        return errors

    @staticmethod
    def require_operation(
        operation: Operation,
        current: Phase,
        *,
        poll_id: Optional[str] = None,
        failed: Optional[Phase] = None,
    ) -> None:
        """Raise IllegalTransitionError unless ``operation`` may run now."""
        rule = _OPERATIONS[operation]
        errors = PollStateMachine.validate_operation(operation, current, failed)
        if errors:
            reason = ""
            if failed is not None and current in rule.required:
                reason = errors[-1]
            raise IllegalTransitionError(
                operation.value, rule.required, current, poll_id=poll_id, reason=reason,
            )
