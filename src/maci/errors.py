"""Error taxonomy for the coordinator.

Local errors (bad sizing input, illegal transitions) are caller bugs and
surface immediately. Provider errors wrap failures of the external key,
chain and proving services and carry the poll and phase they happened in,
so the caller can decide whether to retry. The orchestrator itself never
retries.
"""

from __future__ import annotations

from typing import Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from maci.models.poll import Phase


class MaciError(Exception):
    """Base class for every error raised by the coordinator."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        poll_id: Optional[str] = None,
        phase: Optional["Phase"] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.poll_id = poll_id
        self.phase = phase

    @property
    def kind(self) -> str:
        return type(self).__name__

    def with_context(
        self,
        poll_id: Optional[str] = None,
        phase: Optional["Phase"] = None,
    ) -> "MaciError":
        """Fill in poll/phase context if the raiser did not know it."""
        if self.poll_id is None:
            self.poll_id = poll_id
        if self.phase is None:
            self.phase = phase
        return self

    def __str__(self) -> str:
        context = []
        if self.poll_id is not None:
            context.append(f"poll={self.poll_id}")
        if self.phase is not None:
            context.append(f"phase={self.phase.value}")
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ConfigError(MaciError):
    """Raised when coordinator configuration is missing or invalid."""


class InvalidCapacityError(MaciError):
    """Raised for unsupported branching factors or non-positive leaf counts."""


class IllegalTransitionError(MaciError):
    """Raised when an operation is attempted in the wrong phase."""

    def __init__(
        self,
        operation: str,
        required: Iterable["Phase"],
        actual: "Phase",
        *,
        poll_id: Optional[str] = None,
        reason: str = "",
    ) -> None:
        self.operation = operation
        self.required = tuple(required)
        self.actual = actual
        required_str = " | ".join(p.value for p in self.required) or "none"
        message = (
            f"Illegal transition: {operation} requires phase {required_str}, "
            f"poll is in {actual.value}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, poll_id=poll_id, phase=actual)


class ProviderError(MaciError):
    """An external operation provider failed. Possibly transient."""

    retryable = True


class KeyGenerationError(ProviderError):
    """Key derivation or generation failed in the key service."""


class ChainSubmissionError(ProviderError):
    """The chain/contract service rejected or failed a submission."""


class ProvingError(ProviderError):
    """Message processing or tallying failed in the prover."""


class TransitionTimeoutError(ProviderError):
    """A transition exceeded the caller-supplied timeout. Nothing was committed."""


class CoordinatorKeyError(MaciError):
    """The coordinator private key is missing or does not match the poll."""


class StateMismatchError(MaciError):
    """The computed state (its root or its index layout) differs from the expected one."""

    def __init__(
        self,
        expected: str,
        actual: str,
        *,
        poll_id: Optional[str] = None,
        phase: Optional["Phase"] = None,
        subject: str = "State root",
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{subject} mismatch: expected {expected}, computed {actual}",
            poll_id=poll_id,
            phase=phase,
        )


class VerificationFailedError(MaciError):
    """A proof did not verify. Not transient: the proof itself is wrong."""


class NoProofAvailableError(MaciError):
    """verify() was called against checkpoints produced without proofs."""


class NoCheckpointError(MaciError):
    """coordinatorReset was called on a poll with nothing to recover."""


class OperationDiscardedError(MaciError):
    """An in-flight operation was discarded by a reset before it reached the chain."""


class ScenarioValidationError(MaciError):
    """A scenario suite failed validation at load time."""
