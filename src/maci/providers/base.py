"""Interfaces of the external operation providers.

The orchestrator treats key generation, chain submission, proving and
proof verification as opaque, possibly long-running services. Every
provider method is a coroutine; timeouts and retries are the provider's
business, and any exception it raises is surfaced to the orchestrator's
caller with poll and phase context attached.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from maci.models.poll import Keypair, VoteCommand
from maci.models.state import StateSnapshot


@dataclass(frozen=True)
class PollContext:
    """Public parameters of a created poll, as passed to the providers."""
    poll_id: str
    poll_address: str
    coordinator_pubkey: str
    state_tree_depth: int
    message_tree_depth: int
    vote_option_tree_depth: int
    max_users: int
    max_messages: int
    max_vote_options: int

    @staticmethod
    def from_artifacts(
        poll_id: str,
        coordinator_pubkey: str,
        artifacts: dict[str, Any],
    ) -> PollContext:
        return PollContext(
            poll_id=poll_id,
            poll_address=artifacts["poll_address"],
            coordinator_pubkey=coordinator_pubkey,
            state_tree_depth=artifacts["state_tree_depth"],
            message_tree_depth=artifacts["message_tree_depth"],
            vote_option_tree_depth=artifacts["vote_option_tree_depth"],
            max_users=artifacts["max_users"],
            max_messages=artifacts["max_messages"],
            max_vote_options=artifacts["max_vote_options"],
        )


@dataclass(frozen=True)
class ProcessBatchOutcome:
    """Result of processing one batch of messages."""
    batch_index: int
    state: StateSnapshot
    prev_state_root: str
    new_state_root: str
    message_batch_hash: str
    valid_messages: int
    invalid_messages: int
    proof: Optional[dict[str, Any]]

    def to_artifact(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "prev_state_root": self.prev_state_root,
            "new_state_root": self.new_state_root,
            "message_batch_hash": self.message_batch_hash,
            "valid_messages": self.valid_messages,
            "invalid_messages": self.invalid_messages,
            "proof": self.proof,
        }


@dataclass(frozen=True)
class TallyBatchOutcome:
    """Running tally after one batch of state leaves."""
    batch_index: int
    start_index: int
    results: tuple[int, ...]
    per_option_spent: tuple[int, ...]
    spent_voice_credits: int
    prev_commitment: str
    new_commitment: str
    proof: Optional[dict[str, Any]]

    def to_artifact(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "start_index": self.start_index,
            "prev_tally_commitment": self.prev_commitment,
            "new_tally_commitment": self.new_commitment,
            "proof": self.proof,
        }


class KeyService(Protocol):
    async def generate_keypair(self) -> Keypair: ...

    async def derive_pubkey(self, privkey: str) -> str: ...

    async def encrypt_command(
        self, coordinator_pubkey: str, command: VoteCommand,
    ) -> dict[str, Any]: ...


class ChainService(Protocol):
    async def deploy_poll(
        self, poll_id: str, coordinator_pubkey: str, params: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def sign_up(
        self, poll_address: str, pubkey: str, voice_credits: int,
    ) -> dict[str, Any]: ...

    async def publish_message(
        self, poll_address: str, message: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def state_root(self, poll_address: str) -> str: ...

    async def signups(self, poll_address: str) -> list[dict[str, Any]]: ...

    async def messages(self, poll_address: str) -> list[dict[str, Any]]: ...


class ProcessingService(Protocol):
    async def process_batch(
        self,
        ctx: PollContext,
        coordinator_privkey: str,
        state: StateSnapshot,
        batch_index: int,
        messages: Sequence[dict[str, Any]],
        generate_proof: bool,
    ) -> ProcessBatchOutcome: ...


class TallyService(Protocol):
    async def tally_batch(
        self,
        ctx: PollContext,
        state: StateSnapshot,
        batch_index: int,
        start_index: int,
        batch_size: int,
        previous: Optional[TallyBatchOutcome],
        generate_proof: bool,
    ) -> TallyBatchOutcome: ...


class VerificationService(Protocol):
    async def verify(
        self,
        ctx: PollContext,
        processed: dict[str, Any],
        tallied: dict[str, Any],
    ) -> bool: ...


@dataclass(frozen=True)
class ProviderSet:
    """The external services one orchestrator delegates to."""
    keys: KeyService
    chain: ChainService
    prover: ProcessingService
    tallier: TallyService
    verifier: VerificationService
