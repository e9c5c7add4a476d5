"""Poll lifecycle models: phases, checkpoints, artifacts and sizing.

Checkpoints and artifacts are immutable once created. Their hash is
computed at creation time over the canonical JSON of their content and is
re-verified whenever a persisted log is loaded.
"""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from maci.crypto.merkle import hash_leaf
from maci.crypto.tree_depth import BINARY, QUINARY, depth_for
from maci.errors import InvalidCapacityError


class Phase(str, enum.Enum):
    """Poll lifecycle phases, in commit order."""
    UNINITIALIZED = "uninitialized"
    KEYS_GENERATED = "keys_generated"
    POLL_CREATED = "poll_created"
    SIGNUP_OPEN = "signup_open"
    MESSAGES_PUBLISHED = "messages_published"  # signup closed
    PROCESSED = "processed"
    TALLIED = "tallied"
    VERIFIED = "verified"

    @property
    def order(self) -> int:
        return PHASE_ORDER.index(self)


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class ArtifactKind(str, enum.Enum):
    SIGNUP = "signup"
    MESSAGE = "message"


_POLL_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def new_poll_id() -> str:
    return f"poll-{uuid.uuid4().hex[:12]}"


def validate_poll_id(poll_id: str) -> str:
    if not isinstance(poll_id, str) or not _POLL_ID_RE.match(poll_id):
        raise ValueError(f"Invalid poll id: {poll_id!r}")
    return poll_id


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class PhaseCheckpoint:
    """Durable record that a phase has committed for a poll.

    ``unproven`` marks checkpoints produced without proof generation; they
    carry the same outputs as proven ones but cannot be verified.
    """
    poll_id: str
    phase: Phase
    committed_at: str
    artifacts: dict[str, Any]
    unproven: bool
    checkpoint_hash: str

    @staticmethod
    def _digest(
        poll_id: str,
        phase: Phase,
        committed_at: str,
        artifacts: dict[str, Any],
        unproven: bool,
    ) -> str:
        return "sha256:" + hash_leaf({
            "poll_id": poll_id,
            "phase": phase.value,
            "committed_at": committed_at,
            "artifacts": artifacts,
            "unproven": unproven,
        })

    @staticmethod
    def create(
        poll_id: str,
        phase: Phase,
        artifacts: dict[str, Any],
        unproven: bool = False,
        committed_at: Optional[str] = None,
    ) -> PhaseCheckpoint:
        ts = committed_at or _utc_now()
        return PhaseCheckpoint(
            poll_id=poll_id,
            phase=phase,
            committed_at=ts,
            artifacts=artifacts,
            unproven=unproven,
            checkpoint_hash=PhaseCheckpoint._digest(poll_id, phase, ts, artifacts, unproven),
        )

    def verify_hash(self) -> bool:
        expected = self._digest(
            self.poll_id, self.phase, self.committed_at, self.artifacts, self.unproven,
        )
        return expected == self.checkpoint_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "poll_id": self.poll_id,
            "phase": self.phase.value,
            "committed_at": self.committed_at,
            "artifacts": self.artifacts,
            "unproven": self.unproven,
            "checkpoint_hash": self.checkpoint_hash,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PhaseCheckpoint:
        return PhaseCheckpoint(
            poll_id=data["poll_id"],
            phase=Phase(data["phase"]),
            committed_at=data["committed_at"],
            artifacts=data["artifacts"],
            unproven=bool(data.get("unproven", False)),
            checkpoint_hash=data["checkpoint_hash"],
        )


@dataclass(frozen=True)
class ArtifactRecord:
    """A signup or published message accepted for a poll.

    Artifacts accumulate while their phase is open and never advance the
    phase on their own.
    """
    poll_id: str
    kind: ArtifactKind
    index: int
    payload: dict[str, Any]
    recorded_at: str
    record_hash: str

    @staticmethod
    def _digest(
        poll_id: str,
        kind: ArtifactKind,
        index: int,
        payload: dict[str, Any],
        recorded_at: str,
    ) -> str:
        return "sha256:" + hash_leaf({
            "poll_id": poll_id,
            "kind": kind.value,
            "index": index,
            "payload": payload,
            "recorded_at": recorded_at,
        })

    @staticmethod
    def create(
        poll_id: str,
        kind: ArtifactKind,
        index: int,
        payload: dict[str, Any],
        recorded_at: Optional[str] = None,
    ) -> ArtifactRecord:
        ts = recorded_at or _utc_now()
        return ArtifactRecord(
            poll_id=poll_id,
            kind=kind,
            index=index,
            payload=payload,
            recorded_at=ts,
            record_hash=ArtifactRecord._digest(poll_id, kind, index, payload, ts),
        )

    def verify_hash(self) -> bool:
        expected = self._digest(
            self.poll_id, self.kind, self.index, self.payload, self.recorded_at,
        )
        return expected == self.record_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "poll_id": self.poll_id,
            "kind": self.kind.value,
            "index": self.index,
            "payload": self.payload,
            "recorded_at": self.recorded_at,
            "record_hash": self.record_hash,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ArtifactRecord:
        return ArtifactRecord(
            poll_id=data["poll_id"],
            kind=ArtifactKind(data["kind"]),
            index=int(data["index"]),
            payload=data["payload"],
            recorded_at=data["recorded_at"],
            record_hash=data["record_hash"],
        )


@dataclass(frozen=True)
class TreeSizingSpec:
    """Declared capacity of one tree; ``depth`` is derived."""
    branching_factor: int
    max_leaves: int

    @property
    def depth(self) -> int:
        return depth_for(self.branching_factor, self.max_leaves)

    @property
    def capacity(self) -> int:
        return self.branching_factor ** self.depth


@dataclass(frozen=True)
class PollSizing:
    """Sizing for a poll's trees.

    ``state`` is a binary tree over signups (leaf 0 is reserved blank),
    ``vote_options`` a quinary tree over vote options. ``messages`` is a
    binary tree over published messages and defaults to the state sizing.
    """
    state: TreeSizingSpec
    vote_options: TreeSizingSpec
    messages: Optional[TreeSizingSpec] = None

    def __post_init__(self) -> None:
        if self.state.branching_factor != BINARY:
            raise InvalidCapacityError("state tree must be binary")
        if self.vote_options.branching_factor != QUINARY:
            raise InvalidCapacityError("vote option tree must be quinary")
        if self.messages is not None and self.messages.branching_factor != BINARY:
            raise InvalidCapacityError("message tree must be binary")
        # Trigger depth validation up front.
        self.state.depth
        self.vote_options.depth
        self.message_spec.depth

    @property
    def message_spec(self) -> TreeSizingSpec:
        return self.messages or self.state

    @classmethod
    def from_capacities(
        cls,
        max_users: int,
        max_vote_options: int,
        max_messages: Optional[int] = None,
    ) -> PollSizing:
        return cls(
            state=TreeSizingSpec(BINARY, max_users),
            vote_options=TreeSizingSpec(QUINARY, max_vote_options),
            messages=TreeSizingSpec(BINARY, max_messages) if max_messages else None,
        )

    def to_artifacts(self) -> dict[str, Any]:
        return {
            "max_users": self.state.max_leaves,
            "max_messages": self.message_spec.max_leaves,
            "max_vote_options": self.vote_options.max_leaves,
            "state_tree_depth": self.state.depth,
            "message_tree_depth": self.message_spec.depth,
            "vote_option_tree_depth": self.vote_options.depth,
        }


@dataclass(frozen=True)
class Keypair:
    """A serialized keypair (``macisk.`` / ``macipk.`` prefixes)."""
    privkey: str
    pubkey: str

    def __repr__(self) -> str:
        return f"Keypair(pubkey={self.pubkey!r})"


@dataclass(frozen=True)
class VoteCommand:
    """A voter's plaintext command before encryption.

    ``nonce`` starts at 1 and must increase by one with every accepted
    command from the same state leaf. ``new_pubkey`` rotates the leaf key.
    """
    privkey: str
    state_index: int
    vote_option_index: int
    new_vote_weight: int
    nonce: int
    new_pubkey: Optional[str] = None
    salt: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"VoteCommand(state_index={self.state_index}, "
            f"vote_option_index={self.vote_option_index}, "
            f"new_vote_weight={self.new_vote_weight}, nonce={self.nonce})"
        )
