"""Processing state: one leaf per signup, indexed by state index.

Leaf 0 is a reserved blank leaf, so the first voter gets state index 1.
Snapshots are immutable; processing a message produces a new snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable

from maci.crypto.merkle import MerkleTree, hash_leaf
from maci.crypto.tree_depth import BINARY


@dataclass(frozen=True)
class StateLeaf:
    pubkey: str
    voice_credits: int
    nonce: int
    votes: tuple[int, ...]

    @staticmethod
    def blank(num_vote_options: int) -> StateLeaf:
        return StateLeaf(pubkey="", voice_credits=0, nonce=0, votes=(0,) * num_vote_options)

    def leaf_hash(self) -> str:
        return hash_leaf({
            "pubkey": self.pubkey,
            "voice_credits": self.voice_credits,
            "nonce": self.nonce,
            "votes": list(self.votes),
        })

    def to_dict(self) -> dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "voice_credits": self.voice_credits,
            "nonce": self.nonce,
            "votes": list(self.votes),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> StateLeaf:
        return StateLeaf(
            pubkey=data["pubkey"],
            voice_credits=int(data["voice_credits"]),
            nonce=int(data["nonce"]),
            votes=tuple(int(v) for v in data["votes"]),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """The full state tree contents at one point of processing."""
    state_tree_depth: int
    leaves: tuple[StateLeaf, ...]

    @staticmethod
    def from_signups(
        signups: Iterable[tuple[int, str, int]],
        state_tree_depth: int,
        num_vote_options: int,
    ) -> StateSnapshot:
        """Build the initial state from ``(state_index, pubkey, voice_credits)``."""
        ordered = sorted(signups, key=lambda s: s[0])
        leaves = [StateLeaf.blank(num_vote_options)]
        for expected, (state_index, pubkey, credits) in enumerate(ordered, start=1):
            if state_index != expected:
                raise ValueError(
                    f"State indices must be contiguous from 1: expected {expected}, "
                    f"got {state_index}"
                )
            leaves.append(StateLeaf(
                pubkey=pubkey,
                voice_credits=credits,
                nonce=0,
                votes=(0,) * num_vote_options,
            ))
        return StateSnapshot(state_tree_depth=state_tree_depth, leaves=tuple(leaves))

    @property
    def num_signups(self) -> int:
        return len(self.leaves) - 1

    def leaf(self, state_index: int) -> StateLeaf:
        return self.leaves[state_index]

    def with_leaf(self, state_index: int, leaf: StateLeaf) -> StateSnapshot:
        leaves = list(self.leaves)
        leaves[state_index] = leaf
        return replace(self, leaves=tuple(leaves))

    def root(self) -> str:
        tree = MerkleTree.from_leaves(
            BINARY, self.state_tree_depth, (leaf.leaf_hash() for leaf in self.leaves),
        )
        return tree.compute_root()

    def to_dict(self) -> dict[str, Any]:
        return {
            "state_tree_depth": self.state_tree_depth,
            "leaves": [leaf.to_dict() for leaf in self.leaves],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> StateSnapshot:
        return StateSnapshot(
            state_tree_depth=int(data["state_tree_depth"]),
            leaves=tuple(StateLeaf.from_dict(leaf) for leaf in data["leaves"]),
        )
