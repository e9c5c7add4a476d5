"""Fixed-depth Merkle trees for state, message and vote-option roots.

Uses SHA-256 as the hash function. Unlike an append-and-sort tree, leaf
position matters here: a leaf's index is its state index (or vote option),
so leaves are kept in insertion order and empty slots are padded with a
zero leaf up to ``arity ** depth``.

Leaves and roots are hex digests; roots are returned with a ``sha256:``
prefix so they are self-describing in checkpoints and logs.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from maci.crypto.tree_depth import capacity_for
from maci.errors import InvalidCapacityError


ZERO_LEAF = "0" * 64


class MerkleTree:
    """A fixed-depth Merkle tree of a given arity (2 or 5).

    Usage:
        tree = MerkleTree(arity=5, depth=2)
        tree.insert(hash_leaf({"option": 0, "votes": 3}))
        root = tree.compute_root()
    """

    def __init__(self, arity: int, depth: int, zero_leaf: str = ZERO_LEAF) -> None:
        self.arity = arity
        self.depth = depth
        self.capacity = capacity_for(arity, depth)
        self._zero_leaf = zero_leaf
        self._leaves: list[str] = []

    @classmethod
    def from_leaves(cls, arity: int, depth: int, leaves: Iterable[str]) -> MerkleTree:
        tree = cls(arity, depth)
        for leaf in leaves:
            tree.insert(leaf)
        return tree

    def insert(self, leaf_hash: str) -> int:
        """Append a leaf and return its index."""
        if len(self._leaves) >= self.capacity:
            raise InvalidCapacityError(
                f"Tree full: arity {self.arity} depth {self.depth} "
                f"holds {self.capacity} leaves"
            )
        self._leaves.append(_strip(leaf_hash))
        return len(self._leaves) - 1

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    def compute_root(self) -> str:
        """Compute the root over all leaves, zero-padded to capacity."""
        level = list(self._leaves)
        # Root of an all-zero subtree at the current height; empty regions
        # are represented by it instead of being hashed leaf by leaf.
        zero = self._zero_leaf
        for _ in range(self.depth):
            next_level: list[str] = []
            for i in range(0, len(level), self.arity):
                children = level[i:i + self.arity]
                children += [zero] * (self.arity - len(children))
                next_level.append(_hash_children(children))
            level = next_level
            zero = _hash_children([zero] * self.arity)
        return f"sha256:{level[0] if level else zero}"


def hash_leaf(value: Any) -> str:
    """SHA-256 of the canonical JSON form of ``value`` (sorted keys, UTF-8)."""
    canonical = json.dumps(value, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return _sha256_hex(canonical)


def _strip(value: str) -> str:
    return value.removeprefix("sha256:")


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hash_children(children: list[str]) -> str:
    combined = "".join(children).encode("utf-8")
    return _sha256_hex(combined)
