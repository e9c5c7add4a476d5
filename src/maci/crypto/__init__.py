"""Tree sizing, Merkle roots and blockchain anchoring."""

from maci.crypto.merkle import MerkleTree, hash_leaf
from maci.crypto.tree_depth import binary_depth_for, depth_for, quin_depth_for

__all__ = ["MerkleTree", "hash_leaf", "depth_for", "binary_depth_for", "quin_depth_for"]
