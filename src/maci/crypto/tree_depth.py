"""Tree depth calculation for fixed-arity Merkle trees.

MACI sizes its state and message trees as binary trees and its vote-option
tree as a quinary (arity 5) tree. Given the maximum number of leaves a tree
must hold, the depth is the smallest ``d`` with ``arity ** d >= max_leaves``.

Integer arithmetic only: ``log(25, 5)`` in floating point is not reliably
``2.0``, and rounding it up would size the tree one level too deep.
"""

from __future__ import annotations

from maci.errors import InvalidCapacityError


BINARY = 2
QUINARY = 5
SUPPORTED_BRANCHING_FACTORS: tuple[int, ...] = (BINARY, QUINARY)


def depth_for(branching_factor: int, max_leaves: int) -> int:
    """Return the minimal tree depth that holds ``max_leaves`` leaves.

    Raises InvalidCapacityError for unsupported bases or ``max_leaves < 1``.
    """
    if branching_factor not in SUPPORTED_BRANCHING_FACTORS:
        raise InvalidCapacityError(
            f"Unsupported branching factor {branching_factor!r}; "
            f"expected one of {SUPPORTED_BRANCHING_FACTORS}"
        )
    if isinstance(max_leaves, bool) or not isinstance(max_leaves, int):
        raise InvalidCapacityError(f"max_leaves must be an integer, got {max_leaves!r}")
    if max_leaves < 1:
        raise InvalidCapacityError(f"max_leaves must be >= 1, got {max_leaves}")

    depth = 0
    capacity = 1
    while capacity < max_leaves:
        capacity *= branching_factor
        depth += 1
    return depth


def binary_depth_for(max_leaves: int) -> int:
    return depth_for(BINARY, max_leaves)


def quin_depth_for(max_leaves: int) -> int:
    return depth_for(QUINARY, max_leaves)


def capacity_for(branching_factor: int, depth: int) -> int:
    """Number of leaves a tree of the given arity and depth can hold."""
    if branching_factor not in SUPPORTED_BRANCHING_FACTORS:
        raise InvalidCapacityError(f"Unsupported branching factor {branching_factor!r}")
    if depth < 0:
        raise InvalidCapacityError(f"depth must be >= 0, got {depth}")
    return branching_factor ** depth
