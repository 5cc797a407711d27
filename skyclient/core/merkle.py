"""
merkle.py — Merkle Tree Implementation
========================================
Builds the Merkle tree the network uses to address content. The root
summarises an ordered list of leaf hashes; any change to a leaf or to
the leaf order changes the root.

Leaf nodes:     hash_leaf(segment)
Internal nodes: combine(left_child, right_child)

Odd nodes are carried up unchanged to the next level. They are never
paired with a copy of themselves or with a padding hash, so the root
depends only on the leaf count and order. A tree built with padding
would produce roots no portal agrees with.
"""

import logging
from typing import List, Sequence

from skyclient.core.hashing import combine

logger = logging.getLogger(__name__)


def _next_level(level: Sequence[bytes]) -> List[bytes]:
    parents = []
    for i in range(0, len(level) - 1, 2):
        parents.append(combine(level[i], level[i + 1]))
    if len(level) % 2 == 1:
        # Carry the odd node up as-is
        parents.append(level[-1])
    return parents


def build_root(leaf_hashes: Sequence[bytes]) -> bytes:
    """
    Compute the Merkle root over ordered leaf hashes.

    Raises:
        ValueError: If the hash list is empty.
    """
    if not leaf_hashes:
        raise ValueError("Cannot build Merkle root from empty hash list")

    level = list(leaf_hashes)
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


def verify(root: bytes, leaf_hashes: Sequence[bytes]) -> bool:
    """Recompute the root over `leaf_hashes` and compare it with `root`."""
    if not leaf_hashes:
        return False
    computed = build_root(leaf_hashes)
    is_valid = computed == root
    logger.debug(
        "Merkle verification: %s (computed=%s, expected=%s)",
        "PASS" if is_valid else "FAIL",
        computed.hex()[:16] + "...",
        root.hex()[:16] + "...",
    )
    return is_valid

