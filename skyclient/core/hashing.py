"""
hashing.py — BLAKE2b Hashing Module
=====================================
Provides the domain-separated BLAKE2b-256 hashes used by the network's
Merkle trees.

Leaf hash:      BLAKE2b-256( 0x00 || leaf_data )
Internal node:  BLAKE2b-256( 0x01 || left || right )

The prefixes keep a leaf from ever being confused with an internal node,
so a second preimage cannot be built by splicing tree levels.
"""

import hashlib
import logging

logger = logging.getLogger(__name__)

HASH_SIZE = 32

LEAF_HASH_PREFIX = b"\x00"
NODE_HASH_PREFIX = b"\x01"

_BYTES_LIKE = (bytes, bytearray, memoryview)


def blake2b_256(data: bytes) -> bytes:
    """
    Compute the 32-byte BLAKE2b digest of the given data.

    Raises:
        TypeError: If data is not bytes-like.
    """
    if not isinstance(data, _BYTES_LIKE):
        raise TypeError(f"Expected bytes, got {type(data).__name__}")
    return hashlib.blake2b(data, digest_size=HASH_SIZE).digest()


def hash_leaf(data: bytes) -> bytes:
    """
    Hash one leaf of content.

    Args:
        data: Raw leaf bytes (any length, including empty).

    Returns:
        32-byte leaf hash.
    """
    if not isinstance(data, _BYTES_LIKE):
        raise TypeError(f"Expected bytes, got {type(data).__name__}")

    h = hashlib.blake2b(digest_size=HASH_SIZE)
    h.update(LEAF_HASH_PREFIX)
    h.update(data)
    digest = h.digest()
    logger.debug("leaf hash %s... (%d bytes)", digest.hex()[:16], len(data))
    return digest


def combine(left: bytes, right: bytes) -> bytes:
    """Hash two child hashes into their parent: BLAKE2b-256(0x01 || left || right)."""
    if len(left) != HASH_SIZE or len(right) != HASH_SIZE:
        raise ValueError(
            f"Child hashes must be {HASH_SIZE} bytes, "
            f"got {len(left)} and {len(right)}"
        )
    h = hashlib.blake2b(digest_size=HASH_SIZE)
    h.update(NODE_HASH_PREFIX)
    h.update(left)
    h.update(right)
    return h.digest()
