"""
skyfile.py — Content Addressing
=================================
Derives a skyfile's Merkle root and skylink from its metadata and
content. Upload uses it to know the expected skylink before any
network call; download uses it to check what came back.

Leaf order: [metadata leaf] + [content leaves of LEAF_SIZE bytes].
The metadata is its own leaf, so tampering with it changes the root
just as tampering with content does.
"""

import logging
from typing import List

from skyclient.core import merkle
from skyclient.core.chunker import LEAF_SIZE, SECTOR_SIZE, open_source, plan
from skyclient.core.hashing import hash_leaf
from skyclient.core.skylink import Skylink, encode

logger = logging.getLogger(__name__)


def skyfile_leaf_hashes(metadata: bytes, content) -> List[bytes]:
    """
    Hash the metadata leaf followed by every content leaf.

    Args:
        metadata: Canonical metadata bytes.
        content: Bytes-like object, binary file, or ByteSource.
    """
    source = open_source(content)
    hashes = [hash_leaf(metadata)]
    if source.size:
        leaf_plan = plan(source.size, LEAF_SIZE)
        hashes.extend(hash_leaf(leaf) for leaf in source.iter_segments(leaf_plan))
    return hashes


def skyfile_root(metadata: bytes, content) -> bytes:
    return merkle.build_root(skyfile_leaf_hashes(metadata, content))


def skyfile_skylink(metadata: bytes, content) -> Skylink:
    """
    Compute the version 1 skylink a portal should return for this skyfile.

    The bitfield addresses the head of the sector holding the metadata
    and the content, capped at one sector.
    """
    source = open_source(content)
    root = skyfile_root(metadata, source)
    fetch_length = min(len(metadata) + source.size, SECTOR_SIZE)
    skylink = encode(1, 0, fetch_length, root)
    logger.debug(
        "Skyfile of %d bytes (+%d metadata) -> %s",
        source.size,
        len(metadata),
        skylink.to_text(),
    )
    return skylink
