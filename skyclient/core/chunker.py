"""
chunker.py — Chunk Planning Module
====================================
Decides how content is cut into fixed-size segments, both for hashing
(LEAF_SIZE leaves) and for network transfer (chunk_size chunks), and
reassembles downloaded chunks back into the original content.

Default leaf size:  64 KiB (65536 bytes)
Default chunk size: 4 MiB  (one sector)
"""

import io
import logging
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional, Sequence, Tuple, Union

from skyclient.errors import OutOfOrderChunk

logger = logging.getLogger(__name__)

# Hash leaf size: 64 KiB
LEAF_SIZE = 65536

# Sector size: 4 MiB
SECTOR_SIZE = 1 << 22

DEFAULT_CHUNK_SIZE = SECTOR_SIZE


@dataclass(frozen=True)
class Segment:
    """One planned byte range: [offset, offset + length)."""

    index: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class UploadPlan:
    """How one file of `total_size` bytes is cut into segments."""

    total_size: int
    leaf_size: int
    segments: Tuple[Segment, ...]

    @property
    def single_object(self) -> bool:
        """True when the whole file fits in one segment."""
        return self.total_size <= self.leaf_size

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self) -> Iterator[Segment]:
        return iter(self.segments)


def plan(total_size: int, leaf_size: int) -> UploadPlan:
    """
    Plan the segments covering [0, total_size).

    Args:
        total_size: Size of the content in bytes.
        leaf_size: Maximum size of each segment in bytes.

    Returns:
        An UploadPlan. Files no larger than one segment (including empty
        files) get a single segment; larger files get an ordered cover
        with no gaps or overlaps whose last segment may be short.

    Raises:
        ValueError: If total_size is negative or leaf_size is not positive.
    """
    if total_size < 0:
        raise ValueError("Total size must not be negative")
    if leaf_size <= 0:
        raise ValueError("Leaf size must be a positive integer")

    if total_size <= leaf_size:
        segments = (Segment(0, 0, total_size),)
    else:
        segments = tuple(
            Segment(index, offset, min(leaf_size, total_size - offset))
            for index, offset in enumerate(range(0, total_size, leaf_size))
        )

    logger.debug(
        "Planned %d bytes into %d segments (leaf_size=%d)",
        total_size,
        len(segments),
        leaf_size,
    )
    return UploadPlan(total_size=total_size, leaf_size=leaf_size, segments=segments)


def reassemble(chunks: Sequence[Optional[bytes]]) -> bytes:
    """
    Concatenate chunks in index order.

    Args:
        chunks: One entry per planned segment; None marks a slot that has
            not been filled.

    Raises:
        OutOfOrderChunk: If any slot is still empty.
    """
    for index, chunk in enumerate(chunks):
        if chunk is None:
            raise OutOfOrderChunk(index)

    data = b"".join(chunks)
    logger.debug("Reassembled %d chunks into %d bytes", len(chunks), len(data))
    return data


class ChunkArena:
    """
    Indexed buffer with one slot per planned segment.

    Concurrent fetch tasks each fill their own slot, so no slot is ever
    shared and no per-chunk lock is needed. The arena is drained only
    once every slot holds data.
    """

    def __init__(self, upload_plan: UploadPlan):
        self.plan = upload_plan
        self._slots: List[Optional[bytes]] = [None] * len(upload_plan)

    def put(self, index: int, data: bytes) -> None:
        segment = self.plan.segments[index]
        if len(data) != segment.length:
            raise ValueError(
                f"Chunk {index} should be {segment.length} bytes, got {len(data)}"
            )
        self._slots[index] = bytes(data)

    def missing(self) -> List[int]:
        return [i for i, slot in enumerate(self._slots) if slot is None]

    @property
    def complete(self) -> bool:
        return not self.missing()

    def drain(self) -> bytes:
        """Reassemble all slots in order and empty the arena."""
        data = reassemble(self._slots)
        self.clear()
        return data

    def clear(self) -> None:
        self._slots = [None] * len(self.plan)


# ── Content sources ────────────────────────────────────────


class ByteSource:
    """Random access to upload content of a known size."""

    size: int

    def read(self, offset: int, length: int) -> bytes:
        raise NotImplementedError

    def iter_segments(self, upload_plan: UploadPlan) -> Iterator[bytes]:
        for segment in upload_plan:
            yield self.read(segment.offset, segment.length)


class MemorySource(ByteSource):
    """Content already held in memory."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self._view = memoryview(data).cast("B")
        self.size = len(self._view)

    def read(self, offset: int, length: int) -> bytes:
        return self._view[offset : offset + length].tobytes()


class FileSource(ByteSource):
    """A seekable binary file, read one range at a time."""

    def __init__(self, fileobj: BinaryIO):
        self._file = fileobj
        self._start = fileobj.tell()
        fileobj.seek(0, io.SEEK_END)
        self.size = fileobj.tell() - self._start
        fileobj.seek(self._start)

    def read(self, offset: int, length: int) -> bytes:
        self._file.seek(self._start + offset)
        data = self._file.read(length)
        if len(data) != length:
            raise IOError(
                f"Short read at offset {offset}: wanted {length}, got {len(data)}"
            )
        return data


def open_source(content) -> ByteSource:
    """
    Wrap upload content as a ByteSource.

    Bytes-like objects are used in place. Seekable binary files are read
    range by range and never buffered whole; other streams are read into
    memory once.

    Raises:
        TypeError: If content is neither bytes-like nor a binary stream.
    """
    if isinstance(content, ByteSource):
        return content
    if isinstance(content, (bytes, bytearray, memoryview)):
        return MemorySource(content)
    if hasattr(content, "read"):
        seekable = getattr(content, "seekable", None)
        if seekable is not None and seekable():
            return FileSource(content)
        data = content.read()
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("Stream must be opened in binary mode")
        return MemorySource(data)
    raise TypeError(f"Cannot upload object of type {type(content).__name__}")
