"""
skylink.py — Skylink Codec
============================
Encodes and decodes skylinks: the 34-byte content identifier made of a
2-byte little-endian bitfield followed by a 32-byte Merkle root.

Bitfield layout, least significant bit first:

    [2 version bits][mode x 1-bit][0][3 fetch-size bits][10 - mode offset bits]

Version bits 0 select version 1 (a file inside one sector); version
bits 1 select version 2 (a registry link, whose bitfield is exactly 1).

The mode selects the granularity of the fetch size and offset inside
the 4 MiB sector:

    mode   fetch size range              fetch align      offset align
    0      4 KiB .. 32 KiB               4 KiB            4 KiB
    m>0    (32 KiB<<(m-1), 32 KiB<<m]    4 KiB<<(m-1)     4 KiB<<m

Text forms: 46-character unpadded base64url (the default) and
55-character unpadded base32hex.
"""

import base64
import logging
import re
import struct
from dataclasses import dataclass
from typing import Tuple, Union

from skyclient.core.chunker import SECTOR_SIZE
from skyclient.core.hashing import HASH_SIZE
from skyclient.errors import InvalidBitfield, MalformedSkylink, NotAFileSkylink

logger = logging.getLogger(__name__)

RAW_SKYLINK_SIZE = 2 + HASH_SIZE
BASE64_SKYLINK_SIZE = 46
BASE32_SKYLINK_SIZE = 55

URI_SKYNET_PREFIX = "sia://"

MAX_MODE = 7
BASE_ALIGN = 4096
MODE0_MAX_FETCH = BASE_ALIGN * 8  # 32 KiB

_BASE64_RE = re.compile(r"^[A-Za-z0-9_-]{%d}$" % BASE64_SKYLINK_SIZE)
_BASE32_RE = re.compile(r"^[0-9a-vA-V]{%d}$" % BASE32_SKYLINK_SIZE)


def _alignments(mode: int) -> Tuple[int, int]:
    """Return (fetch_size_align, offset_align) for a mode."""
    fetch_align = BASE_ALIGN << (mode - 1) if mode > 0 else BASE_ALIGN
    offset_align = BASE_ALIGN << mode
    return fetch_align, offset_align


def _parse_v1_bitfield(bitfield: int) -> Tuple[int, int]:
    if bitfield & 3 != 0:
        raise InvalidBitfield("bitfield does not carry version 1")
    bits = bitfield >> 2

    mode = 0
    while bits & 1:
        mode += 1
        bits >>= 1
    if mode > MAX_MODE:
        raise InvalidBitfield("all mode bits are set, invalid bitfield")
    bits >>= 1

    fetch_align, offset_align = _alignments(mode)
    fetch_size = ((bits & 7) + 1) * fetch_align
    if mode > 0:
        fetch_size += fetch_align << 3
    bits >>= 3
    offset = bits * offset_align

    if offset + fetch_size > SECTOR_SIZE:
        raise InvalidBitfield(
            f"offset {offset} + fetch size {fetch_size} exceeds sector size"
        )
    return offset, fetch_size


def _pack_v1_bitfield(offset: int, length: int) -> int:
    if offset < 0 or length < 0:
        raise InvalidBitfield("offset and length must not be negative")
    if offset + length > SECTOR_SIZE:
        raise InvalidBitfield(
            f"offset {offset} + length {length} exceeds sector size {SECTOR_SIZE}"
        )

    mode = 0
    limit = MODE0_MAX_FETCH
    while length > limit:
        mode += 1
        limit <<= 1

    fetch_align, offset_align = _alignments(mode)
    if offset % offset_align:
        raise InvalidBitfield(
            f"offset {offset} is not aligned to {offset_align} bytes "
            f"(required for length {length})"
        )

    base = fetch_align << 3 if mode > 0 else 0
    fetch_bits = max(-(-(length - base) // fetch_align) - 1, 0)
    fetch_size = (fetch_bits + 1) * fetch_align + base
    if offset + fetch_size > SECTOR_SIZE:
        raise InvalidBitfield(
            f"rounded fetch size {fetch_size} at offset {offset} exceeds sector size"
        )

    bitfield = offset // offset_align
    bitfield = (bitfield << 3) | fetch_bits
    bitfield <<= 1
    for _ in range(mode):
        bitfield = (bitfield << 1) | 1
    bitfield <<= 2
    return bitfield


@dataclass(frozen=True)
class Skylink:
    """
    An immutable skylink.

    Attributes:
        bitfield: 16-bit field holding the version and, for version 1,
            the fetch range inside the sector.
        merkle_root: 32-byte content root (v1) or registry entry id (v2).
    """

    bitfield: int
    merkle_root: bytes

    def __post_init__(self):
        if not isinstance(self.merkle_root, bytes) or len(self.merkle_root) != HASH_SIZE:
            raise InvalidBitfield(f"Merkle root must be {HASH_SIZE} bytes")
        if not 0 <= self.bitfield <= 0xFFFF:
            raise InvalidBitfield("bitfield must fit in 16 bits")
        version = (self.bitfield & 3) + 1
        if version == 1:
            _parse_v1_bitfield(self.bitfield)
        elif version == 2:
            if self.bitfield != 1:
                raise InvalidBitfield("version 2 bitfield must not carry a range")
        else:
            raise InvalidBitfield(f"unsupported skylink version {version}")

    @property
    def version(self) -> int:
        return (self.bitfield & 3) + 1

    # ── binary form ──

    def to_bytes(self) -> bytes:
        return struct.pack("<H", self.bitfield) + self.merkle_root

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Skylink":
        if len(raw) != RAW_SKYLINK_SIZE:
            raise MalformedSkylink(
                f"raw skylink must be {RAW_SKYLINK_SIZE} bytes, got {len(raw)}"
            )
        (bitfield,) = struct.unpack("<H", raw[:2])
        try:
            return cls(bitfield=bitfield, merkle_root=bytes(raw[2:]))
        except InvalidBitfield as e:
            raise MalformedSkylink(str(e)) from e

    # ── text forms ──

    def to_text(self) -> str:
        return base64.urlsafe_b64encode(self.to_bytes()).decode("ascii").rstrip("=")

    def to_base32(self) -> str:
        return base64.b32hexencode(self.to_bytes()).decode("ascii").rstrip("=").lower()

    def to_uri(self) -> str:
        return URI_SKYNET_PREFIX + self.to_text()

    @classmethod
    def from_text(cls, text: str) -> "Skylink":
        return from_text(text)

    def offset_and_length(self) -> Tuple[int, int]:
        return decode_bitfield(self)

    def __str__(self) -> str:
        return self.to_text()


def encode(version: int, offset: int, length: int, root: bytes) -> Skylink:
    """
    Build a skylink from its parts.

    Args:
        version: 1 for a file link, 2 for a registry link.
        offset: Byte offset of the content inside the sector.
        length: Number of bytes to fetch; rounded up to the mode's
            granularity.
        root: 32-byte Merkle root (v1) or registry entry id (v2).

    Raises:
        InvalidBitfield: If the range cannot be represented.
    """
    if version == 1:
        bitfield = _pack_v1_bitfield(offset, length)
    elif version == 2:
        if offset or length:
            raise InvalidBitfield("version 2 skylinks carry no range")
        bitfield = 1
    else:
        raise InvalidBitfield(f"unsupported skylink version {version}")
    return Skylink(bitfield=bitfield, merkle_root=bytes(root))


def to_text(skylink: Skylink) -> str:
    """Return the 46-character base64url form of a skylink."""
    return skylink.to_text()


def from_text(text: str) -> Skylink:
    """
    Parse a skylink from text.

    Accepts an optional ``sia://`` prefix and either the base64url or the
    base32hex form.

    Raises:
        MalformedSkylink: On wrong length, alphabet, or version, or when
            the text is not the canonical encoding of its bytes.
    """
    if not isinstance(text, str):
        raise MalformedSkylink(f"Expected str, got {type(text).__name__}")

    raw_text = text.strip()
    if raw_text.startswith(URI_SKYNET_PREFIX):
        raw_text = raw_text[len(URI_SKYNET_PREFIX):]
    raw_text = raw_text.split("/", 1)[0].split("?", 1)[0]

    if len(raw_text) == BASE64_SKYLINK_SIZE:
        if not _BASE64_RE.match(raw_text):
            raise MalformedSkylink(f"invalid base64 characters in {text!r}")
        raw = base64.urlsafe_b64decode(raw_text + "==")
        skylink = Skylink.from_bytes(raw)
        canonical = skylink.to_text()
    elif len(raw_text) == BASE32_SKYLINK_SIZE:
        if not _BASE32_RE.match(raw_text):
            raise MalformedSkylink(f"invalid base32 characters in {text!r}")
        raw = base64.b32hexdecode(raw_text.upper() + "=")
        skylink = Skylink.from_bytes(raw)
        canonical = skylink.to_base32()
        raw_text = raw_text.lower()
    else:
        raise MalformedSkylink(
            f"skylink must be {BASE64_SKYLINK_SIZE} or {BASE32_SKYLINK_SIZE} "
            f"characters, got {len(raw_text)}"
        )

    if canonical != raw_text:
        raise MalformedSkylink(f"non-canonical skylink encoding {text!r}")
    return skylink


def decode_bitfield(skylink: Skylink) -> Tuple[int, int]:
    """
    Return the (offset, fetch_size) range a version 1 skylink points at.

    Raises:
        NotAFileSkylink: If the skylink is not version 1.
    """
    if skylink.version != 1:
        raise NotAFileSkylink(
            f"skylink {skylink.to_text()} is version {skylink.version}, "
            "not a file link"
        )
    return _parse_v1_bitfield(skylink.bitfield)


def parse(value: Union[str, Skylink]) -> Skylink:
    """Accept a Skylink or its text form."""
    if isinstance(value, Skylink):
        return value
    return from_text(value)
