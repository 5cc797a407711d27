"""
test_skylink.py — Unit Tests for the Skylink Codec
====================================================
"""

import base64
import dataclasses
import random

import pytest
from skyclient.core.chunker import SECTOR_SIZE
from skyclient.core.skylink import (
    BASE32_SKYLINK_SIZE,
    BASE64_SKYLINK_SIZE,
    Skylink,
    decode_bitfield,
    encode,
    from_text,
    to_text,
)
from skyclient.errors import InvalidBitfield, MalformedSkylink, NotAFileSkylink

# "hello world" as uploaded to a public portal
HELLO_SKYLINK = "AACi1FJOFAoRyl2YJyVz1yzsYrOfz18yXgnnbxNM0_UDng"

ROOT = bytes(range(32))


class TestKnownSkylink:
    """Decoding a skylink produced by the live network."""

    def test_decodes_version_and_range(self):
        """A live-network skylink decodes to version 1 and the first 4 KiB."""
        skylink = from_text(HELLO_SKYLINK)
        assert skylink.version == 1
        assert skylink.bitfield == 0
        assert decode_bitfield(skylink) == (0, 4096)

    def test_text_roundtrip(self):
        """Re-encoding a decoded skylink gives the same text."""
        assert to_text(from_text(HELLO_SKYLINK)) == HELLO_SKYLINK

    def test_encode_reproduces_network_skylink(self):
        """An 11-byte file at offset 0 packs to the same bitfield."""
        root = from_text(HELLO_SKYLINK).merkle_root
        assert to_text(encode(1, 0, 11, root)) == HELLO_SKYLINK

    def test_sia_uri_prefix(self):
        """The sia:// prefix is accepted and produced."""
        skylink = from_text("sia://" + HELLO_SKYLINK)
        assert skylink.to_text() == HELLO_SKYLINK
        assert skylink.to_uri() == "sia://" + HELLO_SKYLINK

    def test_trailing_path_ignored(self):
        """A path after the skylink is ignored."""
        skylink = from_text(f"sia://{HELLO_SKYLINK}/index.html")
        assert skylink.to_text() == HELLO_SKYLINK


class TestBitfield:
    """Packing (offset, length) into the 16-bit field."""

    def test_mode_zero_upper_bound(self):
        """32 KiB is the largest mode 0 fetch."""
        assert decode_bitfield(encode(1, 0, 32768, ROOT)) == (0, 32768)

    def test_length_rounds_up_to_granularity(self):
        """Lengths round up to the mode's alignment."""
        assert decode_bitfield(encode(1, 0, 1, ROOT)) == (0, 4096)
        assert decode_bitfield(encode(1, 0, 32769, ROOT)) == (0, 36864)

    def test_empty_length_uses_smallest_fetch(self):
        """A zero length still fetches one 4 KiB page."""
        assert decode_bitfield(encode(1, 0, 0, ROOT)) == (0, 4096)

    def test_exact_bit_layout(self):
        """offset=1 unit, fetch bits=1, mode=1, version 1."""
        skylink = encode(1, 8192, 40000, ROOT)
        assert skylink.bitfield == 148
        assert decode_bitfield(skylink) == (8192, 40960)

    def test_full_sector(self):
        """A whole sector is addressable."""
        assert decode_bitfield(encode(1, 0, SECTOR_SIZE, ROOT)) == (0, SECTOR_SIZE)

    def test_last_page_of_sector(self):
        """The last page of a sector is addressable."""
        offset = SECTOR_SIZE - 4096
        assert decode_bitfield(encode(1, offset, 4096, ROOT)) == (offset, 4096)

    def test_misaligned_offset_rejected(self):
        """Lengths above 32 KiB need 8 KiB-aligned offsets."""
        with pytest.raises(InvalidBitfield, match="not aligned"):
            encode(1, 4096, 40000, ROOT)

    def test_range_past_sector_rejected(self):
        """Ranges ending past the sector are rejected."""
        with pytest.raises(InvalidBitfield, match="exceeds sector"):
            encode(1, 4096, SECTOR_SIZE, ROOT)
        with pytest.raises(InvalidBitfield):
            encode(1, 0, SECTOR_SIZE + 1, ROOT)

    def test_negative_values_rejected(self):
        """Negative offsets and lengths are rejected."""
        with pytest.raises(InvalidBitfield):
            encode(1, -4096, 10, ROOT)
        with pytest.raises(InvalidBitfield):
            encode(1, 0, -1, ROOT)

    def test_unknown_version_rejected(self):
        """Only versions 1 and 2 can be encoded."""
        with pytest.raises(InvalidBitfield):
            encode(3, 0, 0, ROOT)

    def test_root_size_checked(self):
        """Roots must be 32 bytes."""
        with pytest.raises(InvalidBitfield):
            encode(1, 0, 10, b"short")


class TestRoundTrip:
    """fromText(toText(encode(...))) == encode(...)."""

    def test_random_lengths(self):
        """Random lengths survive encode and decode with a covering fetch size."""
        rng = random.Random(1234)
        for _ in range(200):
            length = rng.randint(0, SECTOR_SIZE)
            root = rng.randbytes(32)
            skylink = encode(1, 0, length, root)
            text = to_text(skylink)
            assert len(text) == BASE64_SKYLINK_SIZE
            assert from_text(text) == skylink
            offset, fetch = decode_bitfield(skylink)
            assert offset == 0
            assert length <= fetch <= SECTOR_SIZE

    def test_aligned_offsets(self):
        """Aligned non-zero offsets survive encode and decode."""
        for offset, length in [(4096, 100), (65536, 65536), (1 << 21, 1 << 21), (1 << 20, 300000)]:
            skylink = encode(1, offset, length, ROOT)
            assert from_text(to_text(skylink)) == skylink
            assert decode_bitfield(skylink)[0] == offset

    def test_base32_form(self):
        """The base32 form decodes in either case."""
        skylink = encode(1, 0, 5000, ROOT)
        text = skylink.to_base32()
        assert len(text) == BASE32_SKYLINK_SIZE
        assert from_text(text) == skylink
        assert from_text(text.upper()) == skylink

    def test_bytes_roundtrip(self):
        """The raw 34-byte form decodes back to the same skylink."""
        skylink = encode(1, 0, 5000, ROOT)
        raw = skylink.to_bytes()
        assert len(raw) == 34
        assert Skylink.from_bytes(raw) == skylink


class TestVersionTwo:
    """Registry skylinks must survive the codec untouched."""

    def test_roundtrip(self):
        """Version 2 skylinks encode with a bare version bitfield."""
        skylink = encode(2, 0, 0, ROOT)
        assert skylink.version == 2
        assert skylink.bitfield == 1
        assert from_text(to_text(skylink)) == skylink

    def test_not_a_file(self):
        """Version 2 skylinks carry no file range."""
        with pytest.raises(NotAFileSkylink):
            decode_bitfield(encode(2, 0, 0, ROOT))

    def test_range_rejected(self):
        """Version 2 skylinks cannot carry a range."""
        with pytest.raises(InvalidBitfield):
            encode(2, 4096, 0, ROOT)

    def test_extra_bits_rejected(self):
        """Stray bits on a version 2 bitfield are invalid."""
        with pytest.raises(InvalidBitfield):
            Skylink(bitfield=5, merkle_root=ROOT)


class TestMalformed:
    """from_text rejects anything that is not a canonical skylink."""

    def test_wrong_length(self):
        """Text of the wrong length is rejected."""
        with pytest.raises(MalformedSkylink, match="characters"):
            from_text(HELLO_SKYLINK[:-1])

    def test_bad_alphabet(self):
        """Characters outside base64url are rejected."""
        with pytest.raises(MalformedSkylink, match="invalid base64"):
            from_text("+" + HELLO_SKYLINK[1:])

    def test_non_canonical_trailing_bits(self):
        """Non-zero padding bits are rejected."""
        with pytest.raises(MalformedSkylink, match="non-canonical"):
            from_text(HELLO_SKYLINK[:-1] + "h")

    def test_unknown_version(self):
        """Version bits beyond 2 are rejected."""
        text = base64.urlsafe_b64encode(b"\x02\x00" + ROOT).decode().rstrip("=")
        with pytest.raises(MalformedSkylink):
            from_text(text)

    def test_all_mode_bits_set(self):
        """A bitfield with every mode bit set is rejected."""
        text = base64.urlsafe_b64encode(b"\xfc\xff" + ROOT).decode().rstrip("=")
        with pytest.raises(MalformedSkylink, match="mode bits"):
            from_text(text)

    def test_not_a_string(self):
        """Only text is parsed."""
        with pytest.raises(MalformedSkylink):
            from_text(b"bytes are not text")


class TestImmutability:

    def test_frozen(self):
        """Skylinks are immutable."""
        skylink = from_text(HELLO_SKYLINK)
        with pytest.raises(dataclasses.FrozenInstanceError):
            skylink.bitfield = 4

    def test_hashable_and_equal(self):
        """Equal skylinks hash the same."""
        assert {from_text(HELLO_SKYLINK), from_text(HELLO_SKYLINK)} == {from_text(HELLO_SKYLINK)}
