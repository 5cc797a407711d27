"""
errors.py — Client Error Taxonomy
===================================
Every error the client surfaces to its caller derives from SkynetError
and carries a `classification` tag so callers can tell a dead network
apart from data that does not match what was asked for.

Per-attempt transport faults (retryable / permanent) are never raised;
they are outcomes recorded by the portal session and absorbed by the
orchestrator. Only the terminal outcomes below reach the caller.
"""

from typing import List, Optional, Sequence


class SkynetError(Exception):
    """Base class for all client errors."""

    classification = "error"


# ── Client-side encoding errors (never retried) ─────────────


class MalformedSkylink(SkynetError):
    """Skylink text has the wrong length, alphabet, or version."""

    classification = "malformed_skylink"


class InvalidBitfield(SkynetError):
    """An (offset, length) pair cannot be packed into a skylink bitfield."""

    classification = "invalid_bitfield"


class NotAFileSkylink(SkynetError):
    """The skylink does not address file content (e.g. a registry link)."""

    classification = "not_a_file_skylink"


class OutOfOrderChunk(SkynetError):
    """Reassembly was requested while a chunk slot is still empty."""

    classification = "out_of_order_chunk"

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Chunk {index} is missing; cannot reassemble")


# ── Integrity errors ────────────────────────────────────────


class PortalIntegrityViolation(SkynetError):
    """A portal reported a skylink that differs from the one we computed."""

    classification = "portal_integrity_violation"

    def __init__(self, portal: str, expected: str, reported: str):
        self.portal = portal
        self.expected = expected
        self.reported = reported
        super().__init__(
            f"Portal {portal} reported skylink {reported}, expected {expected}"
        )


class IntegrityMismatch(SkynetError):
    """Downloaded content does not hash to the skylink's Merkle root."""

    classification = "integrity_mismatch"

    def __init__(
        self,
        expected_root: bytes,
        computed_root: Optional[bytes],
        portals: Sequence[str] = (),
    ):
        self.expected_root = expected_root
        self.computed_root = computed_root
        self.portals = list(portals)
        computed = computed_root.hex() if computed_root else "<none>"
        super().__init__(
            f"Integrity mismatch: expected root {expected_root.hex()}, "
            f"recomputed root {computed} (suspect portals: "
            f"{', '.join(self.portals) or 'none'})"
        )


# ── Terminal operation outcomes ─────────────────────────────


class AllPortalsExhausted(SkynetError):
    """Every configured portal failed or was excluded."""

    classification = "all_portals_exhausted"

    def __init__(self, operation: str, attempts: Optional[List] = None):
        self.operation = operation
        self.attempts = list(attempts or [])
        super().__init__(
            f"{operation} failed on every portal "
            f"({len(self.attempts)} attempts made)"
        )


class OperationTimeout(SkynetError):
    """The whole operation ran past its wall-clock ceiling."""

    classification = "operation_timeout"

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not finish within {timeout:g}s")


class Cancelled(SkynetError):
    """The caller cancelled the operation."""

    classification = "cancelled"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} was cancelled")


class PortalRequestFailed(SkynetError):
    """A request bound to one portal failed after its retries."""

    classification = "portal_request_failed"

    def __init__(
        self,
        portal: str,
        operation: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.portal = portal
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        status = f"HTTP {status_code}" if status_code else "no response"
        super().__init__(f"{operation} on {portal} failed ({status}): {detail}")
