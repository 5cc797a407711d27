"""
orchestrator.py — Transfer Orchestrator
=========================================
Drives uploads and downloads across the configured portal list.

  Upload:   plan → compute expected skylink locally → push to portals
            (retry with backoff, fall back on failure) → cross-check
            the portal's skylink against ours
  Download: decode skylink → fetch metadata and check its length against
            the bitfield → fetch chunks concurrently
            (each chunk falls back across portals) → reassemble in order
            → recompute the Merkle root → release bytes only on a match

Every operation walks PLANNING → ATTEMPTING → VERIFYING → DONE | FAILED.
Retry state lives on the operation; only the portal health counters are
shared between operations.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import httpx

from skyclient.api.schemas import SkyfileMetadata, Subfile
from skyclient.config import DownloadOptions, TransferConfig, UploadOptions
from skyclient.core.chunker import (
    SECTOR_SIZE,
    ByteSource,
    ChunkArena,
    Segment,
    UploadPlan,
    open_source,
    plan,
)
from skyclient.core.skyfile import skyfile_root, skyfile_skylink
from skyclient.core.skylink import Skylink, decode_bitfield, encode, parse
from skyclient.errors import (
    AllPortalsExhausted,
    Cancelled,
    IntegrityMismatch,
    InvalidBitfield,
    OperationTimeout,
    PortalIntegrityViolation,
    PortalRequestFailed,
)
from skyclient.services.health import PortalHealth
from skyclient.services.portal import Outcome, PortalResult, PortalSession

logger = logging.getLogger(__name__)

SubfileSpec = Union[Subfile, Tuple[int, int], Tuple[int, int, str]]


class State(str, enum.Enum):
    PLANNING = "planning"
    ATTEMPTING = "attempting"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TransferAttempt:
    """One attempt against one portal, kept for the life of an operation."""

    portal: str
    operation: str
    attempt: int
    outcome: Outcome
    elapsed: float
    chunk_index: Optional[int] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class Operation:
    """State and attempt log of a single upload, download, or metadata call."""

    kind: str
    cancel: Optional[asyncio.Event] = None
    state: State = State.PLANNING
    history: List[State] = field(default_factory=lambda: [State.PLANNING])
    attempts: List[TransferAttempt] = field(default_factory=list)

    def transition(self, state: State) -> None:
        logger.debug("%s: %s -> %s", self.kind, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled(self.kind)


def build_metadata(
    filename: str,
    size: int,
    subfiles: Optional[Mapping[str, SubfileSpec]] = None,
    default_path: Optional[str] = None,
) -> SkyfileMetadata:
    """
    Build the metadata for an upload.

    Subfiles are given as name -> Subfile or (offset, length[, content
    type]) and must tile [0, size) exactly, in offset order.

    Raises:
        ValueError: If the subfile table leaves gaps, overlaps, or overruns.
    """
    table = None
    if subfiles:
        table = {}
        for name, entry in subfiles.items():
            if isinstance(entry, Subfile):
                table[name] = entry
            else:
                offset, length = entry[0], entry[1]
                content_type = entry[2] if len(entry) > 2 else "application/octet-stream"
                table[name] = Subfile(
                    filename=name, offset=offset, length=length, content_type=content_type
                )

        cursor = 0
        for name, sub in sorted(table.items(), key=lambda item: item[1].offset):
            if sub.offset != cursor:
                raise ValueError(
                    f"Subfile {name!r} starts at {sub.offset}, expected {cursor}"
                )
            cursor = sub.end
        if cursor != size:
            raise ValueError(f"Subfiles cover {cursor} bytes, content has {size}")

    return SkyfileMetadata(
        filename=filename, length=size, subfiles=table, default_path=default_path
    )


class TransferOrchestrator:
    """
    Top-level upload/download driver.

    Args:
        http: Shared async HTTP client.
        config: Portal list and retry/timeout/fan-out configuration.
        health: Portal health tracker; shared between orchestrators if given.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: TransferConfig,
        health: Optional[PortalHealth] = None,
    ):
        self.http = http
        self.config = config
        self.health = health or PortalHealth(
            failure_threshold=config.failure_threshold, cooldown=config.cooldown
        )
        self.last_operation: Optional[Operation] = None

    def _session(self, portal: str) -> PortalSession:
        return PortalSession(portal, self.http, self.config)

    async def _run(self, op: Operation, work: Awaitable):
        self.last_operation = op
        timeout = self.config.operation_timeout
        try:
            if timeout:
                return await asyncio.wait_for(work, timeout)
            return await work
        except asyncio.TimeoutError:
            op.transition(State.FAILED)
            logger.error("%s timed out after %.1fs", op.kind, timeout)
            raise OperationTimeout(op.kind, timeout) from None
        except Exception:
            if op.state is not State.FAILED:
                op.transition(State.FAILED)
            raise

    async def _attempt(
        self,
        op: Operation,
        portal: str,
        label: str,
        call: Callable[[], Awaitable[PortalResult]],
        chunk_index: Optional[int] = None,
    ) -> PortalResult:
        """Run `call` against one portal, retrying retryable outcomes."""
        limit = self.config.attempt_limit
        result = None
        for attempt in range(1, limit + 1):
            op.check_cancelled()
            result = await call()
            op.attempts.append(
                TransferAttempt(
                    portal=portal,
                    operation=label,
                    attempt=attempt,
                    outcome=result.outcome,
                    elapsed=result.elapsed,
                    chunk_index=chunk_index,
                    status_code=result.status_code,
                    error=result.error,
                )
            )
            await self.health.record(portal, result.outcome, result.elapsed)

            if result.outcome is not Outcome.RETRYABLE:
                return result
            if attempt < limit:
                delay = (
                    result.retry_after
                    if result.retry_after is not None
                    else self.config.backoff_delay(attempt)
                )
                logger.warning(
                    "%s on %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    label,
                    portal,
                    attempt,
                    limit,
                    result.error,
                    delay,
                )
                await asyncio.sleep(delay)

        logger.warning(
            "%s on %s gave up after %d attempts: %s", label, portal, limit, result.error
        )
        return result

    # ── Upload ─────────────────────────────────────────────

    async def upload(
        self,
        content,
        filename: str,
        subfiles: Optional[Mapping[str, SubfileSpec]] = None,
        default_path: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        options: Optional[UploadOptions] = None,
    ) -> Skylink:
        """
        Upload content and return its skylink.

        The skylink is computed locally before any network call and is
        only returned once a portal reports the same one.
        """
        op = Operation("upload", cancel)
        return await self._run(
            op, self._upload(op, content, filename, subfiles, default_path, options)
        )

    async def _upload(
        self,
        op: Operation,
        content,
        filename: str,
        subfiles,
        default_path: Optional[str],
        options: Optional[UploadOptions],
    ) -> Skylink:
        source = open_source(content)
        metadata = build_metadata(filename, source.size, subfiles, default_path)
        expected = skyfile_skylink(metadata.canonical_bytes(), source)
        upload_plan = plan(source.size, self.config.chunk_size)
        logger.info(
            "Uploading %s (%d bytes, %d chunks), expecting %s",
            filename,
            source.size,
            len(upload_plan),
            expected.to_text(),
        )

        violation = None
        op.transition(State.ATTEMPTING)
        for portal in self.health.rank(self.config.portal_urls):
            op.check_cancelled()
            session = self._session(portal)
            if upload_plan.single_object:
                result = await self._attempt(
                    op,
                    portal,
                    "upload",
                    partial(session.attempt_upload, source, metadata, expected, options),
                )
            else:
                result = await self._upload_chunked(
                    op, session, upload_plan, source, metadata, expected, options
                )

            if result.ok:
                op.transition(State.VERIFYING)
                op.transition(State.DONE)
                logger.info("Upload complete via %s: %s", portal, expected.to_text())
                return expected

            if result.outcome is Outcome.INTEGRITY_VIOLATION:
                violation = PortalIntegrityViolation(
                    portal, expected.to_text(), result.skylink or "<none>"
                )
            logger.warning(
                "Upload to %s failed (%s): %s; trying next portal",
                portal,
                result.outcome.value,
                result.error,
            )

        raise AllPortalsExhausted(op.kind, op.attempts) from violation

    async def _upload_chunked(
        self,
        op: Operation,
        session: PortalSession,
        upload_plan: UploadPlan,
        source: ByteSource,
        metadata: SkyfileMetadata,
        expected: Skylink,
        options: Optional[UploadOptions],
    ) -> PortalResult:
        portal = session.portal_url
        created = await self._attempt(
            op,
            portal,
            "create upload",
            partial(session.attempt_create_upload, upload_plan.total_size, metadata, options),
        )
        if not created.ok:
            return created

        for segment in upload_plan:
            op.check_cancelled()
            chunk = source.read(segment.offset, segment.length)
            result = await self._attempt(
                op,
                portal,
                f"upload chunk {segment.index}",
                partial(session.attempt_upload_chunk, created.upload_url, segment.offset, chunk),
                chunk_index=segment.index,
            )
            if not result.ok:
                return result
            logger.debug(
                "Chunk %d/%d uploaded to %s", segment.index + 1, len(upload_plan), portal
            )

        return await self._attempt(
            op,
            portal,
            "finalize upload",
            partial(session.attempt_finalize_upload, created.upload_url, expected),
        )

    # ── Download ───────────────────────────────────────────

    async def download(
        self,
        skylink: Union[str, Skylink],
        byte_range: Optional[Tuple[int, int]] = None,
        cancel: Optional[asyncio.Event] = None,
        options: Optional[DownloadOptions] = None,
    ) -> bytes:
        """
        Download and verify a skyfile.

        Args:
            skylink: Skylink or its text form.
            byte_range: Optional half-open (start, end) slice to return.
                The whole file is still fetched and verified first.
        """
        op = Operation("download", cancel)
        return await self._run(op, self._download(op, parse(skylink), byte_range, options))

    async def _download(
        self,
        op: Operation,
        skylink: Skylink,
        byte_range: Optional[Tuple[int, int]],
        options: Optional[DownloadOptions],
    ) -> bytes:
        decode_bitfield(skylink)

        suspects: Set[str] = set()
        computed = None
        integrity_failed = False
        exhausted: Optional[AllPortalsExhausted] = None
        for round_number in (1, 2):
            candidates = [
                p for p in self.health.rank(self.config.portal_urls) if p not in suspects
            ]
            if not candidates:
                logger.error("No unsuspected portals left for %s", skylink.to_text())
                break

            op.transition(State.ATTEMPTING)
            try:
                metadata, metadata_portal = await self._fetch_metadata(
                    op, skylink, candidates
                )
            except AllPortalsExhausted as e:
                if not suspects:
                    raise
                exhausted = e
                break

            if not _metadata_matches(skylink, metadata):
                logger.warning(
                    "Metadata from %s claims %d bytes, which %s does not address; "
                    "suspecting it",
                    metadata_portal,
                    metadata.length,
                    skylink.to_text(),
                )
                await self.health.record(metadata_portal, Outcome.INTEGRITY_VIOLATION, 0.0)
                suspects.add(metadata_portal)
                integrity_failed = True
                continue

            if byte_range is not None:
                _check_range(byte_range, metadata.length)

            transfer_plan = plan(metadata.length, self.config.chunk_size)
            arena = ChunkArena(transfer_plan)
            try:
                contributors = await self._fetch_chunks(
                    op, skylink, transfer_plan, arena, candidates, options
                )
            except AllPortalsExhausted as e:
                # A length nobody can serve may be a lie from the metadata portal
                logger.warning(
                    "Chunks for %s unavailable on round %d; retrying without %s",
                    skylink.to_text(),
                    round_number,
                    metadata_portal,
                )
                exhausted = e
                suspects.add(metadata_portal)
                continue

            op.transition(State.VERIFYING)
            data = arena.drain()
            computed = skyfile_root(metadata.canonical_bytes(), data)
            if computed == skylink.merkle_root:
                op.transition(State.DONE)
                logger.info(
                    "Downloaded and verified %s (%d bytes)", skylink.to_text(), len(data)
                )
                if byte_range is not None:
                    return data[byte_range[0] : byte_range[1]]
                return data

            involved = set(contributors.values()) | {metadata_portal}
            logger.warning(
                "Root mismatch on round %d for %s: expected %s, got %s; suspects: %s",
                round_number,
                skylink.to_text(),
                skylink.merkle_root.hex()[:16],
                computed.hex()[:16],
                ", ".join(sorted(involved)),
            )
            del data
            for portal in involved:
                await self.health.record(portal, Outcome.INTEGRITY_VIOLATION, 0.0)
            suspects |= involved
            integrity_failed = True
            exhausted = None

        if integrity_failed:
            raise IntegrityMismatch(
                skylink.merkle_root, computed, sorted(suspects)
            ) from exhausted
        if exhausted is not None:
            raise exhausted
        raise AllPortalsExhausted(op.kind, op.attempts)

    async def _fetch_metadata(
        self, op: Operation, skylink: Skylink, portals: Sequence[str]
    ) -> Tuple[SkyfileMetadata, str]:
        for portal in portals:
            op.check_cancelled()
            session = self._session(portal)
            result = await self._attempt(
                op, portal, "metadata", partial(session.attempt_metadata, skylink)
            )
            if result.ok:
                return result.metadata, portal
            logger.warning(
                "Metadata for %s unavailable from %s (%s); trying next portal",
                skylink.to_text(),
                portal,
                result.outcome.value,
            )
        raise AllPortalsExhausted(op.kind, op.attempts)

    async def _fetch_chunks(
        self,
        op: Operation,
        skylink: Skylink,
        transfer_plan: UploadPlan,
        arena: ChunkArena,
        portals: Sequence[str],
        options: Optional[DownloadOptions],
    ) -> Dict[int, str]:
        """Fill every arena slot; returns chunk index -> serving portal."""
        semaphore = asyncio.Semaphore(self.config.fan_out)
        contributors: Dict[int, str] = {}

        async def fetch(segment: Segment) -> None:
            async with semaphore:
                op.check_cancelled()
                if segment.length == 0:
                    arena.put(segment.index, b"")
                    return
                for portal in self.health.rank(portals):
                    op.check_cancelled()
                    session = self._session(portal)
                    result = await self._attempt(
                        op,
                        portal,
                        f"download chunk {segment.index}",
                        partial(
                            session.attempt_download,
                            skylink,
                            (segment.offset, segment.end),
                            options,
                        ),
                        chunk_index=segment.index,
                    )
                    if result.ok:
                        arena.put(segment.index, result.data)
                        contributors[segment.index] = portal
                        logger.debug(
                            "Chunk %d/%d fetched from %s",
                            segment.index + 1,
                            len(transfer_plan),
                            portal,
                        )
                        return
                    logger.warning(
                        "Chunk %d unavailable from %s (%s); falling back",
                        segment.index,
                        portal,
                        result.outcome.value,
                    )
                raise AllPortalsExhausted(op.kind, op.attempts)

        tasks = [asyncio.ensure_future(fetch(segment)) for segment in transfer_plan]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            arena.clear()
            raise
        return contributors

    # ── Metadata ───────────────────────────────────────────

    async def get_metadata(
        self, skylink: Union[str, Skylink], cancel: Optional[asyncio.Event] = None
    ) -> SkyfileMetadata:
        op = Operation("metadata", cancel)
        return await self._run(op, self._get_metadata(op, parse(skylink)))

    async def _get_metadata(self, op: Operation, skylink: Skylink) -> SkyfileMetadata:
        op.transition(State.ATTEMPTING)
        metadata, portal = await self._fetch_metadata(
            op, skylink, self.health.rank(self.config.portal_urls)
        )
        op.transition(State.DONE)
        logger.info("Fetched metadata for %s from %s", skylink.to_text(), portal)
        return metadata

    # ── Portal-local calls ─────────────────────────────────

    async def portal_call(
        self,
        label: str,
        call: Callable[[PortalSession], Awaitable[PortalResult]],
        portal: Optional[str] = None,
    ) -> PortalResult:
        """
        Run one request against a single portal with the usual retries.

        Used for state a portal keeps to itself (skykeys), so there is no
        fallback: the first configured portal is used unless one is named.
        """
        target = (portal or self.config.portal_urls[0]).rstrip("/")
        op = Operation(label)
        return await self._run(op, self._portal_call(op, target, label, call))

    async def _portal_call(
        self,
        op: Operation,
        portal: str,
        label: str,
        call: Callable[[PortalSession], Awaitable[PortalResult]],
    ) -> PortalResult:
        op.transition(State.ATTEMPTING)
        result = await self._attempt(op, portal, label, partial(call, self._session(portal)))
        if not result.ok:
            logger.error("%s on %s failed: %s", label, portal, result.error)
            raise PortalRequestFailed(portal, label, result.status_code, result.error)
        op.transition(State.DONE)
        return result


def _check_range(byte_range: Tuple[int, int], length: int) -> None:
    start, end = byte_range
    if not 0 <= start <= end <= length:
        raise ValueError(f"Byte range {byte_range} outside file of {length} bytes")


def _metadata_matches(skylink: Skylink, metadata: SkyfileMetadata) -> bool:
    """Whether the skylink's fetch range agrees with the length the metadata claims."""
    fetch_length = min(len(metadata.canonical_bytes()) + metadata.length, SECTOR_SIZE)
    try:
        claimed = encode(1, 0, fetch_length, skylink.merkle_root)
    except InvalidBitfield:
        return False
    return claimed.bitfield == skylink.bitfield
