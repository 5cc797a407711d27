"""
portal.py — Portal Session
============================
Wraps one portal endpoint. Each `attempt_*` method performs exactly one
HTTP exchange and classifies what happened:

    2xx                         -> SUCCESS
    429                         -> RETRYABLE (with a backoff hint)
    other 4xx                   -> PERMANENT
    5xx                         -> RETRYABLE
    timeout / reset / refused   -> RETRYABLE
    short or misaligned range   -> RETRYABLE
    skylink differs from ours   -> INTEGRITY_VIOLATION

Sessions never retry; the orchestrator owns retry and fallback policy.
"""

import base64
import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from skyclient.api.schemas import Skykey, SkyfileMetadata, UploadResponse
from skyclient.config import DownloadOptions, TransferConfig, UploadOptions
from skyclient.core.chunker import ByteSource, open_source
from skyclient.core.skylink import Skylink, from_text
from skyclient.errors import MalformedSkylink

logger = logging.getLogger(__name__)

HEADER_API_KEY = "Skynet-Api-Key"
HEADER_SKYLINK = "Skynet-Skylink"
HEADER_METADATA = "Skynet-File-Metadata"
HEADER_PORTAL_API = "Skynet-Portal-Api"
TUS_VERSION = "1.0.0"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    INTEGRITY_VIOLATION = "integrity_violation"


@dataclass
class PortalResult:
    """Classified result of a single portal exchange."""

    outcome: Outcome
    portal: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    retry_after: Optional[float] = None
    elapsed: float = 0.0
    skylink: Optional[str] = None
    data: Optional[bytes] = None
    metadata: Optional[SkyfileMetadata] = None
    upload_url: Optional[str] = None
    upload_offset: Optional[int] = None
    skykey: Optional[Skykey] = None
    skykeys: Optional[List[Skykey]] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


def _tus_metadata(metadata: SkyfileMetadata) -> str:
    pairs = {"filename": metadata.filename}
    if metadata.subfiles:
        pairs["subfiles"] = json.dumps(
            {name: sub.model_dump(by_alias=True) for name, sub in metadata.subfiles.items()},
            sort_keys=True,
            separators=(",", ":"),
        )
    if metadata.default_path:
        pairs["defaultpath"] = metadata.default_path
    return ",".join(
        f"{key} {base64.b64encode(value.encode('utf-8')).decode('ascii')}"
        for key, value in pairs.items()
    )


_CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$")


def _content_range_start(value: Optional[str]) -> Optional[int]:
    """First byte offset of a ``Content-Range: bytes a-b/total`` header."""
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value)
    return int(match.group(1)) if match else None


class PortalSession:
    """
    Single-attempt operations against one portal.

    Args:
        portal_url: Base URL of the portal.
        http: Shared async HTTP client (connection pooling, TLS).
        config: Transfer configuration (timeouts, paths, credentials).
    """

    def __init__(
        self,
        portal_url: str,
        http: httpx.AsyncClient,
        config: TransferConfig,
    ):
        self.portal_url = portal_url.rstrip("/")
        self.http = http
        self.config = config

    # ── helpers ──

    def _url(self, path: str) -> str:
        return f"{self.portal_url}/{path.lstrip('/')}"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {}
        if self.config.api_key:
            headers[HEADER_API_KEY] = self.config.api_key
        if self.config.custom_user_agent:
            headers["User-Agent"] = self.config.custom_user_agent
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _skykey_params(options) -> Dict[str, str]:
        params = {}
        if options is not None:
            if options.skykey_name:
                params["skykeyname"] = options.skykey_name
            if options.skykey_id:
                params["skykeyid"] = options.skykey_id
        return params

    def _result(self, outcome: Outcome, started: float, **kwargs) -> PortalResult:
        return PortalResult(
            outcome=outcome,
            portal=self.portal_url,
            elapsed=time.monotonic() - started,
            **kwargs,
        )

    def _retry_after(self, response: httpx.Response) -> float:
        value = response.headers.get("Retry-After")
        if value is not None:
            try:
                return max(float(value), 0.0)
            except ValueError:
                logger.debug("Ignoring unparsable Retry-After %r", value)
        return self.config.rate_limit_backoff

    def _classify(self, response: httpx.Response, started: float) -> Optional[PortalResult]:
        """Return a failure result for non-2xx responses, None on success."""
        status = response.status_code
        if 200 <= status < 300:
            return None
        detail = response.text[:200] if response.content else response.reason_phrase
        if status == 429:
            return self._result(
                Outcome.RETRYABLE,
                started,
                status_code=status,
                error="rate limited",
                retry_after=self._retry_after(response),
            )
        if 400 <= status < 500:
            return self._result(
                Outcome.PERMANENT, started, status_code=status, error=detail
            )
        return self._result(
            Outcome.RETRYABLE, started, status_code=status, error=detail
        )

    def _transport_failure(self, exc: httpx.TransportError, started: float) -> PortalResult:
        retryable = isinstance(
            exc,
            (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError),
        )
        logger.debug(
            "Transport error from %s: %s: %s",
            self.portal_url,
            type(exc).__name__,
            exc,
        )
        return self._result(
            Outcome.RETRYABLE if retryable else Outcome.PERMANENT,
            started,
            error=f"{type(exc).__name__}: {exc}",
        )

    def _check_skylink(
        self, reported: Optional[str], expected: Optional[Skylink], started: float, **kwargs
    ) -> PortalResult:
        if not reported:
            return self._result(
                Outcome.PERMANENT, started, error="portal returned no skylink", **kwargs
            )
        try:
            parsed = from_text(reported)
        except MalformedSkylink as e:
            return self._result(
                Outcome.PERMANENT,
                started,
                error=f"portal returned malformed skylink: {e}",
                **kwargs,
            )
        if expected is not None and parsed != expected:
            logger.warning(
                "Portal %s reported skylink %s, expected %s",
                self.portal_url,
                parsed.to_text(),
                expected.to_text(),
            )
            return self._result(
                Outcome.INTEGRITY_VIOLATION,
                started,
                skylink=parsed.to_text(),
                error=f"reported {parsed.to_text()}, expected {expected.to_text()}",
                **kwargs,
            )
        return self._result(Outcome.SUCCESS, started, skylink=parsed.to_text(), **kwargs)

    # ── upload ──

    async def attempt_upload(
        self,
        payload,
        metadata: SkyfileMetadata,
        expected: Optional[Skylink] = None,
        options: Optional[UploadOptions] = None,
    ) -> PortalResult:
        """
        Upload a whole skyfile in one multipart request.

        Subfiles are sent as separate parts under the directory field
        name, in offset order, with the skyfile name as the directory name.
        """
        source: ByteSource = open_source(payload)
        params = self._skykey_params(options)
        if metadata.default_path:
            params["defaultpath"] = metadata.default_path

        if metadata.subfiles:
            params["filename"] = metadata.filename
            files = [
                (
                    self.config.directory_fieldname,
                    (name, source.read(sub.offset, sub.length), sub.content_type),
                )
                for name, sub in sorted(
                    metadata.subfiles.items(), key=lambda item: item[1].offset
                )
            ]
        else:
            files = [
                (
                    self.config.file_fieldname,
                    (metadata.filename, source.read(0, source.size), "application/octet-stream"),
                )
            ]

        started = time.monotonic()
        try:
            response = await self.http.post(
                self._url(self.config.upload_path),
                params=params,
                files=files,
                headers=self._headers(),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return failure

        try:
            body = UploadResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            return self._result(
                Outcome.PERMANENT,
                started,
                status_code=response.status_code,
                error=f"unexpected upload response: {e}",
            )
        return self._check_skylink(
            body.skylink, expected, started, status_code=response.status_code
        )

    async def attempt_create_upload(
        self,
        total_size: int,
        metadata: SkyfileMetadata,
        options: Optional[UploadOptions] = None,
    ) -> PortalResult:
        """Open a resumable upload; returns its URL on success."""
        started = time.monotonic()
        try:
            response = await self.http.post(
                self._url(self.config.tus_path),
                params=self._skykey_params(options),
                headers=self._headers(
                    {
                        "Tus-Resumable": TUS_VERSION,
                        "Upload-Length": str(total_size),
                        "Upload-Metadata": _tus_metadata(metadata),
                    }
                ),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return failure

        location = response.headers.get("Location")
        if not location:
            return self._result(
                Outcome.PERMANENT,
                started,
                status_code=response.status_code,
                error="portal did not return an upload location",
            )
        upload_url = str(httpx.URL(self.portal_url + "/").join(location))
        return self._result(
            Outcome.SUCCESS,
            started,
            status_code=response.status_code,
            upload_url=upload_url,
            upload_offset=0,
        )

    async def attempt_upload_chunk(
        self, upload_url: str, offset: int, chunk: bytes
    ) -> PortalResult:
        """Send one chunk of a resumable upload starting at `offset`."""
        started = time.monotonic()
        try:
            response = await self.http.patch(
                upload_url,
                content=chunk,
                headers=self._headers(
                    {
                        "Tus-Resumable": TUS_VERSION,
                        "Upload-Offset": str(offset),
                        "Content-Type": "application/offset+octet-stream",
                    }
                ),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return failure

        try:
            new_offset = int(response.headers.get("Upload-Offset", ""))
        except ValueError:
            new_offset = None
        if new_offset != offset + len(chunk):
            return self._result(
                Outcome.PERMANENT,
                started,
                status_code=response.status_code,
                error=f"portal acknowledged offset {new_offset}, "
                f"expected {offset + len(chunk)}",
            )
        return self._result(
            Outcome.SUCCESS,
            started,
            status_code=response.status_code,
            upload_offset=new_offset,
        )

    async def attempt_finalize_upload(
        self, upload_url: str, expected: Optional[Skylink] = None
    ) -> PortalResult:
        """Ask for the skylink of a completed resumable upload."""
        started = time.monotonic()
        try:
            response = await self.http.head(
                upload_url,
                headers=self._headers({"Tus-Resumable": TUS_VERSION}),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return failure
        return self._check_skylink(
            response.headers.get(HEADER_SKYLINK),
            expected,
            started,
            status_code=response.status_code,
        )

    # ── download ──

    async def attempt_download(
        self,
        skylink: Skylink,
        byte_range: Optional[Tuple[int, int]] = None,
        options: Optional[DownloadOptions] = None,
    ) -> PortalResult:
        """
        Fetch a skyfile, or the half-open `byte_range` of it.

        A body shorter than the requested range is treated as a transient
        fault; integrity is only judged after full reassembly.
        """
        headers = {}
        expected_length = None
        if byte_range is not None:
            start, end = byte_range
            expected_length = end - start
            headers["Range"] = f"bytes={start}-{end - 1}"

        started = time.monotonic()
        try:
            response = await self.http.get(
                self._url(self.config.download_path.rstrip("/") + "/" + skylink.to_text()),
                params=self._skykey_params(options),
                headers=self._headers(headers),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return failure

        data = response.content
        if byte_range is not None and response.status_code == 200:
            # Portal ignored the Range header and sent the whole file
            data = data[byte_range[0] : byte_range[1]]
        elif byte_range is not None and response.status_code == 206:
            served_start = _content_range_start(response.headers.get("Content-Range"))
            if served_start != byte_range[0]:
                logger.debug(
                    "Misaligned range from %s: asked for %d, got %s",
                    self.portal_url,
                    byte_range[0],
                    served_start,
                )
                return self._result(
                    Outcome.RETRYABLE,
                    started,
                    status_code=response.status_code,
                    error=f"served range starts at {served_start}, "
                    f"requested {byte_range[0]}",
                )
        if expected_length is not None and len(data) != expected_length:
            logger.debug(
                "Short body from %s: got %d of %d bytes",
                self.portal_url,
                len(data),
                expected_length,
            )
            return self._result(
                Outcome.RETRYABLE,
                started,
                status_code=response.status_code,
                error=f"truncated body: {len(data)} of {expected_length} bytes",
            )
        return self._result(
            Outcome.SUCCESS,
            started,
            status_code=response.status_code,
            data=data,
        )

    async def attempt_metadata(self, skylink: Skylink) -> PortalResult:
        """Fetch skyfile metadata from the response headers of a HEAD request."""
        started = time.monotonic()
        try:
            response = await self.http.head(
                self._url(self.config.download_path.rstrip("/") + "/" + skylink.to_text()),
                headers=self._headers(),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return failure

        headers = {
            "skylink": response.headers.get(HEADER_SKYLINK, skylink.to_text()),
            "portal_url": response.headers.get(HEADER_PORTAL_API, self.portal_url),
            "content_type": response.headers.get("Content-Type", ""),
        }
        raw = response.headers.get(HEADER_METADATA)
        if not raw:
            return self._result(
                Outcome.PERMANENT,
                started,
                status_code=response.status_code,
                error="portal sent no skyfile metadata",
            )
        try:
            metadata = SkyfileMetadata.from_header(raw)
        except (ValueError, ValidationError) as e:
            return self._result(
                Outcome.PERMANENT,
                started,
                status_code=response.status_code,
                error=f"unparsable skyfile metadata: {e}",
            )

        return self._check_skylink(
            headers["skylink"],
            skylink,
            started,
            status_code=response.status_code,
            metadata=metadata,
            headers=headers,
        )

    # ── skykeys ──

    async def _skykey_exchange(
        self, method: str, path: str, params: Dict[str, str]
    ) -> Tuple[Optional[httpx.Response], PortalResult]:
        started = time.monotonic()
        try:
            response = await self.http.request(
                method,
                self._url(path),
                params=params,
                headers=self._headers(),
                timeout=self.config.attempt_timeout,
            )
        except httpx.TransportError as e:
            return None, self._transport_failure(e, started)

        failure = self._classify(response, started)
        if failure is not None:
            return None, failure
        return response, self._result(
            Outcome.SUCCESS, started, status_code=response.status_code
        )

    def _with_skykeys(self, response: httpx.Response, result: PortalResult, many: bool) -> PortalResult:
        try:
            body = response.json()
            if many:
                if isinstance(body, dict):
                    body = body.get("skykeys") or []
                result.skykeys = [Skykey.model_validate(item) for item in body]
            else:
                result.skykey = Skykey.model_validate(body)
        except (ValueError, TypeError, ValidationError) as e:
            result.outcome = Outcome.PERMANENT
            result.error = f"unexpected skykey response: {e}"
        return result

    async def attempt_add_skykey(self, skykey: str) -> PortalResult:
        """Store an existing skykey on this portal."""
        _, result = await self._skykey_exchange(
            "POST", self.config.add_skykey_path, {"skykey": skykey}
        )
        return result

    async def attempt_create_skykey(self, name: str, skykey_type: str) -> PortalResult:
        """Have the portal generate and store a new named skykey."""
        response, result = await self._skykey_exchange(
            "POST",
            self.config.create_skykey_path,
            {"name": name, "type": skykey_type},
        )
        if response is None:
            return result
        return self._with_skykeys(response, result, many=False)

    async def attempt_get_skykey(
        self, name: Optional[str] = None, skykey_id: Optional[str] = None
    ) -> PortalResult:
        """Look up one skykey by exactly one of its name or id."""
        if (name is None) == (skykey_id is None):
            raise ValueError("Give exactly one of name or skykey_id")
        params = {"name": name} if name is not None else {"id": skykey_id}
        response, result = await self._skykey_exchange(
            "GET", self.config.skykey_path, params
        )
        if response is None:
            return result
        return self._with_skykeys(response, result, many=False)

    async def attempt_list_skykeys(self) -> PortalResult:
        response, result = await self._skykey_exchange(
            "GET", self.config.skykeys_path, {}
        )
        if response is None:
            return result
        return self._with_skykeys(response, result, many=True)
