"""
client.py — Skynet Client
===========================
The caller-facing surface: upload content and get a skylink back,
present a skylink and get verified bytes back.

Usage:
    async with SkynetClient(["https://siasky.net"]) as client:
        skylink = await client.upload(b"hello world", "hello.txt")
        data = await client.download(skylink)
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from skyclient.api.schemas import Skykey, SkyfileMetadata, Subfile
from skyclient.config import DownloadOptions, TransferConfig, UploadOptions
from skyclient.core.skylink import Skylink
from skyclient.services.health import PortalHealth
from skyclient.services.orchestrator import SubfileSpec, TransferOrchestrator

logger = logging.getLogger(__name__)


def _content_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


class SkynetClient:
    """
    Async client for one ordered list of portals.

    Args:
        portal_urls: Portals in priority order. Defaults to the configured list.
        api_key: Sent as ``Skynet-Api-Key`` on every request.
        custom_user_agent: Overrides the ``User-Agent`` header.
        config: Full transfer configuration; the arguments above override it.
        http: Pre-built httpx client. When omitted the client owns one and
            closes it in `aclose()`.
        transport: Transport for the owned httpx client.
    """

    def __init__(
        self,
        portal_urls: Optional[Sequence[str]] = None,
        api_key: Optional[str] = None,
        custom_user_agent: Optional[str] = None,
        config: Optional[TransferConfig] = None,
        http: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or TransferConfig.from_settings()
        overrides = {}
        if portal_urls is not None:
            overrides["portal_urls"] = list(portal_urls)
        if api_key is not None:
            overrides["api_key"] = api_key
        if custom_user_agent is not None:
            overrides["custom_user_agent"] = custom_user_agent
        if overrides:
            config = TransferConfig.model_validate(
                {**config.model_dump(), **overrides}
            )

        self.config = config
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            transport=transport, follow_redirects=True
        )
        self.health = PortalHealth(
            failure_threshold=config.failure_threshold, cooldown=config.cooldown
        )
        self.orchestrator = TransferOrchestrator(self.http, config, self.health)
        logger.info("SkynetClient using portals: %s", ", ".join(config.portal_urls))

    async def __aenter__(self) -> "SkynetClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    @property
    def portal_urls(self) -> List[str]:
        return list(self.config.portal_urls)

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
        Upload bytes or a binary stream under `filename`.

        Args:
            content: bytes-like object or binary file.
            filename: Name stored in the skyfile metadata.
            subfiles: Optional name -> (offset, length[, content type])
                table splitting the content into several files.
            default_path: Subfile served when the skylink is opened bare.
            cancel: Event that stops the upload between attempts.

        Returns:
            The verified skylink.
        """
        return await self.orchestrator.upload(
            content,
            filename,
            subfiles=subfiles,
            default_path=default_path,
            cancel=cancel,
            options=options,
        )

    async def upload_file(
        self,
        path: Union[str, Path],
        filename: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        options: Optional[UploadOptions] = None,
    ) -> Skylink:
        """Upload a local file, streaming it range by range."""
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Not a file: {path}")

        with path.open("rb") as fileobj:
            return await self.upload(
                fileobj, filename or path.name, cancel=cancel, options=options
            )

    async def upload_directory(
        self,
        path: Union[str, Path],
        dirname: Optional[str] = None,
        default_path: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        options: Optional[UploadOptions] = None,
    ) -> Skylink:
        """
        Upload every file under a directory as one multi-file skyfile.

        Files are ordered by relative path; each becomes a subfile
        named by its POSIX relative path.
        """
        path = Path(path)
        if not path.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")

        files = sorted(p for p in path.rglob("*") if p.is_file())
        if not files:
            raise ValueError(f"Directory {path} contains no files")

        parts = []
        subfiles = {}
        offset = 0
        for file_path in files:
            name = file_path.relative_to(path).as_posix()
            data = file_path.read_bytes()
            subfiles[name] = Subfile(
                filename=name,
                offset=offset,
                length=len(data),
                content_type=_content_type(file_path),
            )
            parts.append(data)
            offset += len(data)

        logger.info("Uploading directory %s (%d files, %d bytes)", path, len(files), offset)
        return await self.upload(
            b"".join(parts),
            dirname or path.name,
            subfiles=subfiles,
            default_path=default_path,
            cancel=cancel,
            options=options,
        )

    # ── Download ───────────────────────────────────────────

    async def download(
        self,
        skylink: Union[str, Skylink],
        byte_range: Optional[Tuple[int, int]] = None,
        cancel: Optional[asyncio.Event] = None,
        options: Optional[DownloadOptions] = None,
    ) -> bytes:
        """Download verified content, optionally sliced to [start, end)."""
        return await self.orchestrator.download(
            skylink, byte_range=byte_range, cancel=cancel, options=options
        )

    async def download_file(
        self,
        path: Union[str, Path],
        skylink: Union[str, Skylink],
        cancel: Optional[asyncio.Event] = None,
        options: Optional[DownloadOptions] = None,
    ) -> Path:
        """Download verified content and write it to `path`."""
        data = await self.download(skylink, cancel=cancel, options=options)
        path = Path(path)
        path.write_bytes(data)
        logger.info("Wrote %d bytes to %s", len(data), path)
        return path

    async def get_metadata(
        self,
        skylink: Union[str, Skylink],
        cancel: Optional[asyncio.Event] = None,
    ) -> SkyfileMetadata:
        return await self.orchestrator.get_metadata(skylink, cancel=cancel)

    # ── Skykeys ────────────────────────────────────────────
    #
    # Skykeys live on one portal, so these calls never fall back.

    async def add_skykey(self, skykey: str, portal: Optional[str] = None) -> None:
        """Store an existing skykey (its ``skykey:`` string form) on a portal."""
        await self.orchestrator.portal_call(
            "add skykey", lambda session: session.attempt_add_skykey(skykey), portal
        )

    async def create_skykey(
        self, name: str, skykey_type: str = "private-id", portal: Optional[str] = None
    ) -> Skykey:
        """Have the portal generate a new skykey under `name`."""
        result = await self.orchestrator.portal_call(
            "create skykey",
            lambda session: session.attempt_create_skykey(name, skykey_type),
            portal,
        )
        return result.skykey

    async def get_skykey_by_name(self, name: str, portal: Optional[str] = None) -> Skykey:
        result = await self.orchestrator.portal_call(
            "get skykey", lambda session: session.attempt_get_skykey(name=name), portal
        )
        return result.skykey

    async def get_skykey_by_id(self, skykey_id: str, portal: Optional[str] = None) -> Skykey:
        result = await self.orchestrator.portal_call(
            "get skykey",
            lambda session: session.attempt_get_skykey(skykey_id=skykey_id),
            portal,
        )
        return result.skykey

    async def get_skykeys(self, portal: Optional[str] = None) -> List[Skykey]:
        result = await self.orchestrator.portal_call(
            "list skykeys", lambda session: session.attempt_list_skykeys(), portal
        )
        return list(result.skykeys or [])
