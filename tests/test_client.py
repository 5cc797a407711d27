"""
test_client.py — SkynetClient Surface Tests
=============================================
"""

import os

import httpx
import pytest
from conftest import PORTAL_A, PORTAL_B
from skyclient.client import SkynetClient
from skyclient.config import TransferConfig
from skyclient.core.chunker import LEAF_SIZE
from skyclient.errors import PortalRequestFailed


class TestFiles:
    """Local file and directory helpers."""

    @pytest.mark.asyncio
    async def test_upload_file_roundtrip(self, make_client, tmp_path, multi_chunk_content):
        """A local file uploads under its own name and downloads to disk intact."""
        source = tmp_path / "photo.jpg"
        source.write_bytes(multi_chunk_content)
        target = tmp_path / "copy.jpg"

        async with make_client() as client:
            skylink = await client.upload_file(source)
            metadata = await client.get_metadata(skylink)
            written = await client.download_file(target, skylink)

        assert metadata.filename == "photo.jpg"
        assert metadata.length == len(multi_chunk_content)
        assert written == target
        assert target.read_bytes() == multi_chunk_content

    @pytest.mark.asyncio
    async def test_upload_file_matches_upload_bytes(self, make_client, tmp_path, small_file_content):
        """Streaming a file gives the same skylink as uploading its bytes."""
        source = tmp_path / "hello.txt"
        source.write_bytes(small_file_content)
        async with make_client() as client:
            from_path = await client.upload_file(source)
            from_bytes = await client.upload(small_file_content, "hello.txt")
        assert from_path == from_bytes

    @pytest.mark.asyncio
    async def test_upload_file_custom_name(self, make_client, tmp_path):
        """The stored filename can differ from the local one."""
        source = tmp_path / "tmp1234"
        source.write_bytes(b"report")
        async with make_client() as client:
            skylink = await client.upload_file(source, filename="report.txt")
            metadata = await client.get_metadata(skylink)
        assert metadata.filename == "report.txt"

    @pytest.mark.asyncio
    async def test_upload_missing_file(self, make_client, tmp_path):
        """Uploading a path that is not a file fails locally."""
        async with make_client() as client:
            with pytest.raises(FileNotFoundError):
                await client.upload_file(tmp_path / "nope.bin")

    @pytest.mark.asyncio
    async def test_upload_directory(self, make_client, tmp_path):
        """A directory becomes one skyfile with a subfile per file."""
        site = tmp_path / "site"
        site.mkdir()
        (site / "index.html").write_bytes(b"<h1>hi</h1>")
        (site / "app.js").write_bytes(b"console.log(1)")
        (site / "style.css").write_bytes(b"h1 {}")

        async with make_client() as client:
            skylink = await client.upload_directory(site, default_path="index.html")
            metadata = await client.get_metadata(skylink)
            data = await client.download(skylink)

        assert metadata.filename == "site"
        assert metadata.default_path == "index.html"
        assert list(sorted(metadata.subfiles)) == ["app.js", "index.html", "style.css"]
        index = metadata.subfiles["index.html"]
        assert index.content_type == "text/html"
        assert data[index.offset : index.end] == b"<h1>hi</h1>"
        assert data == b"console.log(1)<h1>hi</h1>h1 {}"

    @pytest.mark.asyncio
    async def test_upload_large_directory_is_resumable(self, make_client, network, tmp_path):
        """A directory larger than a chunk goes up through the resumable path."""
        site = tmp_path / "blobs"
        site.mkdir()
        blobs = {f"part{i}.bin": os.urandom(LEAF_SIZE + i) for i in range(3)}
        for name, blob in blobs.items():
            (site / name).write_bytes(blob)

        async with make_client() as client:
            skylink = await client.upload_directory(site, dirname="archive")
            metadata = await client.get_metadata(skylink)
            data = await client.download(skylink)

        assert network.requests_to(PORTAL_A, "PATCH")
        assert metadata.filename == "archive"
        for name, blob in blobs.items():
            sub = metadata.subfiles[name]
            assert data[sub.offset : sub.end] == blob

    @pytest.mark.asyncio
    async def test_empty_directory_rejected(self, make_client, tmp_path):
        """A directory with no files is refused."""
        async with make_client() as client:
            with pytest.raises(ValueError, match="no files"):
                await client.upload_directory(tmp_path)

    @pytest.mark.asyncio
    async def test_directory_must_exist(self, make_client, tmp_path):
        """A missing directory fails locally."""
        async with make_client() as client:
            with pytest.raises(NotADirectoryError):
                await client.upload_directory(tmp_path / "missing")


class TestClientSetup:

    def test_arguments_override_config(self, config):
        """Constructor arguments take precedence over the config object."""
        client = SkynetClient(
            portal_urls=[PORTAL_B], api_key="k", custom_user_agent="ua", config=config
        )
        assert client.portal_urls == [PORTAL_B]
        assert client.config.api_key == "k"
        assert client.config.custom_user_agent == "ua"
        assert client.config.chunk_size == config.chunk_size

    @pytest.mark.asyncio
    async def test_injected_http_client_is_not_closed(self, config, network):
        """A caller-owned httpx client stays open after the SkynetClient closes."""
        http = httpx.AsyncClient(transport=network)
        async with SkynetClient(config=config, http=http) as client:
            await client.upload(b"shared", "shared.txt")
        assert not http.is_closed
        await http.aclose()

    @pytest.mark.asyncio
    async def test_owned_http_client_is_closed(self, config, network):
        """The client closes the httpx client it created."""
        client = SkynetClient(config=config, transport=network)
        await client.aclose()
        assert client.http.is_closed

    @pytest.mark.asyncio
    async def test_api_key_and_user_agent_sent(self, network):
        """Credentials and user agent go out on every request."""
        seen = []
        network.hooks.append(lambda request: seen.append(request.headers))
        config = TransferConfig(portal_urls=[PORTAL_A], api_key="secret", custom_user_agent="sky/1")
        async with SkynetClient(config=config, transport=network) as client:
            await client.upload(b"data", "d")
        assert seen[0]["Skynet-Api-Key"] == "secret"
        assert seen[0]["User-Agent"] == "sky/1"


class TestSkykeys:
    """Skykey management against one portal at a time."""

    @pytest.mark.asyncio
    async def test_create_then_look_up(self, make_client, network):
        """A created key can be found by name, by id and in the key list."""
        async with make_client() as client:
            created = await client.create_skykey("team")
            by_name = await client.get_skykey_by_name("team")
            by_id = await client.get_skykey_by_id(created.id)
            listed = await client.get_skykeys()
        assert created.skykey_type == "private-id"
        assert by_name == created
        assert by_id == created
        assert listed == [created]
        assert {r[0] for r in network.requests} == {PORTAL_A}

    @pytest.mark.asyncio
    async def test_keys_are_portal_local(self, make_client):
        """A key created on one portal is unknown to the others until added."""
        async with make_client() as client:
            created = await client.create_skykey("team", skykey_type="public-id")
            with pytest.raises(PortalRequestFailed) as exc_info:
                await client.get_skykey_by_name("team", portal=PORTAL_B)
            await client.add_skykey(created.skykey, portal=PORTAL_B)
            copied = await client.get_skykey_by_name("team", portal=PORTAL_B)
        assert exc_info.value.status_code == 404
        assert exc_info.value.portal == PORTAL_B
        assert copied.id == created.id
        assert copied.skykey_type == "public-id"

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, make_client, network):
        """The portal refuses a second key under the same name, without retries."""
        async with make_client() as client:
            await client.create_skykey("team")
            with pytest.raises(PortalRequestFailed) as exc_info:
                await client.create_skykey("team")
        assert exc_info.value.status_code == 400
        assert len(network.requests_to(PORTAL_A, "POST")) == 2

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_client, network):
        """Skykey calls get the usual retries on their one portal."""
        network.fail(PORTAL_A, 503, "reset", method="GET")
        async with make_client() as client:
            assert await client.get_skykeys() == []
        assert len(network.requests_to(PORTAL_A, "GET")) == 3
        assert network.requests_to(PORTAL_B) == []

    @pytest.mark.asyncio
    async def test_no_fallback_when_portal_is_down(self, make_client, network):
        """An unreachable portal fails the call instead of asking another portal."""
        network.fail(PORTAL_A, 503, 503, 503, method="POST")
        async with make_client() as client:
            with pytest.raises(PortalRequestFailed):
                await client.create_skykey("team")
            assert client.orchestrator.last_operation.kind == "create skykey"
        assert network.requests_to(PORTAL_B) == []
