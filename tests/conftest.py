"""Shared pytest fixtures for all tests."""

import os

import pytest

from fake_portal import PortalNetwork
from skyclient.client import SkynetClient
from skyclient.config import TransferConfig
from skyclient.core.chunker import LEAF_SIZE

PORTAL_A = "http://portal-a.test"
PORTAL_B = "http://portal-b.test"
PORTAL_C = "http://portal-c.test"
PORTALS = [PORTAL_A, PORTAL_B, PORTAL_C]


@pytest.fixture
def network():
    """Three honest portals sharing one store."""
    return PortalNetwork(PORTALS)


@pytest.fixture
def config():
    """
    Transfer configuration for tests: small chunks, no backoff delays.

    Chunks are two hash leaves (128 KiB) so multi-chunk paths are
    exercised with small payloads.
    """
    return TransferConfig(
        portal_urls=PORTALS,
        chunk_size=LEAF_SIZE * 2,
        attempt_limit=3,
        backoff_base=0,
        rate_limit_backoff=0,
        attempt_timeout=5,
        operation_timeout=30,
        fan_out=4,
    )


@pytest.fixture
def make_client(network, config):
    """
    Factory building SkynetClients wired to the fake network.

    Keyword arguments override fields of the test configuration.
    """

    def factory(**overrides) -> SkynetClient:
        cfg = TransferConfig.model_validate({**config.model_dump(), **overrides})
        return SkynetClient(config=cfg, transport=network)

    return factory


@pytest.fixture
def small_file_content():
    """Content that fits in one chunk."""
    return b"Hello, Skynet! " * 100


@pytest.fixture
def multi_chunk_content():
    """Five chunks' worth of random content (last chunk short)."""
    return os.urandom(LEAF_SIZE * 9 + 1234)
