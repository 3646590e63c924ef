"""
Pytest configuration and shared fixtures for discordflow tests.
"""

import os

import pytest
import pytest_asyncio

# Keep a developer's .env from leaking into tests
os.environ.pop("DISCORD_TOKEN", None)

from discordflow.client import DiscordClient
from discordflow.config import ClientConfig


@pytest.fixture
def config():
    """Client config with zero reconnect backoff."""
    return ClientConfig(
        token="test-token",
        base_reconnect_delay=0.0,
        max_reconnect_delay=0.0,
        max_reconnect_attempts=2,
        handshake_timeout=1.0,
        connect_timeout=1.0,
    )


@pytest_asyncio.fixture
async def client(config):
    client = DiscordClient(config=config)
    yield client
    await client.rest.aclose()
