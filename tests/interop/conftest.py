"""
Shared pytest fixtures for interop tests.

Provides an engine client and a unique test name. Every test in this
package is skipped when no container runtime answers.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator

import pytest

from interchain_harness.docker import DockerClient, slugify
from interchain_harness.errors import RuntimeUnavailableError

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


@pytest.fixture
async def docker_client() -> AsyncGenerator[DockerClient, None]:
    """
    Provide an engine client, or skip when the runtime is unreachable.

    The client is shared by the build and by the assertions on host state.
    """
    client = DockerClient()
    try:
        await client.ping()
    except RuntimeUnavailableError as exc:
        await client.close()
        pytest.skip(f"no container runtime: {exc}")
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture
def test_name(request: pytest.FixtureRequest) -> str:
    """Test name unique to this run, so reruns never collide on resource names."""
    return f"{slugify(request.node.name, max_length=30)}-{secrets.token_hex(3)}"
