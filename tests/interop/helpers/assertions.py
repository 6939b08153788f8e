"""
Assertion helpers for interop tests.

Polling helpers read chain state until a condition holds; the host-state
helpers list what the engine still holds for a test.
"""

from __future__ import annotations

import logging

from interchain_harness.chain import Chain
from interchain_harness.docker import TEST_LABEL, DockerClient

logger = logging.getLogger(__name__)


async def assert_heights_at_least(minimum: int, *chains: Chain) -> dict[str, int]:
    """
    Assert every chain is at or above `minimum`.

    Returns:
        The heights observed, by chain name.
    """
    heights = {chain.name: await chain.height() for chain in chains}
    low = {name: height for name, height in heights.items() if height < minimum}
    if low:
        raise AssertionError(f"expected height >= {minimum}, got {low}")
    return heights


async def leftovers(client: DockerClient, test_name: str) -> dict[str, list[str]]:
    """Containers, networks and volumes the engine still holds for a test."""
    label = f"{TEST_LABEL}={test_name}"
    return {
        kind: await client.list_labelled(kind, label)
        for kind in ("containers", "networks", "volumes")
    }


async def assert_no_leftovers(client: DockerClient, test_name: str) -> None:
    remaining = await leftovers(client, test_name)
    if any(remaining.values()):
        logger.error("Resources left behind by %s: %s", test_name, remaining)
        raise AssertionError(f"{test_name} left resources behind: {remaining}")
