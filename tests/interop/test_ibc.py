"""
IBC scenarios between Cosmos chains.

Both tests bring up real chain and relayer containers, so they are slow:
image pulls dominate the first run, genesis and client creation the rest.
"""

from __future__ import annotations

import pytest

from interchain_harness.docker import DockerClient
from interchain_harness.relayer import PathState
from interchain_harness.scenario import wait_for_blocks

from .helpers import (
    assert_heights_at_least,
    assert_no_leftovers,
    build_options,
    gaia_pair,
    ics_pair,
)

# Mark all tests in this module as interop tests.
#
# This allows selective test runs via `pytest -m interop`.
pytestmark = pytest.mark.interop


@pytest.mark.timeout(900)
async def test_two_chain_ibc_happy_path(docker_client: DockerClient, test_name: str) -> None:
    """
    Two gaia chains linked on path "p" relay once built.

    After ten more blocks on each chain the relayer is still in its relay
    loop and both chains report height 10 or more.
    """
    interchain, chain_a, chain_b, relayer = gaia_pair(test_name, path="p")

    async with interchain:
        await interchain.build(build_options(test_name, docker_client))
        await wait_for_blocks(10, chain_a, chain_b)

        await assert_heights_at_least(10, chain_a, chain_b)
        assert relayer.paths["p"].state is PathState.RELAYING
        channels = await relayer.get_channels(chain_a.chain_id)
        assert any(channel.state == "STATE_OPEN" for channel in channels)

    await assert_no_leftovers(docker_client, test_name)


@pytest.mark.timeout(1200)
async def test_provider_consumer(docker_client: DockerClient, test_name: str) -> None:
    """
    A consumer chain admitted through governance runs under its provider.

    The provider lists the consumer's chain id once the proposal passed and
    both chains keep producing blocks.
    """
    interchain, provider, consumer, relayer = ics_pair(test_name)

    async with interchain:
        await interchain.build(build_options(test_name, docker_client))

        assert consumer.chain_id in await provider.list_consumer_chains()
        await wait_for_blocks(1, provider, consumer)
        await assert_heights_at_least(1, provider, consumer)
        assert relayer.paths["ccv"].state is PathState.RELAYING

    await assert_no_leftovers(docker_client, test_name)
