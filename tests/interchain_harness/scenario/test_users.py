"""Tests for funding users across several chains."""

from __future__ import annotations

import pytest

from interchain_harness.errors import FundingMismatchError
from interchain_harness.scenario import get_and_fund_test_users
from tests.interchain_harness.helpers import FakeChain


async def _started(name: str) -> FakeChain:
    chain = FakeChain(name)
    chain.add_fake_node()
    await chain.start(timeout=5)
    return chain


class TestGetAndFundTestUsers:
    """Tests for get_and_fund_test_users."""

    async def test_one_user_per_chain_in_order(self) -> None:
        """Wallets line up with the chains they were requested for."""
        gaia, osmo = await _started("gaia"), await _started("osmo")

        users = await get_and_fund_test_users("alice", 500, gaia, osmo)

        assert [user.key_name.split("-")[0] for user in users] == ["alice", "alice"]
        assert await gaia.get_balance(users[0].formatted_address) == 500
        assert await osmo.get_balance(users[1].formatted_address) == 500
        assert users[0].formatted_address != users[1].formatted_address

    async def test_single_failure_is_raised_as_is(self) -> None:
        gaia, osmo = await _started("gaia"), await _started("osmo")
        osmo.transfer_shortfall = 1

        with pytest.raises(FundingMismatchError):
            await get_and_fund_test_users("bob", 10, gaia, osmo)

    async def test_failures_on_several_chains_are_grouped(self) -> None:
        """Every chain's failure is reported, not just the first."""
        gaia, osmo = await _started("gaia"), await _started("osmo")
        gaia.transfer_shortfall = osmo.transfer_shortfall = 1

        with pytest.raises(ExceptionGroup) as excinfo:
            await get_and_fund_test_users("carol", 10, gaia, osmo)

        assert "2 chain(s)" in str(excinfo.value)
        assert all(isinstance(e, FundingMismatchError) for e in excinfo.value.exceptions)

    async def test_no_chains(self) -> None:
        assert await get_and_fund_test_users("nobody", 10) == []
