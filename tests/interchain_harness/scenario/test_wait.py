"""Tests for scenario-level block barriers and balance polls."""

from __future__ import annotations

import asyncio

import pytest

from interchain_harness import config
from interchain_harness.chain import WalletAmount
from interchain_harness.errors import HarnessError, HeightStalledError, PollTimeoutError
from interchain_harness.scenario import poll_for_balance_change, wait_for_blocks
from tests.interchain_harness.helpers import FakeChain


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "POLL_INTERVAL", 0.01)


async def _started(name: str) -> FakeChain:
    chain = FakeChain(name)
    chain.add_fake_node()
    await chain.start(timeout=5)
    return chain


class TestWaitForBlocks:
    """Tests for the multi-chain block barrier."""

    async def test_every_chain_advances(self) -> None:
        gaia, osmo = await _started("gaia"), await _started("osmo")
        before = {"gaia": gaia.current_height, "osmo": osmo.current_height}

        heights = await wait_for_blocks(2, gaia, osmo)

        assert set(heights) == {"gaia", "osmo"}
        assert heights["gaia"] >= before["gaia"] + 2
        assert heights["osmo"] >= before["osmo"] + 2

    async def test_stalled_chain_is_raised_directly(self) -> None:
        """A single failing chain surfaces as its own error, not a group."""
        gaia, halted = await _started("gaia"), await _started("halted")
        halted.producing = False

        with pytest.raises(HeightStalledError, match="halted-val-0"):
            await wait_for_blocks(1, gaia, halted, timeout=0.05)


class TestPollForBalanceChange:
    """Tests for poll_for_balance_change."""

    async def test_returns_first_changed_balance(self) -> None:
        chain = FakeChain("gaia")
        baseline = WalletAmount(address="fake1user", denom="ufake", amount=100)
        chain.balances["fake1user"] = 100

        async def credit_later() -> None:
            await asyncio.sleep(0.05)
            chain.balances["fake1user"] = 250

        credit = asyncio.create_task(credit_later())
        balance = await poll_for_balance_change(chain, 5, baseline)
        await credit

        assert balance == 250

    async def test_decrease_counts_as_change(self) -> None:
        chain = FakeChain("gaia")
        chain.balances["fake1user"] = 40

        balance = await poll_for_balance_change(
            chain, 1, WalletAmount(address="fake1user", denom="ufake", amount=100)
        )

        assert balance == 40

    async def test_timeout(self) -> None:
        chain = FakeChain("gaia")
        chain.balances["fake1user"] = 100

        with pytest.raises(PollTimeoutError, match="stayed 100ufake"):
            await poll_for_balance_change(
                chain, 0.05, WalletAmount(address="fake1user", denom="ufake", amount=100)
            )

    async def test_query_errors_are_retried(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Transient query failures do not end the poll."""
        chain = FakeChain("gaia")
        replies: list[int | HarnessError] = [
            HarnessError("node restarting", component="chain", subject="gaia"),
            100,
            7,
        ]

        async def flaky_balance(address: str, denom: str | None = None) -> int:
            reply = replies.pop(0)
            if isinstance(reply, HarnessError):
                raise reply
            return reply

        monkeypatch.setattr(chain, "get_balance", flaky_balance)

        balance = await poll_for_balance_change(
            chain, 5, WalletAmount(address="fake1user", denom="ufake", amount=100)
        )

        assert balance == 7
        assert replies == []

    async def test_timeout_chains_last_query_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        chain = FakeChain("gaia")
        failure = HarnessError("connection refused", component="chain", subject="gaia")

        async def broken_balance(address: str, denom: str | None = None) -> int:
            raise failure

        monkeypatch.setattr(chain, "get_balance", broken_balance)

        with pytest.raises(PollTimeoutError) as excinfo:
            await poll_for_balance_change(
                chain, 0.05, WalletAmount(address="fake1user", denom="ufake", amount=1)
            )

        assert excinfo.value.__cause__ is failure
