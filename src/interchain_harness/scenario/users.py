"""Funding test users across chains."""

from __future__ import annotations

import asyncio
import logging

from interchain_harness.chain import Chain, Wallet

logger = logging.getLogger(__name__)


async def get_and_fund_test_users(name: str, amount: int, *chains: Chain) -> list[Wallet]:
    """
    Create and fund one user per chain, concurrently.

    Wallets come back in the order the chains were given. If any chain fails,
    the users created on the other chains stay in their keyrings and the
    failure is raised (an ExceptionGroup when several chains failed).
    """
    results = await asyncio.gather(
        *(chain.get_and_fund_user(name, amount) for chain in chains), return_exceptions=True
    )
    errors = [result for result in results if isinstance(result, BaseException)]
    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise ExceptionGroup(f"funding '{name}' failed on {len(errors)} chain(s)", errors)
    return [result for result in results if isinstance(result, Wallet)]
