"""Scenario-level waits: block barriers and balance polls."""

from __future__ import annotations

import asyncio
import logging
import time

from interchain_harness import config
from interchain_harness.chain import Chain, WalletAmount
from interchain_harness.errors import HarnessError, PollTimeoutError, flatten_exception_group

logger = logging.getLogger(__name__)


async def wait_for_blocks(
    blocks: int, *chains: Chain, timeout: float = config.BLOCK_WAIT_TIMEOUT
) -> dict[str, int]:
    """
    Wait until every chain has advanced by `blocks`.

    The slowest chain is the barrier. The first failure cancels the other waits.

    Returns:
        The height each chain reached, by chain name.
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = {
                chain.name: group.create_task(chain.wait_for_blocks(blocks, timeout))
                for chain in chains
            }
    except BaseExceptionGroup as group_error:
        errors = flatten_exception_group(group_error)
        if len(errors) == 1:
            raise errors[0] from errors[0].__cause__
        raise
    return {name: task.result() for name, task in tasks.items()}


async def poll_for_balance_change(chain: Chain, max_seconds: float, baseline: WalletAmount) -> int:
    """
    Poll a balance once per second until it differs from `baseline.amount`.

    The comparison is exact; which direction matters is up to the caller.
    Query errors while polling are retried until the deadline.

    Returns:
        The first balance observed that differs from the baseline.

    Raises:
        PollTimeoutError: If the balance did not change within `max_seconds`.
    """
    deadline = time.monotonic() + max_seconds
    last_error: HarnessError | None = None
    while True:
        try:
            balance = await chain.get_balance(baseline.address, baseline.denom or None)
        except HarnessError as exc:
            last_error = exc
            logger.debug("Balance poll on %s failed: %s", chain.name, exc)
        else:
            if balance != baseline.amount:
                return balance

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            error = PollTimeoutError(
                f"balance of {baseline.address} stayed {baseline.amount}{baseline.denom} "
                f"for {max_seconds:.0f}s",
                component="scenario",
                subject=chain.name,
            )
            if last_error is not None:
                raise error from last_error
            raise error
        await asyncio.sleep(min(config.POLL_INTERVAL, remaining))
