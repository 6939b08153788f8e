"""Background task recording every new block of every chain."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from interchain_harness import config
from interchain_harness.chain import Chain
from interchain_harness.errors import HarnessError

from .blocks import BlockDatabase

logger = logging.getLogger(__name__)


class BlockCollector:
    """
    Polls each chain once per interval and stores the blocks it has not seen.

    Errors reaching a node are transient: they are logged and the next poll
    retries from the last stored height.
    """

    def __init__(
        self,
        database: BlockDatabase,
        test_name: str,
        chains: Sequence[Chain],
        interval: float = config.POLL_INTERVAL,
    ) -> None:
        self.database = database
        self.test_name = test_name
        self.chains = list(chains)
        self.interval = interval
        self._rows: dict[str, int] = {}
        self._tasks: list[asyncio.Task[None]] = []

    def start(self) -> None:
        for chain in self.chains:
            self._rows[chain.name] = self.database.add_chain(self.test_name, chain.chain_id)
            self._tasks.append(asyncio.create_task(self._run(chain), name=f"blocks-{chain.name}"))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def collect_once(self, chain: Chain) -> int:
        """Store every block up to the current height. Returns how many were stored."""
        row = self._rows[chain.name]
        last = self.database.latest_height(row) or 0
        height = await chain.height()
        for block_height in range(last + 1, height + 1):
            self.database.put_block(row, await chain.block_summary(block_height))
        return max(0, height - last)

    async def _run(self, chain: Chain) -> None:
        while True:
            try:
                await self.collect_once(chain)
            except HarnessError as exc:
                logger.warning("Block collector for %s: %s", chain.name, exc)
            await asyncio.sleep(self.interval)
