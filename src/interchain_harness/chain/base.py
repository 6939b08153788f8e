"""
Chain driver base class.

A chain driver turns a resolved configuration into running node containers
and exposes the operations every family supports: heights, balances,
transfers with memo, key management and user funding. Family differences
live in the subclasses; what a family can do is declared through capability
flags rather than discovered by type inspection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar

from interchain_harness import config
from interchain_harness.docker import ContainerBroker, ContainerHandle, ExecResult, LineSink, Mount
from interchain_harness.errors import (
    FundingMismatchError,
    HarnessError,
    HeightStalledError,
    ReadinessError,
    TxRejectedError,
)
from interchain_harness.metrics import registry as metrics

from .descriptor import ChainConfig, ResolvedChain
from .keyring import FAUCET_KEY, Keyring, Wallet, WalletAmount

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BlockSummary:
    """What the block collector records about one block."""

    height: int
    hash: str
    time: str
    """Block timestamp, RFC 3339."""

    tx_hashes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChainNode:
    """
    One node of a chain: a home volume and, once started, a container.

    Before the container exists, commands run in one-shot job containers that
    mount the same home volume.
    """

    broker: ContainerBroker
    chain: str
    """Logical chain name."""

    index: int
    validator: bool
    hostname: str
    """Name other containers on the network use to reach this node."""

    image: str
    user: str
    home_dir: str
    volume: str
    container: ContainerHandle | None = None
    host_ports: dict[str, int] = field(default_factory=dict)
    """Container port ("26657/tcp") to host-published port."""

    @property
    def name(self) -> str:
        return f"{'val' if self.validator else 'fn'}-{self.index}"

    @property
    def mounts(self) -> list[Mount]:
        return [Mount(self.volume, self.home_dir)]

    @property
    def running(self) -> bool:
        return self.container is not None and not self.container.removed

    def internal_url(self, port: int, scheme: str = "http") -> str:
        """URL reachable from other containers on the interchain network."""
        return f"{scheme}://{self.hostname}:{port}"

    def host_url(self, port: int, scheme: str = "http") -> str:
        """URL reachable from the test process."""
        return f"{scheme}://{self.broker.host_address}:{self.host_ports[f'{port}/tcp']}"

    async def run(
        self,
        argv: Sequence[str],
        *,
        stdin: bytes | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecResult:
        """Run a command against this node's home, in the node if it is running."""
        if self.running:
            assert self.container is not None
            return await self.broker.exec(self.container, argv, stdin=stdin, env=env)
        return await self.broker.run(
            self.image,
            argv,
            mounts=self.mounts,
            env=env,
            stdin=stdin,
            entrypoint=[],
            user=self.user or None,
            name=f"{self.hostname}-job",
        )

    async def run_ok(
        self,
        argv: Sequence[str],
        *,
        stdin: bytes | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecResult:
        """
        Run a command and require a zero exit code.

        Raises:
            HarnessError: With the command's stderr if it failed.
        """
        result = await self.run(argv, stdin=stdin, env=env)
        if not result.ok:
            raise HarnessError(
                f"`{' '.join(argv[:4])}` exited {result.exit_code}: "
                f"{(result.error_text or result.text).strip()[-500:]}",
                component="chain",
                subject=self.chain,
            )
        return result

    async def write_file(self, relative_path: str, data: bytes) -> None:
        """Write a file under the node home, creating parent directories."""
        path = f"{self.home_dir}/{relative_path}"
        await self.run_ok(
            ["sh", "-c", 'mkdir -p "$(dirname "$1")" && cat > "$1"', "sh", path], stdin=data
        )

    async def read_file(self, relative_path: str) -> bytes:
        """Read a file under the node home."""
        path = f"{self.home_dir}/{relative_path}"
        if self.container is not None:
            return await self.broker.get_file(self.container, path)
        return (await self.run_ok(["cat", path])).stdout

    async def log_tail(self, lines: int = 100) -> list[str]:
        if self.container is None:
            return []
        return await self.broker.log_tail(self.container, lines)


class Chain(ABC):
    """
    A chain under test.

    Lifecycle: initialize() -> init_genesis() -> start() -> ... -> stop().
    Everything the driver creates is owned by the broker's supervisor.
    """

    supports_memo: ClassVar[bool] = True
    """Transfers can carry a memo observable on-chain."""

    needs_genesis: ClassVar[bool] = True
    """init_genesis() produces a document the nodes start from."""

    has_sidecars: ClassVar[bool] = False
    """Auxiliary per-validator processes exist and need sidecar_start()."""

    supports_ibc: ClassVar[bool] = False
    """Can be an endpoint of a relayer path."""

    def __init__(
        self,
        name: str,
        chain_id: str,
        chain_config: ChainConfig,
        num_validators: int = 1,
        num_full_nodes: int = 0,
    ) -> None:
        self.name = name
        self.chain_id = chain_id
        self.config = chain_config
        self.num_validators = num_validators
        self.num_full_nodes = num_full_nodes

        self.keyring = Keyring()
        self.nodes: list[ChainNode] = []
        self.sidecars: list[ContainerHandle] = []
        self.static_gas = 0
        self.started = False

        self._broker: ContainerBroker | None = None
        self._log_sink: LineSink | None = None
        self._tx_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_resolved(cls, resolved: ResolvedChain) -> Chain:
        return cls(
            name=resolved.name,
            chain_id=resolved.chain_id,
            chain_config=resolved.config,
            num_validators=resolved.num_validators,
            num_full_nodes=resolved.num_full_nodes,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, chain_id={self.chain_id!r})"

    @property
    def broker(self) -> ContainerBroker:
        if self._broker is None:
            raise RuntimeError(f"Chain {self.name} is not initialized")
        return self._broker

    @property
    def denom(self) -> str:
        return self.config.denom

    @property
    def validators(self) -> list[ChainNode]:
        return [node for node in self.nodes if node.validator]

    @property
    def full_nodes(self) -> list[ChainNode]:
        return [node for node in self.nodes if not node.validator]

    @property
    def primary(self) -> ChainNode:
        """The node queries go to: the first validator."""
        if not self.nodes:
            raise RuntimeError(f"Chain {self.name} has no nodes")
        return self.nodes[0]

    def tx_lock(self, key_name: str) -> asyncio.Lock:
        """Lock serializing transactions signed by one key."""
        return self._tx_locks.setdefault(key_name, asyncio.Lock())

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def initialize(self, broker: ContainerBroker, log_sink: LineSink | None = None) -> None:
        """
        Pull images and create one home volume per node.

        Containers are created by start(), once their command line is known.
        """
        self._broker = broker
        self._log_sink = log_sink

        sidecar_images = (sidecar.image.reference for sidecar in self.config.sidecars)
        for image in {self.config.image.reference, *sidecar_images}:
            await broker.pull(image)

        image = self.config.image
        for index in range(self.num_validators + self.num_full_nodes):
            validator = index < self.num_validators
            node_index = index if validator else index - self.num_validators
            hostname = f"{self.name}-{'val' if validator else 'fn'}-{node_index}"
            volume = await broker.create_volume(hostname)
            await broker.set_volume_owner(volume, image.reference, image.uid_gid)
            self.nodes.append(
                ChainNode(
                    broker=broker,
                    chain=self.name,
                    index=node_index,
                    validator=validator,
                    hostname=hostname,
                    image=image.reference,
                    user=image.uid_gid,
                    home_dir=self.config.home_dir,
                    volume=volume,
                )
            )
        logger.info("Initialized %s with %d node(s)", self.name, len(self.nodes))

    async def create_node_container(
        self,
        node: ChainNode,
        cmd: Sequence[str],
        *,
        ports: Sequence[int] = (),
        env: Mapping[str, str] | None = None,
        entrypoint: Sequence[str] | None = (),
    ) -> ContainerHandle:
        """Create the long-running container for a node."""
        handle = await self.broker.create(
            node.image,
            cmd,
            hostname=node.hostname,
            env={**self.config.env, **(env or {})},
            mounts=node.mounts,
            entrypoint=entrypoint,
            ports=[f"{port}/tcp" for port in ports if port],
            user=node.user or None,
        )
        node.container = handle
        return handle

    async def start_node_container(self, node: ChainNode) -> None:
        """Start a node's container and record its published ports."""
        assert node.container is not None
        await self.broker.start(node.container)
        details = await self.broker.client.inspect_container(node.container.id)
        published = details.get("NetworkSettings", {}).get("Ports") or {}
        node.host_ports = {
            port: int(bindings[0]["HostPort"]) for port, bindings in published.items() if bindings
        }
        if self._log_sink is not None:
            self.broker.stream_logs(node.container, self._log_sink)

    @abstractmethod
    async def init_genesis(self) -> None:
        """Produce the genesis every node starts from. No-op where genesis is implicit."""

    @abstractmethod
    async def launch_nodes(self) -> None:
        """Create and start every node container."""

    @abstractmethod
    async def node_height(self, node: ChainNode) -> int:
        """Latest block height as reported by one node."""

    readiness_height: ClassVar[int] = 1
    """Height each node must reach before start() returns."""

    async def start(self, timeout: float = config.NODE_READINESS_TIMEOUT) -> None:
        """
        Launch all nodes in parallel and wait for readiness.

        Raises:
            ReadinessError: If a node does not reach `readiness_height` in time.
        """
        await self.launch_nodes()
        await asyncio.gather(*(self.wait_until_ready(node, timeout) for node in self.nodes))
        await self.post_start()
        self.static_gas = await self.measure_static_gas()
        self.started = True
        logger.info(
            "Chain %s (%s) started, static gas %d %s",
            self.name,
            self.chain_id,
            self.static_gas,
            self.denom,
        )

    async def wait_until_ready(self, node: ChainNode, timeout: float) -> None:
        """Poll a node until it reaches the readiness height or its container exits."""
        deadline = time.monotonic() + timeout
        last_error: BaseException | None = None
        while time.monotonic() < deadline:
            try:
                if await self.node_height(node) >= self.readiness_height:
                    return
            except HarnessError as exc:
                last_error = exc
            if node.container is not None and not await self.broker.is_running(node.container):
                break
            await asyncio.sleep(config.POLL_INTERVAL)

        error = ReadinessError(
            f"{node.hostname} did not reach height {self.readiness_height} within {timeout:.0f}s",
            component="chain",
            subject=self.name,
            log_tail=await node.log_tail(),
        )
        if last_error is not None:
            raise error from last_error
        raise error

    async def post_start(self) -> None:
        """Hook run once every node is ready."""

    async def measure_static_gas(self) -> int:
        """Fee a plain transfer costs the sender, discovered from a dry run."""
        return 0

    async def sidecar_start(self) -> None:
        """Start auxiliary per-validator processes. No-op for most families."""

    async def stop(self) -> None:
        """Stop sidecars, then nodes."""
        for sidecar in self.sidecars:
            await self.broker.stop(sidecar)
        await asyncio.gather(
            *(self.broker.stop(node.container) for node in self.nodes if node.container)
        )
        self.started = False

    async def log_tail(self, lines: int = 100) -> list[str]:
        return await self.primary.log_tail(lines) if self.nodes else []

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def height(self) -> int:
        height = await self.node_height(self.primary)
        metrics.chain_height.labels(chain=self.name).set(height)
        return height

    @abstractmethod
    async def get_balance(self, address: str, denom: str | None = None) -> int:
        """Balance of `address` in `denom` (the native denom when omitted)."""

    @abstractmethod
    async def block_summary(self, height: int) -> BlockSummary:
        """Hash, time and transactions of the block at `height`."""

    async def wait_for_blocks(self, blocks: int, timeout: float = config.BLOCK_WAIT_TIMEOUT) -> int:
        """
        Wait until every active node has advanced by `blocks`.

        Returns:
            The primary node's height afterwards.

        Raises:
            HeightStalledError: If a node did not advance in time.
        """
        active = [node for node in self.nodes if node.running] or [self.primary]
        start = {node.hostname: await self.node_height(node) for node in active}
        deadline = time.monotonic() + timeout

        pending = list(active)
        while pending:
            heights = {node.hostname: await self.node_height(node) for node in pending}
            pending = [n for n in pending if heights[n.hostname] < start[n.hostname] + blocks]
            if not pending:
                break
            if time.monotonic() >= deadline:
                lagging = pending[0]
                raise HeightStalledError(
                    f"{lagging.hostname} stuck at {heights[lagging.hostname]}, "
                    f"expected {start[lagging.hostname] + blocks} within {timeout:.0f}s",
                    component="chain",
                    subject=self.name,
                    log_tail=await lagging.log_tail(),
                )
            await asyncio.sleep(config.POLL_INTERVAL)

        return await self.height()

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_key(self, key_name: str) -> Wallet:
        """Create a new key in the chain's keyring."""

    @abstractmethod
    async def recover_key(self, key_name: str, mnemonic: str) -> Wallet:
        """Import a key from its mnemonic."""

    async def get_address(self, key_name: str) -> str:
        """Formatted address of a known key."""
        return self.keyring.get(key_name).formatted_address

    def export_keys(self) -> dict[str, str]:
        return self.keyring.export()

    async def import_keys(self, mnemonics: Mapping[str, str]) -> list[Wallet]:
        """Recover every key in the mapping, skipping keys already known."""
        wallets = []
        for key_name, mnemonic in mnemonics.items():
            if key_name in self.keyring:
                wallets.append(self.keyring.get(key_name))
                continue
            wallets.append(await self.recover_key(key_name, mnemonic))
        return wallets

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    @abstractmethod
    async def transfer(self, key_name: str, amount: WalletAmount, memo: str | None) -> str:
        """
        Submit a transfer and wait for inclusion.

        Called with the key's transaction lock held.

        Returns:
            The transaction hash.
        """

    @abstractmethod
    async def tx_memo(self, tx_hash: str) -> str:
        """Memo carried by an included transaction, as observed on-chain."""

    async def send_funds(self, key_name: str, amount: WalletAmount) -> str:
        """Transfer `amount` from a key. Returns the transaction hash."""
        return await self._send(key_name, amount, None)

    async def send_funds_with_memo(self, key_name: str, amount: WalletAmount, memo: str) -> str:
        """
        Transfer `amount` from a key with a memo observable on-chain.

        Raises:
            TxRejectedError: If the family cannot carry memos.
        """
        if not self.supports_memo:
            raise TxRejectedError(
                f"{type(self).__name__} transfers cannot carry a memo",
                component="chain",
                subject=self.name,
            )
        return await self._send(key_name, amount, memo)

    async def _send(self, key_name: str, amount: WalletAmount, memo: str | None) -> str:
        async with self.tx_lock(key_name):
            tx_hash = await self.transfer(key_name, amount, memo)
        metrics.transactions_sent.labels(chain=self.name).inc()
        logger.debug(
            "%s: %s sent %d%s to %s (%s)",
            self.name,
            key_name,
            amount.amount,
            amount.denom or self.denom,
            amount.address,
            tx_hash,
        )
        return tx_hash

    async def get_and_fund_user(self, prefix: str, amount: int) -> Wallet:
        """
        Create a key with a unique name and fund it from the faucet.

        Raises:
            FundingMismatchError: If the new balance is not exactly `amount`.
        """
        async with self.keyring.lock:
            key_name = self.keyring.unique_name(prefix)
        wallet = await self.create_key(key_name)

        await self.send_funds(
            FAUCET_KEY,
            WalletAmount(address=wallet.formatted_address, denom=self.denom, amount=amount),
        )
        balance = await self.get_balance(wallet.formatted_address, self.denom)
        if balance != amount:
            raise FundingMismatchError(
                f"{key_name} holds {balance}{self.denom}, expected {amount}{self.denom}",
                component="chain",
                subject=self.name,
            )

        metrics.users_funded.labels(chain=self.name).inc()
        logger.info("Funded %s on %s with %d%s", key_name, self.name, amount, self.denom)
        return wallet
