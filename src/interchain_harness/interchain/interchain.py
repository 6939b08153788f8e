"""
Interchain assembler.

Collects chains, relayers and links, then brings the whole topology up in
dependency order. Everything provisioned is owned by one Supervisor, so a
single close() releases it whether or not the build succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from types import TracebackType
from typing import Any

from interchain_harness.chain import FAUCET_KEY, Chain, CosmosChain, Wallet, WalletAmount
from interchain_harness.docker import ContainerBroker, DockerClient, LineSink
from interchain_harness.errors import (
    ConfigInvalidError,
    HarnessError,
    RuntimeUnavailableError,
    aggregate,
    flatten_exception_group,
)
from interchain_harness.lifecycle import Supervisor
from interchain_harness.metrics import registry as metrics
from interchain_harness.relayer import Relayer
from interchain_harness.scenario import Reporter, create_log_file
from interchain_harness.storage import BlockCollector, BlockDatabase

from .graph import validate_topology
from .links import IbcLink, ProviderConsumerLink
from .options import CCV_CHANNEL_OPTIONS, CCV_CLIENT_ID, BuildOptions

logger = logging.getLogger(__name__)

RELAYER_FUNDS = 100_000_000_000
"""Amount sent from the faucet to each relayer key on each chain."""


async def _gather(label: str, steps: Iterable[Callable[[], Awaitable[Any]]]) -> None:
    """
    Run steps concurrently; raise their failures as one harness error.

    The first failure cancels the steps still running; this waits for them to
    finish cancelling before it raises, so no step outlives the call.
    """
    try:
        async with asyncio.TaskGroup() as tg:
            for step in steps:
                tg.create_task(step())
    except BaseExceptionGroup as group:
        errors = flatten_exception_group(group)
        logger.error("%s failed: %s", label, "; ".join(str(e).split("\n", 1)[0] for e in errors))
        error = aggregate(errors, "interchain")
        raise error from error.__cause__


class Interchain:
    """
    A multi-chain topology under test.

    The add_* methods only record the topology. build() validates it as a
    whole before the first container is created, then provisions it.
    """

    def __init__(self) -> None:
        self.chains: dict[str, Chain] = {}
        """Chains by logical name, in the order they were added."""

        self.relayers: dict[str, Relayer] = {}
        self.links: list[IbcLink] = []
        self.provider_consumer_links: list[ProviderConsumerLink] = []

        self.relayer_wallets: dict[tuple[str, str], Wallet] = {}
        """Relayer signing wallets keyed by (relayer name, chain name)."""

        self.supervisor: Supervisor | None = None
        self.broker: ContainerBroker | None = None
        self.log_sink: LineSink | None = None
        self.block_database: BlockDatabase | None = None

        self._relayer_mnemonics: dict[str, str] = {}
        self._built = False

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    def add_chain(self, chain: Chain, relayer_wallet_mnemonic: str | None = None) -> Interchain:
        """
        Add a chain.

        Args:
            chain: The chain driver.
            relayer_wallet_mnemonic: Mnemonic of the key the first relayer on
                this chain signs with. A fresh key is created when omitted.
        """
        if chain.name in self.chains and self.chains[chain.name] is not chain:
            raise ConfigInvalidError(
                f"chain name {chain.name} is already taken", component="interchain"
            )
        self.chains[chain.name] = chain
        if relayer_wallet_mnemonic:
            self._relayer_mnemonics[chain.name] = relayer_wallet_mnemonic
        return self

    def add_relayer(self, relayer: Relayer, name: str) -> Interchain:
        if name in self.relayers and self.relayers[name] is not relayer:
            raise ConfigInvalidError(
                f"relayer name {name} is already taken", component="interchain"
            )
        relayer.name = name
        self.relayers[name] = relayer
        return self

    def add_link(self, link: IbcLink) -> Interchain:
        self.links.append(link)
        return self

    def add_provider_consumer_link(self, link: ProviderConsumerLink) -> Interchain:
        self.provider_consumer_links.append(link)
        return self

    def validate(self) -> list[ProviderConsumerLink]:
        """
        Check the recorded topology without touching the container runtime.

        Returns:
            Provider links in the order their consumers will start.
        """
        return validate_topology(
            self.chains, self.relayers, self.links, self.provider_consumer_links
        )

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    async def build(self, options: BuildOptions, reporter: Reporter | None = None) -> None:
        """
        Provision the topology.

        Raises:
            ConfigInvalidError: If the topology is invalid. Nothing was created.
            HarnessError: The first failure of a sequential step, or a
                BuildError aggregating the failures of a concurrent one.
                Whatever was created stays registered for close().
        """
        if self._built:
            raise ConfigInvalidError("interchain was already built", component="interchain")

        # Validation precedes any interaction with the container runtime.
        #
        # A rejected topology leaves nothing behind to clean up.
        ordered_links = self.validate()
        if not options.test_name:
            raise ConfigInvalidError("test name must be non-empty", component="interchain")

        self._built = True
        started = time.monotonic()
        self.supervisor = Supervisor(name=options.test_name)
        try:
            await self._provision(options, reporter, ordered_links)
        finally:
            metrics.build_duration.observe(time.monotonic() - started)
        logger.info("Interchain %s built in %.1fs", options.test_name, time.monotonic() - started)

    async def _provision(
        self,
        options: BuildOptions,
        reporter: Reporter | None,
        ordered_links: list[ProviderConsumerLink],
    ) -> None:
        supervisor = self.supervisor
        assert supervisor is not None

        # The engine client is closed last when the build created it.
        client = options.client
        if client is None:
            client = DockerClient()
            supervisor.register("docker client", client.close)
        if not await client.ping():
            raise RuntimeUnavailableError(
                "container runtime did not answer the ping", component="interchain"
            )

        self.broker = ContainerBroker(
            client=client,
            supervisor=supervisor,
            test_name=options.test_name,
            network_id=options.network_id,
        )
        await self.broker.ensure_network()

        if options.container_log_file:
            self.log_sink = create_log_file(f"{options.test_name}-containers", supervisor)

        if reporter is not None:
            for relayer in self.relayers.values():
                if relayer.reporter is None:
                    relayer.reporter = reporter.relayer_exec_reporter(options.test_name)

        chains = list(self.chains.values())
        consumers = {id(link.consumer) for link in ordered_links}

        # Chains: volumes and genesis.
        #
        # Consumers produce their genesis without gentxs; their validator set
        # arrives with the CCV section exported by the provider.
        await _gather("chain initialization", (self._initializer(chain) for chain in chains))
        for chain in chains:
            if id(chain) in consumers:
                assert isinstance(chain, CosmosChain)
                chain.consumer = True
        await _gather("genesis", (chain.init_genesis for chain in chains))

        # Every chain that does not wait on a provider starts now, in parallel.
        independent = [chain for chain in chains if id(chain) not in consumers]
        await _gather("chain start", (chain.start for chain in independent))
        self._register_stops(independent)
        with_sidecars = [chain for chain in independent if chain.has_sidecars]
        await _gather("sidecar start", (chain.sidecar_start for chain in with_sidecars))

        for link in ordered_links:
            await self._start_consumer(link)

        # Relayers: keys on every chain they serve, then their paths.
        relayers = list(self.relayers.values())
        await _gather("relayer initialization", (self._relayer_initializer(r) for r in relayers))
        await self._configure_relayers()
        await self._create_paths(options)

        if options.block_database_file is not None:
            self._start_block_collector(options, chains)

    def _initializer(self, chain: Chain) -> Callable[[], Awaitable[None]]:
        assert self.broker is not None
        broker, sink = self.broker, self.log_sink
        return lambda: chain.initialize(broker, sink)

    def _relayer_initializer(self, relayer: Relayer) -> Callable[[], Awaitable[None]]:
        assert self.broker is not None
        broker, sink = self.broker, self.log_sink
        return lambda: relayer.initialize(broker, sink)

    def _register_stops(self, chains: Iterable[Chain]) -> None:
        assert self.supervisor is not None
        for chain in chains:
            self.supervisor.register(f"stop chain {chain.name}", chain.stop)

    async def _start_consumer(self, link: ProviderConsumerLink) -> None:
        """Admit a consumer through governance on its provider, then start it."""
        provider, consumer = link.provider, link.consumer
        logger.info("Admitting consumer %s on provider %s", consumer.name, provider.name)
        proposal_id = await provider.submit_consumer_addition(consumer)
        await provider.vote_all_yes(proposal_id)
        await provider.wait_for_proposal_status(proposal_id)

        try:
            await consumer.start_as_consumer(provider)
        except HarnessError as exc:
            exc.add_note(f"consumer addition proposal {proposal_id} on {provider.name} had passed")
            raise
        finally:
            self._register_stops([consumer])
        await consumer.sidecar_start()

    # -------------------------------------------------------------------------
    # Relayers
    # -------------------------------------------------------------------------

    def _relayer_endpoints(self) -> dict[str, list[Chain]]:
        """Chains each relayer serves, in link order, without duplicates."""
        endpoints: dict[str, list[Chain]] = {name: [] for name in self.relayers}
        pairs: list[tuple[Relayer, Chain, Chain]] = [
            (link.relayer, link.chain1, link.chain2) for link in self.links
        ]
        pairs += [
            (pc.relayer, pc.consumer, pc.provider)
            for pc in self.provider_consumer_links
            if pc.relayer is not None
        ]
        for relayer, chain1, chain2 in pairs:
            served = endpoints[relayer.name]
            for chain in (chain1, chain2):
                if chain not in served:
                    served.append(chain)
        return endpoints

    async def _configure_relayers(self) -> None:
        endpoints = self._relayer_endpoints()
        mnemonics = dict(self._relayer_mnemonics)
        wallets: list[tuple[Relayer, Chain, Wallet]] = []

        # Key creation is serialized per chain by its keyring; the mnemonic
        # given for a chain goes to the first relayer that serves it.
        for name, chains in endpoints.items():
            relayer = self.relayers[name]
            for chain in chains:
                key_name = f"relayer-{name}"
                mnemonic = mnemonics.pop(chain.name, None)
                if mnemonic is not None:
                    wallet = await chain.recover_key(key_name, mnemonic)
                else:
                    wallet = await chain.create_key(key_name)
                self.relayer_wallets[(name, chain.name)] = wallet
                wallets.append((relayer, chain, wallet))

        async def fund(chain: Chain, wallet: Wallet) -> None:
            await chain.send_funds(
                FAUCET_KEY,
                WalletAmount(
                    address=wallet.formatted_address, denom=chain.denom, amount=RELAYER_FUNDS
                ),
            )

        # One faucet per chain: transfers on the same chain queue on its lock.
        await _gather(
            "relayer funding",
            (lambda c=chain, w=wallet: fund(c, w) for _, chain, wallet in wallets),
        )

        for relayer, chain, wallet in wallets:
            await relayer.add_chain_configuration(chain, wallet.key_name)
            address = await relayer.restore_key(chain, wallet.key_name, wallet.mnemonic)
            if address != wallet.formatted_address:
                logger.warning(
                    "Relayer %s reports %r on %s, expected %s",
                    relayer.name,
                    address,
                    chain.name,
                    wallet.formatted_address,
                )

    async def _create_paths(self, options: BuildOptions) -> None:
        for link in self.links:
            await link.relayer.generate_path(link.chain1.chain_id, link.chain2.chain_id, link.path)
        ccv_links = [pc for pc in self.provider_consumer_links if pc.relayer is not None]
        for pc in ccv_links:
            assert pc.relayer is not None
            await pc.relayer.generate_path(pc.consumer.chain_id, pc.provider.chain_id, pc.path)

        if options.skip_path_creation:
            logger.info("Skipping client, connection and channel creation")
            return

        async def open_link(link: IbcLink) -> None:
            await link.relayer.link_path(
                link.path,
                link.create_channel_options or options.create_channel_options,
                link.create_client_options,
            )

        async def open_ccv(pc: ProviderConsumerLink) -> None:
            assert pc.relayer is not None
            await pc.relayer.use_existing_clients(pc.path, CCV_CLIENT_ID, CCV_CLIENT_ID)
            await pc.relayer.create_connections(pc.path)
            await pc.relayer.create_channel(pc.path, CCV_CHANNEL_OPTIONS)

        # A relayer drives its paths one after another; different relayers
        # work concurrently.
        async def open_all(relayer: Relayer) -> None:
            for link in self.links:
                if link.relayer is relayer:
                    await open_link(link)
            for pc in ccv_links:
                if pc.relayer is relayer:
                    await open_ccv(pc)

            names = list(relayer.paths)
            if names:
                await relayer.start_relaying(*names)

        assert self.supervisor is not None
        for relayer in self.relayers.values():
            self.supervisor.register(f"stop relayer {relayer.name}", relayer.stop_relaying)
        relayers = list(self.relayers.values())
        await _gather("relayer paths", (lambda r=relayer: open_all(r) for relayer in relayers))

    # -------------------------------------------------------------------------
    # Telemetry
    # -------------------------------------------------------------------------

    def _start_block_collector(self, options: BuildOptions, chains: list[Chain]) -> None:
        assert options.block_database_file is not None and self.supervisor is not None
        database = BlockDatabase(options.block_database_file)
        self.block_database = database

        async def close_database() -> None:
            database.close()

        self.supervisor.register("block database", close_database)
        collector = BlockCollector(database, options.test_name, chains)
        collector.start()
        self.supervisor.register("block collector", collector.stop)
        logger.info("Recording blocks into %s", options.block_database_file)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """
        Release everything the build created.

        Safe to call after a failed build and more than once.

        Raises:
            CleanupPartialError: If some cleanup steps failed. All of them ran.
        """
        if self.supervisor is not None:
            await self.supervisor.close()

    async def __aenter__(self) -> Interchain:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            await self.close()
        except HarnessError as cleanup_error:
            # A cleanup failure never hides the error that ended the block.
            if exc is None:
                raise
            exc.add_note(f"cleanup also failed: {cleanup_error}")
