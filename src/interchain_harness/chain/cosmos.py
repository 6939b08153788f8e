"""
Cosmos SDK chain driver.

Genesis is produced by the node binary itself (init, keys, genesis accounts,
gentx, collect-gentxs) and then patched in Python. Keys, transactions and
governance go through the node CLI; heights, balances and transaction lookups
go through the Tendermint RPC and the REST API on host-published ports.

Also carries the interchain security helpers a provider uses to admit a
consumer, and the consumer-side start from the provider's CCV genesis.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import math
import re
import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, ClassVar

from bech32 import bech32_decode, convertbits

from interchain_harness import config
from interchain_harness.errors import (
    ConfigInvalidError,
    HarnessError,
    HarnessTimeoutError,
    TxRejectedError,
)

from .base import BlockSummary, Chain, ChainNode
from .genesis import deep_merge, patch_cosmos_genesis
from .keyring import FAUCET_KEY, Wallet, WalletAmount
from .rpc import RestClient

logger = logging.getLogger(__name__)

KEYRING_FLAGS = ["--keyring-backend", "test"]

VALIDATOR_KEY = "validator"
"""Key name of the operator account in each validator's home."""

PROPOSAL_PASSED = "PROPOSAL_STATUS_PASSED"
PROPOSAL_FAILED_STATUSES = frozenset({"PROPOSAL_STATUS_REJECTED", "PROPOSAL_STATUS_FAILED"})

_GAS_ESTIMATE = re.compile(r"gas estimate:\s*(\d+)")
_GAS_PRICE = re.compile(r"^([0-9.]+)([a-zA-Z/][a-zA-Z0-9/._-]*)$")

CONFIG_TOML_EDITS = [
    r's/^timeout_commit = .*/timeout_commit = "1s"/',
    r's/^timeout_propose = .*/timeout_propose = "1s"/',
    r"s/^addr_book_strict = .*/addr_book_strict = false/",
    r"s/^allow_duplicate_ip = .*/allow_duplicate_ip = true/",
]
"""In-place edits of config.toml. Everything else is passed as start flags."""


def bech32_to_bytes(address: str) -> bytes:
    """
    Raw account bytes of a bech32 address.

    Raises:
        ValueError: If the address is not valid bech32.
    """
    hrp, data = bech32_decode(address)
    if hrp is None or data is None:
        raise ValueError(f"Invalid bech32 address: {address}")
    decoded = convertbits(data, 5, 8, False)
    if decoded is None:
        raise ValueError(f"Invalid bech32 payload: {address}")
    return bytes(decoded)


def parse_gas_price(gas_prices: str) -> tuple[Decimal, str]:
    """Split "0.01uatom" into (Decimal("0.01"), "uatom")."""
    match = _GAS_PRICE.match(gas_prices.strip())
    if match is None:
        raise ConfigInvalidError(f"Invalid gas price '{gas_prices}'", component="chain")
    return Decimal(match.group(1)), match.group(2)


def parse_json_output(stdout: bytes, stderr: bytes) -> Any:
    """
    Parse CLI JSON output.

    Older SDK releases print some JSON (notably `keys add`) on stderr.
    """
    for stream in (stdout, stderr):
        text = stream.decode("utf-8", errors="replace").strip()
        start = text.find("{")
        if start >= 0:
            return json.loads(text[start:])
    raise ValueError(f"No JSON in output: {stdout[:200]!r} {stderr[:200]!r}")


class CosmosChain(Chain):
    """A Tendermint-based chain built from the Cosmos SDK."""

    supports_ibc: ClassVar[bool] = True

    uses_gentx: ClassVar[bool] = True
    """Genesis validators come from gentxs (staking). False where another module supplies them."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.genesis: dict[str, Any] = {}
        self.consumer = False
        """Set when the chain is the consumer side of a provider link: no gentx."""

        self.validator_wallets: list[Wallet] = []
        self.gas_limit = 200_000
        """Gas limit used for transfers; refined by measure_static_gas()."""

        self._node_ids: dict[str, str] = {}
        self._rpc_clients: dict[str, RestClient] = {}
        self._legacy_genesis_cli: bool | None = None

    @property
    def collects_gentx(self) -> bool:
        return self.uses_gentx and not self.consumer

    # -------------------------------------------------------------------------
    # Command helpers
    # -------------------------------------------------------------------------

    def bin_argv(self, node: ChainNode, *args: str) -> list[str]:
        return [self.config.bin, *args, "--home", node.home_dir]

    def node_flag(self) -> list[str]:
        return ["--node", f"tcp://localhost:{self.config.ports.rpc}"]

    async def query(self, *args: str, node: ChainNode | None = None) -> Any:
        """Run a `q` subcommand on a running node and parse its JSON output."""
        target = node or self.primary
        result = await target.run_ok(
            self.bin_argv(target, "q", *args, "--output", "json", *self.node_flag())
        )
        return parse_json_output(result.stdout, result.stderr)

    def rest(self, node: ChainNode | None = None) -> RestClient:
        """REST API client for a node, created on first use."""
        target = node or self.primary
        key = f"api-{target.hostname}"
        if key not in self._rpc_clients:
            self._rpc_clients[key] = RestClient(
                target.host_url(self.config.ports.api), subject=self.name
            )
        return self._rpc_clients[key]

    def tendermint(self, node: ChainNode | None = None) -> RestClient:
        """Tendermint RPC client for a node, created on first use."""
        target = node or self.primary
        key = f"rpc-{target.hostname}"
        if key not in self._rpc_clients:
            self._rpc_clients[key] = RestClient(
                target.host_url(self.config.ports.rpc), subject=self.name
            )
        return self._rpc_clients[key]

    async def _close_clients(self) -> None:
        clients = list(self._rpc_clients.values())
        self._rpc_clients.clear()
        await asyncio.gather(*(client.aclose() for client in clients))

    # -------------------------------------------------------------------------
    # Genesis
    # -------------------------------------------------------------------------

    async def _genesis_cmd(self, node: ChainNode, *args: str) -> None:
        """
        Run a genesis subcommand.

        SDK 0.47 moved these under `genesis`; older binaries have them at the
        top level. The first call decides which form this binary takes.
        """
        if self._legacy_genesis_cli is None:
            result = await node.run(self.bin_argv(node, "genesis", *args))
            if result.ok:
                self._legacy_genesis_cli = False
                return
            if "unknown command" not in (result.error_text + result.text):
                await node.run_ok(self.bin_argv(node, "genesis", *args))
            self._legacy_genesis_cli = True

        prefix = [] if self._legacy_genesis_cli else ["genesis"]
        await node.run_ok(self.bin_argv(node, *prefix, *args))

    async def _init_node(self, node: ChainNode) -> None:
        await node.run_ok(
            self.bin_argv(node, "init", node.hostname, "--chain-id", self.chain_id, "-o")
        )
        config_toml = f"{node.home_dir}/config/config.toml"
        sed = ["sed", "-i"]
        for edit in CONFIG_TOML_EDITS:
            sed += ["-e", edit]
        await node.run_ok([*sed, config_toml])

    async def add_key(self, node: ChainNode, key_name: str, mnemonic: str | None = None) -> Wallet:
        """Create or recover a key in a node's test keyring."""
        argv = self.bin_argv(
            node,
            "keys",
            "add",
            key_name,
            *KEYRING_FLAGS,
            "--output",
            "json",
            "--coin-type",
            str(self.config.coin_type),
        )
        if mnemonic is None:
            result = await node.run_ok(argv)
        else:
            result = await node.run_ok([*argv, "--recover"], stdin=f"{mnemonic}\n".encode())

        document = parse_json_output(result.stdout, result.stderr)
        address = document["address"]
        return Wallet(
            key_name=key_name,
            mnemonic=mnemonic or document.get("mnemonic", ""),
            formatted_address=address,
            address_bytes=bech32_to_bytes(address),
        )

    async def add_genesis_account(self, node: ChainNode, address: str, amount: int) -> None:
        await self._genesis_cmd(node, "add-genesis-account", address, f"{amount}{self.denom}")

    async def init_genesis(self) -> None:
        """
        Build the canonical genesis on the first validator and copy it everywhere.

        Consumer chains skip gentx: their validator set comes from the provider.
        """
        await asyncio.gather(*(self._init_node(node) for node in self.nodes))

        mnemonics = self.config.genesis_mnemonics
        for index, validator in enumerate(self.validators):
            mnemonic = mnemonics[index] if index < len(mnemonics) else None
            self.validator_wallets.append(await self.add_key(validator, VALIDATOR_KEY, mnemonic))

        primary = self.validators[0]
        faucet = await self.add_key(primary, FAUCET_KEY, self.config.faucet_mnemonic)
        self.keyring.add(faucet)

        validators = list(zip(self.validators, self.validator_wallets, strict=True))
        if self.collects_gentx:
            await asyncio.gather(*(self._gentx(node, wallet) for node, wallet in validators))

        for index, (validator, wallet) in enumerate(validators):
            if index == 0 and self.collects_gentx:
                continue
            await self.add_genesis_account(
                primary, wallet.formatted_address, self.config.validator_amount
            )
            if self.collects_gentx:
                gentx = await validator.read_file(f"config/gentx/gentx-{validator.hostname}.json")
                await primary.write_file(f"config/gentx/gentx-{validator.hostname}.json", gentx)

        await self.add_genesis_account(primary, faucet.formatted_address, self.config.faucet_amount)
        await self.extend_genesis(primary)

        if self.collects_gentx:
            await self._genesis_cmd(primary, "collect-gentxs")

        document = json.loads(await primary.read_file("config/genesis.json"))
        self.genesis = self.modify_genesis(document)
        await self.distribute_genesis()
        logger.info("Genesis for %s ready (%d validator(s))", self.name, self.num_validators)

    async def _gentx(self, validator: ChainNode, wallet: Wallet) -> None:
        await self.add_genesis_account(
            validator, wallet.formatted_address, self.config.validator_amount
        )
        await self._genesis_cmd(
            validator,
            "gentx",
            VALIDATOR_KEY,
            f"{self.config.self_delegation}{self.denom}",
            "--chain-id",
            self.chain_id,
            *KEYRING_FLAGS,
            "--output-document",
            f"{validator.home_dir}/config/gentx/gentx-{validator.hostname}.json",
        )

    async def extend_genesis(self, primary: ChainNode) -> None:
        """Hook for families that add entries before gentxs are collected."""

    def modify_genesis(self, document: dict[str, Any]) -> dict[str, Any]:
        """Apply denom, voting period and configured overrides."""
        return patch_cosmos_genesis(
            document,
            denom=self.denom,
            voting_period=self.config.voting_period if self.config.accelerate_voting else None,
            overrides=self.config.genesis_overrides,
        )

    async def distribute_genesis(self) -> None:
        data = json.dumps(self.genesis, indent=2).encode()
        await asyncio.gather(*(node.write_file("config/genesis.json", data) for node in self.nodes))

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def node_id(self, node: ChainNode) -> str:
        """Tendermint node id, from the node key in its home."""
        if node.hostname not in self._node_ids:
            result = await node.run(self.bin_argv(node, "tendermint", "show-node-id"))
            if not result.ok:
                result = await node.run_ok(self.bin_argv(node, "comet", "show-node-id"))
            self._node_ids[node.hostname] = result.text.strip()
        return self._node_ids[node.hostname]

    def start_command(self, node: ChainNode, peers: list[str]) -> list[str]:
        ports = self.config.ports
        argv = self.bin_argv(
            node,
            "start",
            "--rpc.laddr",
            f"tcp://0.0.0.0:{ports.rpc}",
            "--p2p.laddr",
            f"tcp://0.0.0.0:{ports.p2p}",
            "--grpc.address",
            f"0.0.0.0:{ports.grpc}",
            "--api.enable",
            "--api.address",
            f"tcp://0.0.0.0:{ports.api}",
            "--minimum-gas-prices",
            self.config.gas_prices,
        )
        if peers:
            argv += ["--p2p.persistent_peers", ",".join(peers)]
        return [*argv, *self.config.extra_start_args]

    async def launch_nodes(self) -> None:
        peers = {
            node.hostname: f"{await self.node_id(node)}@{node.hostname}:{self.config.ports.p2p}"
            for node in self.nodes
        }
        ports = self.config.ports
        for node in self.nodes:
            others = [peer for hostname, peer in peers.items() if hostname != node.hostname]
            await self.create_node_container(
                node,
                self.start_command(node, others),
                ports=[ports.rpc, ports.grpc, ports.api, ports.p2p],
            )
        self.broker.supervisor.register(f"rpc clients {self.name}", self._close_clients)
        await asyncio.gather(*(self.start_node_container(node) for node in self.nodes))

    async def node_height(self, node: ChainNode) -> int:
        status = await self.tendermint(node).get("/status")
        result = status.get("result", status)
        return int(result["sync_info"]["latest_block_height"])

    async def block(self, height: int | None = None) -> dict[str, Any]:
        """Block at `height` (latest when omitted) from the Tendermint RPC."""
        params = None if height is None else {"height": str(height)}
        document = await self.tendermint().get("/block", params=params)
        return document.get("result", document)

    async def block_summary(self, height: int) -> BlockSummary:
        document = await self.block(height)
        txs = document["block"]["data"].get("txs") or []
        return BlockSummary(
            height=height,
            hash=document["block_id"]["hash"],
            time=document["block"]["header"]["time"],
            tx_hashes=[hashlib.sha256(base64.b64decode(tx)).hexdigest().upper() for tx in txs],
        )

    async def measure_static_gas(self) -> int:
        """
        Dry-run a faucet self-transfer to fix the gas limit, then derive the fee.

        Every transfer afterwards pays exactly this fee, which keeps faucet
        accounting exact.
        """
        faucet = self.keyring.get(FAUCET_KEY)
        node = self.primary
        result = await node.run(
            self.bin_argv(
                node,
                "tx",
                "bank",
                "send",
                FAUCET_KEY,
                faucet.formatted_address,
                f"1{self.denom}",
                "--chain-id",
                self.chain_id,
                *KEYRING_FLAGS,
                *self.node_flag(),
                "--gas",
                "auto",
                "--dry-run",
            )
        )
        match = _GAS_ESTIMATE.search(result.error_text + result.text)
        if match is None:
            raise HarnessError(
                f"Transfer dry run gave no gas estimate: {result.error_text.strip()[-300:]}",
                component="chain",
                subject=self.name,
            )
        self.gas_limit = math.ceil(int(match.group(1)) * self.config.gas_adjustment)
        if self.config.fee_amount:
            return self.config.fee_amount
        price, _ = parse_gas_price(self.config.gas_prices)
        return math.ceil(price * self.gas_limit)

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    async def create_key(self, key_name: str) -> Wallet:
        async with self.keyring.lock:
            wallet = await self.add_key(self.primary, key_name)
            self.keyring.add(wallet)
        return wallet

    async def recover_key(self, key_name: str, mnemonic: str) -> Wallet:
        async with self.keyring.lock:
            wallet = await self.add_key(self.primary, key_name, mnemonic)
            self.keyring.add(wallet)
        return wallet

    # -------------------------------------------------------------------------
    # Balances and transactions
    # -------------------------------------------------------------------------

    async def get_balance(self, address: str, denom: str | None = None) -> int:
        document = await self.rest().get(
            f"/cosmos/bank/v1beta1/balances/{address}/by_denom",
            params={"denom": denom or self.denom},
        )
        balance = document.get("balance") or {}
        return int(balance.get("amount", 0))

    async def exec_tx(
        self,
        key_name: str,
        *args: str,
        node: ChainNode | None = None,
        fixed_fee: bool = False,
        memo: str | None = None,
    ) -> str:
        """
        Sign and broadcast a transaction, then wait for its inclusion.

        Args:
            key_name: Signing key in the node's keyring.
            args: The `tx` subcommand and its arguments.
            node: Node whose keyring holds the key (primary by default).
            fixed_fee: Pay exactly `static_gas` with the measured gas limit
                instead of simulating.
            memo: Transaction memo.

        Returns:
            The transaction hash.

        Raises:
            TxRejectedError: If the node refused the transaction or it failed in a block.
        """
        target = node or self.primary
        if fixed_fee:
            fee_flags = ["--gas", str(self.gas_limit), "--fees", f"{self.static_gas}{self.denom}"]
        else:
            fee_flags = [
                "--gas",
                "auto",
                "--gas-adjustment",
                str(self.config.gas_adjustment),
                "--gas-prices",
                self.config.gas_prices,
            ]
        argv = self.bin_argv(
            target,
            "tx",
            *args,
            "--from",
            key_name,
            "--chain-id",
            self.chain_id,
            *KEYRING_FLAGS,
            *self.node_flag(),
            *fee_flags,
            "--output",
            "json",
            "-y",
        )
        if memo:
            argv += ["--note", memo]

        result = await target.run(argv)
        try:
            response = parse_json_output(result.stdout, result.stderr)
        except ValueError:
            response = {}
        if not result.ok or int(response.get("code", 0)) != 0:
            raise TxRejectedError(
                f"tx {' '.join(args[:2])} rejected: "
                f"{response.get('raw_log') or result.error_text.strip()[-500:]}",
                component="chain",
                subject=self.name,
            )
        tx_hash = response["txhash"]
        await self.wait_for_tx(tx_hash)
        return tx_hash

    async def wait_for_tx(
        self, tx_hash: str, timeout: float = config.TX_INCLUSION_TIMEOUT
    ) -> dict[str, Any]:
        """
        Wait until a transaction is in a block.

        Raises:
            TxRejectedError: If it was included with a non-zero code.
            HarnessTimeoutError: If it was not included in time.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                document = await self.rest().get(f"/cosmos/tx/v1beta1/txs/{tx_hash}")
            except HarnessError:
                if time.monotonic() >= deadline:
                    raise HarnessTimeoutError(
                        f"tx {tx_hash} not included within {timeout:.0f}s",
                        component="chain",
                        subject=self.name,
                    ) from None
                await asyncio.sleep(config.POLL_INTERVAL)
                continue

            tx_response = document.get("tx_response", {})
            if int(tx_response.get("code", 0)) != 0:
                raise TxRejectedError(
                    f"tx {tx_hash} failed: {tx_response.get('raw_log')}",
                    component="chain",
                    subject=self.name,
                )
            return tx_response

    async def transfer(self, key_name: str, amount: WalletAmount, memo: str | None) -> str:
        return await self.exec_tx(
            key_name,
            "bank",
            "send",
            key_name,
            amount.address,
            f"{amount.amount}{amount.denom or self.denom}",
            fixed_fee=True,
            memo=memo,
        )

    async def tx_memo(self, tx_hash: str) -> str:
        """Memo of an included transaction."""
        document = await self.rest().get(f"/cosmos/tx/v1beta1/txs/{tx_hash}")
        return document["tx"]["body"].get("memo", "")

    async def stop(self) -> None:
        await super().stop()
        await self._close_clients()

    # -------------------------------------------------------------------------
    # Interchain security: provider side
    # -------------------------------------------------------------------------

    async def submit_consumer_addition(
        self, consumer: CosmosChain, deposit: int = 10_000_000
    ) -> str:
        """
        Submit the proposal admitting `consumer` and return its proposal id.

        The consumer must not be started yet; its chain starts from the CCV
        genesis the provider produces once the proposal passes.
        """
        genesis_hash = hashlib.sha256(json.dumps(consumer.genesis, sort_keys=True).encode())
        binary_hash = hashlib.sha256(consumer.config.bin.encode())
        proposal = {
            "title": f"Add {consumer.chain_id}",
            "summary": f"Add consumer chain {consumer.chain_id}",
            "description": f"Add consumer chain {consumer.chain_id}",
            "chain_id": consumer.chain_id,
            "initial_height": {"revision_number": 0, "revision_height": 1},
            "genesis_hash": base64.b64encode(genesis_hash.digest()).decode(),
            "binary_hash": base64.b64encode(binary_hash.digest()).decode(),
            "spawn_time": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "unbonding_period": "1728000s",
            "ccv_timeout_period": "2419200s",
            "transfer_timeout_period": "3600s",
            "consumer_redistribution_fraction": "0.75",
            "blocks_per_distribution_transmission": 1000,
            "historical_entries": 10000,
            "distribution_transmission_channel": "",
            "top_N": 95,
            "validators_power_cap": 0,
            "validator_set_cap": 0,
            "allowlist": [],
            "denylist": [],
            "deposit": f"{deposit}{self.denom}",
        }
        path = f"consumer-addition-{consumer.chain_id}.json"
        await self.primary.write_file(path, json.dumps(proposal).encode())

        proposal_file = f"{self.primary.home_dir}/{path}"
        try:
            await self.exec_tx(
                FAUCET_KEY, "gov", "submit-legacy-proposal", "consumer-addition", proposal_file
            )
        except TxRejectedError:
            await self.exec_tx(
                FAUCET_KEY, "gov", "submit-proposal", "consumer-addition", proposal_file
            )

        proposals = await self.query("gov", "proposals")
        latest = proposals["proposals"][-1]
        proposal_id = str(latest.get("id") or latest.get("proposal_id"))
        logger.info(
            "Consumer addition for %s submitted as proposal %s", consumer.chain_id, proposal_id
        )
        return proposal_id

    async def vote_all_yes(self, proposal_id: str) -> None:
        """Vote yes from every validator's operator key."""
        await asyncio.gather(
            *(
                self.exec_tx(VALIDATOR_KEY, "gov", "vote", proposal_id, "yes", node=validator)
                for validator in self.validators
            )
        )

    async def proposal_status(self, proposal_id: str) -> str:
        document = await self.query("gov", "proposal", proposal_id)
        proposal = document.get("proposal", document)
        return str(proposal["status"])

    async def wait_for_proposal_status(
        self,
        proposal_id: str,
        status: str = PROPOSAL_PASSED,
        timeout: float = config.BLOCK_WAIT_TIMEOUT,
    ) -> None:
        """
        Wait for a proposal to reach `status`.

        Raises:
            HarnessError: If the proposal ended in another terminal status.
            HarnessTimeoutError: If it did not get there in time.
        """
        deadline = time.monotonic() + timeout
        while True:
            current = await self.proposal_status(proposal_id)
            if current == status:
                return
            if current in PROPOSAL_FAILED_STATUSES:
                raise HarnessError(
                    f"proposal {proposal_id} ended as {current}",
                    component="chain",
                    subject=self.name,
                )
            if time.monotonic() >= deadline:
                raise HarnessTimeoutError(
                    f"proposal {proposal_id} still {current} after {timeout:.0f}s",
                    component="chain",
                    subject=self.name,
                )
            await asyncio.sleep(config.POLL_INTERVAL)

    async def consumer_genesis(
        self, chain_id: str, timeout: float = config.BLOCK_WAIT_TIMEOUT
    ) -> dict[str, Any]:
        """
        CCV genesis section for a consumer.

        The provider only has it once the spawn time has passed, so this polls.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                return await self.query("provider", "consumer-genesis", chain_id)
            except HarnessError:
                if time.monotonic() >= deadline:
                    raise
            await asyncio.sleep(config.POLL_INTERVAL)

    async def list_consumer_chains(self) -> list[str]:
        document = await self.query("provider", "list-consumer-chains")
        return [entry["chain_id"] for entry in document.get("chains") or []]

    # -------------------------------------------------------------------------
    # Interchain security: consumer side
    # -------------------------------------------------------------------------

    async def start_as_consumer(
        self, provider: CosmosChain, timeout: float = config.NODE_READINESS_TIMEOUT
    ) -> None:
        """
        Start from the provider's CCV genesis.

        Consumer validators sign with the provider validators' consensus keys.
        """
        if len(provider.validators) < len(self.validators):
            raise ConfigInvalidError(
                f"consumer {self.name} has more validators than provider {provider.name}",
                component="chain",
                subject=self.name,
            )

        for provider_node, consumer_node in zip(provider.validators, self.validators, strict=False):
            key = await provider_node.read_file("config/priv_validator_key.json")
            await consumer_node.write_file("config/priv_validator_key.json", key)

        ccv = await provider.consumer_genesis(self.chain_id)
        self.genesis = deep_merge(self.genesis, {"app_state": {"ccvconsumer": ccv}})
        await self.distribute_genesis()
        await self.start(timeout)
