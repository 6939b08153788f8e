"""
EVM chain driver backed by anvil.

The node is anvil started from a genesis allocation that funds the faucet.
Heights and balances come from Ethereum JSON-RPC; keys, transfers and
contract deployment go through foundry's `cast` and `forge` inside the node
container. Memo transfers call the bundled router's
`deposit(address,uint256,bytes)`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from importlib import resources
from typing import Any

from interchain_harness.errors import HarnessError, TxRejectedError

from .base import BlockSummary, Chain, ChainNode
from .genesis import evm_allocation
from .keyring import FAUCET_KEY, Wallet, WalletAmount
from .rpc import JsonRpcClient

logger = logging.getLogger(__name__)

TOKEN_SUPPLY = 10**9 * 10**18
"""Test token supply minted to the faucet."""

DEPOSIT_SIGNATURES = (
    "deposit(address,uint256,bytes)",
    "depositToken(address,address,uint256,bytes)",
)
"""Router entry points that carry a memo as their last argument."""


def contract_source(name: str) -> bytes:
    """Solidity source of a bundled contract."""
    return (resources.files("interchain_harness.chain") / "contracts" / f"{name}.sol").read_bytes()


class EvmChain(Chain):
    """An Ethereum-compatible development chain."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        if self.num_validators != 1 or self.num_full_nodes:
            logger.warning("%s runs a single anvil node; ignoring node counts", self.name)
        self.num_validators, self.num_full_nodes = 1, 0
        self.router_address: str | None = self.config.router_address
        self.token_address: str | None = self.config.token_address
        self.gas_price = 0
        self._rpc: dict[str, JsonRpcClient] = {}

    @property
    def numeric_chain_id(self) -> int:
        return int(self.chain_id)

    def rpc(self, node: ChainNode | None = None) -> JsonRpcClient:
        target = node or self.primary
        if target.hostname not in self._rpc:
            self._rpc[target.hostname] = JsonRpcClient(
                target.host_url(self.config.ports.rpc), subject=self.name
            )
        return self._rpc[target.hostname]

    async def _close_clients(self) -> None:
        clients = list(self._rpc.values())
        self._rpc.clear()
        await asyncio.gather(*(client.aclose() for client in clients))

    @property
    def local_rpc_url(self) -> str:
        """RPC URL as seen from inside the node container."""
        return f"http://localhost:{self.config.ports.rpc}"

    async def cast(self, *args: str) -> str:
        """Run `cast` in the primary node and return its stdout."""
        result = await self.primary.run_ok([self.config.cli_bin or "cast", *args])
        return result.text.strip()

    def _signer(self, key_name: str) -> list[str]:
        return ["--mnemonic", self.keyring.get(key_name).mnemonic]

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    async def _new_wallet(self, key_name: str) -> Wallet:
        document = json.loads(await self.cast("wallet", "new-mnemonic", "--json"))
        address = document["accounts"][0]["address"]
        return Wallet(
            key_name=key_name,
            mnemonic=document["mnemonic"],
            formatted_address=address,
            address_bytes=bytes.fromhex(address.removeprefix("0x")),
        )

    async def _recovered_wallet(self, key_name: str, mnemonic: str) -> Wallet:
        address = await self.cast("wallet", "address", "--mnemonic", mnemonic)
        return Wallet(
            key_name=key_name,
            mnemonic=mnemonic,
            formatted_address=address,
            address_bytes=bytes.fromhex(address.removeprefix("0x")),
        )

    async def create_key(self, key_name: str) -> Wallet:
        async with self.keyring.lock:
            wallet = await self._new_wallet(key_name)
            self.keyring.add(wallet)
        return wallet

    async def recover_key(self, key_name: str, mnemonic: str) -> Wallet:
        async with self.keyring.lock:
            wallet = await self._recovered_wallet(key_name, mnemonic)
            self.keyring.add(wallet)
        return wallet

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init_genesis(self) -> None:
        """Write a genesis allocation funding the faucet."""
        if self.config.faucet_mnemonic:
            faucet = await self._recovered_wallet(FAUCET_KEY, self.config.faucet_mnemonic)
        else:
            faucet = await self._new_wallet(FAUCET_KEY)
        self.keyring.add(faucet)

        allocation = {faucet.formatted_address: self.config.faucet_amount}
        genesis = evm_allocation(allocation, self.numeric_chain_id)
        await self.primary.write_file("genesis.json", json.dumps(genesis, indent=2).encode())

    async def launch_nodes(self) -> None:
        node = self.primary
        cmd = [
            self.config.bin,
            "--host",
            "0.0.0.0",
            "--port",
            str(self.config.ports.rpc),
            "--chain-id",
            self.chain_id,
            "--block-time",
            str(max(1, round(self.config.block_interval))),
            "--init",
            f"{node.home_dir}/genesis.json",
            "--block-base-fee-per-gas",
            "0",
            "--gas-price",
            "0",
            *self.config.extra_start_args,
        ]
        await self.create_node_container(node, cmd, ports=[self.config.ports.rpc])
        self.broker.supervisor.register(f"rpc clients {self.name}", self._close_clients)
        await self.start_node_container(node)

    async def node_height(self, node: ChainNode) -> int:
        return int(await self.rpc(node).call("eth_blockNumber"), 16)

    async def block_summary(self, height: int) -> BlockSummary:
        block = await self.rpc().call("eth_getBlockByNumber", hex(height), False)
        timestamp = datetime.fromtimestamp(int(block["timestamp"], 16), UTC)
        return BlockSummary(
            height=height,
            hash=block["hash"],
            time=timestamp.isoformat(),
            tx_hashes=list(block.get("transactions") or []),
        )

    async def post_start(self) -> None:
        """Deploy the token and router unless the configured addresses hold code."""
        if not await self._has_code(self.token_address):
            self.token_address = await self.deploy("TestToken", str(TOKEN_SUPPLY))
        if not await self._has_code(self.router_address):
            self.router_address = await self.deploy("Router")
        logger.info("%s router %s token %s", self.name, self.router_address, self.token_address)

    async def measure_static_gas(self) -> int:
        """Fee of a plain value transfer at the node's gas price."""
        self.gas_price = int(await self.rpc().call("eth_gasPrice"), 16)
        estimate = await self.rpc().call(
            "eth_estimateGas",
            {
                "from": await self.get_address(FAUCET_KEY),
                "to": await self.get_address(FAUCET_KEY),
                "value": "0x1",
            },
        )
        return int(estimate, 16) * self.gas_price

    async def _has_code(self, address: str | None) -> bool:
        if not address:
            return False
        return await self.rpc().call("eth_getCode", address, "latest") not in ("0x", "0x0", None)

    async def deploy(self, contract: str, *constructor_args: str) -> str:
        """Compile and deploy a bundled contract from the faucet; returns its address."""
        root = f"{self.primary.home_dir}/contracts"
        await self.primary.write_file(f"contracts/src/{contract}.sol", contract_source(contract))
        argv = [
            "forge",
            "create",
            f"src/{contract}.sol:{contract}",
            "--root",
            root,
            "--rpc-url",
            self.local_rpc_url,
            *self._signer(FAUCET_KEY),
            "--broadcast",
            "--json",
        ]
        if constructor_args:
            argv += ["--constructor-args", *constructor_args]
        result = await self.primary.run_ok(argv)
        document = json.loads(result.text[result.text.find("{") :])
        logger.debug("Deployed %s at %s", contract, document["deployedTo"])
        return document["deployedTo"]

    async def stop(self) -> None:
        await super().stop()
        await self._close_clients()

    # -------------------------------------------------------------------------
    # Balances and transfers
    # -------------------------------------------------------------------------

    def _is_native(self, denom: str | None) -> bool:
        return not denom or denom == self.denom

    async def get_balance(self, address: str, denom: str | None = None) -> int:
        """Native balance, or the ERC-20 balance when `denom` is a token address."""
        if self._is_native(denom):
            return int(await self.rpc().call("eth_getBalance", address, "latest"), 16)
        output = await self.cast(
            "call", denom, "balanceOf(address)(uint256)", address, "--rpc-url", self.local_rpc_url
        )
        return int(output.split()[0])

    async def _cast_send(self, key_name: str, *args: str, value: int = 0) -> str:
        argv = [
            "send",
            *args,
            "--rpc-url",
            self.local_rpc_url,
            *self._signer(key_name),
            "--legacy",
            "--gas-price",
            str(self.gas_price),
            "--json",
        ]
        if value:
            argv += ["--value", str(value)]
        result = await self.primary.run([self.config.cli_bin or "cast", *argv])
        if not result.ok:
            raise TxRejectedError(
                f"cast send failed: {result.error_text.strip()[-500:]}",
                component="chain",
                subject=self.name,
            )
        receipt = json.loads(result.text[result.text.find("{") :])
        if receipt.get("status") not in ("0x1", 1, "1"):
            raise TxRejectedError(
                f"tx {receipt.get('transactionHash')} reverted",
                component="chain",
                subject=self.name,
            )
        return receipt["transactionHash"]

    async def transfer(self, key_name: str, amount: WalletAmount, memo: str | None) -> str:
        native = self._is_native(amount.denom)
        if memo is None:
            if native:
                return await self._cast_send(key_name, amount.address, value=amount.amount)
            return await self._cast_send(
                key_name,
                amount.denom,
                "transfer(address,uint256)",
                amount.address,
                str(amount.amount),
            )

        if not self.router_address:
            raise HarnessError("router is not deployed", component="chain", subject=self.name)
        memo_hex = "0x" + memo.encode().hex()
        if native:
            return await self._cast_send(
                key_name,
                self.router_address,
                "deposit(address,uint256,bytes)",
                amount.address,
                str(amount.amount),
                memo_hex,
                value=amount.amount,
            )
        await self._cast_send(
            key_name,
            amount.denom,
            "approve(address,uint256)",
            self.router_address,
            str(amount.amount),
        )
        return await self._cast_send(
            key_name,
            self.router_address,
            "depositToken(address,address,uint256,bytes)",
            amount.address,
            amount.denom,
            str(amount.amount),
            memo_hex,
        )

    async def tx_memo(self, tx_hash: str) -> str:
        """
        Decode the memo argument of a router deposit call.

        Raises:
            HarnessError: If the transaction is not a router deposit.
        """
        tx = await self.rpc().call("eth_getTransactionByHash", tx_hash)
        if not tx or (tx.get("to") or "").lower() != (self.router_address or "").lower():
            raise HarnessError(
                f"tx {tx_hash} is not a router deposit", component="chain", subject=self.name
            )
        selector = tx["input"][:10]
        for signature in DEPOSIT_SIGNATURES:
            if await self.cast("sig", signature) == selector:
                decoded = await self.cast("calldata-decode", signature, tx["input"])
                memo_hex = decoded.splitlines()[-1].strip()
                return bytes.fromhex(memo_hex.removeprefix("0x")).decode()
        raise HarnessError(
            f"tx {tx_hash} is not a router deposit", component="chain", subject=self.name
        )
