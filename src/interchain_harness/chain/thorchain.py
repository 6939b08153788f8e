"""
THORChain driver.

A Cosmos SDK chain whose validator set comes from node accounts in the
thorchain module rather than from gentxs, with a bifrost sidecar per
validator observing the external chains. Deposits into the network go
through its own MsgDeposit, and most state is read from the THORNode REST API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, ClassVar

from interchain_harness.docker import ContainerHandle, Mount
from interchain_harness.errors import HarnessError

from .base import ChainNode
from .cosmos import KEYRING_FLAGS, VALIDATOR_KEY, CosmosChain
from .descriptor import SidecarConfig
from .genesis import deep_merge
from .keyring import WalletAmount

logger = logging.getLogger(__name__)

SIGNER_PASSWORD = "password"
"""Keystore password bifrost uses for its signer key."""


class ThorChain(CosmosChain):
    """THORChain: node accounts, bifrost sidecars and the THORNode API."""

    has_sidecars: ClassVar[bool] = True
    supports_ibc: ClassVar[bool] = False
    uses_gentx: ClassVar[bool] = False

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.node_accounts: list[dict[str, Any]] = []

    # -------------------------------------------------------------------------
    # Genesis
    # -------------------------------------------------------------------------

    async def _pubkey(self, node: ChainNode, *args: str, stdin: bytes | None = None) -> str:
        result = await node.run_ok(self.bin_argv(node, *args), stdin=stdin)
        return result.text.strip()

    async def _node_account(self, node: ChainNode, address: str, mnemonic: str) -> dict[str, Any]:
        """Node-account entry making a validator active at genesis."""
        show = await node.run_ok(
            self.bin_argv(node, "keys", "show", VALIDATOR_KEY, "--pubkey", *KEYRING_FLAGS)
        )
        secp256k1 = await self._pubkey(node, "pubkey", show.text.strip())
        ed25519 = await self._pubkey(node, "ed25519", stdin=f"{mnemonic}\n".encode())
        consensus = await node.run_ok(self.bin_argv(node, "tendermint", "show-validator"))
        cons_pub_key = await self._pubkey(node, "pubkey", "--bech", "cons", consensus.text.strip())
        version = (await node.run_ok([self.config.bin, "version"])).text.strip()

        return {
            "node_address": address,
            "version": version,
            "ip_address": node.hostname,
            "status": "Active",
            "bond": str(self.config.validator_amount),
            "active_block_height": "0",
            "bond_address": address,
            "signer_membership": [],
            "validator_cons_pub_key": cons_pub_key,
            "pub_key_set": {"secp256k1": secp256k1, "ed25519": ed25519},
        }

    async def extend_genesis(self, primary: ChainNode) -> None:
        self.node_accounts = [
            await self._node_account(node, wallet.formatted_address, wallet.mnemonic)
            for node, wallet in zip(self.validators, self.validator_wallets, strict=True)
        ]

    def modify_genesis(self, document: dict[str, Any]) -> dict[str, Any]:
        patched = super().modify_genesis(document)
        existing = patched.get("app_state", {}).get("thorchain", {}).get("node_accounts") or []
        return deep_merge(
            patched,
            {"app_state": {"thorchain": {"node_accounts": [*existing, *self.node_accounts]}}},
        )

    # -------------------------------------------------------------------------
    # Sidecars
    # -------------------------------------------------------------------------

    async def sidecar_start(self) -> None:
        """Create and start a bifrost for each validator."""
        for sidecar in self.config.sidecars:
            targets = self.validators if sidecar.validator_process else self.validators[:1]
            handles = [await self._create_sidecar(sidecar, node) for node in targets]
            await asyncio.gather(*(self.broker.start(handle) for handle in handles))
            self.sidecars.extend(handles)
        logger.info("Started %d sidecar(s) for %s", len(self.sidecars), self.name)

    async def _create_sidecar(self, sidecar: SidecarConfig, node: ChainNode) -> ContainerHandle:
        wallet = self.validator_wallets[node.index]
        hostname = f"{node.hostname}-{sidecar.process_name}"
        volume = await self.broker.create_volume(hostname)
        env = {
            "CHAIN_ID": self.chain_id,
            "CHAIN_API": f"{node.hostname}:{self.config.ports.api}",
            "CHAIN_RPC": f"{node.hostname}:{self.config.ports.rpc}",
            "SIGNER_NAME": VALIDATOR_KEY,
            "SIGNER_PASSWD": SIGNER_PASSWORD,
            "SIGNER_SEED_PHRASE": wallet.mnemonic,
            **self.config.env,
            **sidecar.env,
        }
        return await self.broker.create(
            sidecar.image.reference,
            sidecar.start_cmd,
            hostname=hostname,
            env=env,
            mounts=[Mount(volume, sidecar.home_dir)],
            entrypoint=[] if sidecar.start_cmd else None,
            ports=sidecar.ports,
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def measure_static_gas(self) -> int:
        """The native transaction fee, charged per transfer regardless of gas."""
        if self.config.fee_amount:
            return self.config.fee_amount
        network = await self.api_get_network()
        return int(network["native_tx_fee_rune"])

    async def transfer(self, key_name: str, amount: WalletAmount, memo: str | None) -> str:
        return await self.exec_tx(
            key_name,
            "bank",
            "send",
            key_name,
            amount.address,
            f"{amount.amount}{amount.denom or self.denom}",
            memo=memo,
        )

    async def deposit(self, key_name: str, amount: int, denom: str, memo: str) -> str:
        """Deposit into the network with a memo (MsgDeposit)."""
        async with self.tx_lock(key_name):
            return await self.exec_tx(key_name, "thorchain", "deposit", str(amount), denom, memo)

    async def set_mimir(self, key_name: str, name: str, value: str) -> str:
        """Set a mimir value; the key must be a mimir admin."""
        async with self.tx_lock(key_name):
            return await self.exec_tx(key_name, "thorchain", "mimir", name, value)

    # -------------------------------------------------------------------------
    # THORNode API
    # -------------------------------------------------------------------------

    async def api_get_network(self) -> dict[str, Any]:
        return await self.rest().get("/thorchain/network")

    async def api_get_pools(self) -> list[dict[str, Any]]:
        return await self.rest().get("/thorchain/pools")

    async def api_get_pool(self, asset: str) -> dict[str, Any]:
        return await self.rest().get(f"/thorchain/pool/{asset}")

    async def api_get_savers(self, asset: str) -> list[dict[str, Any]]:
        return await self.rest().get(f"/thorchain/pool/{asset}/savers")

    async def api_get_inbound_address(self, chain: str) -> tuple[str, str | None]:
        """
        Vault address (and router, for EVM chains) to send `chain` deposits to.

        Raises:
            HarnessError: If the network has no inbound address for the chain.
        """
        inbound = await self.rest().get("/thorchain/inbound_addresses")
        for entry in inbound:
            if entry.get("chain") == chain:
                return entry["address"], entry.get("router")
        raise HarnessError(
            f"no inbound address for {chain}", component="chain", subject=self.name
        )

    async def api_get_mimirs(self) -> dict[str, int]:
        mimirs = await self.rest().get("/thorchain/mimir")
        return {name: int(value) for name, value in mimirs.items()}

    async def api_get_tx_stages(self, tx_hash: str) -> dict[str, Any]:
        return await self.rest().get(f"/thorchain/tx/stages/{tx_hash}")

    async def api_get_tx_details(self, tx_hash: str) -> dict[str, Any]:
        return await self.rest().get(f"/thorchain/tx/details/{tx_hash}")

    async def api_get_swap_quote(
        self, from_asset: str, to_asset: str, amount: int
    ) -> dict[str, Any]:
        return await self.rest().get(
            "/thorchain/quote/swap",
            params={"from_asset": from_asset, "to_asset": to_asset, "amount": str(amount)},
        )

    async def api_get_saver_deposit_quote(self, asset: str, amount: int) -> dict[str, Any]:
        return await self.rest().get(
            "/thorchain/quote/saver/deposit", params={"asset": asset, "amount": str(amount)}
        )
