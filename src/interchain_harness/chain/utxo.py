"""
UTXO chain driver for the bitcoind family (bitcoin, bitcoin cash, litecoin,
dogecoin) in regtest mode.

Each key is its own node wallet. The faucet wallet receives a few mature
coinbases at start; a background miner then produces a block every
`block_interval` seconds to a separate miner wallet so the faucet balance
only changes when the faucet spends.

Transfers are built by hand from the sender's UTXOs: coins are selected
largest-first, the memo goes into a zero-value OP_RETURN output, change goes
back to the sender, and the fee is the configured flat `tx_fee`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, ClassVar

from interchain_harness import config
from interchain_harness.errors import HarnessError, HarnessTimeoutError, TxRejectedError

from .base import BlockSummary, Chain, ChainNode
from .keyring import FAUCET_KEY, Wallet, WalletAmount
from .rpc import JsonRpcClient, RpcError

logger = logging.getLogger(__name__)

SATS_PER_COIN = 10**8
COINBASE_MATURITY = 100
FAUCET_BLOCKS = 10
"""Coinbases mined to the faucet; all of them are mature once start() returns."""

MAX_MEMO_BYTES = 80
"""Largest OP_RETURN payload relayed by default policy."""

MINER_WALLET = "miner"
RPC_METHOD_NOT_FOUND = -32601


def to_sats(amount: Decimal | int | str) -> int:
    """Convert a coin amount as returned by the node into base units."""
    return int((Decimal(amount) * SATS_PER_COIN).to_integral_exact())


def to_coins(sats: int) -> Decimal:
    """Convert base units into the exact coin amount the node expects."""
    return (Decimal(sats) / SATS_PER_COIN).quantize(Decimal("0.00000001"))


@dataclass(frozen=True, slots=True)
class Utxo:
    """An unspent output."""

    txid: str
    vout: int
    amount: int
    """Value in base units."""


def select_coins(utxos: Iterable[Utxo], target: int) -> tuple[list[Utxo], int]:
    """
    Pick inputs covering `target`, largest first.

    Ties are broken by (txid, vout) so the same wallet state always yields
    the same inputs and the same change.

    Returns:
        The selected outputs and their total value.

    Raises:
        ValueError: If the outputs cannot cover the target.
    """
    ordered = sorted(utxos, key=lambda utxo: (-utxo.amount, utxo.txid, utxo.vout))
    selected: list[Utxo] = []
    total = 0
    for utxo in ordered:
        if total >= target:
            break
        selected.append(utxo)
        total += utxo.amount
    if total < target:
        raise ValueError(f"insufficient funds: have {total}, need {target}")
    return selected, total


def build_outputs(
    sender: str, recipient: str, amount: int, change: int, memo: bytes | None
) -> dict[str, Any]:
    """
    Output map for createrawtransaction.

    The object form is accepted by every daemon in the family; the memo output
    is the reserved "data" key.
    """
    outputs: dict[str, Any] = {recipient: to_coins(amount)}
    if memo is not None:
        outputs["data"] = memo.hex()
    if change > 0:
        if sender == recipient:
            outputs[recipient] = to_coins(amount + change)
        else:
            outputs[sender] = to_coins(change)
    return outputs


OP_RETURN = 0x6A
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E


def op_return_payload(script_hex: str) -> bytes:
    """
    Raw bytes pushed by an OP_RETURN output script.

    The node's assembly text renders pushes of four bytes or fewer as script
    numbers, so the payload is read from the script bytes instead. Multiple
    pushes are concatenated; a bare OP_RETURN carries no payload.

    Raises:
        ValueError: If the script is not OP_RETURN followed by data pushes.
    """
    script = bytes.fromhex(script_hex)
    if not script or script[0] != OP_RETURN:
        raise ValueError(f"script {script_hex!r} is not an OP_RETURN output")

    payload = bytearray()
    pos = 1
    while pos < len(script):
        opcode = script[pos]
        pos += 1
        if opcode < OP_PUSHDATA1:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            length = int.from_bytes(script[pos : pos + 1], "little")
            pos += 1
        elif opcode == OP_PUSHDATA2:
            length = int.from_bytes(script[pos : pos + 2], "little")
            pos += 2
        elif opcode == OP_PUSHDATA4:
            length = int.from_bytes(script[pos : pos + 4], "little")
            pos += 4
        else:
            raise ValueError(f"script {script_hex!r} has non-push opcode {opcode:#04x}")
        if pos + length > len(script):
            raise ValueError(f"script {script_hex!r} push runs past the end of the script")
        payload += script[pos : pos + length]
        pos += length
    return bytes(payload)


class UtxoChain(Chain):
    """A bitcoind-family chain in regtest."""

    needs_genesis: ClassVar[bool] = False
    readiness_height: ClassVar[int] = 0

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        if self.num_validators != 1 or self.num_full_nodes:
            logger.warning("%s runs a single daemon; ignoring node counts", self.name)
        self.num_validators, self.num_full_nodes = 1, 0
        self.single_wallet = False
        """Daemons without multiwallet support keep every key in the default wallet."""

        self.miner_address = ""
        self._rpc: JsonRpcClient | None = None
        self._miner: asyncio.Task[None] | None = None

    @property
    def rpc(self) -> JsonRpcClient:
        if self._rpc is None:
            self._rpc = JsonRpcClient(
                self.primary.host_url(self.config.ports.rpc),
                auth=(self.config.rpc_user or "", self.config.rpc_password or ""),
                subject=self.name,
                decimal_floats=True,
            )
        return self._rpc

    def wallet_path(self, key_name: str) -> str:
        return "" if self.single_wallet else f"/wallet/{key_name}"

    async def wallet_call(self, key_name: str, method: str, *params: Any) -> Any:
        return await self.rpc.call(method, *params, path=self.wallet_path(key_name))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init_genesis(self) -> None:
        """Genesis is built into the daemon's regtest parameters."""

    async def launch_nodes(self) -> None:
        node = self.primary
        ports = self.config.ports
        cmd = [
            self.config.bin,
            "-regtest",
            "-server",
            "-txindex=1",
            "-printtoconsole",
            f"-datadir={node.home_dir}",
            f"-rpcuser={self.config.rpc_user}",
            f"-rpcpassword={self.config.rpc_password}",
            "-rpcallowip=0.0.0.0/0",
            "-rpcbind=0.0.0.0",
            f"-rpcport={ports.rpc}",
            f"-port={ports.p2p}",
            "-fallbackfee=0.0002",
            "-deprecatedrpc=create_bdb",
            *self.config.extra_start_args,
        ]
        await self.create_node_container(node, cmd, ports=[ports.rpc], entrypoint=None)
        self.broker.supervisor.register(f"rpc client {self.name}", self._close_rpc)
        await self.start_node_container(node)

    async def _close_rpc(self) -> None:
        if self._rpc is not None:
            await self._rpc.aclose()
            self._rpc = None

    async def node_height(self, node: ChainNode) -> int:
        return int(await self.rpc.call("getblockcount"))

    async def block_summary(self, height: int) -> BlockSummary:
        block_hash = await self.rpc.call("getblockhash", height)
        block = await self.rpc.call("getblock", block_hash, 1)
        return BlockSummary(
            height=height,
            hash=block_hash,
            time=datetime.fromtimestamp(int(block["time"]), UTC).isoformat(),
            tx_hashes=list(block.get("tx") or []),
        )

    async def post_start(self) -> None:
        """Create the faucet and miner wallets, mature the faucet's coins, start mining."""
        faucet = await self._create_wallet(FAUCET_KEY)
        self.keyring.add(faucet)
        miner = await self._create_wallet(MINER_WALLET)
        self.miner_address = miner.formatted_address

        await self.rpc.call("generatetoaddress", FAUCET_BLOCKS, faucet.formatted_address)
        await self.rpc.call("generatetoaddress", COINBASE_MATURITY, self.miner_address)
        self._miner = asyncio.create_task(self._mine(), name=f"miner-{self.name}")
        self.broker.supervisor.register(f"miner {self.name}", self._stop_miner)

    async def _mine(self) -> None:
        """Produce a block every `block_interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(self.config.block_interval)
            try:
                await self.rpc.call("generatetoaddress", 1, self.miner_address)
            except HarnessError as exc:
                logger.warning("%s miner: %s", self.name, exc)

    async def _stop_miner(self) -> None:
        if self._miner is not None:
            self._miner.cancel()
            await asyncio.gather(self._miner, return_exceptions=True)
            self._miner = None

    async def measure_static_gas(self) -> int:
        """Transfers pay the flat configured fee."""
        return self.config.tx_fee

    async def stop(self) -> None:
        await self._stop_miner()
        await super().stop()
        await self._close_rpc()

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    async def _ensure_wallet(self, key_name: str) -> None:
        if self.single_wallet:
            return
        try:
            await self.rpc.call("createwallet", key_name, False, False, "", False, False)
        except RpcError as exc:
            if exc.code == RPC_METHOD_NOT_FOUND:
                self.single_wallet = True
                return
            # Daemons without the descriptors parameter take the short form.
            await self.rpc.call("createwallet", key_name)

    async def _create_wallet(self, key_name: str) -> Wallet:
        await self._ensure_wallet(key_name)
        address = await self.wallet_call(key_name, "getnewaddress", key_name)
        try:
            secret = await self.wallet_call(key_name, "dumpprivkey", address)
        except RpcError:
            secret = ""
        return Wallet(
            key_name=key_name,
            mnemonic=secret,
            formatted_address=address,
            address_bytes=address.encode(),
        )

    async def create_key(self, key_name: str) -> Wallet:
        async with self.keyring.lock:
            wallet = await self._create_wallet(key_name)
            self.keyring.add(wallet)
        return wallet

    async def recover_key(self, key_name: str, mnemonic: str) -> Wallet:
        """Import a key from its WIF private key (UTXO keys have no mnemonic)."""
        async with self.keyring.lock:
            await self._ensure_wallet(key_name)
            await self.wallet_call(key_name, "importprivkey", mnemonic, key_name, True)
            addresses = await self.wallet_call(key_name, "getaddressesbylabel", key_name)
            address = next(iter(addresses))
            wallet = Wallet(
                key_name=key_name,
                mnemonic=mnemonic,
                formatted_address=address,
                address_bytes=address.encode(),
            )
            self.keyring.add(wallet)
        return wallet

    def _owner(self, address: str) -> str | None:
        for wallet in self.keyring.wallets.values():
            if wallet.formatted_address == address:
                return wallet.key_name
        return None

    # -------------------------------------------------------------------------
    # Balances and transfers
    # -------------------------------------------------------------------------

    async def list_utxos(self, key_name: str, address: str) -> list[Utxo]:
        entries = await self.wallet_call(key_name, "listunspent", 1, 9_999_999, [address])
        return [
            Utxo(txid=entry["txid"], vout=int(entry["vout"]), amount=to_sats(entry["amount"]))
            for entry in entries
        ]

    async def get_balance(self, address: str, denom: str | None = None) -> int:
        """Sum of confirmed UTXOs paying to `address`."""
        owner = self._owner(address)
        if owner is not None:
            return sum(utxo.amount for utxo in await self.list_utxos(owner, address))
        scan = await self.rpc.call("scantxoutset", "start", [f"addr({address})"])
        return to_sats(scan["total_amount"])

    async def transfer(self, key_name: str, amount: WalletAmount, memo: str | None) -> str:
        memo_bytes = None if memo is None else memo.encode()
        if memo_bytes is not None and len(memo_bytes) > MAX_MEMO_BYTES:
            raise TxRejectedError(
                f"memo is {len(memo_bytes)} bytes; OP_RETURN carries at most {MAX_MEMO_BYTES}",
                component="chain",
                subject=self.name,
            )

        sender = self.keyring.get(key_name).formatted_address
        fee = self.config.tx_fee
        try:
            utxos = await self.list_utxos(key_name, sender)
            inputs, total = select_coins(utxos, amount.amount + fee)
        except ValueError as exc:
            raise TxRejectedError(str(exc), component="chain", subject=self.name) from exc

        change = total - amount.amount - fee
        outputs = build_outputs(sender, amount.address, amount.amount, change, memo_bytes)
        raw = await self.rpc.call(
            "createrawtransaction",
            [{"txid": utxo.txid, "vout": utxo.vout} for utxo in inputs],
            outputs,
        )
        signed = await self._sign(key_name, raw)
        if not signed.get("complete"):
            raise TxRejectedError(
                f"signing incomplete: {signed.get('errors')}", component="chain", subject=self.name
            )
        try:
            txid = await self.rpc.call("sendrawtransaction", signed["hex"])
        except RpcError as exc:
            raise TxRejectedError(exc.message, component="chain", subject=self.name) from exc

        await self.wait_for_confirmation(txid)
        return txid

    async def _sign(self, key_name: str, raw: str) -> dict[str, Any]:
        try:
            return await self.wallet_call(key_name, "signrawtransactionwithwallet", raw)
        except RpcError as exc:
            if exc.code != RPC_METHOD_NOT_FOUND:
                raise
            return await self.wallet_call(key_name, "signrawtransaction", raw)

    async def wait_for_confirmation(
        self, txid: str, timeout: float = config.TX_INCLUSION_TIMEOUT
    ) -> None:
        """
        Wait until a transaction has one confirmation.

        Raises:
            HarnessTimeoutError: If it is not mined in time.
        """
        deadline = time.monotonic() + timeout
        while True:
            tx = await self.rpc.call("getrawtransaction", txid, True)
            if int(tx.get("confirmations", 0)) >= 1:
                return
            if time.monotonic() >= deadline:
                raise HarnessTimeoutError(
                    f"tx {txid} unconfirmed after {timeout:.0f}s",
                    component="chain",
                    subject=self.name,
                )
            await asyncio.sleep(config.POLL_INTERVAL)

    async def tx_memo(self, tx_hash: str) -> str:
        """
        Memo of the OP_RETURN output of a transaction.

        Raises:
            HarnessError: If the transaction has no OP_RETURN output.
        """
        tx = await self.rpc.call("getrawtransaction", tx_hash, True)
        for output in tx["vout"]:
            script = output["scriptPubKey"]
            if script.get("type") == "nulldata":
                try:
                    return op_return_payload(script["hex"]).decode()
                except ValueError as exc:
                    raise HarnessError(
                        f"tx {tx_hash}: {exc}", component="chain", subject=self.name
                    ) from exc
        raise HarnessError(
            f"tx {tx_hash} has no OP_RETURN output", component="chain", subject=self.name
        )
