"""Driver for the Go relayer (`rly`)."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, ClassVar

from interchain_harness.chain import Chain, DockerImage
from interchain_harness.errors import HarnessError

from .base import Relayer, parse_json_lines
from .path import (
    ChannelInfo,
    CreateChannelOptions,
    CreateClientOptions,
    PendingPackets,
    RelayerPath,
)

logger = logging.getLogger(__name__)


class CosmosRelayer(Relayer):
    """
    The Go relayer.

    Chains are registered under their chain id, so rly's chain names and the
    harness' chain ids coincide.
    """

    default_image: ClassVar[DockerImage] = DockerImage(
        repository="ghcr.io/cosmos/relayer", version="v2.5.2", uid_gid="100:1000"
    )
    bin: ClassVar[str] = "rly"
    home_dir: ClassVar[str] = "/home/relayer"

    def rly(self, *args: str) -> list[str]:
        return [self.bin, *args, "--home", self.home_dir]

    async def init_home(self) -> None:
        await self.exec_ok(self.rly("config", "init"))

    def chain_config(self, chain: Chain, key_name: str) -> dict[str, Any]:
        """rly's JSON description of a Cosmos chain."""
        cfg = chain.config
        return {
            "type": "cosmos",
            "value": {
                "key": key_name,
                "chain-id": chain.chain_id,
                "rpc-addr": chain.primary.internal_url(cfg.ports.rpc),
                "account-prefix": cfg.bech32_prefix,
                "keyring-backend": "test",
                "gas-adjustment": cfg.gas_adjustment,
                "gas-prices": cfg.gas_prices,
                "min-gas-amount": 0,
                "debug": True,
                "timeout": "20s",
                "output-format": "json",
                "sign-mode": "direct",
            },
        }

    async def write_chain_config(self, chain: Chain, key_name: str) -> None:
        document = json.dumps(self.chain_config(chain, key_name), indent=2).encode()
        path = await self.write_home_file(f"chains/{chain.chain_id}.json", document)
        await self.exec_ok(self.rly("chains", "add", "--file", path, chain.chain_id))

    async def restore_key(self, chain: Chain, key_name: str, mnemonic: str) -> str:
        result = await self.exec_ok(
            self.rly(
                "keys",
                "restore",
                chain.chain_id,
                key_name,
                mnemonic,
                "--coin-type",
                str(chain.config.coin_type),
            )
        )
        address = result.text.strip().splitlines()[-1]
        logger.debug("rly key %s on %s is %s", key_name, chain.chain_id, address)
        return address

    async def _generate_path(self, path: RelayerPath) -> None:
        await self.exec_ok(self.rly("paths", "new", path.chain1_id, path.chain2_id, path.name))

    async def _create_clients(self, path: RelayerPath, options: CreateClientOptions) -> None:
        argv = self.rly("tx", "clients", path.name)
        if options.trusting_period:
            argv += ["--client-tp", options.trusting_period]
        await self.exec_ok(argv)
        path.client_ids = await self._path_ends(path, "client-id")

    async def _use_existing_clients(
        self, path: RelayerPath, client1_id: str, client2_id: str
    ) -> None:
        await self.exec_ok(
            self.rly(
                "paths",
                "update",
                path.name,
                "--src-client-id",
                client1_id,
                "--dst-client-id",
                client2_id,
            )
        )
        path.client_ids = (client1_id, client2_id)

    async def _create_connections(self, path: RelayerPath) -> None:
        await self.exec_ok(self.rly("tx", "connection", path.name))
        path.connection_ids = await self._path_ends(path, "connection-id")

    async def _create_channel(self, path: RelayerPath, options: CreateChannelOptions) -> None:
        await self.exec_ok(
            self.rly(
                "tx",
                "channel",
                path.name,
                "--src-port",
                options.src_port,
                "--dst-port",
                options.dst_port,
                "--order",
                options.order.value,
                "--version",
                options.version,
            )
        )

    async def _path_ends(self, path: RelayerPath, field: str) -> tuple[str, str]:
        """Read one identifier of both path ends back from rly's path config."""
        result = await self.exec_ok(self.rly("paths", "show", path.name, "--json"))
        document = json.loads(result.text)
        path_doc = document.get("path", document)
        return path_doc["src"][field], path_doc["dst"][field]

    def start_command(self, path_names: Sequence[str]) -> list[str]:
        return self.rly("start", *path_names, "--debug-addr", "")

    async def get_channels(self, chain_id: str) -> list[ChannelInfo]:
        result = await self.exec_ok(self.rly("q", "channels", chain_id))
        return [
            ChannelInfo(
                chain_id=chain_id,
                channel_id=entry["channel_id"],
                port_id=entry["port_id"],
                counterparty_channel_id=entry.get("counterparty", {}).get("channel_id", ""),
                counterparty_port_id=entry.get("counterparty", {}).get("port_id", ""),
                state=entry.get("state", ""),
            )
            for entry in parse_json_lines(result.text)
            if isinstance(entry, dict) and "channel_id" in entry
        ]

    async def query_packets(self, path_name: str, channel_id: str) -> PendingPackets:
        self.path(path_name)
        result = await self.exec_ok(self.rly("q", "unrelayed-packets", path_name, channel_id))
        documents = [doc for doc in parse_json_lines(result.text) if isinstance(doc, dict)]
        if not documents:
            raise HarnessError(
                f"unexpected unrelayed-packets output: {result.text.strip()[-200:]}",
                component="relayer",
                subject=path_name,
            )
        document = documents[-1]
        return PendingPackets(
            source=[int(seq) for seq in document.get("src") or []],
            destination=[int(seq) for seq in document.get("dst") or []],
        )
