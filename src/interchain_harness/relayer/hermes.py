"""
Driver for Hermes.

Hermes keeps every chain in one TOML file, so adding a chain rewrites the
whole configuration. It has no notion of named paths: the path record lives
only on the driver, and each command names the chains and identifiers
explicitly.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any, ClassVar

import tomli_w

from interchain_harness.chain import Chain, DockerImage
from interchain_harness.chain.cosmos import parse_gas_price
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

_RESTORED_ADDRESS = re.compile(r"\(([a-z0-9]+1[a-z0-9]+)\)")

GLOBAL_CONFIG: dict[str, Any] = {
    "global": {"log_level": "info"},
    "mode": {
        "clients": {"enabled": True, "refresh": True, "misbehaviour": False},
        "connections": {"enabled": False},
        "channels": {"enabled": False},
        "packets": {
            "enabled": True,
            "clear_interval": 100,
            "clear_on_start": True,
            "tx_confirmation": False,
        },
    },
    "rest": {"enabled": False, "host": "127.0.0.1", "port": 3000},
    "telemetry": {"enabled": False, "host": "127.0.0.1", "port": 3001},
}


def find_key(document: Any, key: str) -> Any:
    """First value stored under `key` anywhere in a nested document."""
    if isinstance(document, dict):
        if key in document:
            return document[key]
        values = document.values()
    elif isinstance(document, list):
        values = document
    else:
        return None
    for value in values:
        found = find_key(value, key)
        if found is not None:
            return found
    return None


class HermesRelayer(Relayer):
    """The Informal Systems Hermes relayer."""

    default_image: ClassVar[DockerImage] = DockerImage(
        repository="ghcr.io/informalsystems/hermes", version="1.8.2", uid_gid="1000:1000"
    )
    bin: ClassVar[str] = "hermes"
    home_dir: ClassVar[str] = "/home/hermes"

    @property
    def config_path(self) -> str:
        return f"{self.home_dir}/.hermes/config.toml"

    def hermes(self, *args: str) -> list[str]:
        return [self.bin, "--config", self.config_path, "--json", *args]

    async def call(self, *args: str) -> Any:
        """
        Run a hermes command and return its `result`.

        Raises:
            HarnessError: If hermes reported an error status.
        """
        result = await self.exec(self.hermes(*args))
        replies = [
            doc
            for doc in parse_json_lines(result.text)
            if isinstance(doc, dict) and "result" in doc
        ]
        if not result.ok or not replies or replies[-1].get("status") != "success":
            if replies:
                detail = replies[-1]["result"]
            else:
                detail = (result.error_text or result.text).strip()[-500:]
            raise HarnessError(
                f"hermes {' '.join(args[:2])} failed: {detail}",
                component="relayer",
                subject=self.name,
            )
        return replies[-1]["result"]

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def chain_config(self, chain: Chain, key_name: str) -> dict[str, Any]:
        """Hermes' `[[chains]]` entry for a Cosmos chain."""
        cfg = chain.config
        price, denom = parse_gas_price(cfg.gas_prices)
        node = chain.primary
        return {
            "id": chain.chain_id,
            "type": "CosmosSdk",
            "rpc_addr": node.internal_url(cfg.ports.rpc),
            "grpc_addr": node.internal_url(cfg.ports.grpc),
            "event_source": {
                "mode": "push",
                "url": node.internal_url(cfg.ports.rpc, scheme="ws") + "/websocket",
                "batch_delay": "500ms",
            },
            "rpc_timeout": "10s",
            "account_prefix": cfg.bech32_prefix,
            "key_name": key_name,
            "key_store_type": "Test",
            "store_prefix": "ibc",
            "default_gas": 100_000,
            "max_gas": 10_000_000,
            "gas_price": {"price": float(price), "denom": denom},
            "gas_multiplier": cfg.gas_adjustment,
            "max_msg_num": 30,
            "max_tx_size": 2_097_152,
            "clock_drift": "5s",
            "max_block_time": "30s",
            "trusting_period": cfg.trusting_period,
            "trust_threshold": {"numerator": "1", "denominator": "3"},
            "address_type": {"derivation": "cosmos"},
        }

    def render_config(self) -> bytes:
        document = dict(GLOBAL_CONFIG)
        document["chains"] = [
            self.chain_config(chain, self.key_names[chain_id])
            for chain_id, chain in self.chains.items()
        ]
        return tomli_w.dumps(document).encode()

    async def write_chain_config(self, chain: Chain, key_name: str) -> None:
        await self.write_home_file(".hermes/config.toml", self.render_config())

    async def restore_key(self, chain: Chain, key_name: str, mnemonic: str) -> str:
        mnemonic_file = await self.write_home_file(
            f".hermes/mnemonics/{chain.chain_id}", mnemonic.encode()
        )
        reply = await self.call(
            "keys",
            "add",
            "--chain",
            chain.chain_id,
            "--key-name",
            key_name,
            "--mnemonic-file",
            mnemonic_file,
            "--hd-path",
            f"m/44'/{chain.config.coin_type}'/0'/0/0",
            "--overwrite",
        )
        match = _RESTORED_ADDRESS.search(str(reply))
        if match is None:
            raise HarnessError(
                f"unexpected keys add reply: {reply}", component="relayer", subject=self.name
            )
        logger.debug("hermes key %s on %s is %s", key_name, chain.chain_id, match.group(1))
        return match.group(1)

    # -------------------------------------------------------------------------
    # Path transitions
    # -------------------------------------------------------------------------

    async def _generate_path(self, path: RelayerPath) -> None:
        """Paths exist only on the driver side."""

    async def _create_client(self, host: str, reference: str, options: CreateClientOptions) -> str:
        args = ["create", "client", "--host-chain", host, "--reference-chain", reference]
        if options.trusting_period:
            args += ["--trusting-period", options.trusting_period]
        client_id = find_key(await self.call(*args), "client_id")
        if client_id is None:
            raise HarnessError(
                f"no client id created on {host}", component="relayer", subject=self.name
            )
        return client_id

    async def _create_clients(self, path: RelayerPath, options: CreateClientOptions) -> None:
        path.client_ids = (
            await self._create_client(path.chain1_id, path.chain2_id, options),
            await self._create_client(path.chain2_id, path.chain1_id, options),
        )

    async def _use_existing_clients(
        self, path: RelayerPath, client1_id: str, client2_id: str
    ) -> None:
        path.client_ids = (client1_id, client2_id)

    async def _create_connections(self, path: RelayerPath) -> None:
        assert path.client_ids is not None
        reply = await self.call(
            "create",
            "connection",
            "--a-chain",
            path.chain1_id,
            "--a-client",
            path.client_ids[0],
            "--b-client",
            path.client_ids[1],
        )
        path.connection_ids = (
            find_key(reply["a_side"], "connection_id"),
            find_key(reply["b_side"], "connection_id"),
        )

    async def _create_channel(self, path: RelayerPath, options: CreateChannelOptions) -> None:
        assert path.connection_ids is not None
        await self.call(
            "create",
            "channel",
            "--a-chain",
            path.chain1_id,
            "--a-connection",
            path.connection_ids[0],
            "--a-port",
            options.src_port,
            "--b-port",
            options.dst_port,
            "--order",
            options.order.value,
            "--channel-version",
            options.version,
        )

    def start_command(self, path_names: Sequence[str]) -> list[str]:
        # Hermes relays for every configured chain; the path list is implicit.
        return [self.bin, "--config", self.config_path, "start"]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_channels(self, chain_id: str) -> list[ChannelInfo]:
        reply = await self.call("query", "channels", "--chain", chain_id, "--show-counterparty")
        channels = []
        for entry in reply or []:
            local = entry.get("channel_a", entry)
            remote = entry.get("channel_b") or {}
            channels.append(
                ChannelInfo(
                    chain_id=chain_id,
                    channel_id=local.get("channel_id", ""),
                    port_id=local.get("port_id", ""),
                    counterparty_channel_id=remote.get("channel_id", ""),
                    counterparty_port_id=remote.get("port_id", ""),
                    state=str(entry.get("state", "")),
                )
            )
        return channels

    async def query_packets(self, path_name: str, channel_id: str) -> PendingPackets:
        path = self.path(path_name)
        port = next(
            (channel.port_id for channel in path.channels if channel.channel_id == channel_id),
            "transfer",
        )
        reply = await self.call(
            "query",
            "packet",
            "pending",
            "--chain",
            path.chain1_id,
            "--port",
            port,
            "--channel",
            channel_id,
        )
        return PendingPackets(
            source=[int(seq) for seq in reply.get("src", {}).get("unreceived_packets") or []],
            destination=[int(seq) for seq in reply.get("dst", {}).get("unreceived_packets") or []],
        )
