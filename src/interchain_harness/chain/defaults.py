"""
Built-in chain configurations.

Each entry is a plain mapping so descriptor overrides can be deep-merged onto
it before validation. `builtin_config` always returns a fresh deep copy.
"""

from __future__ import annotations

import copy
from typing import Any, Final

_HEIGHLINER = "ghcr.io/strangelove-ventures/heighliner"

_COSMOS_SIDE: Final[dict[str, Any]] = {
    "family": "cosmos",
    "ports": {"rpc": 26657, "grpc": 9090, "api": 1317, "p2p": 26656},
    "gas_adjustment": 1.3,
    "coin_type": 118,
    "voting_period": "10s",
    "accelerate_voting": True,
}

_UTXO_SIDE: Final[dict[str, Any]] = {
    "family": "utxo",
    "denom": "sat",
    "rpc_user": "thorchain",
    "rpc_password": "password",
    "block_interval": 1.0,
    "tx_fee": 10_000,
    "faucet_amount": 0,
    "validator_amount": 0,
    "self_delegation": 0,
}

BUILTIN_CHAINS: Final[dict[str, dict[str, Any]]] = {
    "gaia": {
        **_COSMOS_SIDE,
        "chain_name": "gaia",
        "chain_id_template": "{name}-1",
        "images": [
            {"repository": f"{_HEIGHLINER}/gaia", "version": "v15.2.0", "uid_gid": "1025:1025"},
        ],
        "bin": "gaiad",
        "home_dir": "/var/cosmos-chain/gaia",
        "bech32_prefix": "cosmos",
        "denom": "uatom",
        "gas_prices": "0.01uatom",
        "fee_amount": 2_000,
    },
    "ics-provider": {
        **_COSMOS_SIDE,
        "chain_name": "ics-provider",
        "chain_id_template": "{name}-provider-1",
        "images": [
            {"repository": f"{_HEIGHLINER}/ics", "version": "v3.3.0", "uid_gid": "1025:1025"},
        ],
        "bin": "interchain-security-pd",
        "home_dir": "/var/cosmos-chain/provider",
        "bech32_prefix": "cosmos",
        "denom": "stake",
        "gas_prices": "0.0stake",
        "trusting_period": "48h",
        "genesis_overrides": {
            "app_state": {
                "provider": {"params": {"blocks_per_epoch": "1"}},
            }
        },
    },
    "ics-consumer": {
        **_COSMOS_SIDE,
        "chain_name": "ics-consumer",
        "chain_id_template": "{name}-consumer-1",
        "images": [
            {"repository": f"{_HEIGHLINER}/ics", "version": "v3.3.0", "uid_gid": "1025:1025"},
        ],
        "bin": "interchain-security-cd",
        "home_dir": "/var/cosmos-chain/consumer",
        "bech32_prefix": "cosmos",
        "denom": "stake",
        "gas_prices": "0.0stake",
        "trusting_period": "96h",
    },
    "thorchain": {
        **_COSMOS_SIDE,
        "family": "thorchain",
        "chain_name": "thorchain",
        "chain_id": "thorchain",
        "images": [{"repository": "registry.gitlab.com/thorchain/thornode", "version": ""}],
        "bin": "thornode",
        "home_dir": "/var/thornode",
        "bech32_prefix": "tthor",
        "denom": "rune",
        "gas_prices": "0rune",
        "coin_type": 931,
        "faucet_amount": 100_000_000_000_000,
        "validator_amount": 100_000_000_000_000,
        "self_delegation": 0,
        "env": {"NET": "mocknet", "CHAIN_ID": "thorchain"},
        "sidecars": [
            {
                "process_name": "bifrost",
                "image": {"repository": "registry.gitlab.com/thorchain/thornode", "version": ""},
                "home_dir": "/var/bifrost",
                "ports": ["5040/tcp", "6040/tcp", "9000/tcp"],
                "start_cmd": ["bifrost", "-p"],
                "validator_process": True,
            }
        ],
    },
    "bitcoin": {
        **_UTXO_SIDE,
        "chain_name": "bitcoin",
        "chain_id": "localnet",
        "images": [
            {"repository": "bitcoin/bitcoin", "version": "26.2", "uid_gid": ""},
        ],
        "bin": "bitcoind",
        "cli_bin": "bitcoin-cli",
        "home_dir": "/home/bitcoin",
        "ports": {"rpc": 18443, "p2p": 18444, "grpc": 0, "api": 0},
    },
    "bch": {
        **_UTXO_SIDE,
        "chain_name": "bch",
        "chain_id": "localnet",
        "images": [
            {"repository": "zquestz/bitcoin-cash-node", "version": "27.1.0", "uid_gid": ""},
        ],
        "bin": "bitcoind",
        "cli_bin": "bitcoin-cli",
        "home_dir": "/home/bitcoin",
        "ports": {"rpc": 18443, "p2p": 18444, "grpc": 0, "api": 0},
    },
    "litecoin": {
        **_UTXO_SIDE,
        "chain_name": "litecoin",
        "chain_id": "localnet",
        "images": [
            {"repository": "uphold/litecoin-core", "version": "0.21", "uid_gid": ""},
        ],
        "bin": "litecoind",
        "cli_bin": "litecoin-cli",
        "home_dir": "/home/litecoin",
        "ports": {"rpc": 19443, "p2p": 19444, "grpc": 0, "api": 0},
    },
    "dogecoin": {
        **_UTXO_SIDE,
        "chain_name": "dogecoin",
        "chain_id": "localnet",
        "images": [
            {
                "repository": "registry.gitlab.com/thorchain/devops/node-launcher",
                "version": "dogecoin-daemon-1.14.7",
                "uid_gid": "",
            }
        ],
        "bin": "dogecoind",
        "cli_bin": "dogecoin-cli",
        "home_dir": "/home/dogecoin",
        "ports": {"rpc": 18332, "p2p": 18444, "grpc": 0, "api": 0},
        "tx_fee": 1_000_000,
    },
    "anvil": {
        "family": "evm",
        "chain_name": "anvil",
        "chain_id": "31337",
        "images": [
            {"repository": "ghcr.io/foundry-rs/foundry", "version": "stable", "uid_gid": ""},
        ],
        "bin": "anvil",
        "cli_bin": "cast",
        "home_dir": "/home/foundry",
        "denom": "wei",
        "coin_type": 60,
        "ports": {"rpc": 8545, "grpc": 0, "api": 0, "p2p": 0},
        "faucet_amount": 10_000 * 10**18,
        "validator_amount": 0,
        "self_delegation": 0,
        "block_interval": 1.0,
    },
}
"""Built-in defaults keyed by chain name."""

BUILTIN_CHAINS["ethereum"] = BUILTIN_CHAINS["anvil"] | {"chain_name": "ethereum"}

DEFAULT_NUM_VALIDATORS: Final = 1
DEFAULT_NUM_FULL_NODES: Final = 0


def builtin_names() -> list[str]:
    return sorted(BUILTIN_CHAINS)


def builtin_config(chain_name: str) -> dict[str, Any] | None:
    """Return a deep copy of the built-in configuration, or None if unknown."""
    default = BUILTIN_CHAINS.get(chain_name)
    return None if default is None else copy.deepcopy(default)
