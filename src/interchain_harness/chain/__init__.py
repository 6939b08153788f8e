"""
Chain drivers.

One driver class per chain family turns a resolved configuration into
running node containers and exposes a family-agnostic surface for heights,
balances, keys and transfers.
"""

from .base import BlockSummary, Chain, ChainNode
from .cosmos import CosmosChain
from .descriptor import (
    ChainConfig,
    ChainDescriptor,
    ChainFamily,
    DockerImage,
    Ports,
    ResolvedChain,
    SidecarConfig,
)
from .evm import EvmChain
from .keyring import FAUCET_KEY, Keyring, Wallet, WalletAmount
from .thorchain import ThorChain
from .utxo import UtxoChain, select_coins

DRIVERS: dict[ChainFamily, type[Chain]] = {
    ChainFamily.COSMOS: CosmosChain,
    ChainFamily.THORCHAIN: ThorChain,
    ChainFamily.EVM: EvmChain,
    ChainFamily.UTXO: UtxoChain,
}
"""Driver class for each chain family."""

__all__ = [
    "DRIVERS",
    "FAUCET_KEY",
    "BlockSummary",
    "Chain",
    "ChainConfig",
    "ChainDescriptor",
    "ChainFamily",
    "ChainNode",
    "CosmosChain",
    "DockerImage",
    "EvmChain",
    "Keyring",
    "Ports",
    "ResolvedChain",
    "SidecarConfig",
    "ThorChain",
    "UtxoChain",
    "Wallet",
    "WalletAmount",
    "select_coins",
]
