"""
Interchain integration test harness.

Brings up multi-chain topologies inside containers, links them through
relayers, and exposes a uniform surface for test scenarios.
"""

from .chain import Chain, ChainDescriptor, Wallet, WalletAmount
from .factory import ChainFactory
from .interchain import BuildOptions, IbcLink, Interchain, ProviderConsumerLink
from .relayer import RelayerImplementation, build_relayer
from .scenario import (
    create_log_file,
    get_and_fund_test_users,
    poll_for_balance_change,
    wait_for_blocks,
)

__all__ = [
    "Chain",
    "ChainDescriptor",
    "ChainFactory",
    "Wallet",
    "WalletAmount",
    "Interchain",
    "BuildOptions",
    "IbcLink",
    "ProviderConsumerLink",
    "RelayerImplementation",
    "build_relayer",
    "create_log_file",
    "get_and_fund_test_users",
    "poll_for_balance_change",
    "wait_for_blocks",
]
