"""
Relayer drivers.

A relayer links IBC-capable chains through named paths, each driven through
the state machine in `path`.
"""

from .base import Relayer
from .cosmos_rly import CosmosRelayer
from .factory import RelayerImplementation, build_relayer
from .hermes import HermesRelayer
from .path import (
    ChannelInfo,
    ChannelOrder,
    CreateChannelOptions,
    CreateClientOptions,
    PathState,
    PendingPackets,
    RelayerPath,
)

__all__ = [
    "ChannelInfo",
    "ChannelOrder",
    "CosmosRelayer",
    "CreateChannelOptions",
    "CreateClientOptions",
    "HermesRelayer",
    "PathState",
    "PendingPackets",
    "Relayer",
    "RelayerImplementation",
    "RelayerPath",
    "build_relayer",
]
