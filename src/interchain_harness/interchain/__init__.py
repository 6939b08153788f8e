"""
Interchain assembly.

Chains, relayers and the links between them are recorded on an Interchain,
validated as a whole, and provisioned by build().
"""

from .graph import validate_topology
from .interchain import RELAYER_FUNDS, Interchain
from .links import IbcLink, ProviderConsumerLink
from .options import CCV_CHANNEL_OPTIONS, CCV_CLIENT_ID, BuildOptions, CreateChannelOptions

__all__ = [
    "CCV_CHANNEL_OPTIONS",
    "CCV_CLIENT_ID",
    "RELAYER_FUNDS",
    "BuildOptions",
    "CreateChannelOptions",
    "IbcLink",
    "Interchain",
    "ProviderConsumerLink",
    "validate_topology",
]
