"""
Relayer path state.

A path is a named link between two chains owned by one relayer. It moves
through a fixed sequence of states; each transition is taken at most once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum

from interchain_harness.errors import HarnessError
from interchain_harness.types import DescriptorModel


class PathState(IntEnum):
    """
    Lifecycle of a relayer path.

    Values are ordered: a path in a later state has taken every earlier
    transition, except that STOPPED follows RELAYING.
    """

    NONE = 0
    ADDED = 1
    CLIENTS = 2
    CONNECTED = 3
    OPENED = 4
    RELAYING = 5
    STOPPED = 6

    def can_transition_to(self, target: PathState) -> bool:
        """Whether `target` is the next state from this one."""
        return target in _TRANSITIONS[self]

    def has_reached(self, target: PathState) -> bool:
        """
        Whether the transition into `target` was already taken.

        A stopped path has been opened but is no longer relaying.
        """
        if target in (PathState.RELAYING, PathState.STOPPED):
            return self is target
        return self >= target


_TRANSITIONS: dict[PathState, frozenset[PathState]] = {
    PathState.NONE: frozenset({PathState.ADDED}),
    PathState.ADDED: frozenset({PathState.CLIENTS}),
    PathState.CLIENTS: frozenset({PathState.CONNECTED}),
    PathState.CONNECTED: frozenset({PathState.OPENED}),
    PathState.OPENED: frozenset({PathState.RELAYING}),
    PathState.RELAYING: frozenset({PathState.STOPPED}),
    # A stopped relayer may be started again.
    PathState.STOPPED: frozenset({PathState.RELAYING}),
}


class ChannelOrder(StrEnum):
    UNORDERED = "unordered"
    ORDERED = "ordered"


class CreateChannelOptions(DescriptorModel):
    """How the channel of a path is opened."""

    src_port: str = "transfer"
    dst_port: str = "transfer"
    order: ChannelOrder = ChannelOrder.UNORDERED
    version: str = "ics20-1"


class CreateClientOptions(DescriptorModel):
    """How the light clients of a path are created."""

    trusting_period: str = ""
    """Empty lets the relayer derive it from the unbonding period."""


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    """One channel end as reported by a relayer."""

    chain_id: str
    channel_id: str
    port_id: str
    counterparty_channel_id: str = ""
    counterparty_port_id: str = ""
    state: str = ""


@dataclass(frozen=True, slots=True)
class PendingPackets:
    """Packet sequences a path has not relayed yet."""

    source: list[int] = field(default_factory=list)
    """Sent on chain 1, not received on chain 2."""

    destination: list[int] = field(default_factory=list)
    """Sent on chain 2, not received on chain 1."""

    @property
    def empty(self) -> bool:
        return not self.source and not self.destination


@dataclass(slots=True)
class RelayerPath:
    """Runtime record of one path."""

    name: str
    chain1_id: str
    chain2_id: str

    state: PathState = PathState.NONE

    client_ids: tuple[str, str] | None = None
    """Client on chain 1 tracking chain 2, and the reverse."""

    connection_ids: tuple[str, str] | None = None
    channels: list[ChannelInfo] = field(default_factory=list)

    error: HarnessError | None = None
    """Failure of the last attempted transition. Set once; the path is dead afterwards."""

    @property
    def failed(self) -> bool:
        return self.error is not None

    def chain_ids(self) -> tuple[str, str]:
        return self.chain1_id, self.chain2_id
