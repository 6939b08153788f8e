"""Options for Interchain.build()."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from interchain_harness.docker import DockerClient
from interchain_harness.relayer import ChannelOrder, CreateChannelOptions


@dataclass(slots=True)
class BuildOptions:
    """Everything build() needs besides the topology."""

    test_name: str
    """Unique per run; names the network and every container."""

    client: DockerClient | None = None
    """Engine client to use. One is created (and closed) by the build otherwise."""

    network_id: str | None = None
    """Existing network to join instead of creating one."""

    skip_path_creation: bool = False
    """Declare relayer paths but do not create clients, connections or channels."""

    create_channel_options: CreateChannelOptions = field(default_factory=CreateChannelOptions)
    """Default channel settings for IBC links that set none."""

    block_database_file: Path | None = None
    """Record every block of every chain into this SQLite file."""

    container_log_file: bool = False
    """Stream every container's output into a run-scoped log file."""


CCV_CHANNEL_OPTIONS = CreateChannelOptions(
    src_port="consumer", dst_port="provider", order=ChannelOrder.ORDERED, version="1"
)
"""Channel between a consumer and its provider."""

CCV_CLIENT_ID = "07-tendermint-0"
"""Client created by CCV genesis on both sides of a provider link."""

__all__ = [
    "CCV_CHANNEL_OPTIONS",
    "CCV_CLIENT_ID",
    "BuildOptions",
    "CreateChannelOptions",
]
