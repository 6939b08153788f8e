"""
Chain descriptors and resolved chain configuration.

A descriptor is what a test writes: which built-in chain it wants, which
version, how many nodes, and a bag of overrides. The factory merges the
overrides onto the built-in default and validates the result as a
ChainConfig.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator, model_validator

from interchain_harness.types import DescriptorModel, StrictBaseModel


class ChainFamily(StrEnum):
    """
    Equivalence classes of chains sharing a consensus, address and RPC shape.

    THORCHAIN is the specialized family: a Cosmos chain with sidecars and
    its own deposit message.
    """

    COSMOS = "cosmos"
    EVM = "evm"
    UTXO = "utxo"
    THORCHAIN = "thorchain"


class DockerImage(DescriptorModel):
    """A container image a chain runs."""

    repository: str
    """Image repository, e.g. "ghcr.io/strangelove-ventures/heighliner/gaia"."""

    version: str = ""
    """Exact tag. Empty means the descriptor must supply one."""

    uid_gid: str = ""
    """User the image runs as ("uid:gid"); volumes are chowned to it."""

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.version}"


class Ports(DescriptorModel):
    """Container ports a node listens on."""

    rpc: int = 26657
    grpc: int = 9090
    api: int = 1317
    p2p: int = 26656
    ws: int | None = None


class SidecarConfig(DescriptorModel):
    """An auxiliary process attached to a chain or to each validator."""

    process_name: str
    """Used for the container hostname."""

    image: DockerImage
    home_dir: str = "/var/sidecar"
    ports: list[str] = Field(default_factory=list)
    start_cmd: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    validator_process: bool = True
    """One instance per validator when true, one per chain otherwise."""


class ChainConfig(DescriptorModel):
    """
    Fully resolved configuration for one chain.

    Fields that do not apply to a family are ignored by its driver.
    """

    family: ChainFamily
    chain_name: str
    """Built-in chain type, e.g. "gaia"."""

    chain_id: str = ""
    """Explicit chain id. When empty, `chain_id_template` is rendered."""

    chain_id_template: str = "{name}-1"
    """Python format string; `{name}` is the descriptor's logical name."""

    images: list[DockerImage] = Field(min_length=1)
    bin: str
    """Node binary."""

    cli_bin: str = ""
    """Client binary if different from `bin` (cast, bitcoin-cli)."""

    home_dir: str = ""
    bech32_prefix: str = ""
    denom: str
    gas_prices: str = "0"
    gas_adjustment: float = 1.3
    fee_amount: int = 0
    """Flat fee paid in `denom` per transaction (Cosmos `--fees`)."""

    coin_type: int = 118
    ports: Ports = Field(default_factory=Ports)

    genesis_overrides: dict[str, Any] = Field(default_factory=dict)
    """Deep-merged into the genesis document."""

    faucet_mnemonic: str | None = None
    genesis_mnemonics: list[str] = Field(default_factory=list)
    """Validator key mnemonics, in validator order."""

    faucet_amount: int = 10_000_000_000_000
    validator_amount: int = 10_000_000_000_000
    self_delegation: int = 5_000_000_000_000

    voting_period: str = "10s"
    accelerate_voting: bool = True
    trusting_period: str = "336h"

    router_address: str | None = None
    token_address: str | None = None

    rpc_user: str | None = None
    rpc_password: str | None = None

    block_interval: float = 1.0
    tx_fee: int = 10_000
    """UTXO flat fee in base units."""

    sidecars: list[SidecarConfig] = Field(default_factory=list)
    extra_start_args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("gas_adjustment")
    @classmethod
    def _positive_gas_adjustment(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("gas_adjustment must be positive")
        return value

    @model_validator(mode="after")
    def _family_requirements(self) -> ChainConfig:
        if self.family in (ChainFamily.COSMOS, ChainFamily.THORCHAIN) and not self.bech32_prefix:
            raise ValueError(f"{self.family} chains require bech32_prefix")
        if self.family is ChainFamily.UTXO and not (self.rpc_user and self.rpc_password):
            raise ValueError("utxo chains require rpc_user and rpc_password")
        if self.block_interval <= 0:
            raise ValueError("block_interval must be positive")
        return self

    @property
    def image(self) -> DockerImage:
        """Primary node image."""
        return self.images[0]

    def render_chain_id(self, name: str) -> str:
        return self.chain_id or self.chain_id_template.format(name=name)


class ChainDescriptor(DescriptorModel):
    """
    What a test asks for.

    `chain_name` selects the built-in default and falls back to `name`.
    """

    name: str = Field(min_length=1)
    """Logical name, unique within an interchain."""

    chain_name: str = ""
    family: ChainFamily | None = None
    version: str = ""
    num_validators: int | None = Field(default=None, ge=0)
    num_full_nodes: int | None = Field(default=None, ge=0)
    config: dict[str, Any] = Field(default_factory=dict)
    """Overrides deep-merged onto the built-in configuration."""

    @property
    def resolved_chain_name(self) -> str:
        return self.chain_name or self.name


class ResolvedChain(StrictBaseModel):
    """Output of the factory for one descriptor."""

    name: str
    chain_id: str
    num_validators: int
    num_full_nodes: int
    config: ChainConfig
