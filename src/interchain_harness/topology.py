"""
YAML topology files.

A topology file describes a whole interchain: chain descriptors, relayers,
links and build options. Keys may be written in snake_case or camelCase::

    test_name: gaia-to-gaia
    chains:
      - name: gaia
        version: v15.2.0
      - name: gaia-b
        chainName: gaia
    relayers:
      - name: rly
        implementation: rly
    links:
      - path: transfer
        chain1: gaia
        chain2: gaia-b
        relayer: rly
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError

from interchain_harness.chain import ChainDescriptor, CosmosChain, DockerImage
from interchain_harness.errors import ConfigInvalidError
from interchain_harness.factory import ChainFactory
from interchain_harness.interchain import (
    BuildOptions,
    CreateChannelOptions,
    IbcLink,
    Interchain,
    ProviderConsumerLink,
)
from interchain_harness.relayer import RelayerImplementation, build_relayer
from interchain_harness.scenario import Reporter
from interchain_harness.types import DescriptorModel


class RelayerSpec(DescriptorModel):
    """A relayer in a topology file."""

    name: str = Field(min_length=1)
    implementation: RelayerImplementation = RelayerImplementation.COSMOS_RLY
    image: DockerImage | None = None


class LinkSpec(DescriptorModel):
    """An IBC link in a topology file; chains and relayer are referenced by name."""

    path: str = Field(min_length=1)
    chain1: str
    chain2: str
    relayer: str
    channel: CreateChannelOptions | None = None


class ProviderConsumerSpec(DescriptorModel):
    """A provider/consumer pair in a topology file."""

    provider: str
    consumer: str
    relayer: str | None = None
    path: str = ""


class Topology(DescriptorModel):
    """A whole interchain as written in a topology file."""

    test_name: str = Field(min_length=1)
    chains: list[ChainDescriptor] = Field(min_length=1)
    relayers: list[RelayerSpec] = Field(default_factory=list)
    links: list[LinkSpec] = Field(default_factory=list)
    provider_consumer_links: list[ProviderConsumerSpec] = Field(default_factory=list)
    relayer_wallet_mnemonics: dict[str, str] = Field(default_factory=dict)
    """Per chain name: mnemonic of the key the first relayer on that chain uses."""

    skip_path_creation: bool = False
    block_database_file: Path | None = None
    container_log_file: bool = False

    @classmethod
    def from_yaml_file(cls, path: Path) -> Topology:
        """
        Load a topology from a YAML file.

        Raises:
            ConfigInvalidError: If the file is not valid YAML or not a valid topology.
        """
        try:
            with path.open() as f:
                document = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            message = f"cannot read topology {path}: {exc}"
            raise ConfigInvalidError(message, component="topology") from exc
        return cls.from_document(document or {})

    @classmethod
    def from_document(cls, document: Any) -> Topology:
        try:
            return cls.model_validate(document)
        except ValidationError as exc:
            raise ConfigInvalidError(f"invalid topology: {exc}", component="topology") from exc

    def build_options(self) -> BuildOptions:
        return BuildOptions(
            test_name=self.test_name,
            skip_path_creation=self.skip_path_creation,
            block_database_file=self.block_database_file,
            container_log_file=self.container_log_file,
        )

    def interchain(self, reporter: Reporter | None = None) -> Interchain:
        """
        Create the drivers and record them on a new Interchain.

        No container is created; call build() on the result.

        Raises:
            ConfigInvalidError: If a link references an unknown chain or
                relayer, or a provider link names a non-Cosmos chain.
        """
        chains = {chain.name: chain for chain in ChainFactory(self.chains).chains(self.test_name)}
        exec_reporter = None if reporter is None else reporter.relayer_exec_reporter(self.test_name)
        relayers = {
            spec.name: build_relayer(
                spec.implementation, name=spec.name, image=spec.image, reporter=exec_reporter
            )
            for spec in self.relayers
        }

        def lookup(table: dict[str, Any], kind: str, name: str) -> Any:
            try:
                return table[name]
            except KeyError:
                raise ConfigInvalidError(f"unknown {kind} '{name}'", component="topology") from None

        interchain = Interchain()
        for name, chain in chains.items():
            interchain.add_chain(chain, self.relayer_wallet_mnemonics.get(name))
        for name, relayer in relayers.items():
            interchain.add_relayer(relayer, name)

        for link in self.links:
            interchain.add_link(
                IbcLink(
                    path=link.path,
                    chain1=lookup(chains, "chain", link.chain1),
                    chain2=lookup(chains, "chain", link.chain2),
                    relayer=lookup(relayers, "relayer", link.relayer),
                    create_channel_options=link.channel,
                )
            )

        for pc in self.provider_consumer_links:
            provider = lookup(chains, "chain", pc.provider)
            consumer = lookup(chains, "chain", pc.consumer)
            for chain in (provider, consumer):
                if not isinstance(chain, CosmosChain):
                    raise ConfigInvalidError(
                        f"{chain.name} cannot take part in interchain security",
                        component="topology",
                    )
            interchain.add_provider_consumer_link(
                ProviderConsumerLink(
                    provider=provider,
                    consumer=consumer,
                    relayer=None if pc.relayer is None else lookup(relayers, "relayer", pc.relayer),
                    path=pc.path or f"{pc.consumer}-{pc.provider}",
                )
            )
        return interchain
