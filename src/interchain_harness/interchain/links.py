"""Declarative edges between chains."""

from __future__ import annotations

from dataclasses import dataclass

from interchain_harness.chain import Chain, CosmosChain
from interchain_harness.relayer import CreateChannelOptions, CreateClientOptions, Relayer


@dataclass(slots=True)
class IbcLink:
    """A generic packet-relay path between two chains, owned by one relayer."""

    path: str
    chain1: Chain
    chain2: Chain
    relayer: Relayer

    create_channel_options: CreateChannelOptions | None = None
    """Channel settings; the build's options apply when unset."""

    create_client_options: CreateClientOptions | None = None


@dataclass(slots=True)
class ProviderConsumerLink:
    """
    Interchain security coupling: `consumer` is secured by `provider`.

    The consumer is admitted by a governance proposal on the provider and
    starts from the genesis the provider exports once it passes. When a
    relayer is given, the CCV channel is opened on `path`.
    """

    provider: CosmosChain
    consumer: CosmosChain
    relayer: Relayer | None = None
    path: str = ""
