"""
Topology validation.

Everything here runs before the first container exists: a topology that
fails validation never touches the container runtime.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from graphlib import CycleError, TopologicalSorter

from interchain_harness.chain import Chain, CosmosChain
from interchain_harness.errors import ConfigInvalidError
from interchain_harness.relayer import Relayer

from .links import IbcLink, ProviderConsumerLink


def _invalid(message: str, subject: str | None = None) -> ConfigInvalidError:
    return ConfigInvalidError(message, component="interchain", subject=subject)


def validate_topology(
    chains: Mapping[str, Chain],
    relayers: Mapping[str, Relayer],
    links: Sequence[IbcLink],
    provider_consumer_links: Sequence[ProviderConsumerLink],
) -> list[ProviderConsumerLink]:
    """
    Check a topology and order its provider links.

    Checks: chain ids are unique, every link endpoint and relayer was added,
    IBC endpoints support IBC, path names are unique per relayer, a consumer
    has exactly one provider, and provider links form no cycle.

    Returns:
        Provider links ordered so every provider is running before any of its
        consumers starts.

    Raises:
        ConfigInvalidError: Describing the first violation found.
    """
    if not chains:
        raise _invalid("an interchain needs at least one chain")

    chain_ids: dict[str, str] = {}
    for name, chain in chains.items():
        if chain.chain_id in chain_ids:
            other = chain_ids[chain.chain_id]
            raise _invalid(f"chains {other} and {name} share chain id {chain.chain_id}", name)
        chain_ids[chain.chain_id] = name

    members = {id(chain) for chain in chains.values()}
    relayer_members = {id(relayer) for relayer in relayers.values()}
    paths: set[tuple[int, str]] = set()

    def check_path(relayer: Relayer, path: str) -> None:
        if not path:
            raise _invalid("relayer paths need a name")
        key = (id(relayer), path)
        if key in paths:
            raise _invalid(f"path {path} is declared twice on relayer {relayer.name}", path)
        paths.add(key)

    for link in links:
        for chain in (link.chain1, link.chain2):
            if id(chain) not in members:
                raise _invalid(
                    f"link {link.path} uses chain {chain.name}, which was not added", link.path
                )
            if not chain.supports_ibc:
                raise _invalid(
                    f"link {link.path}: {chain.name} cannot be an IBC endpoint", link.path
                )
        if link.chain1 is link.chain2:
            raise _invalid(f"link {link.path} connects {link.chain1.name} to itself", link.path)
        if id(link.relayer) not in relayer_members:
            raise _invalid(f"link {link.path} uses a relayer that was not added", link.path)
        check_path(link.relayer, link.path)

    providers: dict[str, ProviderConsumerLink] = {}
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for name in chains:
        sorter.add(name)

    for pc in provider_consumer_links:
        for chain in (pc.provider, pc.consumer):
            if id(chain) not in members:
                raise _invalid(
                    f"provider link uses chain {chain.name}, which was not added", chain.name
                )
            if not isinstance(chain, CosmosChain):
                raise _invalid(f"{chain.name} cannot take part in interchain security", chain.name)
        if pc.provider is pc.consumer:
            raise _invalid(f"{pc.provider.name} cannot be its own consumer", pc.provider.name)
        if pc.consumer.name in providers:
            raise _invalid(
                f"consumer {pc.consumer.name} has more than one provider", pc.consumer.name
            )
        if pc.relayer is not None:
            if id(pc.relayer) not in relayer_members:
                raise _invalid(
                    f"provider link for {pc.consumer.name} uses a relayer that was not added"
                )
            check_path(pc.relayer, pc.path)
        providers[pc.consumer.name] = pc
        sorter.add(pc.consumer.name, pc.provider.name)

    try:
        order = list(sorter.static_order())
    except CycleError as exc:
        cycle = " -> ".join(exc.args[1])
        raise _invalid(f"provider links form a cycle: {cycle}") from exc

    return [providers[name] for name in order if name in providers]
