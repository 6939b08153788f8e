"""Tests for topology validation."""

from __future__ import annotations

import pytest

from interchain_harness.errors import ConfigInvalidError
from interchain_harness.interchain import IbcLink, ProviderConsumerLink, validate_topology
from tests.interchain_harness.helpers import FakeChain, FakeCosmosChain, FakeIbcChain, FakeRelayer


def _cosmos(*names: str) -> dict[str, FakeCosmosChain]:
    events: list[str] = []
    return {name: FakeCosmosChain(name, events=events) for name in names}


class TestChains:
    """Tests for chain-level checks."""

    def test_needs_a_chain(self) -> None:
        with pytest.raises(ConfigInvalidError, match="at least one chain"):
            validate_topology({}, {}, [], [])

    def test_chain_ids_are_unique(self) -> None:
        """Two chains cannot share a chain id, whatever their names."""
        chains = {"a": FakeChain("a", "same-1"), "b": FakeChain("b", "same-1")}

        with pytest.raises(ConfigInvalidError, match="share chain id same-1"):
            validate_topology(chains, {}, [], [])

    def test_lone_chain_is_valid(self) -> None:
        assert validate_topology({"anvil": FakeChain("anvil")}, {}, [], []) == []


class TestIbcLinks:
    """Tests for packet-relay links."""

    def test_valid_link(self) -> None:
        gaia, osmo = FakeIbcChain("gaia"), FakeIbcChain("osmo")
        relayer = FakeRelayer("rly")
        link = IbcLink("transfer", gaia, osmo, relayer)

        assert validate_topology({"gaia": gaia, "osmo": osmo}, {"rly": relayer}, [link], []) == []

    def test_endpoint_must_be_added(self) -> None:
        gaia, osmo = FakeIbcChain("gaia"), FakeIbcChain("osmo")
        relayer = FakeRelayer("rly")

        with pytest.raises(ConfigInvalidError, match="osmo, which was not added"):
            validate_topology(
                {"gaia": gaia}, {"rly": relayer}, [IbcLink("p", gaia, osmo, relayer)], []
            )

    def test_endpoint_must_support_ibc(self) -> None:
        """Chains without IBC cannot be relayed."""
        gaia, anvil = FakeIbcChain("gaia"), FakeChain("anvil")
        relayer = FakeRelayer("rly")

        with pytest.raises(ConfigInvalidError, match="anvil cannot be an IBC endpoint"):
            validate_topology(
                {"gaia": gaia, "anvil": anvil},
                {"rly": relayer},
                [IbcLink("p", gaia, anvil, relayer)],
                [],
            )

    def test_no_self_links(self) -> None:
        gaia = FakeIbcChain("gaia")
        relayer = FakeRelayer("rly")

        with pytest.raises(ConfigInvalidError, match="connects gaia to itself"):
            validate_topology(
                {"gaia": gaia}, {"rly": relayer}, [IbcLink("p", gaia, gaia, relayer)], []
            )

    def test_relayer_must_be_added(self) -> None:
        gaia, osmo = FakeIbcChain("gaia"), FakeIbcChain("osmo")

        with pytest.raises(ConfigInvalidError, match="relayer that was not added"):
            validate_topology(
                {"gaia": gaia, "osmo": osmo}, {}, [IbcLink("p", gaia, osmo, FakeRelayer())], []
            )

    def test_path_names_are_unique_per_relayer(self) -> None:
        gaia, osmo, juno = FakeIbcChain("gaia"), FakeIbcChain("osmo"), FakeIbcChain("juno")
        relayer = FakeRelayer("rly")
        links = [IbcLink("p", gaia, osmo, relayer), IbcLink("p", gaia, juno, relayer)]

        with pytest.raises(ConfigInvalidError, match="path p is declared twice"):
            validate_topology(
                {"gaia": gaia, "osmo": osmo, "juno": juno}, {"rly": relayer}, links, []
            )

    def test_same_path_name_on_different_relayers(self) -> None:
        gaia, osmo = FakeIbcChain("gaia"), FakeIbcChain("osmo")
        first, second = FakeRelayer("first"), FakeRelayer("second")
        links = [IbcLink("p", gaia, osmo, first), IbcLink("p", gaia, osmo, second)]

        relayers = {"first": first, "second": second}
        validate_topology({"gaia": gaia, "osmo": osmo}, relayers, links, [])

    def test_path_needs_a_name(self) -> None:
        gaia, osmo = FakeIbcChain("gaia"), FakeIbcChain("osmo")
        relayer = FakeRelayer("rly")

        with pytest.raises(ConfigInvalidError, match="need a name"):
            validate_topology(
                {"gaia": gaia, "osmo": osmo},
                {"rly": relayer},
                [IbcLink("", gaia, osmo, relayer)],
                [],
            )


class TestProviderLinks:
    """Tests for interchain security links."""

    def test_providers_start_before_consumers(self) -> None:
        """Links come back ordered by dependency, not by declaration."""
        chains = _cosmos("hub", "neutron", "stride")
        later = ProviderConsumerLink(provider=chains["neutron"], consumer=chains["stride"])
        first = ProviderConsumerLink(provider=chains["hub"], consumer=chains["neutron"])

        assert validate_topology(chains, {}, [], [later, first]) == [first, later]

    def test_consumer_has_one_provider(self) -> None:
        chains = _cosmos("hub", "other", "neutron")
        links = [
            ProviderConsumerLink(provider=chains["hub"], consumer=chains["neutron"]),
            ProviderConsumerLink(provider=chains["other"], consumer=chains["neutron"]),
        ]

        with pytest.raises(ConfigInvalidError, match="neutron has more than one provider"):
            validate_topology(chains, {}, [], links)

    def test_cycles_are_rejected(self) -> None:
        chains = _cosmos("a", "b")
        links = [
            ProviderConsumerLink(provider=chains["a"], consumer=chains["b"]),
            ProviderConsumerLink(provider=chains["b"], consumer=chains["a"]),
        ]

        with pytest.raises(ConfigInvalidError, match="form a cycle"):
            validate_topology(chains, {}, [], links)

    def test_no_self_security(self) -> None:
        chains = _cosmos("hub")
        link = ProviderConsumerLink(provider=chains["hub"], consumer=chains["hub"])

        with pytest.raises(ConfigInvalidError, match="cannot be its own consumer"):
            validate_topology(chains, {}, [], [link])

    def test_only_cosmos_chains(self) -> None:
        hub = FakeCosmosChain("hub", events=[])
        other = FakeIbcChain("other")

        with pytest.raises(ConfigInvalidError, match="other cannot take part"):
            validate_topology(
                {"hub": hub, "other": other},
                {},
                [],
                [ProviderConsumerLink(provider=hub, consumer=other)],  # type: ignore[arg-type]
            )

    def test_ccv_path_checked_against_ibc_paths(self) -> None:
        """A provider link's path shares the relayer's namespace with IBC links."""
        chains = _cosmos("hub", "neutron")
        relayer = FakeRelayer("rly")
        link = IbcLink("ccv", chains["hub"], chains["neutron"], relayer)
        pc = ProviderConsumerLink(
            provider=chains["hub"], consumer=chains["neutron"], relayer=relayer, path="ccv"
        )

        with pytest.raises(ConfigInvalidError, match="declared twice"):
            validate_topology(chains, {"rly": relayer}, [link], [pc])
