"""Tests for YAML topology files."""

from __future__ import annotations

from pathlib import Path

import pytest

from interchain_harness.chain import CosmosChain, EvmChain
from interchain_harness.errors import ConfigInvalidError, UnknownFamilyError
from interchain_harness.relayer import ChannelOrder, CosmosRelayer, HermesRelayer
from interchain_harness.scenario import Reporter
from interchain_harness.topology import Topology

GAIA_PAIR = """
testName: gaia-to-gaia
chains:
  - name: gaia
    version: v15.2.0
  - name: gaia-b
    chainName: gaia
    numValidators: 2
relayers:
  - name: rly
  - name: hermes
    implementation: hermes
links:
  - path: transfer
    chain1: gaia
    chain2: gaia-b
    relayer: rly
  - path: ordered
    chain1: gaia
    chain2: gaia-b
    relayer: hermes
    channel:
      srcPort: icacontroller-test
      dstPort: icahost
      order: ordered
      version: ics27-1
relayerWalletMnemonics:
  gaia: abandon abandon about
skipPathCreation: true
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "topology.yaml"
    path.write_text(text)
    return path


class TestLoading:
    """Tests for parsing and validating topology documents."""

    def test_load_camel_case_file(self, tmp_path: Path) -> None:
        topology = Topology.from_yaml_file(_write(tmp_path, GAIA_PAIR))

        assert topology.test_name == "gaia-to-gaia"
        assert [chain.name for chain in topology.chains] == ["gaia", "gaia-b"]
        assert topology.chains[1].num_validators == 2
        assert topology.links[1].channel is not None
        assert topology.links[1].channel.order is ChannelOrder.ORDERED
        assert topology.skip_path_creation

    def test_snake_case_is_accepted(self) -> None:
        topology = Topology.from_document(
            {"test_name": "snake", "chains": [{"name": "anvil", "num_validators": 1}]}
        )

        assert topology.chains[0].num_validators == 1

    def test_unknown_keys_are_rejected(self) -> None:
        """A misspelled key is an error, not a silently ignored setting."""
        with pytest.raises(ConfigInvalidError, match="invalid topology"):
            Topology.from_document({"testName": "t", "chains": [{"name": "gaia"}], "relayer": []})

    def test_chains_are_required(self) -> None:
        with pytest.raises(ConfigInvalidError, match="chains"):
            Topology.from_document({"testName": "t", "chains": []})

    def test_empty_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigInvalidError, match="invalid topology"):
            Topology.from_yaml_file(_write(tmp_path, ""))

    def test_bad_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigInvalidError, match="cannot read topology"):
            Topology.from_yaml_file(_write(tmp_path, "chains: [unclosed"))

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigInvalidError, match="cannot read topology"):
            Topology.from_yaml_file(tmp_path / "absent.yaml")

    def test_build_options(self, tmp_path: Path) -> None:
        topology = Topology.from_document(
            {
                "testName": "opts",
                "chains": [{"name": "anvil"}],
                "blockDatabaseFile": str(tmp_path / "blocks.db"),
                "containerLogFile": True,
            }
        )

        options = topology.build_options()

        assert options.test_name == "opts"
        assert options.block_database_file == tmp_path / "blocks.db"
        assert options.container_log_file
        assert options.client is None


class TestInterchain:
    """Tests for turning a topology into drivers on an Interchain."""

    def test_drivers_and_links(self, tmp_path: Path) -> None:
        """Nothing is provisioned; chains, relayers and links are only recorded."""
        topology = Topology.from_yaml_file(_write(tmp_path, GAIA_PAIR))

        interchain = topology.interchain()

        assert list(interchain.chains) == ["gaia", "gaia-b"]
        assert all(isinstance(chain, CosmosChain) for chain in interchain.chains.values())
        assert interchain.chains["gaia-b"].chain_id == "gaia-b-1"
        assert isinstance(interchain.relayers["rly"], CosmosRelayer)
        assert isinstance(interchain.relayers["hermes"], HermesRelayer)
        assert [link.path for link in interchain.links] == ["transfer", "ordered"]
        assert interchain.links[0].create_channel_options is None
        assert interchain.links[1].relayer is interchain.relayers["hermes"]
        interchain.validate()

    def test_reporter_reaches_relayers(self, tmp_path: Path) -> None:
        topology = Topology.from_yaml_file(_write(tmp_path, GAIA_PAIR))

        interchain = topology.interchain(Reporter())

        assert all(r.reporter is not None for r in interchain.relayers.values())

    def test_unknown_chain_reference(self) -> None:
        topology = Topology.from_document(
            {
                "testName": "t",
                "chains": [{"name": "gaia"}],
                "relayers": [{"name": "rly"}],
                "links": [{"path": "p", "chain1": "gaia", "chain2": "osmosis", "relayer": "rly"}],
            }
        )

        with pytest.raises(ConfigInvalidError, match="unknown chain 'osmosis'"):
            topology.interchain()

    def test_unknown_relayer_reference(self) -> None:
        topology = Topology.from_document(
            {
                "testName": "t",
                "chains": [{"name": "gaia"}, {"name": "gaia-b", "chainName": "gaia"}],
                "links": [{"path": "p", "chain1": "gaia", "chain2": "gaia-b", "relayer": "rly"}],
            }
        )

        with pytest.raises(ConfigInvalidError, match="unknown relayer 'rly'"):
            topology.interchain()

    def test_unresolvable_chain(self) -> None:
        topology = Topology.from_document({"testName": "t", "chains": [{"name": "osmosis"}]})

        with pytest.raises(UnknownFamilyError):
            topology.interchain()

    def test_provider_link_default_path(self) -> None:
        """A provider link without a path name gets one from its chains."""
        topology = Topology.from_document(
            {
                "testName": "ics",
                "chains": [
                    {"name": "provider", "chainName": "ics-provider"},
                    {"name": "consumer", "chainName": "ics-consumer"},
                ],
                "relayers": [{"name": "rly"}],
                "providerConsumerLinks": [
                    {"provider": "provider", "consumer": "consumer", "relayer": "rly"}
                ],
            }
        )

        interchain = topology.interchain()

        (link,) = interchain.provider_consumer_links
        assert link.path == "consumer-provider"
        assert link.relayer is interchain.relayers["rly"]
        assert interchain.validate() == [link]

    def test_provider_link_needs_cosmos_chains(self) -> None:
        topology = Topology.from_document(
            {
                "testName": "ics",
                "chains": [{"name": "gaia"}, {"name": "anvil"}],
                "providerConsumerLinks": [{"provider": "gaia", "consumer": "anvil"}],
            }
        )

        with pytest.raises(ConfigInvalidError, match="anvil cannot take part"):
            topology.interchain()

    def test_non_cosmos_chain_driver(self) -> None:
        topology = Topology.from_document({"testName": "evm", "chains": [{"name": "anvil"}]})

        assert isinstance(topology.interchain().chains["anvil"], EvmChain)
