"""Tests for genesis document helpers."""

from __future__ import annotations

import copy

from interchain_harness.chain.genesis import (
    deep_merge,
    evm_allocation,
    get_path,
    has_path,
    patch_cosmos_genesis,
    rewrite_denom,
    set_path,
    set_voting_period,
)


def _cosmos_genesis() -> dict:
    return {
        "chain_id": "gaia-1",
        "app_state": {
            "staking": {"params": {"bond_denom": "stake", "max_validators": 100}},
            "mint": {"params": {"mint_denom": "stake"}},
            "crisis": {"constant_fee": {"denom": "stake", "amount": "1000"}},
            "bank": {"denom_metadata": [{"denom": "stake", "display": "stake"}]},
            "gov": {
                "params": {
                    "voting_period": "172800s",
                    "expedited_voting_period": "86400s",
                    "min_deposit": [{"denom": "stake", "amount": "10000000"}],
                }
            },
        },
    }


class TestDeepMerge:
    """Tests for recursive merging."""

    def test_nested_mappings_merge(self) -> None:
        """Keys absent from the overrides survive."""
        merged = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})

        assert merged == {"a": {"b": 1, "c": 3}, "d": 4}

    def test_lists_replace(self) -> None:
        """Lists are values, not merged element-wise."""
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_inputs_are_untouched(self) -> None:
        """The result shares no structure with either input."""
        base = {"a": {"b": [1]}}
        overrides = {"c": {"d": [2]}}

        merged = deep_merge(base, overrides)
        merged["a"]["b"].append(9)
        merged["c"]["d"].append(9)

        assert base == {"a": {"b": [1]}}
        assert overrides == {"c": {"d": [2]}}


class TestPaths:
    """Tests for nested path access."""

    def test_get_and_has(self) -> None:
        document = {"a": {"b": {"c": 1}}}

        assert get_path(document, ("a", "b", "c")) == 1
        assert has_path(document, ("a", "b"))
        assert not has_path(document, ("a", "x"))
        assert not has_path(document, ("a", "b", "c", "d"))

    def test_set_creates_parents(self) -> None:
        """Missing intermediate mappings are created."""
        assert set_path({"a": 1}, ("b", "c"), 2) == {"a": 1, "b": {"c": 2}}


class TestRewriteDenom:
    """Tests for denomination rewriting."""

    def test_every_denom_key_is_rewritten(self) -> None:
        """Bond, mint, fee and metadata denominations all change."""
        patched = rewrite_denom(_cosmos_genesis(), "stake", "uatom")

        app_state = patched["app_state"]
        assert app_state["staking"]["params"]["bond_denom"] == "uatom"
        assert app_state["mint"]["params"]["mint_denom"] == "uatom"
        assert app_state["crisis"]["constant_fee"]["denom"] == "uatom"
        assert app_state["gov"]["params"]["min_deposit"][0]["denom"] == "uatom"
        assert app_state["bank"]["denom_metadata"][0]["denom"] == "uatom"

    def test_non_denom_keys_are_kept(self) -> None:
        """Only values under denomination keys change."""
        patched = rewrite_denom(_cosmos_genesis(), "stake", "uatom")

        assert patched["app_state"]["bank"]["denom_metadata"][0]["display"] == "stake"

    def test_same_denom_is_a_copy(self) -> None:
        """Rewriting to the same value still returns a new document."""
        genesis = _cosmos_genesis()

        patched = rewrite_denom(genesis, "stake", "stake")

        assert patched == genesis
        assert patched is not genesis


class TestVotingPeriod:
    """Tests for governance voting period patches."""

    def test_expedited_period_stays_shorter(self) -> None:
        """The expedited period is lowered below the voting period."""
        patched = set_voting_period(_cosmos_genesis(), "10s")

        params = patched["app_state"]["gov"]["params"]
        assert params["voting_period"] == "10s"
        assert params["expedited_voting_period"] == "9s"

    def test_legacy_voting_params(self) -> None:
        """Older SDKs keep the period under voting_params."""
        genesis = {"app_state": {"gov": {"voting_params": {"voting_period": "172800s"}}}}

        patched = set_voting_period(genesis, "10s")

        assert patched["app_state"]["gov"]["voting_params"]["voting_period"] == "10s"
        assert "params" not in patched["app_state"]["gov"]

    def test_no_gov_module(self) -> None:
        """Documents without governance are returned unchanged."""
        assert set_voting_period({"app_state": {}}, "10s") == {"app_state": {}}


class TestPatchCosmosGenesis:
    """Tests for the standard patch sequence."""

    def test_overrides_apply_last(self) -> None:
        """User overrides win over the standard patches."""
        genesis = _cosmos_genesis()
        original = copy.deepcopy(genesis)

        patched = patch_cosmos_genesis(
            genesis,
            denom="uatom",
            voting_period="10s",
            overrides={"app_state": {"gov": {"params": {"voting_period": "20s"}}}},
        )

        assert patched["app_state"]["gov"]["params"]["voting_period"] == "20s"
        assert patched["app_state"]["staking"]["params"]["bond_denom"] == "uatom"
        assert patched["app_state"]["staking"]["params"]["max_validators"] == 100
        assert genesis == original


class TestEvmAllocation:
    """Tests for EVM genesis allocation."""

    def test_balances_are_hex_and_addresses_lowercase(self) -> None:
        genesis = evm_allocation({"0xABCDEF": 10**18}, chain_id=31337)

        assert genesis["config"]["chainId"] == 31337
        assert genesis["alloc"] == {"0xabcdef": {"balance": hex(10**18)}}
