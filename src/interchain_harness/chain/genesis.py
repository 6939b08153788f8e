"""
Genesis document manipulation.

Cosmos genesis files are produced by the node binary and then patched here,
in Python, before being distributed to every node. All helpers return new
documents and leave their inputs untouched.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from typing import Any

DENOM_KEYS = frozenset({"denom", "bond_denom", "mint_denom", "evm_denom"})
"""Keys whose string values name the staking or fee denomination."""

VOTING_PERIOD_PATHS: tuple[tuple[str, ...], ...] = (
    ("app_state", "gov", "params", "voting_period"),
    ("app_state", "gov", "voting_params", "voting_period"),
)
"""Locations of the governance voting period across SDK versions."""

EXPEDITED_VOTING_PERIOD_PATH = ("app_state", "gov", "params", "expedited_voting_period")


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge `overrides` into a deep copy of `base`.

    Nested mappings merge key by key; every other value (lists included)
    replaces the base value.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def get_path(document: Mapping[str, Any], path: Sequence[str]) -> Any:
    """
    Read a nested value.

    Raises:
        KeyError: If any component is missing.
    """
    node: Any = document
    for key in path:
        node = node[key]
    return node


def has_path(document: Mapping[str, Any], path: Sequence[str]) -> bool:
    try:
        get_path(document, path)
    except (KeyError, TypeError):
        return False
    return True


def set_path(document: Mapping[str, Any], path: Sequence[str], value: Any) -> dict[str, Any]:
    """Return a copy of the document with `value` at `path`, creating parents."""
    patch: Any = value
    for key in reversed(path):
        patch = {key: patch}
    return deep_merge(document, patch)


def rewrite_denom(document: Any, old: str, new: str) -> Any:
    """Replace every denomination value equal to `old` with `new`."""
    if old == new:
        return copy.deepcopy(document)
    if isinstance(document, Mapping):
        return {
            key: new
            if key in DENOM_KEYS and value == old
            else rewrite_denom(value, old, new)
            for key, value in document.items()
        }
    if isinstance(document, list):
        return [rewrite_denom(item, old, new) for item in document]
    return document


def set_voting_period(document: Mapping[str, Any], period: str) -> dict[str, Any]:
    """
    Set the governance voting period wherever this SDK version keeps it.

    The expedited period must stay strictly shorter; it is lowered to match
    when present. Documents without a gov module are returned unchanged.
    """
    patched = copy.deepcopy(dict(document))
    for path in VOTING_PERIOD_PATHS:
        if has_path(patched, path):
            patched = set_path(patched, path, period)
    if has_path(patched, EXPEDITED_VOTING_PERIOD_PATH):
        seconds = max(int(period.rstrip("s")) - 1, 1) if period.endswith("s") else 1
        patched = set_path(patched, EXPEDITED_VOTING_PERIOD_PATH, f"{seconds}s")
    return patched


def patch_cosmos_genesis(
    document: Mapping[str, Any],
    *,
    denom: str,
    voting_period: str | None,
    overrides: Mapping[str, Any],
    source_denom: str = "stake",
) -> dict[str, Any]:
    """Apply the standard Cosmos patches in order: denom, voting period, overrides."""
    patched = rewrite_denom(document, source_denom, denom)
    if voting_period:
        patched = set_voting_period(patched, voting_period)
    return deep_merge(patched, overrides)


def evm_allocation(accounts: Mapping[str, int], chain_id: int) -> dict[str, Any]:
    """
    Build a minimal EVM genesis with pre-funded accounts.

    Balances are hex quantities as geth-style genesis files expect.
    """
    return {
        "config": {
            "chainId": chain_id,
            "homesteadBlock": 0,
            "eip150Block": 0,
            "eip155Block": 0,
            "eip158Block": 0,
            "byzantiumBlock": 0,
            "constantinopleBlock": 0,
            "petersburgBlock": 0,
            "istanbulBlock": 0,
            "berlinBlock": 0,
            "londonBlock": 0,
        },
        "gasLimit": hex(30_000_000),
        "difficulty": "0x0",
        "alloc": {
            address.lower(): {"balance": hex(balance)} for address, balance in accounts.items()
        },
    }
