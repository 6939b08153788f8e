"""Helper utilities for interop tests."""

from .assertions import assert_heights_at_least, assert_no_leftovers, leftovers
from .topology import build_options, gaia_pair, ics_pair, single_chain

__all__ = [
    # Assertions
    "assert_heights_at_least",
    "assert_no_leftovers",
    "leftovers",
    # Topologies
    "build_options",
    "gaia_pair",
    "ics_pair",
    "single_chain",
]
