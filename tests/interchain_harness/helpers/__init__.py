"""Test helpers for interchain harness unit tests."""

from __future__ import annotations

from interchain_harness.docker import ContainerBroker
from interchain_harness.lifecycle import Supervisor

from .chains import (
    FAUCET_BALANCE,
    FakeChain,
    FakeCosmosChain,
    FakeIbcChain,
    FakeRelayer,
    fake_address,
    make_config,
)
from .engine import FakeContainer, FakeEngine, Responder, multiplex, ok_responder


def make_broker(engine: FakeEngine, test_name: str = "unit") -> ContainerBroker:
    """A broker on a fake engine, owned by a fresh supervisor."""
    return ContainerBroker(client=engine.client(), supervisor=Supervisor(), test_name=test_name)


__all__ = [
    # Chains and relayers
    "FAUCET_BALANCE",
    "FakeChain",
    "FakeCosmosChain",
    "FakeIbcChain",
    "FakeRelayer",
    "fake_address",
    "make_config",
    # Engine
    "FakeContainer",
    "FakeEngine",
    "Responder",
    "make_broker",
    "multiplex",
    "ok_responder",
]
