"""Relayer selection."""

from __future__ import annotations

from enum import StrEnum

from interchain_harness.chain import DockerImage
from interchain_harness.errors import ConfigInvalidError
from interchain_harness.scenario.reporter import RelayerExecReporter

from .base import Relayer
from .cosmos_rly import CosmosRelayer
from .hermes import HermesRelayer


class RelayerImplementation(StrEnum):
    COSMOS_RLY = "rly"
    HERMES = "hermes"


_IMPLEMENTATIONS: dict[RelayerImplementation, type[Relayer]] = {
    RelayerImplementation.COSMOS_RLY: CosmosRelayer,
    RelayerImplementation.HERMES: HermesRelayer,
}


def build_relayer(
    implementation: RelayerImplementation | str,
    *,
    name: str = "relayer",
    image: DockerImage | None = None,
    reporter: RelayerExecReporter | None = None,
) -> Relayer:
    """
    Instantiate a relayer driver.

    Raises:
        ConfigInvalidError: If the implementation is unknown.
    """
    try:
        kind = RelayerImplementation(implementation)
    except ValueError:
        choices = ", ".join(impl.value for impl in RelayerImplementation)
        raise ConfigInvalidError(
            f"unknown relayer implementation '{implementation}' (expected one of: {choices})",
            component="relayer",
        ) from None
    return _IMPLEMENTATIONS[kind](name=name, image=image, reporter=reporter)
