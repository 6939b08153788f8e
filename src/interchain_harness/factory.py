"""
Chain factory.

Turns chain descriptors into chain drivers. Each descriptor's overrides are
deep-merged onto a fresh copy of its built-in default, validated as a
ChainConfig, and handed to the driver class of its family. Equal descriptors
always yield equal configurations.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from interchain_harness.chain import (
    DRIVERS,
    Chain,
    ChainConfig,
    ChainDescriptor,
    ChainFamily,
    ResolvedChain,
)
from interchain_harness.chain.defaults import (
    DEFAULT_NUM_FULL_NODES,
    DEFAULT_NUM_VALIDATORS,
    builtin_config,
    builtin_names,
)
from interchain_harness.chain.genesis import deep_merge
from interchain_harness.docker import split_reference
from interchain_harness.errors import ConfigInvalidError, ImageUnavailableError, UnknownFamilyError

logger = logging.getLogger(__name__)

OPAQUE_KEYS = frozenset({"genesis_overrides", "env"})
"""Override sections whose keys are user data and keep their spelling."""


def snake_keys(document: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize camelCase keys so overrides line up with the built-in defaults.

    Applied to nested mappings and lists of mappings, except below the
    sections in OPAQUE_KEYS.
    """
    normalized: dict[str, Any] = {}
    for key, value in document.items():
        name = to_snake(key)
        if name in OPAQUE_KEYS:
            normalized[name] = value
        elif isinstance(value, Mapping):
            normalized[name] = snake_keys(value)
        elif isinstance(value, list):
            normalized[name] = [snake_keys(v) if isinstance(v, Mapping) else v for v in value]
        else:
            normalized[name] = value
    return normalized


class ChainFactory:
    """Builds chain drivers from descriptors, in descriptor order."""

    def __init__(self, descriptors: Sequence[ChainDescriptor | Mapping[str, Any]]) -> None:
        try:
            self.descriptors = [
                d if isinstance(d, ChainDescriptor) else ChainDescriptor.model_validate(d)
                for d in descriptors
            ]
        except ValidationError as exc:
            message = f"invalid chain descriptor: {exc}"
            raise ConfigInvalidError(message, component="factory") from exc

    def __len__(self) -> int:
        return len(self.descriptors)

    def resolve(self) -> list[ResolvedChain]:
        """
        Resolve every descriptor without creating drivers.

        Raises:
            ConfigInvalidError: On duplicate names or an invalid merged configuration.
            UnknownFamilyError: If a descriptor names neither a built-in chain nor a family.
            ImageUnavailableError: If the image reference is missing or malformed.
        """
        seen: set[str] = set()
        resolved = []
        for descriptor in self.descriptors:
            if descriptor.name in seen:
                raise ConfigInvalidError(
                    f"duplicate chain name '{descriptor.name}'",
                    component="factory",
                    subject=descriptor.name,
                )
            seen.add(descriptor.name)
            resolved.append(resolve_descriptor(descriptor))
        return resolved

    def chains(self, test_name: str) -> list[Chain]:
        """Create one driver per descriptor."""
        chains = [DRIVERS[r.config.family].from_resolved(r) for r in self.resolve()]
        logger.debug("Resolved %d chain(s) for %s", len(chains), test_name)
        return chains


def resolve_descriptor(descriptor: ChainDescriptor) -> ResolvedChain:
    """Merge one descriptor onto its default and validate the result."""
    chain_name = descriptor.resolved_chain_name
    base = builtin_config(chain_name)
    if base is None:
        if descriptor.family is None:
            raise UnknownFamilyError(
                f"unknown chain '{chain_name}' "
                f"(built-ins: {', '.join(builtin_names())}) and no family given",
                component="factory",
                subject=descriptor.name,
            )
        base = {"chain_name": chain_name}
    if descriptor.family is not None:
        base["family"] = descriptor.family.value

    merged = deep_merge(base, snake_keys(descriptor.config))
    family = merged.get("family")
    if family not in {f.value for f in ChainFamily}:
        raise UnknownFamilyError(
            f"unknown chain family '{family}'", component="factory", subject=descriptor.name
        )

    images = merged.get("images") or []
    if descriptor.version and images:
        images[0]["version"] = descriptor.version
    sidecar_images = [
        s["image"] for s in merged.get("sidecars") or [] if isinstance(s.get("image"), dict)
    ]
    for image in sidecar_images:
        # Sidecars shipped in the node image follow the node's version.
        same_repository = images and image.get("repository") == images[0].get("repository")
        if same_repository and not image.get("version"):
            image["version"] = images[0].get("version", "")
    for image in [*images, *sidecar_images]:
        if not image.get("version"):
            raise ImageUnavailableError(
                f"no version given for image {image.get('repository')}",
                component="factory",
                subject=descriptor.name,
            )
        split_reference(f"{image.get('repository')}:{image['version']}")

    try:
        chain_config = ChainConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigInvalidError(
            f"invalid configuration for {descriptor.name}: {exc}",
            component="factory",
            subject=descriptor.name,
        ) from exc

    try:
        chain_id = chain_config.render_chain_id(descriptor.name)
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigInvalidError(
            f"bad chain_id_template {chain_config.chain_id_template!r}",
            component="factory",
            subject=descriptor.name,
        ) from exc

    num_validators = descriptor.num_validators
    num_full_nodes = descriptor.num_full_nodes
    return ResolvedChain(
        name=descriptor.name,
        chain_id=chain_id,
        num_validators=DEFAULT_NUM_VALIDATORS if num_validators is None else num_validators,
        num_full_nodes=DEFAULT_NUM_FULL_NODES if num_full_nodes is None else num_full_nodes,
        config=chain_config,
    )
