"""
Base models shared by descriptors, wallets and report records.

Three flavours, by where the data comes from:

- CamelModel: records the harness writes out (reports). Field names are
  emitted in camelCase so reports read like the topology files.
- DescriptorModel: configuration a test or a YAML file hands in. Immutable
  and closed to unknown keys, but lax about types.
- StrictBaseModel: values the harness builds itself (wallets, amounts,
  resolved chains). Immutable and strictly typed.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    A model accepting and emitting camelCase field names.

    `num_validators` and `numValidators` populate the same field.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_default=True,
        arbitrary_types_allowed=True,
    )

    def to_json_line(self) -> str:
        """Serialize as one newline-terminated JSON object, camelCase keys."""
        return self.model_dump_json(by_alias=True) + "\n"


class DescriptorModel(CamelModel):
    """
    Immutable model for user-written configuration.

    Not strict: YAML hands us lists where tuples are declared and strings
    where enums are declared.
    """

    model_config = CamelModel.model_config | ConfigDict(extra="forbid", frozen=True)


class StrictBaseModel(CamelModel):
    """A strict, immutable model for values the harness constructs."""

    model_config = CamelModel.model_config | ConfigDict(extra="forbid", frozen=True, strict=True)
