"""Base Pydantic model configuration for ATP manifest types.

All manifest entities inherit from ATPBaseModel:
- Immutability (frozen=True): a validated manifest is shared read-only
- Strict validation (extra="forbid"): unknown keys are schema violations
- camelCase wire names (``requiredScopes``) with snake_case attributes
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ATPBaseModel(BaseModel):
    """Base model for all ATP manifest entities.

    Fields are declared in snake_case and (de)serialized under their
    camelCase alias; both spellings are accepted on input.

    Example:
        >>> class Example(ATPBaseModel):
        ...     side_effects: bool = False
        >>> Example.model_validate({"sideEffects": True}).side_effects
        True
        >>> Example(side_effects=True).model_dump(by_alias=True)
        {'sideEffects': True}
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
        validate_default=True,
    )
