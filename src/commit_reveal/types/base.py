"""Reusable, strict base models for wire messages and configuration."""

from pydantic import BaseModel, ConfigDict


class StrictBaseModel(BaseModel):
    """
    A strict, immutable pydantic base model.

    Unknown fields are rejected and no type coercion happens. A frame that
    carries a number where a hex string belongs is an error, not a guess.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        strict=True,
        validate_default=True,
    )
