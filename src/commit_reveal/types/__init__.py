"""Reusable type definitions for the commit-reveal package."""

from .base import StrictBaseModel
from .hex import Hash256Hex, HexString, IvHex

__all__ = [
    "StrictBaseModel",
    "HexString",
    "Hash256Hex",
    "IvHex",
]
