"""Reusable base models for the harness."""

from .base import CamelModel, DescriptorModel, StrictBaseModel

__all__ = [
    "CamelModel",
    "DescriptorModel",
    "StrictBaseModel",
]
