"""
Inference providers for mindclone.
"""

from .base import (
    Completion,
    InferenceError,
    InferenceProvider,
    ProviderRegistry,
    get_registry,
    parse_json_object,
)

__all__ = [
    "Completion",
    "InferenceError",
    "InferenceProvider",
    "ProviderRegistry",
    "get_registry",
    "parse_json_object",
]
