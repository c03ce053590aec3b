"""
Generation providers for studio-finops.

Uniform adapter contract, concrete adapters and the provider registry.
"""

from .base import (
    Capability,
    ConfigurationError,
    GenerationResult,
    ProviderAdapter,
    ProviderConfig,
    ProviderError,
    ProviderTimeoutError,
    UnavailableAdapter,
)
from .registry import ProviderRegistry, build_registry

__all__ = [
    "Capability",
    "ConfigurationError",
    "GenerationResult",
    "ProviderAdapter",
    "ProviderConfig",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderRegistry",
    "UnavailableAdapter",
    "build_registry",
]
