"""
Provider registry.

Built once at startup and read-only afterwards; inject it wherever a
provider lookup is needed. Selection and fallback order live here, the
decision to walk the fallback chain belongs to the caller.
"""

import logging
import os
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .base import (
    Capability,
    ConfigurationError,
    ProviderAdapter,
    ProviderConfig,
    UnavailableAdapter,
)
from .openai_images import OpenAIImageAdapter
from .replicate import ReplicateAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderConfig, str], ProviderAdapter]

ADAPTER_FACTORIES: Dict[str, AdapterFactory] = {
    "replicate": lambda config, credential: ReplicateAdapter(config, api_token=credential),
    "openai": lambda config, credential: OpenAIImageAdapter(config, api_key=credential),
}


class ProviderRegistry:
    """Immutable map of (capability, provider) to configuration and adapter."""

    def __init__(self, providers: Iterable[Tuple[ProviderConfig, ProviderAdapter]]):
        entries: Dict[Tuple[Capability, str], Tuple[ProviderConfig, ProviderAdapter]] = {}
        for config, adapter in providers:
            key = (config.capability, config.name)
            if key in entries:
                raise ValueError(f"Duplicate provider {config.name} for {config.capability.value}")
            entries[key] = (config, adapter)
        self._entries = MappingProxyType(entries)

    def get_config(self, capability: Capability, name: str) -> Optional[ProviderConfig]:
        entry = self._entries.get((capability, name))
        return entry[0] if entry else None

    def get_adapter(self, capability: Capability, name: str) -> ProviderAdapter:
        """Get the adapter for a provider.

        Raises:
            ConfigurationError: If the provider is not registered for the capability
        """
        entry = self._entries.get((capability, name))
        if entry is None:
            raise ConfigurationError(f"No provider {name} registered for {capability.value}")
        return entry[1]

    def is_available(self, capability: Capability, name: str) -> bool:
        """A provider is available when enabled and its credential resolved."""
        entry = self._entries.get((capability, name))
        if entry is None:
            return False
        config, adapter = entry
        return config.enabled and not isinstance(adapter, UnavailableAdapter)

    def fallback_chain(self, capability: Capability) -> List[str]:
        """Available providers for a capability, highest priority first."""
        available = [
            config for (cap, name), (config, _) in self._entries.items()
            if cap == capability and self.is_available(cap, name)
        ]
        available.sort(key=lambda config: (config.priority, config.name))
        return [config.name for config in available]

    def select_provider(self, capability: Capability, preferred: Optional[str] = None) -> Optional[str]:
        """Preferred provider if available, else the highest-priority alternative, else None."""
        if preferred and self.is_available(capability, preferred):
            return preferred
        chain = self.fallback_chain(capability)
        if preferred and chain:
            logger.info("Preferred provider %s unavailable for %s, using %s",
                        preferred, capability.value, chain[0])
        return chain[0] if chain else None

    def require_provider(self, capability: Capability, preferred: Optional[str] = None) -> str:
        """Like select_provider, but a missing provider is fatal.

        Raises:
            ConfigurationError: If no provider is available for the capability
        """
        name = self.select_provider(capability, preferred)
        if name is None:
            raise ConfigurationError(f"No enabled provider with credentials for {capability.value}")
        return name

    def status(self) -> List[Dict[str, object]]:
        """Snapshot of every registered provider for display."""
        rows = []
        for (capability, name), (config, _) in sorted(
            self._entries.items(), key=lambda item: (item[0][0].value, item[1][0].priority, item[0][1])
        ):
            rows.append({
                "capability": capability.value,
                "name": name,
                "enabled": config.enabled,
                "available": self.is_available(capability, name),
                "priority": config.priority,
            })
        return rows

    def close(self) -> None:
        for _, adapter in self._entries.values():
            adapter.close()


def build_registry(
    configs: Iterable[ProviderConfig],
    environ: Optional[Mapping[str, str]] = None,
    factories: Optional[Mapping[str, AdapterFactory]] = None,
) -> ProviderRegistry:
    """Construct adapters for each configured provider.

    Disabled providers, unknown provider names and unresolved credentials
    all become UnavailableAdapter entries rather than startup failures.

    Args:
        configs: Provider configurations from the config file
        environ: Where credential_ref names are looked up (defaults to os.environ)
        factories: Adapter constructors keyed by provider name

    Returns:
        Populated ProviderRegistry
    """
    environ = os.environ if environ is None else environ
    factories = ADAPTER_FACTORIES if factories is None else factories
    providers = []

    for config in configs:
        factory = factories.get(config.name)
        credential = environ.get(config.credential_ref, "") if config.credential_ref else ""

        if not config.enabled:
            adapter: ProviderAdapter = UnavailableAdapter(config, "provider is disabled")
        elif factory is None:
            logger.warning("No adapter for provider %s", config.name)
            adapter = UnavailableAdapter(config, "no adapter implementation")
        elif not credential:
            logger.warning("Credential %s not set, provider %s unavailable",
                           config.credential_ref, config.name)
            adapter = UnavailableAdapter(config, f"credential {config.credential_ref} not set")
        else:
            adapter = factory(config, credential)
        providers.append((config, adapter))

    return ProviderRegistry(providers)
