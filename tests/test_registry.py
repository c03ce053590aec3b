"""
Tests for provider selection and registry construction.
"""
from unittest.mock import Mock

import pytest

from studio_finops.providers.base import (
    Capability,
    ConfigurationError,
    ProviderAdapter,
    ProviderConfig,
    UnavailableAdapter,
)
from studio_finops.providers.registry import ProviderRegistry, build_registry


def config(name, capability=Capability.IMAGE, enabled=True, priority=100, credential_ref=None):
    return ProviderConfig(
        name=name,
        capability=capability,
        enabled=enabled,
        priority=priority,
        credential_ref=credential_ref,
    )


def live(cfg):
    return cfg, Mock(spec=ProviderAdapter)


class TestProviderConfig:
    """Test ProviderConfig validation."""

    def test_defaults(self):
        cfg = ProviderConfig(name="replicate", capability=Capability.VIDEO)
        assert cfg.enabled is False
        assert cfg.max_wait_seconds == 300.0
        assert cfg.poll_interval_seconds == 5.0

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError, match="max_retries"):
            ProviderConfig(name="x", capability=Capability.IMAGE, max_retries=-1)

    def test_zero_timeout_rejected(self):
        with pytest.raises(ValueError, match="timeout_ms"):
            ProviderConfig(name="x", capability=Capability.IMAGE, timeout_ms=0)


class TestSelection:
    """Test select_provider / fallback_chain."""

    def test_preferred_when_available(self):
        registry = ProviderRegistry([
            live(config("replicate", priority=1)),
            live(config("openai", priority=2)),
        ])
        assert registry.select_provider(Capability.IMAGE, "openai") == "openai"

    def test_highest_priority_when_no_preference(self):
        registry = ProviderRegistry([
            live(config("openai", priority=2)),
            live(config("replicate", priority=1)),
        ])
        assert registry.select_provider(Capability.IMAGE) == "replicate"

    def test_disabled_preference_falls_back(self):
        registry = ProviderRegistry([
            live(config("replicate", priority=1)),
            live(config("openai", enabled=False, priority=0)),
        ])
        assert registry.select_provider(Capability.IMAGE, "openai") == "replicate"

    def test_unavailable_adapter_not_selected(self):
        cfg = config("openai", priority=0)
        registry = ProviderRegistry([
            (cfg, UnavailableAdapter(cfg, "credential missing")),
            live(config("replicate", priority=5)),
        ])
        assert registry.select_provider(Capability.IMAGE) == "replicate"
        assert not registry.is_available(Capability.IMAGE, "openai")

    def test_capabilities_are_separate(self):
        registry = ProviderRegistry([live(config("replicate", capability=Capability.VIDEO))])
        assert registry.select_provider(Capability.IMAGE) is None
        assert registry.select_provider(Capability.VIDEO) == "replicate"

    def test_nothing_enabled_returns_none(self):
        registry = ProviderRegistry([live(config("replicate", enabled=False))])
        assert registry.select_provider(Capability.IMAGE) is None

    def test_require_provider_raises(self):
        registry = ProviderRegistry([])
        with pytest.raises(ConfigurationError):
            registry.require_provider(Capability.VIDEO)

    def test_fallback_chain_order(self):
        registry = ProviderRegistry([
            live(config("c", priority=3)),
            live(config("a", priority=1)),
            live(config("b", priority=1)),
            live(config("off", enabled=False, priority=0)),
        ])
        assert registry.fallback_chain(Capability.IMAGE) == ["a", "b", "c"]

    def test_duplicate_provider_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            ProviderRegistry([live(config("replicate")), live(config("replicate"))])

    def test_get_adapter_unknown(self):
        with pytest.raises(ConfigurationError):
            ProviderRegistry([]).get_adapter(Capability.IMAGE, "nope")

    def test_status_rows(self):
        registry = ProviderRegistry([
            live(config("replicate", priority=1)),
            live(config("openai", enabled=False, priority=2)),
        ])
        rows = registry.status()
        assert [(r["name"], r["available"]) for r in rows] == [("replicate", True), ("openai", False)]


class TestBuildRegistry:
    """Test adapter construction from configuration."""

    def test_builds_adapter_when_credential_present(self):
        factory = Mock(return_value=Mock(spec=ProviderAdapter))
        registry = build_registry(
            [config("replicate", credential_ref="REPLICATE_API_TOKEN")],
            environ={"REPLICATE_API_TOKEN": "r8_secret"},
            factories={"replicate": factory},
        )

        factory.assert_called_once()
        assert factory.call_args[0][1] == "r8_secret"
        assert registry.select_provider(Capability.IMAGE) == "replicate"

    def test_missing_credential_is_unavailable(self):
        factory = Mock()
        registry = build_registry(
            [config("replicate", credential_ref="REPLICATE_API_TOKEN")],
            environ={},
            factories={"replicate": factory},
        )

        factory.assert_not_called()
        assert isinstance(registry.get_adapter(Capability.IMAGE, "replicate"), UnavailableAdapter)
        assert registry.select_provider(Capability.IMAGE) is None

    def test_disabled_provider_is_unavailable(self):
        factory = Mock()
        registry = build_registry(
            [config("replicate", enabled=False, credential_ref="TOKEN")],
            environ={"TOKEN": "x"},
            factories={"replicate": factory},
        )
        factory.assert_not_called()
        with pytest.raises(ConfigurationError, match="disabled"):
            registry.get_adapter(Capability.IMAGE, "replicate").generate_image("a cat")

    def test_unknown_provider_is_unavailable(self):
        registry = build_registry(
            [config("midjourney", credential_ref="TOKEN")],
            environ={"TOKEN": "x"},
            factories={},
        )
        assert not registry.is_available(Capability.IMAGE, "midjourney")
