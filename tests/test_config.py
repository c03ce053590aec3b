"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for application configs.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from studio_finops.config.loader import (
    AppConfig,
    StorageConfig,
    build_object_store,
    load_config,
    load_config_or_default,
)
from studio_finops.core.pricing import DEFAULT_PRICING_REGISTRY, UnitType
from studio_finops.providers.base import Capability
from studio_finops.storage.assets import LocalObjectStore, S3ObjectStore


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "pricing": {
                "default_price": 0.05,
                "models": {
                    "black-forest-labs/flux-pro": {"unit_price": 0.055},
                    "stability-ai/sdxl": {
                        "unit_type": "per-duration",
                        "unit_price": 0.00057,
                        "average_duration_seconds": 3.5,
                    },
                },
            },
            "approval": {"threshold": 0.25},
            "providers": {
                "image": {
                    "replicate": {"enabled": True, "priority": 1, "credential_ref": "REPLICATE_API_TOKEN"},
                    "openai": {"enabled": False, "priority": 2, "credential_ref": "OPENAI_API_KEY"},
                },
                "video": {
                    "replicate": {"enabled": True, "max_wait_seconds": 600, "poll_interval_seconds": 10},
                },
            },
            "storage": {"backend": "local", "root": "/srv/assets", "public_url": "https://cdn.example.com"},
            "ledger": {"db_path": "/var/lib/finops/ledger.db"},
            "queue": {"db_path": "/var/lib/finops/jobs.db", "lease_seconds": 900},
        }

        config = load_config(self._write_config(config_data))

        assert config.pricing.estimate("black-forest-labs/flux-pro") == 0.055
        assert config.pricing.get_entry("stability-ai/sdxl").unit_type == UnitType.PER_DURATION
        assert config.pricing.get_entry("stability-ai/sdxl").unit_price == Decimal("0.00057")
        assert "minimax/video-01" not in config.pricing
        assert config.approval_threshold == 0.25

        providers = {(p.capability, p.name): p for p in config.providers}
        assert len(providers) == 3
        assert providers[(Capability.IMAGE, "replicate")].priority == 1
        assert providers[(Capability.IMAGE, "openai")].enabled is False
        assert providers[(Capability.VIDEO, "replicate")].max_wait_seconds == 600

        assert config.storage.root == "/srv/assets"
        assert config.ledger_db_path == "/var/lib/finops/ledger.db"
        assert config.queue_db_path == "/var/lib/finops/jobs.db"
        assert config.lease_seconds == 900

    def test_partial_config_keeps_defaults(self):
        config = load_config(self._write_config({"approval": {"threshold": 1.0}}))

        assert config.approval_threshold == 1.0
        assert config.pricing is DEFAULT_PRICING_REGISTRY
        assert config.providers == ()
        assert config.storage.backend == "local"

    def test_default_price_only_keeps_builtin_table(self):
        config = load_config(self._write_config({"pricing": {"default_price": 0.1}}))

        assert config.pricing.estimate("unknown/model") == 0.1
        assert config.pricing.estimate("black-forest-labs/flux-pro") == 0.055

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, "w").close()
        with pytest.raises(ValueError, match="empty"):
            load_config(path)

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, "w") as f:
            f.write("pricing: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown keys"):
            load_config(self._write_config({"budget": {"daily": 10}}))

    def test_unknown_model_key(self):
        config_data = {"pricing": {"models": {"flux": {"unit_price": 0.01, "price_per_token": 1}}}}
        with pytest.raises(ValueError, match="pricing.models.flux"):
            load_config(self._write_config(config_data))

    def test_missing_unit_price(self):
        with pytest.raises(ValueError, match="unit_price"):
            load_config(self._write_config({"pricing": {"models": {"flux": {"unit_type": "per-item"}}}}))

    def test_invalid_unit_type(self):
        config_data = {"pricing": {"models": {"flux": {"unit_price": 0.01, "unit_type": "per-token"}}}}
        with pytest.raises(ValueError, match="unit_type"):
            load_config(self._write_config(config_data))

    def test_per_duration_without_average(self):
        config_data = {"pricing": {"models": {"sdxl": {"unit_price": 0.01, "unit_type": "per-duration"}}}}
        with pytest.raises(ValueError, match="average_duration_seconds"):
            load_config(self._write_config(config_data))

    def test_negative_threshold(self):
        with pytest.raises(ValueError, match="threshold"):
            load_config(self._write_config({"approval": {"threshold": -1}}))

    def test_non_numeric_threshold(self):
        with pytest.raises(ValueError, match="approval.threshold"):
            load_config(self._write_config({"approval": {"threshold": "cheap"}}))

    def test_unknown_capability(self):
        with pytest.raises(ValueError, match="Unknown keys in providers"):
            load_config(self._write_config({"providers": {"audio": {"elevenlabs": {"enabled": True}}}}))

    def test_credentials_not_allowed_inline(self):
        config_data = {"providers": {"image": {"openai": {"enabled": True, "api_key": "sk-live"}}}}
        with pytest.raises(ValueError, match="Unknown keys"):
            load_config(self._write_config(config_data))

    def test_enabled_must_be_bool(self):
        config_data = {"providers": {"image": {"openai": {"enabled": "yes please"}}}}
        with pytest.raises(ValueError, match="enabled"):
            load_config(self._write_config(config_data))

    def test_s3_requires_bucket(self):
        with pytest.raises(ValueError, match="bucket"):
            load_config(self._write_config({"storage": {"backend": "s3"}}))

    def test_unknown_storage_backend(self):
        with pytest.raises(ValueError, match="backend"):
            load_config(self._write_config({"storage": {"backend": "ftp"}}))

    def test_lease_must_be_integer(self):
        with pytest.raises(ValueError, match="lease_seconds"):
            load_config(self._write_config({"queue": {"lease_seconds": "ten"}}))

    def test_load_or_default_without_file(self, monkeypatch):
        monkeypatch.chdir(self.temp_dir)
        config = load_config_or_default()
        assert config == AppConfig()


class TestBuildObjectStore:
    """Test object store construction."""

    def test_local_store(self):
        store = build_object_store(StorageConfig(root="/tmp/assets", public_url="https://cdn"))
        assert isinstance(store, LocalObjectStore)
        assert store.url_for("a/b.png") == "https://cdn/a/b.png"

    def test_s3_store_reads_keys_from_environment(self, monkeypatch):
        created = {}

        def fake_client(service, **kwargs):
            created.update(kwargs, service=service)
            return object()

        monkeypatch.setattr("studio_finops.storage.assets.boto3.client", fake_client)
        storage = StorageConfig(
            backend="s3",
            bucket="studio-assets",
            endpoint_url="https://acct.r2.cloudflarestorage.com",
            access_key_ref="R2_ACCESS_KEY_ID",
            secret_key_ref="R2_SECRET_ACCESS_KEY",
        )

        store = build_object_store(storage, environ={"R2_ACCESS_KEY_ID": "ak", "R2_SECRET_ACCESS_KEY": "sk"})

        assert isinstance(store, S3ObjectStore)
        assert created["service"] == "s3"
        assert created["aws_access_key_id"] == "ak"
        assert created["aws_secret_access_key"] == "sk"
        assert created["endpoint_url"] == "https://acct.r2.cloudflarestorage.com"
