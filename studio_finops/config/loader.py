"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from studio_finops.core.approval import DEFAULT_APPROVAL_THRESHOLD
from studio_finops.core.pricing import (
    DEFAULT_PRICING_REGISTRY,
    PricingEntry,
    PricingRegistry,
    UnitType,
)
from studio_finops.export.queue import DEFAULT_LEASE_SECONDS, DEFAULT_QUEUE_DB_PATH
from studio_finops.providers.base import Capability, ProviderConfig
from studio_finops.storage.assets import LocalObjectStore, ObjectStore, S3ObjectStore
from studio_finops.storage.db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATH = "studio_finops.yaml"
DEFAULT_ASSET_ROOT = "assets"

STORAGE_BACKENDS = ("local", "s3")


@dataclass(frozen=True)
class StorageConfig:
    """Where secured assets are written."""
    backend: str = "local"
    root: str = DEFAULT_ASSET_ROOT
    bucket: Optional[str] = None
    endpoint_url: Optional[str] = None
    public_url: Optional[str] = None
    region_name: Optional[str] = None
    access_key_ref: Optional[str] = None
    secret_key_ref: Optional[str] = None

    def __post_init__(self):
        if self.backend not in STORAGE_BACKENDS:
            raise ValueError(f"storage backend must be one of: {list(STORAGE_BACKENDS)}")
        if self.backend == "s3" and not self.bucket:
            raise ValueError("storage 'bucket' is required for the s3 backend")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    pricing: PricingRegistry = DEFAULT_PRICING_REGISTRY
    approval_threshold: float = DEFAULT_APPROVAL_THRESHOLD
    providers: Tuple[ProviderConfig, ...] = ()
    storage: StorageConfig = field(default_factory=StorageConfig)
    ledger_db_path: str = DEFAULT_DB_PATH
    queue_db_path: str = DEFAULT_QUEUE_DB_PATH
    lease_seconds: int = DEFAULT_LEASE_SECONDS

    def __post_init__(self):
        if self.approval_threshold < 0:
            raise ValueError("approval threshold must be >= 0")
        if self.lease_seconds <= 0:
            raise ValueError("queue lease_seconds must be > 0")


def _check_keys(data: Any, allowed: set, path: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return data


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def load_config(path: str) -> AppConfig:
    """Load and validate application configuration from YAML file.

    Every section is optional; omitted sections keep their defaults.
    Unknown keys are rejected so a typo never silently disables a price
    or a provider.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    _check_keys(raw_config, {'pricing', 'approval', 'providers', 'storage', 'ledger', 'queue'}, "configuration")

    settings: Dict[str, Any] = {}

    if 'pricing' in raw_config:
        settings['pricing'] = _parse_pricing(raw_config['pricing'])

    if 'approval' in raw_config:
        approval = _check_keys(raw_config['approval'], {'threshold'}, "approval")
        if 'threshold' not in approval:
            raise ValueError("Missing required 'threshold' in approval")
        settings['approval_threshold'] = float(_decimal(approval['threshold'], "approval.threshold"))

    if 'providers' in raw_config:
        settings['providers'] = _parse_providers(raw_config['providers'])

    if 'storage' in raw_config:
        storage = _check_keys(
            raw_config['storage'],
            {'backend', 'root', 'bucket', 'endpoint_url', 'public_url',
             'region_name', 'access_key_ref', 'secret_key_ref'},
            "storage",
        )
        settings['storage'] = StorageConfig(**storage)

    if 'ledger' in raw_config:
        ledger = _check_keys(raw_config['ledger'], {'db_path'}, "ledger")
        if 'db_path' in ledger:
            settings['ledger_db_path'] = str(ledger['db_path'])

    if 'queue' in raw_config:
        queue = _check_keys(raw_config['queue'], {'db_path', 'lease_seconds'}, "queue")
        if 'db_path' in queue:
            settings['queue_db_path'] = str(queue['db_path'])
        if 'lease_seconds' in queue:
            if not isinstance(queue['lease_seconds'], int):
                raise ValueError("'queue.lease_seconds' must be an integer")
            settings['lease_seconds'] = queue['lease_seconds']

    return AppConfig(**settings)


def _parse_pricing(data: Any) -> PricingRegistry:
    """Parse the pricing section.

    A 'models' map replaces the built-in table; without one the built-in
    table is kept and only the default price changes.
    """
    data = _check_keys(data, {'default_price', 'currency', 'models'}, "pricing")

    default_price = DEFAULT_PRICING_REGISTRY.default_price
    if 'default_price' in data:
        default_price = _decimal(data['default_price'], "pricing.default_price")
        if default_price < 0:
            raise ValueError("'pricing.default_price' must be >= 0")
    currency = str(data.get('currency', DEFAULT_PRICING_REGISTRY.currency))

    if 'models' not in data:
        entries = [DEFAULT_PRICING_REGISTRY.get_entry(m) for m in DEFAULT_PRICING_REGISTRY.model_identifiers]
        return PricingRegistry(entries, default_price=default_price, currency=currency)

    models = data['models']
    if not isinstance(models, dict):
        raise ValueError("'pricing.models' must be a dictionary")

    entries = []
    for model_identifier, model_data in models.items():
        path = f"pricing.models.{model_identifier}"
        model_data = _check_keys(model_data, {'unit_type', 'unit_price', 'average_duration_seconds'}, path)

        if 'unit_price' not in model_data:
            raise ValueError(f"Missing required 'unit_price' in {path}")
        unit_price = _decimal(model_data['unit_price'], f"{path}.unit_price")

        unit_str = model_data.get('unit_type', UnitType.PER_ITEM.value)
        try:
            unit_type = UnitType(unit_str)
        except ValueError:
            valid_units = [unit.value for unit in UnitType]
            raise ValueError(f"'unit_type' in {path} must be one of: {valid_units}")

        average = None
        if 'average_duration_seconds' in model_data:
            average = _decimal(model_data['average_duration_seconds'], f"{path}.average_duration_seconds")

        entries.append(PricingEntry(
            model_identifier=str(model_identifier),
            unit_type=unit_type,
            unit_price=unit_price,
            average_duration_seconds=average,
        ))

    return PricingRegistry(entries, default_price=default_price, currency=currency)


def _parse_providers(data: Any) -> Tuple[ProviderConfig, ...]:
    """Parse providers.image / providers.video maps of provider name to settings."""
    data = _check_keys(data, {c.value for c in Capability}, "providers")
    allowed_keys = {
        'enabled', 'priority', 'max_retries', 'timeout_ms', 'credential_ref',
        'api_url', 'poll_interval_seconds', 'max_wait_seconds',
    }

    configs = []
    for capability_name, providers in data.items():
        if not isinstance(providers, dict):
            raise ValueError(f"'providers.{capability_name}' must be a dictionary")
        for provider_name, provider_data in providers.items():
            path = f"providers.{capability_name}.{provider_name}"
            provider_data = _check_keys(provider_data or {}, allowed_keys, path)
            if 'enabled' in provider_data and not isinstance(provider_data['enabled'], bool):
                raise ValueError(f"'enabled' in {path} must be true or false")
            configs.append(ProviderConfig(
                name=str(provider_name),
                capability=Capability(capability_name),
                **provider_data,
            ))
    return tuple(configs)


def load_config_or_default(path: Optional[str] = None) -> AppConfig:
    """Load the config file if it exists, otherwise built-in defaults.

    An explicitly given path must exist.
    """
    if path is not None:
        return load_config(path)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return AppConfig()


def build_object_store(storage: StorageConfig, environ: Optional[Mapping[str, str]] = None) -> ObjectStore:
    """Construct the object store named by the storage section.

    S3 keys are resolved from the environment variables named by
    access_key_ref / secret_key_ref, never from the file itself.
    """
    environ = os.environ if environ is None else environ
    if storage.backend == "s3":
        return S3ObjectStore(
            bucket_name=storage.bucket,
            endpoint_url=storage.endpoint_url,
            public_url=storage.public_url,
            access_key_id=environ.get(storage.access_key_ref) if storage.access_key_ref else None,
            secret_access_key=environ.get(storage.secret_key_ref) if storage.secret_key_ref else None,
            region_name=storage.region_name,
        )
    return LocalObjectStore(storage.root, public_url=storage.public_url)
