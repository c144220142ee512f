"""
Configuration management and loading.

Reads the accounting settings from YAML. Every section is optional; keys
that are not recognised are rejected so typos never pass silently.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from consensus_billing.core.alerts import AlertThresholds
from consensus_billing.core.tiers import DEFAULT_TIER_TABLE, TierTable, parse_tier
from consensus_billing.storage.db import DEFAULT_DB_PATH
from consensus_billing.storage.models import SubscriptionTier

CONFIG_ENV_VAR = "CONSENSUS_BILLING_CONFIG"

LIMIT_KEYS = {
    "messages_per_day",
    "messages_per_month",
    "max_debate_rounds",
    "max_personas_per_debate",
    "concurrent_debates",
    "storage_gb",
}
PRICE_KEYS = {"monthly_price", "annual_price", "price_per_extra_message"}
PRICING_KEYS = PRICE_KEYS | {"free_trial_days"}


class StorageBackend(Enum):
    """Where accounting records are kept."""
    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Storage backend selection."""
    backend: StorageBackend = StorageBackend.SQLITE
    db_path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """Validate the database path is set for SQLite."""
        if self.backend == StorageBackend.SQLITE and not self.db_path:
            raise ValueError("db_path is required for the sqlite backend")


@dataclass(frozen=True)
class BillingSettings:
    """Invoice settings."""
    tax_rate: Decimal = Decimal("0.08")

    def __post_init__(self):
        """Validate tax rate is a fraction."""
        if not Decimal("0") <= self.tax_rate < Decimal("1"):
            raise ValueError("tax_rate must be >= 0 and < 1")


@dataclass(frozen=True)
class BillingConfig:
    """Complete accounting configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    billing: BillingSettings = field(default_factory=BillingSettings)
    alerts: AlertThresholds = field(default_factory=AlertThresholds)
    tier_limits: Dict[SubscriptionTier, Dict[str, int]] = field(default_factory=dict)
    tier_pricing: Dict[SubscriptionTier, Dict[str, Any]] = field(default_factory=dict)

    def tier_table(self) -> TierTable:
        """Default tier table with the configured overrides applied."""
        if not self.tier_limits and not self.tier_pricing:
            return DEFAULT_TIER_TABLE
        return DEFAULT_TIER_TABLE.with_overrides(self.tier_limits, self.tier_pricing)


def load_billing_config(path: Optional[str] = None) -> BillingConfig:
    """Load and validate accounting configuration from a YAML file.

    Args:
        path: Path to YAML configuration file; when omitted the
            CONSENSUS_BILLING_CONFIG environment variable is used, and
            without either the defaults are returned

    Returns:
        Validated BillingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return BillingConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Billing config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {"storage", "billing", "alerts", "tiers"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    tier_limits, tier_pricing = _parse_tiers(raw_config.get("tiers", {}))
    return BillingConfig(
        storage=_parse_storage(_section(raw_config, "storage", {"backend", "db_path"})),
        billing=_parse_billing(_section(raw_config, "billing", {"tax_rate"})),
        alerts=_parse_alerts(_section(
            raw_config,
            "alerts",
            {"warning_percent", "critical_percent", "upgrade_message_count"},
        )),
        tier_limits=tier_limits,
        tier_pricing=tier_pricing,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_storage(data: Dict[str, Any]) -> StorageConfig:
    backend_str = data.get("backend", StorageBackend.SQLITE.value)
    if not isinstance(backend_str, str):
        raise ValueError("'backend' in storage must be a string")
    try:
        backend = StorageBackend(backend_str.lower())
    except ValueError:
        valid = [backend.value for backend in StorageBackend]
        raise ValueError(f"'backend' in storage must be one of: {valid}")

    db_path = data.get("db_path", DEFAULT_DB_PATH)
    if not isinstance(db_path, str):
        raise ValueError("'db_path' in storage must be a string")
    return StorageConfig(backend=backend, db_path=db_path)


def _parse_billing(data: Dict[str, Any]) -> BillingSettings:
    if "tax_rate" not in data:
        return BillingSettings()
    return BillingSettings(tax_rate=_parse_amount(data["tax_rate"], "billing.tax_rate"))


def _parse_alerts(data: Dict[str, Any]) -> AlertThresholds:
    values = {}
    for key in ("warning_percent", "critical_percent"):
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in alerts must be a number")
            values[key] = float(value)
    if "upgrade_message_count" in data:
        values["upgrade_message_count"] = _parse_int(
            data["upgrade_message_count"], "alerts.upgrade_message_count"
        )
    return AlertThresholds(**values)


def _parse_tiers(data: Any):
    """Parse per-tier overrides into limit and pricing dictionaries.

    Args:
        data: Mapping of tier name to overridden fields

    Returns:
        Tuple of (limit overrides, pricing overrides) keyed by tier

    Raises:
        ValueError: If a tier or field is unknown or a value is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'tiers' must be a dictionary")

    limits: Dict[SubscriptionTier, Dict[str, int]] = {}
    pricing: Dict[SubscriptionTier, Dict[str, Any]] = {}
    for tier_name, overrides in data.items():
        tier = parse_tier(tier_name)
        path = f"tiers.{tier.value}"
        if not isinstance(overrides, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(overrides.keys()) - LIMIT_KEYS - PRICING_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        for key, value in overrides.items():
            if key in LIMIT_KEYS:
                number = _parse_int(value, f"{path}.{key}")
                if number < -1:
                    raise ValueError(f"'{key}' in {path} must be >= 0 or -1 for unlimited")
                limits.setdefault(tier, {})[key] = number
            elif key in PRICE_KEYS:
                pricing.setdefault(tier, {})[key] = _parse_amount(value, f"{path}.{key}")
            else:
                pricing.setdefault(tier, {})[key] = _parse_int(value, f"{path}.{key}")
    return limits, pricing


def _parse_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _parse_amount(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if amount < 0:
        raise ValueError(f"'{path}' cannot be negative")
    return amount
