"""
Configuration Loader (``quote_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into a validated
``KernelConfig``.  Runtime callers go through
``quote_config.get_active_config()``; this module is the parsing layer
underneath it.

Invariants enforced
-------------------
* No silent defaults for malformed values: a present key with a bad value
  raises ``ConfigurationError`` naming the dotted path.
* Unknown keys are rejected, so a typo cannot silently fall back to a
  default.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values or unknown keys -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from quote_config.schema import KernelConfig
from quote_kernel.domain.policy import (
    BillingPolicy,
    PortalPolicy,
    PricingPolicy,
    QuotePolicy,
    TokenLifetimes,
)
from quote_kernel.domain.statuses import DepositPolicy
from quote_kernel.exceptions import ConfigurationError

_TOP_LEVEL_KEYS = frozenset({
    "config_id", "version", "description", "tokens", "portal", "billing", "pricing",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("top level must be a mapping", path=str(path))
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _section(data: dict[str, Any], name: str, allowed: set[str]) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError("must be a mapping", path=name)
    unknown = sorted(set(section) - allowed)
    if unknown:
        raise ConfigurationError(f"unknown keys: {', '.join(unknown)}", path=name)
    return section


def _positive_int(section: dict[str, Any], key: str, path: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"must be a positive integer, got {value!r}", path=f"{path}.{key}")
    return value


def _decimal(
    section: dict[str, Any],
    key: str,
    path: str,
    default: Decimal,
    *,
    minimum: Decimal,
    maximum: Decimal,
    inclusive_max: bool = True,
) -> Decimal:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigurationError(f"must be a number, got {raw!r}", path=f"{path}.{key}")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise ConfigurationError(f"must be a number, got {raw!r}", path=f"{path}.{key}")
    too_big = value > maximum if inclusive_max else value >= maximum
    if not value.is_finite() or value < minimum or too_big:
        bound = "]" if inclusive_max else ")"
        raise ConfigurationError(
            f"must be in [{minimum}, {maximum}{bound}, got {value}",
            path=f"{path}.{key}",
        )
    return value


def _bool(section: dict[str, Any], key: str, path: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"must be true or false, got {value!r}", path=f"{path}.{key}")
    return value


def parse_tokens(data: dict[str, Any]) -> TokenLifetimes:
    defaults = TokenLifetimes()
    keys = {"estimate_days", "invoice_days", "contract_days", "payment_plan_days", "change_order_days"}
    section = _section(data, "tokens", keys)
    return TokenLifetimes(**{
        key: _positive_int(section, key, "tokens", getattr(defaults, key)) for key in sorted(keys)
    })


def parse_portal(data: dict[str, Any]) -> PortalPolicy:
    defaults = PortalPolicy()
    section = _section(
        data, "portal",
        {"rate_limit_requests", "rate_limit_window_seconds", "auto_generate_contract_on_approval"},
    )
    return PortalPolicy(
        rate_limit_requests=_positive_int(
            section, "rate_limit_requests", "portal", defaults.rate_limit_requests,
        ),
        rate_limit_window_seconds=_positive_int(
            section, "rate_limit_window_seconds", "portal", defaults.rate_limit_window_seconds,
        ),
        auto_generate_contract_on_approval=_bool(
            section, "auto_generate_contract_on_approval", "portal",
            defaults.auto_generate_contract_on_approval,
        ),
    )


def parse_billing(data: dict[str, Any]) -> BillingPolicy:
    defaults = BillingPolicy()
    section = _section(
        data, "billing",
        {
            "default_deposit_policy",
            "default_deposit_percentage",
            "minimum_write_off_reason_length",
            "invoice_due_days",
        },
    )
    raw_policy = section.get("default_deposit_policy", defaults.default_deposit_policy.value)
    try:
        deposit_policy = DepositPolicy(raw_policy)
    except ValueError:
        allowed = ", ".join(p.value for p in DepositPolicy)
        raise ConfigurationError(
            f"must be one of {allowed}, got {raw_policy!r}",
            path="billing.default_deposit_policy",
        )
    return BillingPolicy(
        default_deposit_policy=deposit_policy,
        default_deposit_percentage=_decimal(
            section, "default_deposit_percentage", "billing",
            defaults.default_deposit_percentage,
            minimum=Decimal("0"), maximum=Decimal("100"),
        ),
        minimum_write_off_reason_length=_positive_int(
            section, "minimum_write_off_reason_length", "billing",
            defaults.minimum_write_off_reason_length,
        ),
        invoice_due_days=_positive_int(
            section, "invoice_due_days", "billing", defaults.invoice_due_days,
        ),
    )


def parse_pricing(data: dict[str, Any]) -> PricingPolicy:
    defaults = PricingPolicy()
    section = _section(
        data, "pricing",
        {
            "low_margin_warning_percentage",
            "low_utilization_warning_percentage",
            "default_half_day_factor",
            "minimum_job_charge_factor",
            "rule_engine_floor_percentage",
            "rule_engine_cost_ratio",
        },
    )
    zero, one, hundred = Decimal("0"), Decimal("1"), Decimal("100")
    return PricingPolicy(
        low_margin_warning_percentage=_decimal(
            section, "low_margin_warning_percentage", "pricing",
            defaults.low_margin_warning_percentage,
            minimum=zero, maximum=hundred, inclusive_max=False,
        ),
        low_utilization_warning_percentage=_decimal(
            section, "low_utilization_warning_percentage", "pricing",
            defaults.low_utilization_warning_percentage,
            minimum=zero, maximum=hundred,
        ),
        default_half_day_factor=_decimal(
            section, "default_half_day_factor", "pricing",
            defaults.default_half_day_factor,
            minimum=zero, maximum=one,
        ),
        minimum_job_charge_factor=_decimal(
            section, "minimum_job_charge_factor", "pricing",
            defaults.minimum_job_charge_factor,
            minimum=zero, maximum=one,
        ),
        rule_engine_floor_percentage=_decimal(
            section, "rule_engine_floor_percentage", "pricing",
            defaults.rule_engine_floor_percentage,
            minimum=zero, maximum=hundred, inclusive_max=False,
        ),
        rule_engine_cost_ratio=_decimal(
            section, "rule_engine_cost_ratio", "pricing",
            defaults.rule_engine_cost_ratio,
            minimum=zero, maximum=one,
        ),
    )


def parse_kernel_config(data: dict[str, Any], source_path: str | None = None) -> KernelConfig:
    """
    Validate a raw configuration mapping and build a KernelConfig.

    Raises:
        ConfigurationError: on the first invalid value or unknown key.
    """
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigurationError(f"unknown top-level keys: {', '.join(unknown)}", path=source_path)

    config_id = data.get("config_id")
    if not isinstance(config_id, str) or not config_id.strip():
        raise ConfigurationError("must be a non-empty string", path="config_id")

    version = _positive_int(data, "version", "config", 1)

    policy = QuotePolicy(
        tokens=parse_tokens(data),
        portal=parse_portal(data),
        billing=parse_billing(data),
        pricing=parse_pricing(data),
    )
    return KernelConfig(
        config_id=config_id,
        version=version,
        checksum=compute_checksum(data),
        policy=policy,
        description=str(data.get("description") or ""),
        source_path=source_path,
    )
