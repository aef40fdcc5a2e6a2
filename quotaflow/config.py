"""Global configuration for quotaflow."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, fields, replace
from typing import Dict, Any


@dataclass(frozen=True)
class QuotaSettings:
    """Tunables for enforcement and recommendations.

    The recommendation thresholds are business heuristics, not fixed law.
    """
    # Recommendation engine
    high_utilization: float = 0.9
    high_utilization_periods: int = 2
    lookback_periods: int = 3
    low_utilization: float = 0.2
    upgrade_headroom: float = 1.2
    downgrade_margin: float = 1.5
    min_history_periods: int = 2
    confidence_sample_weight: float = 0.5
    confidence_gap_weight: float = 0.5
    feature_denials_threshold: int = 2
    recommendation_ttl_days: int = 30
    recommendation_cooldown_days: int = 7

    # Enforcement
    warning_threshold: float = 0.8
    reservation_ttl_seconds: int = 3600
    storage_retries: int = 1
    denial_retention_days: int = 90


DEFAULT_SETTINGS = QuotaSettings()

_settings: QuotaSettings = copy.deepcopy(DEFAULT_SETTINGS)


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _validate(overrides: Dict[str, Any]) -> None:
    known = {f.name for f in fields(QuotaSettings)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")
    for name, value in overrides.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ValueError(f"setting {name} must be a number")
        if value < 0:
            raise ValueError(f"setting {name} must not be negative")


def get_settings() -> QuotaSettings:
    """Return settings, with optional env override."""
    parsed = _parse_json_env("QUOTAFLOW_SETTINGS_JSON")
    if parsed:
        try:
            _validate(parsed)
        except ValueError:
            return _settings
        return replace(_settings, **parsed)
    return _settings


def set_settings(**overrides: Any) -> QuotaSettings:
    """Override settings at runtime."""
    _validate(overrides)
    global _settings
    _settings = replace(_settings, **overrides)
    return _settings


def reset_settings() -> None:
    """Restore defaults."""
    global _settings
    _settings = copy.deepcopy(DEFAULT_SETTINGS)


def get_db_path() -> str:
    return os.getenv("QUOTAFLOW_DB_PATH", "quotaflow.db")


def get_api_key() -> str | None:
    return os.getenv("QUOTAFLOW_API_KEY")
