"""
Settings Loader (``pos_config.loader``).

Responsibility
--------------
Loads YAML settings files and parses them into typed
``pos_config.schema`` dataclass instances.  Runtime callers go through
``pos_config.get_active_settings()``.

Invariants enforced
-------------------
* Wrong types raise ``ValueError`` naming the offending key; missing keys
  fall back to the schema defaults.
* Unknown sections or keys raise ``ValueError`` so that a typo cannot
  silently fall back to a default.
* ``compute_checksum`` is deterministic over the parsed values.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any

import yaml

from pos_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    LoggingSettings,
    PosSettings,
)

_SECTIONS = {
    "database": DatabaseSettings,
    "ledger": LedgerSettings,
    "logging": LoggingSettings,
}

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def merge_settings_data(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Section-wise merge; keys in ``override`` win."""
    merged = {name: dict(values or {}) for name, values in base.items()}
    for name, values in override.items():
        merged.setdefault(name, {}).update(values or {})
    return merged


def _coerce(section: str, key: str, value: Any, expected: type) -> Any:
    if expected is bool:
        if isinstance(value, bool):
            return value
    elif expected is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif expected is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(value, expected):
        return value
    raise ValueError(
        f"{section}.{key}: expected {expected.__name__}, got {type(value).__name__} ({value!r})"
    )


def _parse_section(section: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"{section}: expected a mapping, got {type(data).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"{section}: unknown keys {unknown}")

    defaults = cls()
    values = {}
    for key, raw in data.items():
        expected = type(getattr(defaults, key))
        values[key] = _coerce(section, key, raw, expected)
    return replace(defaults, **values)


def parse_settings(data: dict[str, Any]) -> PosSettings:
    """
    Parse a settings dict (as loaded from YAML) into ``PosSettings``.

    Raises:
        ValueError: On unknown sections/keys, wrong types or out-of-range
            values.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown settings sections: {unknown}")

    database = _parse_section("database", DatabaseSettings, data.get("database"))
    ledger = _parse_section("ledger", LedgerSettings, data.get("ledger"))
    logging_settings = _parse_section("logging", LoggingSettings, data.get("logging"))

    _validate(database, ledger, logging_settings)

    settings = PosSettings(database=database, ledger=ledger, logging=logging_settings)
    return replace(settings, checksum=compute_checksum(settings))


def _validate(
    database: DatabaseSettings,
    ledger: LedgerSettings,
    logging_settings: LoggingSettings,
) -> None:
    if not database.url:
        raise ValueError("database.url must not be empty")
    if ledger.max_conflict_retries < 0:
        raise ValueError("ledger.max_conflict_retries must be >= 0")
    if ledger.audit_append_attempts < 1:
        raise ValueError("ledger.audit_append_attempts must be >= 1")
    if ledger.document_number_width < 1:
        raise ValueError("ledger.document_number_width must be >= 1")
    currency = ledger.default_currency
    if len(currency) != 3 or not currency.isalpha() or not currency.isupper():
        raise ValueError(f"ledger.default_currency must be an ISO 4217 code, got {currency!r}")
    if logging_settings.level.upper() not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}")


def compute_checksum(settings: PosSettings) -> str:
    """
    SHA-256 of the canonical JSON of the settings values.

    The database URL is excluded so that credentials never end up in a
    logged fingerprint.
    """
    data = asdict(settings)
    data.pop("checksum", None)
    data["database"].pop("url", None)
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
