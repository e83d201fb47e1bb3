"""
pos_config -- single public entrypoint for POS ledger settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  Returns a frozen ``PosSettings``.

Architecture position:
    Configuration sits above ``pos_kernel``.  The kernel MUST NEVER import
    from ``pos_config``; ``pos_config.bridges`` translates settings into
    kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- ``config_path`` does not exist.
    - ``ValueError`` -- unknown keys, wrong types or invalid values.

Audit relevance:
    Every call emits a ``POS_CONFIG_TRACE`` log entry with the settings
    checksum, tying ledger activity to the exact settings in force.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

from pos_config.loader import compute_checksum, load_yaml_file, merge_settings_data, parse_settings
from pos_config.schema import DatabaseSettings, LedgerSettings, LoggingSettings, PosSettings

_logger = logging.getLogger("pos_kernel.config")

DEFAULTS_FILE = Path(__file__).parent / "defaults.yaml"


def get_active_settings(
    config_path: Path | str | None = None,
    database_url: str | None = None,
) -> PosSettings:
    """The ONLY public settings entrypoint.

    Args:
        config_path: Optional YAML file layered over ``defaults.yaml``.
        database_url: Optional override of ``database.url`` (e.g. from an
            operator script's ``--database-url``).
    """
    data = load_yaml_file(DEFAULTS_FILE)
    source = str(DEFAULTS_FILE)
    if config_path is not None:
        data = merge_settings_data(data, load_yaml_file(Path(config_path)))
        source = str(config_path)

    settings = parse_settings(data)
    if database_url:
        settings = replace(settings, database=replace(settings.database, url=database_url))

    _logger.info(
        "POS_CONFIG_TRACE",
        extra={
            "trace_type": "POS_CONFIG_TRACE",
            "source": source,
            "checksum": settings.checksum,
            "dialect": settings.database.url.split(":", 1)[0],
            "max_conflict_retries": settings.ledger.max_conflict_retries,
            "audit_append_attempts": settings.ledger.audit_append_attempts,
        },
    )
    return settings


__all__ = [
    "get_active_settings",
    "compute_checksum",
    "DatabaseSettings",
    "LedgerSettings",
    "LoggingSettings",
    "PosSettings",
]
