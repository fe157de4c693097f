"""
approval_config -- single public entrypoint for engine settings.

Responsibility:
    Provides the one runtime way to obtain ``EngineSettings`` through
    ``get_active_settings()``, plus ``load_template_definitions()`` for
    seeding templates from YAML.

Architecture position:
    Configuration.  Sits beside ``approval_kernel`` and below
    ``approval_services``.  The kernel never imports from this package;
    the facade passes individual settings down to the services.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``ValueError`` -- unknown keys, wrong types or out-of-range values.

Audit relevance:
    Every ``get_active_settings()`` call emits an ``ENGINE_CONFIG_TRACE``
    log entry with the source and a checksum of the effective settings.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from approval_config.loader import (
    compute_checksum,
    load_template_definitions,
    load_yaml_file,
    parse_settings,
)
from approval_config.schema import DatabaseSettings, EngineSettings, NotificationSettings

_logger = logging.getLogger("approval_kernel.config")

CONFIG_PATH_ENV = "APPROVAL_ENGINE_CONFIG"
DATABASE_URL_ENV = "APPROVAL_ENGINE_DATABASE_URL"

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "sets" / "hr_templates.yaml"


def get_active_settings(path: str | Path | None = None) -> EngineSettings:
    """The public settings entrypoint.

    Resolution order: ``path``, then the file named by
    ``APPROVAL_ENGINE_CONFIG``, then built-in defaults.  A non-empty
    ``APPROVAL_ENGINE_DATABASE_URL`` overrides ``database.url``.

    Raises:
        FileNotFoundError: If the named file does not exist.
        ValueError: If the file does not parse into valid settings.
    """
    source = path or os.environ.get(CONFIG_PATH_ENV)
    if source:
        data = load_yaml_file(Path(source))
        settings = parse_settings(data)
    else:
        settings = EngineSettings()

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        settings = dataclasses.replace(
            settings,
            database=dataclasses.replace(settings.database, url=database_url),
        )

    effective = dataclasses.asdict(settings)
    # The trace carries the dialect only, never the URL.
    checksum = compute_checksum(effective)
    _logger.info(
        "ENGINE_CONFIG_TRACE",
        extra={
            "trace_type": "ENGINE_CONFIG_TRACE",
            "config_source": str(source) if source else "defaults",
            "checksum": checksum,
            "allow_drafts": settings.allow_drafts,
            "max_commit_attempts": settings.max_commit_attempts,
            "database_dialect": settings.database.url.split(":", 1)[0],
        },
    )
    return settings


__all__ = [
    "CONFIG_PATH_ENV",
    "DATABASE_URL_ENV",
    "DEFAULT_TEMPLATES_PATH",
    "DatabaseSettings",
    "EngineSettings",
    "NotificationSettings",
    "get_active_settings",
    "load_template_definitions",
]
