"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen dataclasses of
``approval_config.schema`` and into ``TemplateDefinition`` seed data.
Runtime callers go through ``approval_config.get_active_settings()``.

Invariants enforced
-------------------
* Unknown keys and wrongly-typed values raise ``ValueError``; nothing is
  silently ignored.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import DatabaseSettings, EngineSettings, NotificationSettings
from approval_kernel.domain.workflow import TemplateDefinition


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


_EXPECTED_TYPES: dict[type, tuple[type, ...]] = {
    bool: (bool,),
    int: (int,),
    float: (int, float),
    str: (str,),
}


def _parse_section(section: str, data: Any, cls: type, fields: dict[str, type]) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"'{section}' must be a mapping")
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise ValueError(f"Unknown key(s) in '{section}': {', '.join(unknown)}")
    kwargs = {}
    for key, value in data.items():
        expected = fields[key]
        allowed = _EXPECTED_TYPES[expected]
        # bool is an int subclass; refuse it where a number is expected
        if not isinstance(value, allowed) or (expected is not bool and isinstance(value, bool)):
            raise ValueError(
                f"'{section}.{key}' must be {expected.__name__}, got {type(value).__name__}"
            )
        kwargs[key] = expected(value)
    return cls(**kwargs)


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse ``EngineSettings`` from a config document.

    Layout::

        engine:
          allow_drafts: true
          max_commit_attempts: 3
        notifications:
          notify_on_rejection: true
        database:
          url: sqlite:///approval_engine.db

    Raises:
        ValueError: unknown sections or keys, or wrongly-typed values.
    """
    unknown = sorted(set(data) - {"engine", "notifications", "database"})
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(unknown)}")

    notifications = _parse_section(
        "notifications",
        data.get("notifications"),
        NotificationSettings,
        {
            "notify_on_approval_needed": bool,
            "notify_on_completion": bool,
            "notify_on_rejection": bool,
            "notify_on_cancellation": bool,
        },
    )
    database = _parse_section(
        "database",
        data.get("database"),
        DatabaseSettings,
        {"url": str, "echo": bool},
    )
    engine_fields = {
        "allow_drafts": bool,
        "require_comment_on_reject": bool,
        "require_comment_on_approve": bool,
        "max_commit_attempts": int,
        "retry_backoff_seconds": float,
        "admin_reference": str,
    }
    engine = _parse_section("engine", data.get("engine"), dict, engine_fields)
    return EngineSettings(notifications=notifications, database=database, **engine)


def parse_template_definitions(data: dict[str, Any]) -> tuple[TemplateDefinition, ...]:
    """Parse the ``templates`` list of a seed document.

    Definitions are not validated here; the template registry validates
    each one when it is created.
    """
    templates = data.get("templates")
    if templates is None:
        return ()
    if not isinstance(templates, list):
        raise ValueError("'templates' must be a list")
    definitions = []
    for i, entry in enumerate(templates):
        if not isinstance(entry, dict):
            raise ValueError(f"templates[{i}] must be a mapping")
        if not isinstance(entry.get("steps", []), list):
            raise ValueError(f"templates[{i}].steps must be a list")
        definitions.append(TemplateDefinition.from_dict(entry))
    return tuple(definitions)


def load_template_definitions(path: Path) -> tuple[TemplateDefinition, ...]:
    """Load seed ``TemplateDefinition`` objects from a YAML file."""
    return parse_template_definitions(load_yaml_file(Path(path)))
