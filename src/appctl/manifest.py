#!/usr/bin/env python3
"""
App manifest, settings overlay and compose file readers.

- app.toml       : [app] id, name, version, port, dependencies
- settings.toml  : [dependencies] <dependency> = "<substitute>"
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

from .config_constants import APP_COMPOSE, APP_MANIFEST, APP_SETTINGS
from .exceptions import InvalidManifestError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppManifest:
    app_id: str
    version: str
    port: int
    dependencies: Tuple[str, ...] = ()
    name: str = ''
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _read_toml(path: Path, app_id: str) -> dict:
    try:
        with open(path, 'rb') as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise InvalidManifestError(app_id, f"{path.name} not found in {path.parent}") from None
    except tomllib.TOMLDecodeError as e:
        raise InvalidManifestError(app_id, f"TOML syntax error in {path}: {e}") from e
    except OSError as e:
        raise InvalidManifestError(app_id, f"cannot read {path}: {e}") from e


def load_manifest(app_dir: Path, app_id: str) -> AppManifest:
    """
    Load and validate ``app.toml``.

    Fields may live under an ``[app]`` table or at the top level.
    """
    data = _read_toml(app_dir / APP_MANIFEST, app_id)
    section = data.get('app', data)
    if not isinstance(section, dict):
        raise InvalidManifestError(app_id, "[app] must be a table")

    declared_id = section.get('id')
    if declared_id is not None and declared_id != app_id:
        raise InvalidManifestError(app_id, f"manifest id '{declared_id}' does not match directory")

    version = section.get('version')
    if not isinstance(version, str) or not version.strip():
        raise InvalidManifestError(app_id, "missing or invalid 'version' (string required)")

    port = section.get('port')
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise InvalidManifestError(app_id, "missing or invalid 'port' (integer 1-65535 required)")

    dependencies = section.get('dependencies', [])
    if not isinstance(dependencies, list) or not all(
        isinstance(dep, str) and dep for dep in dependencies
    ):
        raise InvalidManifestError(app_id, "'dependencies' must be a list of app ids")

    return AppManifest(
        app_id=app_id,
        version=version,
        port=port,
        dependencies=tuple(dependencies),
        name=str(section.get('name', app_id)),
        raw=data,
    )


def load_settings_overlay(app_dir: Path, app_id: str = '') -> Dict[str, str]:
    """Read the dependency substitution map (empty when absent)."""
    path = app_dir / APP_SETTINGS
    if not path.exists():
        return {}

    data = _read_toml(path, app_id or app_dir.name)
    overrides = data.get('dependencies', {})
    if not isinstance(overrides, dict) or not all(
        isinstance(value, str) and value for value in overrides.values()
    ):
        raise InvalidManifestError(
            app_id or app_dir.name,
            f"[dependencies] in {path} must map app ids to app ids",
        )
    return dict(overrides)


def save_settings_overlay(app_dir: Path, overrides: Dict[str, str]) -> Path:
    """Write the dependency substitution map, preserving other tables."""
    import tomli_w

    path = app_dir / APP_SETTINGS
    data: dict = {}
    if path.exists():
        with open(path, 'rb') as f:
            data = tomllib.load(f)

    data['dependencies'] = dict(sorted(overrides.items()))

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        tomli_w.dump(data, f)
    logger.debug(f"Settings overlay written: {path}")
    return path


def compose_declares_service(app_dir: Path, service_name: str) -> bool:
    """Check whether the app's compose file defines ``service_name``."""
    import yaml

    compose_file = app_dir / APP_COMPOSE
    if not compose_file.exists():
        return False

    try:
        with open(compose_file, 'r', encoding='utf-8') as f:
            document = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise InvalidManifestError(app_dir.name, f"invalid compose file {compose_file}: {e}") from e

    services = document.get('services') if isinstance(document, dict) else None
    return isinstance(services, dict) and service_name in services
