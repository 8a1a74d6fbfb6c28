#!/usr/bin/env python3
"""
appctl settings.

Resolution order (later wins):
1. Built-in defaults
2. ``<root>/appctl.toml`` ``[appctl]`` table
3. ``APPCTL_<FIELD>`` environment variables

The root itself comes from the caller, else ``APPCTL_ROOT``, else /opt/appctl.
"""

from __future__ import annotations

import logging
import os
import socket
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .config_constants import (
    APP_DATA_DIR,
    COMPOSE_FRAGMENTS_DIR,
    DEFAULT_ROOT,
    HIDDEN_SERVICE_FILE,
    LOCK_SUFFIX,
    REGISTRY_FILE,
    REPOS_DIR,
    SEED_DIR,
    SEED_FILE,
    SETTINGS_FILE,
    SETTINGS_SECTION,
    STATE_DIR,
    TOR_DATA_DIR,
    hidden_service_dir_name,
)


logger = logging.getLogger(__name__)

ENV_PREFIX = 'APPCTL_'
TRUE_VALUES = {'1', 'true', 'yes', 'on'}
FALSE_VALUES = {'0', 'false', 'no', 'off', ''}


def detect_network_ip() -> str:
    """
    Best-effort LAN address of this host.

    Connecting a UDP socket sends no packets; it only selects the outbound
    interface.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(('10.255.255.255', 1))
            return sock.getsockname()[0]
    except OSError:
        return '127.0.0.1'


@dataclass
class Settings:
    """Resolved runtime configuration."""

    root: Path
    network_ip: str = ''
    device_hostname: str = ''
    remote_access: bool = False
    log_level: str = 'INFO'
    lock_retry_interval: float = 1.0
    lock_timeout: Optional[float] = None
    hidden_service_attempts: int = 10
    hidden_service_interval: float = 1.0
    hook_timeout: Optional[float] = None
    dry_run: bool = False
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        if not self.network_ip:
            self.network_ip = detect_network_ip()
        if not self.device_hostname:
            self.device_hostname = socket.gethostname()

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def seed_file(self) -> Path:
        return self.root / SEED_DIR / SEED_FILE

    @property
    def legacy_seed_file(self) -> Path:
        return self.root.parent / SEED_DIR / SEED_FILE

    @property
    def registry_file(self) -> Path:
        return self.root / STATE_DIR / REGISTRY_FILE

    @property
    def registry_lock_file(self) -> Path:
        return self.registry_file.with_name(REGISTRY_FILE + LOCK_SUFFIX)

    @property
    def repos_dir(self) -> Path:
        return self.root / REPOS_DIR

    @property
    def app_data_root(self) -> Path:
        return self.root / APP_DATA_DIR

    @property
    def compose_dir(self) -> Path:
        return self.root / COMPOSE_FRAGMENTS_DIR

    @property
    def tor_data_dir(self) -> Path:
        return self.root / TOR_DATA_DIR

    @property
    def device_domain_name(self) -> str:
        return f"{self.device_hostname}.local"

    def app_data_dir(self, app_id: str) -> Path:
        return self.app_data_root / app_id

    def hidden_service_dir(self, app_id: str) -> Path:
        return self.tor_data_dir / hidden_service_dir_name(app_id)

    def hidden_service_file(self, app_id: str) -> Path:
        return self.hidden_service_dir(app_id) / HIDDEN_SERVICE_FILE


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Convert a TOML/env value to the type of the field's default."""
    if name == 'root':
        return Path(raw)

    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise ValueError(f"[ERROR] Invalid boolean for {name}: {raw!r}")

    if name in ('lock_timeout', 'hook_timeout'):
        if raw is None or str(raw).strip().lower() in ('', 'none', 'never'):
            return None
        return float(raw)

    if isinstance(current, float):
        return float(raw)
    if isinstance(current, int):
        return int(raw)
    return str(raw)


def _defaults() -> dict:
    return {
        f.name: f.default
        for f in fields(Settings)
        if f.name not in ('root', 'extra')
    }


def load_settings_file(root: Path) -> dict:
    """Read the ``[appctl]`` table of the settings file (empty if absent)."""
    path = root / SETTINGS_FILE
    if not path.exists():
        return {}

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(
            f"[ERROR] Failed to parse TOML from {path}\n"
            f"[ERROR] TOML syntax error: {e}"
        ) from e

    section = data.get(SETTINGS_SECTION, {})
    if not isinstance(section, dict):
        raise ValueError(f"[ERROR] [{SETTINGS_SECTION}] in {path} must be a table")
    return section


def load_settings(root: Optional[Path | str] = None, **overrides: Any) -> Settings:
    """
    Resolve settings for one invocation.

    Keyword overrides (e.g. from CLI flags) win over file and environment.
    """
    if root is None:
        root = os.environ.get(f'{ENV_PREFIX}ROOT') or DEFAULT_ROOT
    root_path = Path(root)

    values = _defaults()
    extra: dict = {}

    for key, raw in load_settings_file(root_path).items():
        if key in values:
            values[key] = _coerce(key, raw, values[key])
        else:
            extra[key] = raw

    for key in list(values):
        env_value = os.environ.get(f'{ENV_PREFIX}{key.upper()}')
        if env_value is not None:
            values[key] = _coerce(key, env_value, values[key])

    for key, raw in overrides.items():
        if raw is None:
            continue
        if key not in values:
            raise TypeError(f"Unknown setting: {key}")
        values[key] = _coerce(key, raw, values[key])

    settings = Settings(root=root_path, extra=extra, **values)
    logger.debug(f"Settings resolved: root={settings.root}, remote_access={settings.remote_access}")
    return settings
