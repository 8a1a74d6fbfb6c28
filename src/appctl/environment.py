#!/usr/bin/env python3
"""
Environment composition.

Layers, each overriding the previous one:
1. Base: network address, device hostname and domain name
2. Export layers of every transitive dependency (resolution order), then of
   the app itself. An export layer is ``exports.toml.j2``: a Jinja2 template
   rendered against the environment built so far, parsed as TOML and
   flattened into UPPER_SNAKE keys.
3. App layer: identity, manifest values, secrets, hidden service addressing.
   Computed last so nothing above can override it.

The environment is never persisted; it is rebuilt on every invocation.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import Settings
from .config_constants import (
    APP_EXPORTS,
    HIDDEN_SERVICE_DISABLED,
    HIDDEN_SERVICE_PENDING,
    HIDDEN_SERVICE_VIRTUAL_PORT,
    TEMPLATE_SUFFIX,
    proxy_hostname,
    rendered_template_name,
)
from .dependencies import DependencyResolver
from .entropy import EntropyDeriver
from .exceptions import InvalidManifestError
from .manifest import load_manifest


logger = logging.getLogger(__name__)


def _stringify_env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def flatten_dict(data: dict, parent_key: str = "", sep: str = "_") -> Dict[str, str]:
    """
    Flatten nested dict into ENV_VAR-style keys (uppercased).
    """
    items: Dict[str, str] = {}

    for key, value in data.items():
        new_key = f"{parent_key}{sep}{key}" if parent_key else str(key)

        if isinstance(value, dict):
            items.update(flatten_dict(value, new_key, sep=sep))
        elif isinstance(value, list):
            items[new_key.upper()] = ",".join(_stringify_env_value(item) for item in value)
        else:
            items[new_key.upper()] = _stringify_env_value(value)

    return items


class TemplateRenderError(Exception):
    """Jinja2 rendering failed for a file."""

    def __init__(self, source: str, cause: Exception):
        super().__init__(f"Failed to render template {source}: {cause}")
        self.source = source


def render_template_text(template_text: str, context: Dict[str, str], source: str) -> str:
    """
    Render Jinja2 text with the environment as context.

    Variables are available both directly (``{{ APP_ID }}``) and under
    ``env`` (``{{ env.APP_ID }}``).
    """
    from jinja2 import StrictUndefined, Template, TemplateError

    try:
        template = Template(template_text, undefined=StrictUndefined, keep_trailing_newline=True)
        return template.render({**context, "env": context})
    except TemplateError as e:
        raise TemplateRenderError(source, e) from e


def load_export_layer(app_id: str, app_dir: Path, env: Dict[str, str]) -> Dict[str, str]:
    """Render, parse and flatten an app's export layer (empty if absent)."""
    exports_path = app_dir / APP_EXPORTS
    if not exports_path.exists():
        return {}

    logger.debug(f"  Loading export layer: {exports_path}")
    try:
        rendered = render_template_text(exports_path.read_text(encoding='utf-8'), env, str(exports_path))
    except TemplateRenderError as e:
        raise InvalidManifestError(app_id, str(e)) from e

    try:
        data = tomllib.loads(rendered)
    except tomllib.TOMLDecodeError as e:
        raise InvalidManifestError(app_id, f"TOML syntax error in rendered {exports_path}: {e}") from e

    return flatten_dict(data)


def render_templates(app_dir: Path, env: Dict[str, str]) -> list[Path]:
    """
    Render every ``*.j2`` file in the app directory next to itself.

    The export layer is skipped; it is consumed by composition only.
    """
    rendered: list[Path] = []
    for template_path in sorted(app_dir.rglob(f"*{TEMPLATE_SUFFIX}")):
        if template_path.name == APP_EXPORTS or not template_path.is_file():
            continue

        output_path = template_path.with_name(rendered_template_name(template_path.name))
        try:
            content = render_template_text(template_path.read_text(encoding='utf-8'), env, str(template_path))
        except TemplateRenderError as e:
            raise InvalidManifestError(app_dir.name, str(e)) from e
        output_path.write_text(content, encoding='utf-8')
        rendered.append(output_path)
        logger.debug(f"  Rendered template: {output_path}")

    return rendered


def build_process_env(env: Dict[str, str], base_env: Optional[dict] = None) -> Dict[str, str]:
    """
    Build a subprocess environment from the current process env and ``env``.
    """
    process_env = dict(base_env if base_env is not None else os.environ)
    process_env.update(env)
    return process_env


class EnvironmentComposer:
    """Builds the full environment of an app."""

    def __init__(
        self,
        settings: Settings,
        resolver: DependencyResolver,
        deriver: EntropyDeriver,
        locate: Optional[Callable[[str], Path]] = None,
    ):
        self.settings = settings
        self.resolver = resolver
        self.deriver = deriver
        self.locate = locate or settings.app_data_dir

    def base_layer(self) -> Dict[str, str]:
        return {
            'NETWORK_IP': self.settings.network_ip,
            'DEVICE_HOSTNAME': self.settings.device_hostname,
            'DEVICE_DOMAIN_NAME': self.settings.device_domain_name,
            'APPCTL_ROOT': str(self.settings.root),
            'APP_DATA_ROOT': str(self.settings.app_data_root),
        }

    def hidden_service_address(self, app_id: str) -> str:
        if not self.settings.remote_access:
            return HIDDEN_SERVICE_DISABLED

        hostname_file = self.settings.hidden_service_file(app_id)
        try:
            address = hostname_file.read_text(encoding='utf-8').strip()
        except OSError as e:
            if not isinstance(e, FileNotFoundError):
                logger.warning(f"Cannot read hidden service address {hostname_file}: {e}")
            return HIDDEN_SERVICE_PENDING
        return address or HIDDEN_SERVICE_PENDING

    def app_layer(self, app_id: str) -> Dict[str, str]:
        manifest = load_manifest(self.locate(app_id), app_id)
        proxy_host = proxy_hostname(app_id)

        return {
            'APP_ID': app_id,
            'APP_VERSION': manifest.version,
            'APP_PORT': str(manifest.port),
            'APP_DATA_DIR': str(self.settings.app_data_dir(app_id)),
            'APP_HIDDEN_SERVICE': self.hidden_service_address(app_id),
            'APP_HIDDEN_SERVICE_DIR': str(self.settings.hidden_service_dir(app_id)),
            'APP_SEED': self.deriver.app_seed(app_id),
            'APP_PASSWORD': self.deriver.app_password(app_id),
            'APP_PROXY_HOSTNAME': proxy_host,
            'APP_PROXY_PORT': str(manifest.port),
            'APP_HIDDEN_SERVICE_PORTS': f"{HIDDEN_SERVICE_VIRTUAL_PORT}:{proxy_host}:{manifest.port}",
        }

    def compose(self, app_id: str) -> Dict[str, str]:
        """Build the environment for ``app_id``; any failure aborts composition."""
        logger.debug(f"Composing environment for {app_id}...")

        chain = self.resolver.transitive_dependencies_of(app_id)
        if app_id not in chain:
            chain = chain + [app_id]

        env = self.base_layer()
        for member in chain:
            exported = load_export_layer(member, self.locate(member), env)
            if exported:
                logger.debug(f"  {member} exported {len(exported)} value(s): {list(exported)}")
            env.update(exported)

        env.update(self.app_layer(app_id))
        logger.debug(f"Environment for {app_id}: {len(env)} value(s)")
        return env
