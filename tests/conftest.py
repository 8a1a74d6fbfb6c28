"""
Shared fixtures: a throwaway appctl root with one app store repository.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from appctl.config import Settings  # noqa: E402


SEED = b"0123456789abcdef0123456789abcdef"

DEFAULT_COMPOSE = """\
services:
  web:
    image: example/{app_id}:{version}
"""

PROXY_COMPOSE = """\
services:
  app_proxy:
    environment:
      APP_HOST: {app_id}_web_1
  web:
    image: example/{app_id}:{version}
"""


def write_app(
    app_dir: Path,
    app_id: str,
    version: str = "1.0.0",
    port: int = 8080,
    dependencies: Iterable[str] = (),
    overlay: Optional[Dict[str, str]] = None,
    exports: Optional[str] = None,
    proxy: bool = False,
    hooks: Optional[Dict[str, str]] = None,
    extra_files: Optional[Dict[str, str]] = None,
) -> Path:
    """Write an app definition into ``app_dir``."""
    app_dir.mkdir(parents=True, exist_ok=True)
    deps = ", ".join(f'"{dep}"' for dep in dependencies)
    (app_dir / "app.toml").write_text(
        "[app]\n"
        f'id = "{app_id}"\n'
        f'name = "{app_id.title()}"\n'
        f'version = "{version}"\n'
        f"port = {port}\n"
        f"dependencies = [{deps}]\n",
        encoding="utf-8",
    )

    compose = PROXY_COMPOSE if proxy else DEFAULT_COMPOSE
    (app_dir / "docker-compose.yml").write_text(
        compose.format(app_id=app_id, version=version), encoding="utf-8"
    )

    if overlay:
        lines = "\n".join(f'{key} = "{value}"' for key, value in overlay.items())
        (app_dir / "settings.toml").write_text(f"[dependencies]\n{lines}\n", encoding="utf-8")

    if exports is not None:
        (app_dir / "exports.toml.j2").write_text(exports, encoding="utf-8")

    for name, body in (hooks or {}).items():
        hook_path = app_dir / "hooks" / name
        hook_path.parent.mkdir(parents=True, exist_ok=True)
        hook_path.write_text(body, encoding="utf-8")
        hook_path.chmod(0o755)

    for name, body in (extra_files or {}).items():
        target = app_dir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(body, encoding="utf-8")

    return app_dir


@pytest.fixture
def root(tmp_path: Path) -> Path:
    root_dir = tmp_path / "appctl"
    (root_dir / "secrets").mkdir(parents=True)
    (root_dir / "secrets" / "seed").write_bytes(SEED + b"\n")
    (root_dir / "repos" / "official").mkdir(parents=True)
    (root_dir / "compose").mkdir()
    for fragment in ("app-proxy.yml", "tor.yml", "common.yml"):
        (root_dir / "compose" / fragment).write_text("services: {}\n", encoding="utf-8")
    return root_dir


@pytest.fixture
def settings(root: Path) -> Settings:
    return Settings(
        root=root,
        network_ip="10.21.21.2",
        device_hostname="box",
        lock_retry_interval=0.01,
        hidden_service_attempts=3,
        hidden_service_interval=0.0,
    )


@pytest.fixture
def repo_dir(root: Path) -> Path:
    return root / "repos" / "official"
