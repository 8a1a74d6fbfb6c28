#!/usr/bin/env python3
"""
Docker Compose adapter.

Compose files are layered in this order (later files take precedence):
1. compose/app-proxy.yml  - only if the app's compose file declares ``app_proxy``
2. compose/tor.yml        - only if remote access is enabled
3. compose/common.yml
4. app-data/<app>/docker-compose.yml
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .config import Settings
from .config_constants import (
    APP_COMPOSE,
    COMMON_FRAGMENT,
    PROXY_FRAGMENT,
    PROXY_SERVICE_NAME,
    TOR_FRAGMENT,
)
from .environment import build_process_env
from .exceptions import ExternalCommandError, InvalidManifestError
from .manifest import compose_declares_service


logger = logging.getLogger(__name__)


def compose_files_for(settings: Settings, app_id: str) -> List[Path]:
    """Ordered compose files for ``app_id``; the app's own file is last."""
    app_dir = settings.app_data_dir(app_id)
    app_compose = app_dir / APP_COMPOSE
    if not app_compose.exists():
        raise InvalidManifestError(app_id, f"{APP_COMPOSE} not found in {app_dir}")

    candidates: List[Path] = []
    if compose_declares_service(app_dir, PROXY_SERVICE_NAME):
        candidates.append(settings.compose_dir / PROXY_FRAGMENT)
    if settings.remote_access:
        candidates.append(settings.compose_dir / TOR_FRAGMENT)
    candidates.append(settings.compose_dir / COMMON_FRAGMENT)

    files: List[Path] = []
    for fragment in candidates:
        if fragment.exists():
            files.append(fragment)
        else:
            logger.debug(f"  Compose fragment not found, skipping: {fragment}")

    files.append(app_compose)
    return files


class ComposeEngine:
    """Runs ``docker compose`` for one app at a time."""

    def __init__(self, settings: Settings, docker: str = 'docker'):
        self.settings = settings
        self.docker = docker

    def command(self, app_id: str, args: Sequence[str]) -> List[str]:
        cmd = [self.docker, 'compose', '--project-name', app_id]
        for compose_file in compose_files_for(self.settings, app_id):
            cmd += ['--file', str(compose_file)]
        return cmd + list(args)

    def _execute(
        self,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None,
        capture: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(cmd)}")

        if self.settings.dry_run:
            logger.info(f"Dry-run mode: {' '.join(cmd)}")
            return subprocess.CompletedProcess(cmd, 0, stdout='', stderr='')

        process_env = build_process_env(env or {})

        if capture:
            result = subprocess.run(cmd, capture_output=True, text=True, env=process_env, check=False)
            if check and result.returncode != 0:
                raise ExternalCommandError(cmd, result.returncode, result.stderr or '')
            return result

        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            env=process_env,
        )

        stdout_lines = []
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                print(f"  [COMPOSE] {line.rstrip()}", flush=True)
                stdout_lines.append(line)
            proc.wait()
        except BaseException:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
            raise

        output = ''.join(stdout_lines)
        if check and proc.returncode != 0:
            raise ExternalCommandError(cmd, proc.returncode, output)
        return subprocess.CompletedProcess(cmd, proc.returncode, stdout=output, stderr='')

    def run(
        self,
        app_id: str,
        args: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        capture: bool = False,
    ) -> subprocess.CompletedProcess:
        return self._execute(self.command(app_id, args), env=env, capture=capture)

    def pull(self, app_id: str, env: Dict[str, str]) -> None:
        logger.info(f"Pulling images for {app_id}...")
        self.run(app_id, ['pull'], env)

    def up(self, app_id: str, env: Dict[str, str]) -> None:
        logger.info(f"Starting containers for {app_id}...")
        self.run(app_id, ['up', '--detach'], env)

    def down(
        self,
        app_id: str,
        env: Dict[str, str],
        remove_images: bool = False,
        remove_volumes: bool = False,
    ) -> None:
        """Stop and force-remove containers (and optionally images/volumes)."""
        args = ['down', '--remove-orphans']
        if remove_images:
            args += ['--rmi', 'all']
        if remove_volumes:
            args.append('--volumes')
        logger.info(f"Stopping containers for {app_id}...")
        self.run(app_id, args, env)

    def images(self, app_id: str, env: Dict[str, str]) -> Set[str]:
        """Images referenced by the app's current compose configuration."""
        result = self.run(app_id, ['config', '--images'], env, capture=True)
        return {line.strip() for line in (result.stdout or '').splitlines() if line.strip()}

    def logs(self, app_id: str, env: Dict[str, str], args: Sequence[str] = ()) -> None:
        self.run(app_id, ['logs', *args], env)

    def passthrough(self, app_id: str, env: Dict[str, str], args: Sequence[str]) -> None:
        self.run(app_id, list(args), env)

    def remove_images(self, images: Iterable[str]) -> List[str]:
        """
        Remove images, best effort.

        Returns the images that could not be removed (still in use by another
        app, already gone, ...); failures are logged only.
        """
        failed: List[str] = []
        for image in sorted(images):
            cmd = [self.docker, 'image', 'rm', image]
            try:
                self._execute(cmd, capture=True)
                logger.info(f"  Removed image: {image}")
            except (ExternalCommandError, OSError) as e:
                logger.warning(f"  Could not remove image {image}: {e}")
                failed.append(image)
        return failed
