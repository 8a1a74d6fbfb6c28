#!/usr/bin/env python3
"""
Lifecycle hooks.

Hooks are optional executables at ``app-data/<app>/hooks/<hook-name>``.
They receive the app's composed environment plus APP_ID, APP_DATA_DIR,
APPCTL_ROOT and APPCTL_HOOK; hook files are never modified.

A hook that is missing, not executable, exits non-zero or cannot be started
never aborts the calling transition: the outcome is returned as a
HookResult for the caller to log.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .config import Settings
from .config_constants import APP_HOOKS_DIR
from .environment import build_process_env


logger = logging.getLogger(__name__)

HOOK_NAMES = (
    'pre-install',
    'post-install',
    'pre-uninstall',
    'post-uninstall',
    'pre-start',
    'post-start',
    'pre-stop',
    'post-stop',
    'pre-update',
    'post-update',
)


@dataclass
class HookResult:
    app_id: str
    hook: str
    ran: bool = False
    returncode: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and (not self.ran or self.returncode == 0)


class HookRunner:
    """Runs lifecycle hooks for apps."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def hook_path(self, app_id: str, hook: str) -> Path:
        if hook not in HOOK_NAMES:
            raise ValueError(f"Unknown hook: {hook}")
        return self.settings.app_data_dir(app_id) / APP_HOOKS_DIR / hook

    def run(
        self,
        app_id: str,
        hook: str,
        env: Optional[Dict[str, str]] = None,
        hook_path: Optional[Path] = None,
    ) -> HookResult:
        """Execute one hook if present; never raises for hook failures."""
        result = HookResult(app_id=app_id, hook=hook)
        path = hook_path or self.hook_path(app_id, hook)

        if not path.is_file():
            logger.debug(f"No {hook} hook for {app_id}")
            return result
        if not os.access(path, os.X_OK):
            logger.warning(f"Hook {path} is not executable, skipping")
            result.error = "not executable"
            return result

        data_dir = self.settings.app_data_dir(app_id)
        hook_env = build_process_env(env or {})
        hook_env.update({
            'APP_ID': app_id,
            'APP_DATA_DIR': str(data_dir),
            'APPCTL_ROOT': str(self.settings.root),
            'APPCTL_HOOK': hook,
        })

        logger.info(f"Executing {hook} hook for {app_id}...")
        if self.settings.dry_run:
            logger.info(f"Dry-run mode: skipping {path}")
            return result

        cwd = data_dir if data_dir.is_dir() else self.settings.root
        try:
            completed = subprocess.run(
                [str(path)],
                cwd=cwd,
                env=hook_env,
                timeout=self.settings.hook_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            result.ran = True
            result.error = f"timed out after {self.settings.hook_timeout}s"
            logger.error(f"Hook {hook} for {app_id} {result.error}")
            return result
        except OSError as e:
            result.error = str(e)
            logger.error(f"Hook {hook} for {app_id} could not be executed: {e}")
            return result

        result.ran = True
        result.returncode = completed.returncode
        if completed.returncode != 0:
            logger.error(f"Hook {hook} for {app_id} failed (exit {completed.returncode}), continuing")
        else:
            logger.debug(f"Hook {hook} for {app_id} completed")
        return result

    def snapshot(self, app_id: str, hook: str) -> Optional[Path]:
        """
        Copy a hook out of the app data directory.

        Used for post-uninstall, whose script lives in the directory that is
        deleted before it runs. The caller removes the snapshot.
        """
        path = self.hook_path(app_id, hook)
        if not path.is_file():
            return None

        fd, snapshot_path = tempfile.mkstemp(prefix=f"appctl-{app_id}-{hook}-")
        os.close(fd)
        shutil.copy2(path, snapshot_path)
        logger.debug(f"Snapshotted {hook} hook for {app_id}: {snapshot_path}")
        return Path(snapshot_path)
