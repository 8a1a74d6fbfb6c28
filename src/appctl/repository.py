#!/usr/bin/env python3
"""
App source definitions.

Each directory under ``repos/`` is an app store repository holding one
sub-directory per app. Installing an app copies its definition into
``app-data/<app>``.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .config import Settings
from .config_constants import APP_MANIFEST
from .exceptions import AppNotFoundError


logger = logging.getLogger(__name__)


def list_repositories(settings: Settings) -> List[str]:
    """Repository names in deterministic (sorted) order."""
    if not settings.repos_dir.is_dir():
        return []
    return sorted(path.name for path in settings.repos_dir.iterdir() if path.is_dir())


def find_source_dir(settings: Settings, app_id: str, repo: Optional[str] = None) -> Tuple[str, Path]:
    """
    Locate an app's source definition.

    Returns (repo name, app directory). With ``repo`` given only that
    repository is searched.
    """
    repos = [repo] if repo else list_repositories(settings)
    for name in repos:
        candidate = settings.repos_dir / name / app_id
        if (candidate / APP_MANIFEST).exists():
            return name, candidate

    raise AppNotFoundError(app_id, [str(settings.repos_dir / name) for name in repos])


def locate_app_dir(settings: Settings, app_id: str) -> Path:
    """
    Directory to read an app's manifest from.

    Installed apps are read from their data directory; apps not yet copied
    (e.g. a dependency of an app being installed) from their source.
    """
    data_dir = settings.app_data_dir(app_id)
    if (data_dir / APP_MANIFEST).exists():
        return data_dir

    try:
        return find_source_dir(settings, app_id)[1]
    except AppNotFoundError:
        return data_dir


def copy_app_definition(source_dir: Path, target_dir: Path) -> None:
    """Copy a full app definition; re-running overwrites in place."""
    logger.debug(f"Copying {source_dir} -> {target_dir}")
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source_dir, target_dir, dirs_exist_ok=True)


def copy_selected(source_dir: Path, target_dir: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Copy files and directories matching glob ``patterns``.

    Returns the target paths written. Patterns with no match are skipped.
    """
    copied: List[Path] = []
    target_dir.mkdir(parents=True, exist_ok=True)

    for pattern in patterns:
        for source in sorted(source_dir.glob(pattern)):
            destination = target_dir / source.relative_to(source_dir)
            if source.is_dir():
                shutil.copytree(source, destination, dirs_exist_ok=True)
            else:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, destination)
            copied.append(destination)
            logger.debug(f"  Copied: {source.relative_to(source_dir)}")

    return copied
