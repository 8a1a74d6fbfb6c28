#!/usr/bin/env python3
"""
Dependency resolution.

Dependencies are read from each app's manifest in declared order. An app's
settings overlay may substitute a dependency with another app id (one lookup,
not chased further). Transitive resolution is a post-order depth-first walk:
every app is emitted after all of its own dependencies.

Visit state lives in a dict local to each call, so resolutions for different
roots never share state.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .exceptions import CircularDependencyError
from .manifest import AppManifest, load_manifest, load_settings_overlay


logger = logging.getLogger(__name__)

ManifestLoader = Callable[[str], AppManifest]
OverlayLoader = Callable[[str], Dict[str, str]]

_IN_PROGRESS = 'in-progress'
_DONE = 'done'


class DependencyResolver:
    """Computes direct and transitive dependencies of apps."""

    def __init__(self, manifest_loader: ManifestLoader, overlay_loader: Optional[OverlayLoader] = None):
        self._load_manifest = manifest_loader
        self._load_overlay = overlay_loader or (lambda app_id: {})

    @classmethod
    def for_locator(cls, locate: Callable[[str], Path]) -> "DependencyResolver":
        """Build a resolver reading files from ``locate(app_id)``."""
        return cls(
            lambda app_id: load_manifest(locate(app_id), app_id),
            lambda app_id: load_settings_overlay(locate(app_id), app_id),
        )

    @classmethod
    def for_directory(cls, apps_dir: Path) -> "DependencyResolver":
        return cls.for_locator(lambda app_id: apps_dir / app_id)

    def dependencies_of(self, app_id: str) -> List[str]:
        """Direct dependencies, in declared order, with substitutions applied."""
        manifest = self._load_manifest(app_id)
        overlay = self._load_overlay(app_id)

        resolved: List[str] = []
        for dependency in manifest.dependencies:
            substitute = overlay.get(dependency)
            if substitute and substitute != dependency:
                logger.debug(f"  {app_id}: dependency {dependency} substituted by {substitute}")
                dependency = substitute
            if dependency not in resolved:
                resolved.append(dependency)
        return resolved

    def transitive_dependencies_of(self, app_id: str) -> List[str]:
        """
        All apps reachable from ``app_id``, dependencies first.

        Raises CircularDependencyError (with the edge that closed the cycle)
        before anything is returned if a cycle is reachable.
        """
        state: Dict[str, str] = {}
        stack: List[str] = []
        ordered: List[str] = []

        def visit(node: str) -> None:
            status = state.get(node)
            if status == _DONE:
                return
            if status == _IN_PROGRESS:
                parent = stack[-1]
                cycle = stack[stack.index(node):] + [node]
                raise CircularDependencyError(app_id, (parent, node), cycle)

            state[node] = _IN_PROGRESS
            stack.append(node)
            for dependency in self.dependencies_of(node):
                visit(dependency)
            stack.pop()
            state[node] = _DONE
            ordered.append(node)

        visit(app_id)

        # The root is emitted last by the walk; it is not its own dependency.
        result = [node for node in ordered if node != app_id]
        logger.debug(f"Transitive dependencies of {app_id}: {result}")
        return result
