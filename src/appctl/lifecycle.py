#!/usr/bin/env python3
"""
App lifecycle orchestration.

States per app:

    NOT_INSTALLED -> INSTALLING -> INSTALLED (STOPPED | RUNNING) -> UNINSTALLING -> NOT_INSTALLED
                                     \\-> UPDATING -/

Transitions:
- install   : pre-install hook -> env + templates -> pull -> start -> post-install hook -> registry add
- start     : env + templates -> wait for hidden service -> pre-start -> up -> post-start
- stop      : pre-stop -> down (force remove containers) -> post-stop
- uninstall : snapshot post-uninstall -> pre-uninstall -> down + images -> delete data
              -> registry remove -> snapshotted post-uninstall
- update    : pre-update -> copy phase one -> stop -> env + pull -> start
              -> copy phase two (guaranteed) -> prune old images -> post-update
- reinstall = uninstall + install, restart = stop + start

The registry is only written as the last step of install/uninstall; hook
failures are logged and never abort a transition.
"""

from __future__ import annotations

import logging
import shutil
import signal
import threading
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .compose import ComposeEngine
from .config import Settings
from .config_constants import (
    APP_COMPOSE,
    APP_EXPORTS,
    APP_HOOKS_DIR,
    APP_MANIFEST,
    HIDDEN_SERVICE_PENDING,
    PROXY_SERVICE_NAME,
    TEMPLATE_SUFFIX,
)
from .dependencies import DependencyResolver
from .entropy import EntropyDeriver
from .environment import EnvironmentComposer, render_templates
from .exceptions import ExternalCommandError, NotInstalledError
from .hooks import HookResult, HookRunner
from .manifest import compose_declares_service
from .registry import Registry
from .repository import copy_app_definition, copy_selected, find_source_dir, locate_app_dir


logger = logging.getLogger(__name__)

# Copied before the app is restarted
UPDATE_PHASE_ONE_FILES = (
    APP_COMPOSE,
    f"**/*{TEMPLATE_SUFFIX}",
    APP_EXPORTS,
    APP_HOOKS_DIR,
)

# Copied only once the app runs the new version
UPDATE_PHASE_TWO_FILES = (
    APP_MANIFEST,
)

UPDATE_PENDING_MARKER = '.update-pending'


class AppState(Enum):
    NOT_INSTALLED = 'not-installed'
    INSTALLING = 'installing'
    INSTALLED = 'installed'
    STOPPED = 'stopped'
    RUNNING = 'running'
    UNINSTALLING = 'uninstalling'
    UPDATING = 'updating'


@contextmanager
def terminate_as_exit(exit_code: int = 143) -> Iterator[None]:
    """
    Translate SIGTERM into SystemExit while the block runs.

    Lets ``finally`` blocks (lock release, update completion) run when the
    process is terminated. No-op outside the main thread.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        logger.warning(f"Received signal {signum}, finishing up...")
        raise SystemExit(exit_code)

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class UpdateGuard:
    """
    Guarantees the second update copy phase.

    While armed, a marker in the app data directory records the source
    directory. ``complete()`` runs the phase-two copy and removes the marker;
    it is called on every exit path of the guarded block. If the process was
    killed outright, the marker survives and the next invocation completes
    the copy via ``recover()``.
    """

    def __init__(self, source_dir: Path, target_dir: Path):
        self.source_dir = source_dir
        self.target_dir = target_dir
        self.marker = target_dir / UPDATE_PENDING_MARKER

    def arm(self) -> None:
        self.marker.write_text(f"{self.source_dir}\n", encoding='utf-8')

    def complete(self) -> List[Path]:
        copied = copy_selected(self.source_dir, self.target_dir, UPDATE_PHASE_TWO_FILES)
        self.marker.unlink(missing_ok=True)
        return copied

    @contextmanager
    def armed(self) -> Iterator["UpdateGuard"]:
        self.arm()
        try:
            yield self
        finally:
            self.complete()

    @classmethod
    def recover(cls, target_dir: Path) -> bool:
        """Finish an interrupted update found in ``target_dir``."""
        marker = target_dir / UPDATE_PENDING_MARKER
        if not marker.exists():
            return False

        source_dir = Path(marker.read_text(encoding='utf-8').strip())
        if not source_dir.is_dir():
            logger.warning(f"Interrupted update source {source_dir} no longer exists; discarding marker")
            marker.unlink(missing_ok=True)
            return False

        logger.warning(f"Completing interrupted update of {target_dir.name}")
        cls(source_dir, target_dir).complete()
        return True


class AppLifecycle:
    """Sequences hooks, environment, compose calls and registry updates."""

    def __init__(
        self,
        settings: Settings,
        registry: Optional[Registry] = None,
        engine: Optional[ComposeEngine] = None,
        hooks: Optional[HookRunner] = None,
        deriver: Optional[EntropyDeriver] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.registry = registry or Registry.from_settings(settings)
        self.engine = engine or ComposeEngine(settings)
        self.hooks = hooks or HookRunner(settings)
        self.deriver = deriver or EntropyDeriver.from_settings(settings)
        self.sleep = sleep

        locate = self.locate
        self.resolver = DependencyResolver.for_locator(locate)
        self.composer = EnvironmentComposer(settings, self.resolver, self.deriver, locate=locate)
        self._states: Dict[str, AppState] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def locate(self, app_id: str) -> Path:
        return locate_app_dir(self.settings, app_id)

    def _set_state(self, app_id: str, state: AppState) -> None:
        previous = self._states.get(app_id)
        self._states[app_id] = state
        logger.debug(f"{app_id}: {previous.value if previous else '-'} -> {state.value}")

    def state_of(self, app_id: str) -> AppState:
        if app_id in self._states:
            return self._states[app_id]
        return AppState.INSTALLED if self.registry.is_installed(app_id) else AppState.NOT_INSTALLED

    def _fire(
        self,
        app_id: str,
        hook: str,
        env: Optional[Dict[str, str]] = None,
        hook_path: Optional[Path] = None,
    ) -> HookResult:
        result = self.hooks.run(app_id, hook, env, hook_path=hook_path)
        if not result.ok:
            logger.warning(
                f"{hook} hook for {app_id} failed "
                f"({result.error or f'exit {result.returncode}'}); continuing"
            )
        return result

    def _require_installed(self, app_id: str) -> None:
        if not self.registry.is_installed(app_id):
            raise NotInstalledError(app_id)

    def prepare_environment(self, app_id: str) -> Dict[str, str]:
        """Compose the environment and render the app's templates with it."""
        env = self.composer.compose(app_id)
        render_templates(self.settings.app_data_dir(app_id), env)
        return env

    def wait_for_hidden_service(self, app_id: str) -> bool:
        """
        Poll for the app's hidden service address file.

        Only relevant with remote access enabled and a proxy service; gives
        up after the configured number of attempts without failing.
        """
        if not self.settings.remote_access:
            return False
        if not compose_declares_service(self.settings.app_data_dir(app_id), PROXY_SERVICE_NAME):
            return False

        hostname_file = self.settings.hidden_service_file(app_id)
        for attempt in range(1, self.settings.hidden_service_attempts + 1):
            if hostname_file.exists():
                logger.debug(f"Hidden service for {app_id} available after {attempt} attempt(s)")
                return True
            logger.debug(
                f"Waiting for hidden service of {app_id} "
                f"({attempt}/{self.settings.hidden_service_attempts})..."
            )
            self.sleep(self.settings.hidden_service_interval)

        if hostname_file.exists():
            return True

        logger.warning(f"Hidden service for {app_id} not available yet, starting anyway")
        return False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def install(self, app_id: str, repo: Optional[str] = None) -> None:
        logger.info(f"Installing {app_id}...")
        origin, source_dir = find_source_dir(self.settings, app_id, repo)

        # Graph and manifest errors abort before anything is written
        dependencies = self.resolver.transitive_dependencies_of(app_id)
        missing = [dep for dep in dependencies if not self.registry.is_installed(dep)]
        if missing:
            logger.warning(f"{app_id} depends on apps that are not installed: {', '.join(missing)}")

        self._set_state(app_id, AppState.INSTALLING)
        copy_app_definition(source_dir, self.settings.app_data_dir(app_id))

        self._fire(app_id, 'pre-install')
        env = self.prepare_environment(app_id)
        self.engine.pull(app_id, env)
        self.start(app_id)
        self._fire(app_id, 'post-install', env)

        self.registry.add_installed_app(app_id, origin)
        self._set_state(app_id, AppState.RUNNING)
        logger.info(f"Installed {app_id} from {origin}")

    def start(self, app_id: str) -> None:
        logger.info(f"Starting {app_id}...")
        if self._states.get(app_id) != AppState.UPDATING:
            UpdateGuard.recover(self.settings.app_data_dir(app_id))

        env = self.prepare_environment(app_id)
        if self.wait_for_hidden_service(app_id) and env.get('APP_HIDDEN_SERVICE') == HIDDEN_SERVICE_PENDING:
            env = self.prepare_environment(app_id)

        self._fire(app_id, 'pre-start', env)
        self.engine.up(app_id, env)
        self._fire(app_id, 'post-start', env)

        if self._states.get(app_id) not in (AppState.INSTALLING, AppState.UPDATING):
            self._set_state(app_id, AppState.RUNNING)

    def stop(self, app_id: str) -> None:
        """Stop an app. Does not require the app to be registered."""
        logger.info(f"Stopping {app_id}...")
        env = self.composer.compose(app_id)

        self._fire(app_id, 'pre-stop', env)
        self.engine.down(app_id, env)
        self._fire(app_id, 'post-stop', env)

        if self._states.get(app_id) != AppState.UPDATING:
            self._set_state(app_id, AppState.STOPPED)

    def uninstall(self, app_id: str) -> None:
        self._require_installed(app_id)
        logger.info(f"Uninstalling {app_id}...")

        data_dir = self.settings.app_data_dir(app_id)
        # A previous run may have died after deleting the data directory
        has_compose = (data_dir / APP_COMPOSE).exists()
        env = self.composer.compose(app_id) if has_compose else {}
        post_uninstall = self.hooks.snapshot(app_id, 'post-uninstall')

        self._set_state(app_id, AppState.UNINSTALLING)
        try:
            self._fire(app_id, 'pre-uninstall', env)
            if has_compose:
                self.engine.down(app_id, env, remove_images=True, remove_volumes=True)
            else:
                logger.warning(f"{data_dir / APP_COMPOSE} is missing, skipping container removal for {app_id}")

            if data_dir.exists():
                logger.info(f"Deleting app data: {data_dir}")
                shutil.rmtree(data_dir)

            self.registry.remove_installed_app(app_id)
            self._set_state(app_id, AppState.NOT_INSTALLED)

            if post_uninstall is not None:
                self._fire(app_id, 'post-uninstall', env, hook_path=post_uninstall)
        finally:
            if post_uninstall is not None:
                post_uninstall.unlink(missing_ok=True)

        logger.info(f"Uninstalled {app_id}")

    def update(self, app_id: str, skip_stop: bool = False, skip_start: bool = False) -> None:
        self._require_installed(app_id)
        logger.info(f"Updating {app_id}...")

        data_dir = self.settings.app_data_dir(app_id)
        UpdateGuard.recover(data_dir)

        origin = self.registry.origin_of(app_id)
        _, source_dir = find_source_dir(self.settings, app_id, origin)

        env = self.composer.compose(app_id)
        self._fire(app_id, 'pre-update', env)

        old_images = self._current_images(app_id, env) if not skip_start else set()

        self._set_state(app_id, AppState.UPDATING)
        guard = UpdateGuard(source_dir, data_dir)
        with terminate_as_exit(), guard.armed():
            copy_selected(source_dir, data_dir, UPDATE_PHASE_ONE_FILES)

            if not skip_stop:
                self.stop(app_id)

            if not skip_start:
                env = self.prepare_environment(app_id)
                self.engine.pull(app_id, env)
                self.start(app_id)

        env = self.composer.compose(app_id)
        if not skip_start:
            self._set_state(app_id, AppState.RUNNING)
            stale = old_images - self._current_images(app_id, env)
            if stale:
                logger.info(f"Removing {len(stale)} image(s) no longer used by {app_id}")
                self.engine.remove_images(stale)
        else:
            self._set_state(app_id, AppState.STOPPED if not skip_stop else AppState.INSTALLED)

        self._fire(app_id, 'post-update', env)
        logger.info(f"Updated {app_id} to {env.get('APP_VERSION', '?')}")

    def _current_images(self, app_id: str, env: Dict[str, str]) -> set:
        try:
            return self.engine.images(app_id, env)
        except ExternalCommandError as e:
            logger.warning(f"Could not list images of {app_id}: {e}")
            return set()

    def reinstall(self, app_id: str) -> None:
        origin = self.registry.origin_of(app_id)
        self.uninstall(app_id)
        self.install(app_id, repo=origin)

    def restart(self, app_id: str) -> None:
        self.stop(app_id)
        self.start(app_id)

    # ------------------------------------------------------------------
    # Queries and passthrough
    # ------------------------------------------------------------------

    def logs(self, app_id: str, args: Sequence[str] = ()) -> None:
        env = self.composer.compose(app_id)
        self.engine.logs(app_id, env, args)

    def compose(self, app_id: str, args: Sequence[str]) -> None:
        env = self.composer.compose(app_id)
        self.engine.passthrough(app_id, env, args)

    def ls_installed(self) -> List[str]:
        return self.registry.list_installed()

    def ls_dependencies(self, app_id: str) -> List[str]:
        return self.resolver.dependencies_of(app_id)

    def ls_transitive_dependencies(self, app_id: str) -> List[str]:
        return self.resolver.transitive_dependencies_of(app_id)
