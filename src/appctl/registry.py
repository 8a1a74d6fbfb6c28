#!/usr/bin/env python3
"""
Installed apps registry.

The registry is a single JSON document shared by every appctl process:

    {"installedApps": ["bitcoin", "lightning"], "appOrigin": {"bitcoin": "official"}}

Writers serialize through an exclusive advisory lock (``fcntl.flock``) on an
adjacent ``.lock`` marker that records the holder's pid. The kernel releases
the lock when the holder exits for any reason, so a crashed writer never
leaves a permanent deadlock. Every write replaces the whole document
atomically (temp file + fsync + rename); readers never need the lock and
never observe a partially written file.

Adding or removing an app takes two writes under one lock hold (apps list,
then origin map). A lock-free reader may observe the state between them.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import Settings
from .config_constants import REGISTRY_INSTALLED_KEY, REGISTRY_ORIGIN_KEY
from .exceptions import LockTimeoutError, RegistryError


logger = logging.getLogger(__name__)

RegistryDocument = Dict[str, object]


def empty_document() -> RegistryDocument:
    return {REGISTRY_INSTALLED_KEY: [], REGISTRY_ORIGIN_KEY: {}}


def atomic_write_json(path: Path, data: object, mode: int = 0o644) -> None:
    """
    Write JSON data to ``path`` atomically.

    Uses write-to-temp-then-rename within the same directory; rename is
    atomic on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write('\n')
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)

    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

    # Persist the rename itself
    try:
        dir_fd = os.open(str(path.parent), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError:
        pass


class RegistryLock:
    """
    Exclusive advisory lock over registry mutations.

    Acquisition polls every ``retry_interval`` seconds. ``timeout=None``
    waits indefinitely; otherwise LockTimeoutError is raised once the bound
    is exceeded.

    Threads sharing one instance queue on an in-process lock before
    contending for the flock.
    """

    def __init__(self, lock_path: Path, retry_interval: float = 1.0, timeout: Optional[float] = None):
        self.lock_path = Path(lock_path)
        self.retry_interval = retry_interval
        self.timeout = timeout
        self._handle = None
        self._owner: Optional[int] = None
        self._thread_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RegistryLock":
        return cls(settings.registry_lock_file, settings.lock_retry_interval, settings.lock_timeout)

    @property
    def held(self) -> bool:
        return self._handle is not None

    def holder(self) -> Optional[str]:
        """Pid recorded in the marker (informational only)."""
        try:
            return self.lock_path.read_text(encoding='utf-8').strip() or None
        except OSError:
            return None

    def acquire(self) -> None:
        if self._owner == threading.get_ident():
            raise RuntimeError(f"Lock already held by this thread: {self.lock_path}")

        started = time.monotonic()
        if not self._thread_lock.acquire(timeout=-1 if self.timeout is None else self.timeout):
            raise LockTimeoutError(str(self.lock_path), self.timeout, self.holder())

        handle = None
        announced = False
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_path, 'a+', encoding='utf-8')
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    waited = time.monotonic() - started
                    if self.timeout is not None and waited >= self.timeout:
                        raise LockTimeoutError(str(self.lock_path), self.timeout, self.holder())
                    if not announced:
                        logger.info(f"Waiting for registry lock (held by pid {self.holder() or '?'})...")
                        announced = True
                    time.sleep(self.retry_interval)

            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
        except BaseException:
            if handle is not None:
                handle.close()
            self._thread_lock.release()
            raise

        self._handle = handle
        self._owner = threading.get_ident()
        logger.debug(f"Acquired lock {self.lock_path}")

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return

        self._handle = None
        self._owner = None
        try:
            handle.seek(0)
            handle.truncate()
            handle.flush()
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
            self._thread_lock.release()
        logger.debug(f"Released lock {self.lock_path}")

    def __enter__(self) -> "RegistryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class Registry:
    """Durable record of installed apps and their origin repository."""

    def __init__(self, path: Path, lock: Optional[RegistryLock] = None):
        self.path = Path(path)
        self.lock = lock or RegistryLock(self.path.with_name(self.path.name + '.lock'))

    @classmethod
    def from_settings(cls, settings: Settings) -> "Registry":
        return cls(settings.registry_file, RegistryLock.from_settings(settings))

    def read(self) -> RegistryDocument:
        """Current document; a missing file reads as an empty registry."""
        try:
            raw = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return empty_document()

        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise RegistryError(str(self.path), f"JSON syntax error: {e}") from e

        if not isinstance(data, dict):
            raise RegistryError(str(self.path), "top-level value must be an object")

        installed = data.get(REGISTRY_INSTALLED_KEY, [])
        origins = data.get(REGISTRY_ORIGIN_KEY, {})
        if not isinstance(installed, list) or not isinstance(origins, dict):
            raise RegistryError(
                str(self.path),
                f"'{REGISTRY_INSTALLED_KEY}' must be an array and '{REGISTRY_ORIGIN_KEY}' an object",
            )

        data[REGISTRY_INSTALLED_KEY] = list(dict.fromkeys(installed))
        data[REGISTRY_ORIGIN_KEY] = dict(origins)
        return data

    def _write(self, document: RegistryDocument) -> None:
        atomic_write_json(self.path, document)

    def _apply(self, fn: Callable[[RegistryDocument], Optional[RegistryDocument]]) -> RegistryDocument:
        document = self.read()
        result = fn(document)
        if result is not None:
            document = result
        self._write(document)
        return document

    def mutate(self, fn: Callable[[RegistryDocument], Optional[RegistryDocument]]) -> RegistryDocument:
        """
        Apply ``fn`` to the current document under the lock and persist it.

        ``fn`` may mutate the document in place or return a replacement.
        """
        with self.lock:
            return self._apply(fn)

    def add_installed_app(self, app_id: str, origin: Optional[str] = None) -> None:
        def add_app(document: RegistryDocument) -> None:
            installed = document[REGISTRY_INSTALLED_KEY]
            if app_id not in installed:
                installed.append(app_id)

        def add_origin(document: RegistryDocument) -> None:
            if origin is not None:
                document[REGISTRY_ORIGIN_KEY][app_id] = origin

        with self.lock:
            self._apply(add_app)
            self._apply(add_origin)
        logger.info(f"Registered {app_id} as installed" + (f" (origin: {origin})" if origin else ""))

    def remove_installed_app(self, app_id: str) -> None:
        def remove_app(document: RegistryDocument) -> None:
            document[REGISTRY_INSTALLED_KEY] = [
                app for app in document[REGISTRY_INSTALLED_KEY] if app != app_id
            ]

        def remove_origin(document: RegistryDocument) -> None:
            document[REGISTRY_ORIGIN_KEY].pop(app_id, None)

        with self.lock:
            self._apply(remove_app)
            self._apply(remove_origin)
        logger.info(f"Removed {app_id} from installed apps")

    def list_installed(self) -> List[str]:
        return sorted(self.read()[REGISTRY_INSTALLED_KEY])

    def is_installed(self, app_id: str) -> bool:
        return app_id in self.read()[REGISTRY_INSTALLED_KEY]

    def origin_of(self, app_id: str) -> Optional[str]:
        return self.read()[REGISTRY_ORIGIN_KEY].get(app_id)
