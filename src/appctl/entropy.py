#!/usr/bin/env python3
"""
Deterministic secret derivation.

Secrets are HMAC-SHA256(seed, identifier). They are recomputed on every
invocation and never written to disk.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from pathlib import Path
from typing import Optional

from .exceptions import MissingIdentifierError, MissingSeedError


logger = logging.getLogger(__name__)


def derive(seed: bytes, identifier: str) -> bytes:
    """Derive a 32-byte secret for ``identifier`` under ``seed``."""
    if not seed:
        raise MissingSeedError()
    if not identifier:
        raise MissingIdentifierError()

    return hmac.new(seed, identifier.encode('utf-8'), hashlib.sha256).digest()


def derive_hex(seed: bytes, identifier: str) -> str:
    return derive(seed, identifier).hex()


def load_seed(primary: Path, legacy: Optional[Path] = None) -> bytes:
    """
    Read the root seed.

    Falls back to the legacy parent-level location when the primary file is
    absent (installs that predate the current layout).
    """
    path = primary
    if not primary.exists() and legacy is not None and legacy.exists():
        logger.info(f"Using legacy seed location: {legacy}")
        path = legacy

    try:
        seed = path.read_bytes().strip()
    except FileNotFoundError:
        raise MissingSeedError(f"seed file not found: {primary}") from None
    except OSError as e:
        raise MissingSeedError(f"seed file unreadable: {path} ({e})") from e

    if not seed:
        raise MissingSeedError(f"seed file is empty: {path}")
    return seed


class EntropyDeriver:
    """Binds secret derivation to the configured seed locations."""

    def __init__(self, seed_file: Path, legacy_seed_file: Optional[Path] = None):
        self.seed_file = seed_file
        self.legacy_seed_file = legacy_seed_file
        self._seed: Optional[bytes] = None

    @classmethod
    def from_settings(cls, settings) -> "EntropyDeriver":
        return cls(settings.seed_file, settings.legacy_seed_file)

    @property
    def seed(self) -> bytes:
        if self._seed is None:
            self._seed = load_seed(self.seed_file, self.legacy_seed_file)
        return self._seed

    def derive(self, identifier: str) -> str:
        return derive_hex(self.seed, identifier)

    def app_seed(self, app_id: str) -> str:
        return self.derive(f"app-{app_id}-seed")

    def app_password(self, app_id: str) -> str:
        return self.derive(f"app-{app_id}-seed-APP_PASSWORD")
