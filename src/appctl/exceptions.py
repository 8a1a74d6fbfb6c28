#!/usr/bin/env python3
"""
appctl exception hierarchy.

Every fatal condition of a lifecycle transition is an ``AppctlError``.
Hook failures are not exceptions: they are reported as ``HookResult`` values
and logged by the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, Tuple


class AppctlError(Exception):
    """
    Base exception for all appctl errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        recoverable: Whether retrying the same command can succeed
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Dependency graph / manifests
# =============================================================================

class CircularDependencyError(AppctlError):
    """A dependency cycle is reachable from the resolved app."""

    def __init__(self, root: str, edge: Tuple[str, str], path: Sequence[str] = ()):
        self.root = root
        self.edge = edge
        self.path = list(path)
        cycle = " -> ".join(self.path) if self.path else f"{edge[0]} -> {edge[1]}"
        super().__init__(
            f"Circular dependency while resolving '{root}': {edge[0]} -> {edge[1]} (cycle: {cycle})",
            code="CIRCULAR_DEPENDENCY",
            details={"root": root, "edge": list(edge), "cycle": self.path},
        )


class InvalidManifestError(AppctlError):
    """Manifest, settings overlay or export layer cannot be used."""

    def __init__(self, app_id: str, reason: str):
        self.app_id = app_id
        super().__init__(
            f"Invalid manifest for app '{app_id}': {reason}",
            code="INVALID_MANIFEST",
            details={"app_id": app_id, "reason": reason},
        )


class AppNotFoundError(AppctlError):
    """No source definition exists for the app."""

    def __init__(self, app_id: str, searched: Sequence[str] = ()):
        self.app_id = app_id
        super().__init__(
            f"App '{app_id}' not found in any repository",
            code="APP_NOT_FOUND",
            details={"app_id": app_id, "searched": list(searched)},
        )


class NotInstalledError(AppctlError):
    """Transition requires the app to be registered as installed."""

    def __init__(self, app_id: str):
        self.app_id = app_id
        super().__init__(
            f"App '{app_id}' is not installed",
            code="NOT_INSTALLED",
            details={"app_id": app_id},
        )


# =============================================================================
# Secrets
# =============================================================================

class MissingSeedError(AppctlError):
    """Root seed is empty or unreadable."""

    def __init__(self, reason: str = "seed is empty"):
        super().__init__(
            f"Cannot derive secrets: {reason}",
            code="MISSING_SEED",
        )


class MissingIdentifierError(AppctlError):
    """Secret identifier is empty."""

    def __init__(self) -> None:
        super().__init__(
            "Cannot derive secrets: identifier is empty",
            code="MISSING_IDENTIFIER",
        )


# =============================================================================
# External commands / registry
# =============================================================================

class ExternalCommandError(AppctlError):
    """An external command (docker compose, docker image) failed."""

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command failed with exit code {returncode}: {' '.join(self.command)}",
            code="EXTERNAL_COMMAND_FAILED",
            details={"command": self.command, "returncode": returncode},
            recoverable=True,
        )


class LockTimeoutError(AppctlError):
    """Registry lock was not acquired within the configured bound."""

    def __init__(self, lock_path: str, timeout: float, holder: Optional[str] = None):
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock {lock_path}"
            + (f" (held by pid {holder})" if holder else ""),
            code="LOCK_TIMEOUT",
            details={"lock_path": lock_path, "timeout": timeout, "holder": holder},
            recoverable=True,
        )


class RegistryError(AppctlError):
    """Registry document is unreadable or structurally invalid."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Registry {path} is invalid: {reason}",
            code="REGISTRY_INVALID",
            details={"path": path, "reason": reason},
        )
