#!/usr/bin/env python3
"""Shared CLI helpers."""

from __future__ import annotations

from importlib import metadata

DISTRIBUTION_NAME = "appctl"


def get_cli_version(distribution: str = DISTRIBUTION_NAME) -> str:
    """Version of the installed distribution; the package build version when running from a checkout."""
    try:
        return metadata.version(distribution)
    except metadata.PackageNotFoundError:
        from . import __version__

        return __version__
