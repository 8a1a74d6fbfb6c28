"""appctl: install, run and update Docker Compose apps on a single host."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Optional

BUILD_VERSION_ENV = "APPCTL_BUILD_VERSION"


def build_version(now: Optional[datetime] = None) -> str:
    """``$APPCTL_BUILD_VERSION`` if set, else the UTC build date as YYYYMMDD."""
    return os.getenv(BUILD_VERSION_ENV) or (now or datetime.now(timezone.utc)).strftime("%Y%m%d")


__version__ = build_version()
