#!/usr/bin/env python3
"""Allow ``python -m appctl``."""

from __future__ import annotations

from .cli import main


if __name__ == '__main__':
    raise SystemExit(main())
