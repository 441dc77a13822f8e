"""Pytest bootstrap for local source imports.

Ensures ``import simplesite`` resolves to the local package when the
``pytest`` console script runs with a sys.path that excludes the repo root.
"""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT_STR = str(Path(__file__).resolve().parent.parent)

if PROJECT_ROOT_STR not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_STR)
