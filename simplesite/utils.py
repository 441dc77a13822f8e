from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return False


def parse_float(value: object, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return default


def fmt_duration(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 0.001:
        return f"{ms * 1000000:.0f}ns"
    if ms < 0.01:
        return f"{ms * 1000:.2f}µs"
    if ms >= 1000 * 60:
        return f"{ms / (1000 * 60):.2f}min"
    if ms >= 1000:
        return f"{ms / 1000:.2f}s"
    return f"{ms:.2f}ms"


def relpath(path: str | Path, start: str | Path) -> str:
    try:
        return Path(path).relative_to(start).as_posix()
    except ValueError:
        return Path(path).as_posix()


def clean_output_dir(output_dir: Path, project_root: Path) -> bool:
    if not output_dir.exists():
        return True
    output_resolved = output_dir.resolve()
    root_resolved = project_root.resolve()
    if output_resolved == root_resolved:
        logger.error("Refusing to clean source root.")
        return False
    if not output_resolved.is_relative_to(root_resolved):
        logger.error("Refusing to clean output directory outside source root.")
        return False
    shutil.rmtree(output_dir)
    return True
