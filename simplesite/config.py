from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path

import yaml

try:
    import tomllib as toml
except ImportError:
    import tomli as toml

from .utils import relpath

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(message)s"
DEBUG_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

# must all be lower case
PAGE_EXTS = {
    ".md": "md",
    ".mdown": "md",
    ".markdown": "md",
    ".html": "xml",
    ".htm": "xml",
    ".xml": "xml",
}


@dataclass
class Config:
    srcdir: str = "."
    outdir: str = "_build"
    templatedir: str = "_templates"
    name: str = "."
    default_layout: str = "default"
    base_url: str = "/"
    site_title: str = "Site title"
    quiet: bool = False
    debug: bool = False
    verbatim_symlinks: bool = True
    clean: bool = False
    watch_interval: float = 0.5
    page_exts: dict[str, str] = field(default_factory=lambda: dict(PAGE_EXTS))

    @cached_property
    def srcdir_abs(self) -> Path:
        return Path(os.path.abspath(self.srcdir))

    @property
    def outdir_abs(self) -> Path:
        return Path(os.path.abspath(self.srcdir_abs / self.outdir))

    @property
    def templatedir_abs(self) -> Path:
        return Path(os.path.abspath(self.srcdir_abs / self.templatedir))

    def relpath(self, path: str | Path) -> str:
        return relpath(path, self.srcdir_abs)


def configure_logging(quiet: bool = False, debug: bool = False) -> None:
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(DEBUG_LOG_FORMAT if debug else LOG_FORMAT))
    package_logger = logging.getLogger("simplesite")
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(level)
    package_logger.propagate = False


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix == ".toml":
        try:
            data = toml.loads(text)
        except toml.TOMLDecodeError as exc:
            logger.error("Invalid TOML in config file %s: %s", path, exc)
            sys.exit(1)
        return data
    if suffix in {".yml", ".yaml"}:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            logger.error("Invalid YAML in config file %s: %s", path, exc)
            sys.exit(1)
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.error("YAML config must be a mapping: %s", path)
            sys.exit(1)
        return data
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in config file %s: %s", path, exc)
        sys.exit(1)
    if not isinstance(data, dict):
        logger.error("JSON config must be an object: %s", path)
        sys.exit(1)
    return data
