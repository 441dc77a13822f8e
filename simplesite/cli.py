from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .builder import build
from .config import Config, configure_logging, load_config
from .template import TemplateContext
from .utils import fmt_duration, parse_bool, parse_float
from .watch import watch

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "site.toml"


def build_site(config: Config, templates: Optional[TemplateContext] = None) -> bool:
    logger.info("Building %s", config.name)
    start = time.perf_counter()
    try:
        asyncio.run(build(config, templates))
    except Exception as exc:
        if config.debug:
            logger.exception("Build failed")
        else:
            logger.error("Build failed: %s", exc)
        return False
    elapsed = time.perf_counter() - start
    print(f"Built {config.name} in {fmt_duration(elapsed)}")
    return True


def make_parser(argv: Optional[Sequence[str]] = None) -> argparse.ArgumentParser:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("-C", "--srcdir", default=".")
    pre_parser.add_argument("--config", default=None)
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_path = pre_args.config or os.path.join(pre_args.srcdir, CONFIG_FILENAME)
    config = load_config(Path(config_path))

    def cfg_value(key: str, default: object) -> object:
        value = config.get(key)
        return default if value is None else value

    def cfg_str(key: str, default: str) -> str:
        value = cfg_value(key, default)
        return default if value is None else str(value)

    def cfg_bool(key: str, default: bool) -> bool:
        value = cfg_value(key, default)
        return parse_bool(value) if value is not None else default

    def cfg_float(key: str, default: float) -> float:
        value = cfg_value(key, default)
        return parse_float(value, default)

    parser = argparse.ArgumentParser(prog="simplesite", description="Static site generator.")
    parser.add_argument("-C", "--srcdir", default=pre_args.srcdir, help="Source directory (default: .).")
    parser.add_argument("--config", default=config_path, help="Path to site config file (TOML/YAML/JSON).")
    parser.add_argument(
        "-o",
        "--outdir",
        default=cfg_str("outdir", "_build"),
        help="Output directory, relative to the source directory.",
    )
    parser.add_argument(
        "--templates",
        default=cfg_str("templates", "_templates"),
        help="Template directory, relative to the source directory.",
    )
    parser.add_argument(
        "--layout",
        default=cfg_str("layout", "default"),
        help='Layout used for pages with front matter that name none ("none" disables).',
    )
    parser.add_argument("--base-url", default=cfg_str("base_url", "/"), help="URL prefix of the site.")
    parser.add_argument("--site-title", default=cfg_str("site_title", "Site title"), help="Site title.")
    parser.add_argument(
        "--verbatim-symlinks",
        action=argparse.BooleanOptionalAction,
        default=cfg_bool("verbatim_symlinks", True),
        help="Recreate symlinks in the output instead of following them.",
    )
    parser.add_argument(
        "--clean",
        action=argparse.BooleanOptionalAction,
        default=cfg_bool("clean", False),
        help="Remove the output directory before building.",
    )
    parser.add_argument("-w", "--watch", action="store_true", help="Rebuild when source files change.")
    parser.add_argument(
        "--watch-interval",
        default=cfg_float("watch_interval", 0.5),
        type=float,
        help="Seconds between source tree polls in watch mode.",
    )
    parser.add_argument("-g", "--dev", action="store_true", help="Debug logging.")
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    srcdir = os.path.abspath(args.srcdir)
    return Config(
        srcdir=srcdir,
        outdir=args.outdir,
        templatedir=args.templates,
        name=os.path.basename(srcdir) or srcdir,
        default_layout=args.layout,
        base_url=args.base_url,
        site_title=args.site_title,
        quiet=args.quiet,
        debug=args.dev,
        verbatim_symlinks=args.verbatim_symlinks,
        clean=args.clean,
        watch_interval=max(0.05, args.watch_interval),
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = make_parser(argv).parse_args(argv)
    config = config_from_args(args)
    configure_logging(quiet=config.quiet, debug=config.debug)

    templates = TemplateContext()
    ok = build_site(config, templates)
    if not args.watch:
        return 0 if ok else 1
    # subsequent builds must not wipe the output again
    config.clean = False
    try:
        asyncio.run(watch(config, templates))
    except KeyboardInterrupt:
        logger.info("Stopped watching")
    return 0
