"""Poll-based watch-and-rebuild.

The source tree is summarized by a digest over the relative path, mtime and
size of every visible file; a rebuild runs whenever the digest changes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

from .builder import build
from .config import Config
from .template import TemplateContext
from .utils import fmt_duration

logger = logging.getLogger(__name__)


def _update_digest(digest, token: str) -> None:
    digest.update(token.encode("utf-8", errors="surrogateescape"))
    digest.update(b"\0")


def tree_signature(root: Path, exclude: Optional[set[Path]] = None) -> str:
    """Return a digest of the visible files under ``root``.

    Hidden names and the directories in ``exclude`` are not descended into.
    """
    excluded = {os.path.realpath(path) for path in exclude or ()}
    digest = hashlib.blake2b(digest_size=20)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            name
            for name in dirnames
            if not name.startswith(".")
            and os.path.realpath(os.path.join(dirpath, name)) not in excluded
        )
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = os.path.join(dirpath, name)
            try:
                st = os.stat(path, follow_symlinks=False)
            except OSError:
                # removed between listing and stat
                continue
            rel = os.path.relpath(path, root)
            _update_digest(digest, f"{rel}:{st.st_mtime_ns}:{st.st_size}")
    return digest.hexdigest()


async def rebuild(config: Config, templates: TemplateContext) -> bool:
    loop = asyncio.get_running_loop()
    start = loop.time()
    try:
        await build(config, templates)
    except Exception:
        logger.exception("Build of %s failed", config.name)
        return False
    logger.info("Built %s in %s", config.name, fmt_duration(loop.time() - start))
    return True


async def watch(config: Config, templates: Optional[TemplateContext] = None) -> None:
    """Rebuild the site whenever the source tree changes. Runs until cancelled."""
    if templates is None:
        templates = TemplateContext()
    srcdir = config.srcdir_abs
    exclude = {config.outdir_abs}

    signature = await asyncio.to_thread(tree_signature, srcdir, exclude)
    logger.info("Watching %s for changes", srcdir)
    while True:
        await asyncio.sleep(config.watch_interval)
        current = await asyncio.to_thread(tree_signature, srcdir, exclude)
        if current == signature:
            continue
        signature = current
        logger.info("Change detected; rebuilding")
        await rebuild(config, templates)
