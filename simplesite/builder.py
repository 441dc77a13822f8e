from __future__ import annotations

import asyncio
import logging
import os
import re
import stat
from pathlib import Path
from typing import Optional, Union

from .config import Config
from .content import markdown_to_html
from .errors import SiteError
from .pages import Page, SiteMeta, fmt_page_tree, link_pages
from .render import copy_file, copy_symlink, write_file
from .template import TemplateContext
from .utils import clean_output_dir, relpath

logger = logging.getLogger(__name__)

NO_LAYOUT = "none"
EXCLUDE_RE = re.compile(r"^\.")


def _list_dir(directory: Path) -> list[os.DirEntry]:
    with os.scandir(directory) as entries:
        return sorted(entries, key=lambda entry: entry.name)


async def build(config: Config, templates: Optional[TemplateContext] = None) -> SiteMeta:
    srcdir = config.srcdir_abs
    outdir = config.outdir_abs
    templatedir = config.templatedir_abs
    if templates is None:
        templates = TemplateContext()

    pages: dict[str, Page] = {}  # indexed by Page.source_file
    site = SiteMeta(title=config.site_title)
    symlinks: list[Path] = []
    # starts with directories that are never visited
    visited_dirs = {os.path.realpath(path) for path in (templatedir, outdir, srcdir)}

    if config.clean and not clean_output_dir(outdir, srcdir):
        raise SiteError(f"cannot clean output directory {outdir}")

    def out_filename(sfile: Path) -> Path:
        return outdir / config.relpath(sfile)

    async def copy_verbatim(sfile: Path) -> None:
        ofile = out_filename(sfile)
        if await asyncio.to_thread(copy_file, sfile, ofile):
            logger.info("Copy %s -> %s", config.relpath(sfile), relpath(ofile, outdir))

    async def read_page(sfile: Path, ext: str) -> None:
        try:
            page = await Page.read(config, sfile, ext)
        except Exception as exc:
            logger.error(
                "failed to build page %s: %s; copying verbatim", config.relpath(sfile), exc
            )
            await copy_verbatim(sfile)
            return
        pages[page.source_file] = page
        site.pages.append(page)

    async def process_file(sfile: Path) -> None:
        if sfile.suffix.lower() in config.page_exts:
            await read_page(sfile, sfile.suffix)
        else:
            await copy_verbatim(sfile)

    async def copy_symlink_verbatim(sfile: Path) -> None:
        # copy the symlink itself, not its contents
        ofile = out_filename(sfile)
        if not sfile.exists():
            logger.error(
                "symlink %s: target %s does not exist",
                relpath(ofile, outdir),
                os.readlink(sfile),
            )
            return
        target = await asyncio.to_thread(copy_symlink, sfile, ofile)
        logger.info("Link %s -> %s", relpath(ofile, outdir), target)

    async def scandir(directory: Path) -> None:
        tasks = []
        for entry in await asyncio.to_thread(_list_dir, directory):
            if EXCLUDE_RE.match(entry.name):
                continue
            filename = directory / entry.name
            if entry.is_symlink():
                if config.verbatim_symlinks:
                    symlinks.append(filename)
                    continue
                try:
                    mode = filename.stat().st_mode
                except OSError as exc:
                    logger.error("symlink %s: %s", config.relpath(filename), exc)
                    continue
                is_file, is_dir = stat.S_ISREG(mode), stat.S_ISDIR(mode)
            else:
                is_file = entry.is_file(follow_symlinks=False)
                is_dir = entry.is_dir(follow_symlinks=False)

            if is_file:
                tasks.append(process_file(filename))
            elif is_dir:
                real = os.path.realpath(filename)
                if real not in visited_dirs:
                    visited_dirs.add(real)
                    tasks.append(scandir(filename))
        await asyncio.gather(*tasks)

    async def wrap_in_layout(page: Page, content: str, layout: str) -> str:
        template = await templates.get_file(templatedir / f"{layout}.html")
        env = {**page.template_vars(), "site": site, "content": content}
        return await template.eval(env)

    async def build_finalize(page: Page, content: Union[bytes, str]) -> None:
        ofile = outdir / page.output_file
        logger.info("Write %s -> %s", config.relpath(page.source_file), relpath(ofile, outdir))

        layout = NO_LAYOUT
        if page.meta is not None:
            layout = page.meta.get("layout") or config.default_layout
        if layout and layout != NO_LAYOUT:
            if isinstance(content, bytes):
                content = content.decode("utf-8")
            content = await wrap_in_layout(page, content, str(layout))
        await write_file(ofile, content)

    async def build_markdown_page(page: Page) -> None:
        source = await page.read_content()
        html = await asyncio.to_thread(markdown_to_html, source)
        await build_finalize(page, html)

    async def build_xml_page(page: Page) -> None:
        source = await page.read_content()
        content: Union[bytes, str] = source
        # skip the template engine for pages without any code spans
        if b"<?" in source and b"?>" in source:
            template = templates.compile(source.decode("utf-8"), page.source_file)
            content = await template.eval({**page.template_vars(), "site": site})
        await build_finalize(page, content)

    async def build_page(page: Page) -> None:
        page_format = config.page_exts.get(page.source_ext)
        try:
            if page_format == "md":
                await build_markdown_page(page)
            elif page_format == "xml":
                await build_xml_page(page)
            else:
                raise SiteError(f"Invalid page format {page_format!r}")
        except Exception as exc:
            logger.error(
                "failed to build page %s: %s; copying verbatim",
                config.relpath(page.source_file),
                exc,
            )
            await copy_verbatim(Path(page.source_file))

    async def build_pages() -> None:
        logger.info("Building %d pages", len(pages))
        if site.pages:
            logger.debug("page tree:\n%s", fmt_page_tree(site.home or site.pages[0]))
        await asyncio.gather(*(build_page(page) for page in pages.values()))

    # find and read all pages, copying verbatim files
    await scandir(srcdir)
    # populate parent and children
    link_pages(site)
    await build_pages()

    # symlinks are created last since their targets may be files copied above
    if symlinks:
        await asyncio.gather(*(copy_symlink_verbatim(path) for path in symlinks))
    return site
