from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config import Config
from .content import HeaderState, PageHeader, read_header, read_page_content, title_from_file
from .errors import HeaderMalformedError

logger = logging.getLogger(__name__)


class Page:
    # Public attributes are visible to templates; keep helpers private.

    def __init__(
        self,
        title: str,
        source_file: str,
        source_ext: str,
        output_file: str,
        url: str,
        meta: Optional[dict[str, Any]],
        header: Optional[PageHeader] = None,
    ) -> None:
        self.title = title
        self.source_file = source_file
        self.source_ext = source_ext
        self.output_file = output_file
        self.url = url
        self.meta = meta
        self.parent: Optional[Page] = None
        self.children: list[Page] = []
        self._header = header

    def __repr__(self) -> str:
        return f"Page({self.title})"

    def template_vars(self) -> dict[str, Any]:
        env = {key: value for key, value in vars(self).items() if not key.startswith("_")}
        env["page"] = self
        return env

    @classmethod
    async def read(cls, config: Config, path: Path, ext: str) -> Page:
        header = await asyncio.to_thread(read_header, path)
        if header.state is HeaderState.MALFORMED:
            raise HeaderMalformedError(config.relpath(path))

        rel_noext = config.relpath(path)[: -len(ext)]  # a/b.md -> a/b
        name = posixpath.basename(rel_noext)
        if name == "index":
            parent_dir = posixpath.dirname(rel_noext)
            output_file = posixpath.join(parent_dir, "index.html")
            url = config.base_url + (parent_dir + "/" if parent_dir else "")
        else:
            output_file = rel_noext + ".html"
            url = config.base_url + output_file

        meta = header.meta
        title = meta.get("title") if meta else None
        if not title:
            title = title_from_file(path, name, config.srcdir_abs)
        return cls(str(title), str(path), ext.lower(), output_file, url, meta, header)

    async def read_content(self) -> bytes:
        """Return the page source that follows the header, reading the rest of the file."""
        if self._header is None:
            raise RuntimeError(f"content of {self.source_file} was already read")
        header, self._header = self._header, None
        return await asyncio.to_thread(read_page_content, Path(self.source_file), header)


@dataclass
class SiteMeta:
    title: str
    home: Optional[Page] = None
    pages: list[Page] = field(default_factory=list)


def link_pages(site: SiteMeta) -> None:
    # templates can sort some other way if they like
    site.pages.sort(key=lambda page: page.url)

    by_output: dict[str, Page] = {}
    for page in site.pages:
        existing = by_output.get(page.output_file)
        if existing is not None:
            logger.warning(
                "Conflict: output file %s generated by both %s and %s",
                page.output_file,
                existing.source_file,
                page.source_file,
            )
        else:
            by_output[page.output_file] = page

    for page in site.pages:
        if page.output_file == "index.html":
            site.home = page
            continue
        out_dir = posixpath.dirname(page.output_file)
        if posixpath.basename(page.output_file) == "index.html":
            out_dir = posixpath.dirname(out_dir)
        while True:
            parent = by_output.get(posixpath.join(out_dir, "index.html"))
            if parent is not None and parent is not page:
                page.parent = parent
                parent.children.append(page)
                break
            if not out_dir:
                break
            out_dir = posixpath.dirname(out_dir)


def fmt_page_tree(root: Page, indent: str = "• ") -> str:
    def visit(page: Page, prefix: str) -> str:
        text = page.title
        for child in page.children:
            text += "\n" + prefix + visit(child, prefix + indent)
        return text

    return visit(root, indent)
