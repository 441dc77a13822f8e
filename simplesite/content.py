from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional

import json5
import markdown

from .errors import FrontMatterSyntaxError

# Number of bytes read up front when looking for a header. Ideally the size of
# the longest header; larger headers cost additional reads.
HEADER_READ_SIZE = 512
# Number of bytes read at a time for the remainder of a page.
REST_READ_SIZE = 4096
# "---\n---\n"
MIN_HEADER_SIZE = 8

HEADER_START = b"---\n"
HEADER_END_RE = re.compile(rb"\n-{3,}\n")
FRONT_MATTER_KEY_RE = re.compile(r"(?:^|\n)([A-Za-z0-9_.\-$]+):")
STRUCTURED_START_CHARS = frozenset("\"'[{")
NUMBER_RE = re.compile(
    r"0[xX][0-9a-fA-F]+|0[oO][0-7]+|0[bB][01]+"
    r"|(?P<decimal>[+-]?(?:\d+|\d+\.\d*|\.\d+)(?:[eE][+-]?\d+)?)",
    re.ASCII,
)
TITLE_SEPARATORS_RE = re.compile(r"[_\-.]+")

MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "toc", "codehilite"]
MARKDOWN_EXTENSION_CONFIGS = {"codehilite": {"guess_lang": False}}


class HeaderState(enum.Enum):
    NO_HEADER = "no-header"
    SCANNING_FOR_START = "scanning-for-start"
    SCANNING_FOR_END = "scanning-for-end"
    FOUND = "found"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class PageHeader:
    state: HeaderState
    buf: bytes
    meta: Optional[dict[str, Any]] = None
    content_offset: int = 0
    more: bool = False


def parse_number(text: str) -> int | float | None:
    match = NUMBER_RE.fullmatch(text)
    if match is None:
        return None
    if match.group("decimal") is None:
        return int(text, 0)
    if "." not in text and "e" not in text.lower():
        return int(text)
    value = float(text)
    if not math.isfinite(value):
        return None
    return value


def parse_value(key: str, raw: str) -> Any:
    if raw and raw[0] in STRUCTURED_START_CHARS:
        try:
            return json5.loads(raw)
        except ValueError as exc:
            raise FrontMatterSyntaxError(key, str(exc)) from exc
    number = parse_number(raw)
    if number is not None:
        return number
    return raw


def parse_front_matter(source: str) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    matches = list(FRONT_MATTER_KEY_RE.finditer(source))
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(source)
        key = match.group(1)
        meta[key] = parse_value(key, source[match.end() : end].strip())
    return meta


def scan_header(stream: BinaryIO) -> PageHeader:
    """Locate a leading ``---`` delimited header without reading the whole file.

    Reads a head chunk of ``HEADER_READ_SIZE`` bytes. While the terminator has
    not been seen and the previous read filled its chunk, further chunks of
    ``HEADER_READ_SIZE`` are read: headers are small, so the scan stays cheap
    and only the page body is read in larger ``REST_READ_SIZE`` chunks by
    ``read_page_content``. The returned ``buf`` holds every byte read so far;
    ``more`` tells whether the file may continue past it.
    """
    state = HeaderState.SCANNING_FOR_START
    buf = bytearray()
    more = True
    pos = 0
    match = None
    while state in (HeaderState.SCANNING_FOR_START, HeaderState.SCANNING_FOR_END):
        if state is HeaderState.SCANNING_FOR_START:
            buf += stream.read(HEADER_READ_SIZE)
            more = len(buf) == HEADER_READ_SIZE
            if len(buf) < MIN_HEADER_SIZE or not buf.startswith(HEADER_START):
                state = HeaderState.NO_HEADER
            else:
                state = HeaderState.SCANNING_FOR_END
                # the newline ending the opening line may also start the terminator
                pos = len(HEADER_START) - 1
            continue

        match = HEADER_END_RE.search(buf, pos)
        if match is not None:
            state = HeaderState.FOUND
        elif not more:
            state = HeaderState.MALFORMED if len(buf) > HEADER_READ_SIZE else HeaderState.NO_HEADER
        else:
            prev_len = len(buf)
            chunk = stream.read(HEADER_READ_SIZE)
            more = len(chunk) == HEADER_READ_SIZE
            buf += chunk
            # resume from the last line start before the previous end
            pos = max(pos, buf.rfind(b"\n", pos, prev_len))

    if state is not HeaderState.FOUND:
        return PageHeader(state, bytes(buf), more=more)

    header_text = bytes(buf[len(HEADER_START) : match.start()]).decode("utf-8")
    meta = parse_front_matter(header_text)
    return PageHeader(HeaderState.FOUND, bytes(buf), meta, match.end(), more)


def read_header(path: Path) -> PageHeader:
    with path.open("rb") as stream:
        return scan_header(stream)


def read_page_content(path: Path, header: PageHeader) -> bytes:
    parts = [header.buf[header.content_offset :]]
    if header.more:
        with path.open("rb") as stream:
            stream.seek(len(header.buf))
            while True:
                chunk = stream.read(REST_READ_SIZE)
                if not chunk:
                    break
                parts.append(chunk)
    return b"".join(parts)


def markdown_to_html(source: bytes) -> bytes:
    md = markdown.Markdown(
        extensions=MARKDOWN_EXTENSIONS,
        extension_configs=MARKDOWN_EXTENSION_CONFIGS,
    )
    return md.convert(source.decode("utf-8")).encode("utf-8")


def title_from_file(path: Path, name: str, srcdir: Path) -> str:
    title = name
    if title == "index":
        if path.parent == srcdir:
            return "Home"
        title = path.parent.name
    # "foo-bar.baz" -> "Foo bar baz"
    return title[:1].upper() + TITLE_SEPARATORS_RE.sub(" ", title[1:])
