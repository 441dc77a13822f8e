"""Template compiler and evaluation context.

Templates are plain text with embedded Python code spans:

    <? code ?>     statements. A span ending in ":" opens a block that
                   lasts until <? end ?>; elif/else/except/finally spans
                   continue the innermost block.
    <?= expr ?>    prints the value of expr, XML-escaped.
    <?- / -?>      a hyphen next to the marker trims the whitespace of the
                   surrounding text on that side.

A template compiles to a code object that is evaluated with the environment
dict as its globals, so environment names are visible without qualification.
Top-level await is allowed and every include() call is awaited.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import inspect
import io
import logging
import math
import os
import re
import tokenize
from dataclasses import dataclass
from pathlib import Path
from types import CodeType, FunctionType, MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .errors import TemplateCompileError

logger = logging.getLogger(__name__)

Writer = Callable[[str], Any]

# Generated code has no preamble: generated line N is line_map[N - 1 - LINE_OFFSET].
LINE_OFFSET = 0
INDENT = "    "

TAG_RE = re.compile(
    r"(\s*)<\?-((?:(?!-\?>|\?>).)*)(-?)\?>(\s*)"
    r"|<\?(?!xml\s)((?:(?!-\?>|\?>).)*)(-?)\?>(\s*)",
    re.S,
)
END_RE = re.compile(r"end(?:\s*#.*)?")
CONTINUATION_RE = re.compile(r"(?:elif|else|except|finally)\b")
LEADING_WS_RE = re.compile(r"[ \t]*")
NON_CODE_TOKENS = frozenset(
    {
        tokenize.COMMENT,
        tokenize.NL,
        tokenize.NEWLINE,
        tokenize.INDENT,
        tokenize.DEDENT,
        tokenize.ENDMARKER,
    }
)

XML_ESCAPES = {
    ord("&"): "&amp;",
    ord("<"): "&lt;",
    ord(">"): "&gt;",
    ord('"'): "&#34;",
    ord("'"): "&#39;",
}


def escape_xml(value: Any) -> str:
    return str(value).translate(XML_ESCAPES)


def scan_code(text: str) -> tuple[list[tuple[int, int]], bool]:
    """Tokenize one code span.

    Returns the (row, column) of every `include(` call that still needs an
    `await`, and whether the span ends with a block-opening colon. Comments and
    string literals are never matched. A span that does not tokenize is left to
    the compiler to report.
    """
    try:
        tokens = [
            tok
            for tok in tokenize.generate_tokens(io.StringIO(text).readline)
            if tok.type not in NON_CODE_TOKENS
        ]
    except (tokenize.TokenError, SyntaxError):
        return [], False

    calls = []
    for index, tok in enumerate(tokens):
        if tok.type != tokenize.NAME or tok.string != "include":
            continue
        if index + 1 == len(tokens) or tokens[index + 1].string != "(":
            continue
        if index and tokens[index - 1].string in ("await", "."):
            continue
        calls.append(tok.start)
    opens_block = bool(tokens) and tokens[-1].type == tokenize.OP and tokens[-1].string == ":"
    return calls, opens_block


@dataclass(frozen=True)
class CompiledTemplate:
    code: CodeType
    python_source: str
    # (source line, column delta) for each generated line
    line_map: tuple[tuple[int, int], ...]


class TemplateCompiler:
    def __init__(self, source: str, filename: str = "<string>") -> None:
        self.source = source
        self.filename = filename
        self.lines: list[str] = []
        self.line_map: list[tuple[int, int]] = []
        self.indents: list[str] = [""]
        self.block_lines: list[int] = []
        self._line_pos = 0
        self._line_no = 1

    def line_at(self, offset: int) -> int:
        if offset < self._line_pos:
            self._line_pos, self._line_no = 0, 1
        self._line_no += self.source.count("\n", self._line_pos, offset)
        self._line_pos = offset
        return self._line_no

    def column_at(self, offset: int) -> int:
        return offset - (self.source.rfind("\n", 0, offset) + 1)

    def error(self, line: int, column: Optional[int], msg: str) -> TemplateCompileError:
        return TemplateCompileError(self.filename, line, column, msg)

    def emit(self, text: str, line: int, column_delta: int = 0) -> None:
        self.lines.append(text)
        self.line_map.append((line, column_delta))

    def emit_literal(self, text: str, offset: int) -> None:
        if text:
            self.emit(f"{self.indents[-1]}print({text!r})", self.line_at(offset))

    def emit_expression(self, expr: str, offset: int) -> None:
        stripped = expr.strip()
        start = offset + len(expr) - len(expr.lstrip())
        line = self.line_at(start)
        if not stripped:
            raise self.error(line, self.column_at(start) + 1, "empty <?= ?> expression")
        indent = self.indents[-1]
        prefix = indent + "printv("
        expr_lines = stripped.split("\n")
        self.emit(prefix + expr_lines[0], line, self.column_at(start) - len(prefix))
        for index, text in enumerate(expr_lines[1:], 1):
            self.emit(text, line + index)
        # on its own line so a trailing comment cannot swallow it
        self.emit(indent + ")", line + len(expr_lines) - 1)

    def open_block(self, opener: str, line: int) -> None:
        body = self.indents[-1] + LEADING_WS_RE.match(opener).group() + INDENT
        self.indents.append(body)
        self.block_lines.append(line)
        self.emit(body + "pass", line)

    def close_block(self, line: int, keyword: str) -> None:
        if len(self.indents) == 1:
            raise self.error(line, None, f"'{keyword}' without an open block")
        self.indents.pop()
        self.block_lines.pop()

    def emit_code(self, code: str, offset: int) -> None:
        if code.startswith("="):
            self.emit_expression(code[1:], offset + 1)
            return
        if not code.strip():
            # whitespace only; nothing to run and line numbers stay mapped
            return

        # The text on the marker's line is padded to its source column so a
        # multi-line span dedents as a unit.
        raw_lines = (" " * self.column_at(offset) + code).split("\n")
        first_line = self.line_at(offset)
        margins = [LEADING_WS_RE.match(text).group() for text in raw_lines if text.strip()]
        margin = len(os.path.commonprefix(margins))
        indexed = [(index, text[margin:].rstrip()) for index, text in enumerate(raw_lines)]
        while not indexed[0][1].strip():
            indexed.pop(0)
        while not indexed[-1][1].strip():
            indexed.pop()

        head_index, head = indexed[0]
        head_line = first_line + head_index
        if len(indexed) == 1 and END_RE.fullmatch(head.strip()):
            self.close_block(head_line, "end")
            return
        if CONTINUATION_RE.match(head.strip()):
            self.close_block(head_line, head.split()[0].rstrip(":"))

        texts = [text for _, text in indexed]
        calls, opens_block = scan_code("\n".join(texts))
        for row, col in sorted(calls, reverse=True):
            texts[row - 1] = texts[row - 1][:col] + "await " + texts[row - 1][col:]

        indent = self.indents[-1]
        for (index, _), text in zip(indexed, texts):
            self.emit(indent + text if text else "", first_line + index, margin - len(indent))

        if opens_block:
            tail_index, tail = indexed[-1]
            self.open_block(tail, first_line + tail_index)

    def translate(self) -> str:
        pos = 0
        pending = ""  # unstripped whitespace following the previous tag
        for match in TAG_RE.finditer(self.source):
            if match.group(2) is not None:
                # <?- also trims whitespace left over from the previous tag
                pending = ""
            self.emit_literal(pending + self.source[pos : match.start()], pos - len(pending))
            pos = match.end()
            if match.group(2) is not None:
                code, trim, after, code_start = match.group(2), match.group(3), match.group(4), match.start(2)
            else:
                code, trim, after, code_start = match.group(5), match.group(6), match.group(7), match.start(5)
            self.emit_code(code, code_start)
            pending = "" if trim else after
        self.emit_literal(pending + self.source[pos:], pos - len(pending))

        if self.block_lines:
            raise self.error(self.block_lines[-1], None, "block is never closed with <? end ?>")
        return "\n".join(self.lines) + "\n"

    def map_syntax_error(self, exc: SyntaxError) -> TemplateCompileError:
        index = (exc.lineno or 1) - 1 - LINE_OFFSET
        if not 0 <= index < len(self.line_map):
            index = len(self.line_map) - 1 if self.line_map else 0
        line, delta = self.line_map[index] if self.line_map else (1, 0)
        column = max(1, exc.offset + delta) if exc.offset else None
        return self.error(line, column, exc.msg or "invalid syntax")


def compile_template(source: str, filename: str = "<string>") -> CompiledTemplate:
    compiler = TemplateCompiler(source, filename)
    python_source = compiler.translate()
    try:
        code = compile(
            python_source,
            filename,
            "exec",
            flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )
    except SyntaxError as exc:
        raise compiler.map_syntax_error(exc) from exc
    return CompiledTemplate(code, python_source, tuple(compiler.line_map))


class Template:
    """A compiled template.

    ``mtime`` is the source file's modification time when it was compiled, or
    0 when the file was not stat'ed.
    """

    def __init__(
        self, ctx: TemplateContext, compiled: CompiledTemplate, filename: str, mtime: float = 0
    ) -> None:
        self._ctx = ctx
        self._compiled = compiled
        self._filename = filename
        self._mtime = mtime

    @property
    def ctx(self) -> TemplateContext:
        return self._ctx

    @property
    def filename(self) -> str:
        return self._filename

    @property
    def mtime(self) -> float:
        return self._mtime

    @property
    def code(self) -> CodeType:
        return self._compiled.code

    @property
    def line_map(self) -> tuple[tuple[int, int], ...]:
        return self._compiled.line_map

    def __repr__(self) -> str:
        return f"Template({self._filename!r})"

    async def eval(
        self, env: Optional[Mapping[str, Any]] = None, writer: Optional[Writer] = None
    ) -> Optional[str]:
        """Run the template.

        Returns the output as a string, or None when ``writer`` is given, in
        which case every piece of output is passed to it as it is produced.
        """
        env = env if env is not None else {}
        buffer: list[str] = []
        sink = writer if writer is not None else buffer.append

        def print_(value: Any) -> None:
            sink(value if isinstance(value, str) else str(value))

        def printv(value: Any) -> None:
            sink(escape_xml(value))

        async def include(path: Any, extra_env: Optional[Mapping[str, Any]] = None) -> None:
            target = os.path.join(os.path.dirname(self._filename), str(path))
            include_env = {**env, **extra_env} if extra_env else env
            await self._ctx.eval_file(target, env=include_env, writer=sink)

        scope = {
            "__builtins__": builtins,
            **self._ctx.env,
            "print": print_,
            "printv": printv,
            "include": include,
            **env,
        }
        result = FunctionType(self._compiled.code, scope, "template")()
        if inspect.isawaitable(result):
            await result

        if writer is not None:
            return None
        return "".join(buffer)


def _read_text(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


class TemplateContext:
    """Shared environment and cache for templates.

    ``builtins`` are visible to every template compiled under this context and
    must not be mutated afterwards, since templates may be evaluated
    concurrently.
    """

    def __init__(self, builtins: Optional[Mapping[str, Any]] = None) -> None:
        env = dict(builtins or {})
        env.setdefault("escape", escape_xml)
        env.setdefault("logger", logging.getLogger("simplesite.template"))
        self._env = MappingProxyType(env)
        self.cache: dict[str, Template] = {}

    @property
    def env(self) -> Mapping[str, Any]:
        return self._env

    def compile(self, source: str, filename: str = "<string>", mtime: float = 0) -> Template:
        return Template(self, compile_template(source, filename), filename, mtime)

    async def get_file(
        self, path: str | os.PathLike, nostat: bool = False, filename: Optional[str] = None
    ) -> Template:
        key = os.path.abspath(path)
        template = self.cache.get(key)
        mtime: float = 0
        if not nostat:
            try:
                mtime = (await asyncio.to_thread(os.stat, key)).st_mtime_ns
            except OSError:
                # forces a recompile, which surfaces the read error
                mtime = math.inf
        if template is None or template.mtime < mtime:
            source = await asyncio.to_thread(_read_text, key)
            if mtime == math.inf:
                mtime = 0
            template = self.compile(source, filename or key, mtime)
            self.cache[key] = template
            logger.debug("Compiled template %s", key)
        return template

    async def eval_file(
        self,
        path: str | os.PathLike,
        env: Optional[Mapping[str, Any]] = None,
        writer: Optional[Writer] = None,
        nostat: bool = False,
    ) -> Optional[str]:
        template = await self.get_file(path, nostat=nostat)
        return await template.eval(env, writer)

    async def eval(
        self,
        source: str,
        env: Optional[Mapping[str, Any]] = None,
        writer: Optional[Writer] = None,
        filename: str = "<string>",
    ) -> Optional[str]:
        return await self.compile(source, filename).eval(env, writer)
