from __future__ import annotations


class SiteError(Exception):
    pass


class FrontMatterSyntaxError(SiteError, ValueError):
    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Invalid front matter value for key {key}: {reason}")
        self.key = key
        self.reason = reason


class HeaderMalformedError(SiteError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f'{path} seems to have front matter ("---" at the beginning)'
            ' but no ending "\\n---\\n" was found'
        )
        self.path = path


class TemplateCompileError(SiteError, SyntaxError):
    """Syntax error in a template code span, located in the template source."""

    def __init__(self, filename: str, line: int, column: int | None, msg: str) -> None:
        SyntaxError.__init__(self, msg)
        self.filename = filename
        self.lineno = line
        self.offset = column
        self.msg = msg

    @property
    def line(self) -> int:
        return self.lineno

    @property
    def column(self) -> int | None:
        return self.offset

    def __str__(self) -> str:
        if self.offset:
            return f"{self.filename}:{self.lineno}:{self.offset}: {self.msg}"
        return f"{self.filename}:{self.lineno}: {self.msg}"
