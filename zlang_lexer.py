# zlang_lexer.py
# Regex-driven token source for the zlang language
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
Lexer for zlang:
 - regex tokenization with named groups (comment, number, identifier, punctuation)
 - `#` comments run to the end of the line
 - numbers are runs of digits and dots converted like C strtod (longest numeric prefix)
 - keywords: def extern if then else for in
 - any other single character (operators, parens, non-ascii) becomes a CHAR token
 - lazy: iter_stream() pulls one line at a time so the interactive console can prompt
 - every token stream ends with exactly one EOF token
"""

from __future__ import annotations
import io
import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, NamedTuple, Optional, TextIO, Union

LOG = logging.getLogger("zlang.lexer")

KEYWORDS = frozenset({"def", "extern", "if", "then", "else", "for", "in"})


class Token(NamedTuple):
    kind: str
    value: Union[str, float]
    lineno: int
    col: int

    def is_char(self, ch: str) -> bool:
        return self.kind == "CHAR" and self.value == ch

    def is_keyword(self, word: str) -> bool:
        return self.kind == "KEYWORD" and self.value == word


@dataclass
class LexerConfig:
    keep_comments: bool = False     # emit COMMENT tokens instead of dropping them


# Longest prefix of a digit/dot run that strtod would accept
_NUMERIC_PREFIX = re.compile(r"\d+\.?\d*|\.\d+")


def parse_number(text: str) -> float:
    """Convert a `[0-9.]+` run the way strtod does: `1.2.3` -> 1.2, `.` -> 0.0."""
    mo = _NUMERIC_PREFIX.match(text)
    if mo is None:
        return 0.0
    return float(mo.group(0))


class ZlangLexer:
    def __init__(self, config: Optional[LexerConfig] = None):
        self.config = config or LexerConfig()

        # Token specification (order matters)
        specs = [
            ('COMMENT', r'#[^\r\n]*'),
            ('NUMBER',  r'[0-9.]+'),
            ('ID',      r'[A-Za-z][A-Za-z0-9]*'),
            ('NEWLINE', r'\n'),
            ('SKIP',    r'[ \t\r\f\v]+'),
            ('CHAR',    r'.'),
        ]
        self.token_specification = specs
        regex_parts = (f"(?P<{name}>{pattern})" for name, pattern in self.token_specification)
        self.token_regex = re.compile('|'.join(regex_parts))

    def tokenize(self, code: str) -> List[Token]:
        return list(self.iter_tokens(code))

    def iter_tokens(self, code: str) -> Iterator[Token]:
        return self.iter_stream(io.StringIO(code))

    def iter_stream(self, stream: TextIO) -> Iterator[Token]:
        """Yield tokens from a text stream, reading a line only when the parser needs one."""
        lineno = 0
        for line in iter(stream.readline, ""):
            lineno += 1
            yield from self._scan_line(line, lineno)
        LOG.debug("input exhausted after %d line(s)", lineno)
        yield Token('EOF', '', lineno + 1, 0)

    def _scan_line(self, line: str, lineno: int) -> Iterator[Token]:
        for mo in self.token_regex.finditer(line):
            kind = mo.lastgroup
            raw = mo.group(kind)
            if kind in ('SKIP', 'NEWLINE'):
                continue
            if kind == 'COMMENT' and not self.config.keep_comments:
                continue
            col = mo.start()
            if kind == 'NUMBER':
                yield Token(kind, parse_number(raw), lineno, col)
            elif kind == 'ID' and raw in KEYWORDS:
                yield Token('KEYWORD', raw, lineno, col)
            else:
                yield Token(kind, raw, lineno, col)


def tokenize(code: str) -> List[Token]:
    return ZlangLexer().tokenize(code)


if __name__ == "__main__":
    SAMPLE = """
    # fibonacci
    def fib(x)
      if x < 3 then 1 else fib(x-1) + fib(x-2);
    fib(10);
    """
    for tok in tokenize(SAMPLE):
        print(tok)
