# zlang_parser.py
# Recursive Descent Parser for the zlang language
# Author: Violet Magenta / VACU Technologies
# License: MIT
"""
zlang parser:
 - pulls tokens lazily from any token iterator and holds exactly one lookahead token
 - operator-precedence expression parsing (precedence-climbing), left-associative
 - per-instance binary operator table, extensible with install_binop()
 - grammar: definition | extern | top-level expression
 - ParseError (a SyntaxError) names the failed expectation and the token position

Recovery is the caller's job: on ParseError the driver discards the current token
(skip_token) and resumes at the next top-level unit.
"""

from __future__ import annotations
import logging
from typing import Dict, Iterable, Iterator, List, Optional

from zlang_ast import (
    ANON_EXPR_NAME,
    BinaryExpr,
    CallExpr,
    Expr,
    ForExpr,
    FunctionDef,
    IfExpr,
    NumberExpr,
    Prototype,
    VariableExpr,
)
from zlang_lexer import Token, ZlangLexer

LOG = logging.getLogger("zlang.parser")

# precedence (higher number binds tighter)
DEFAULT_BINOP_PRECEDENCE: Dict[str, int] = {
    '<': 10, '>': 10,
    '+': 20, '-': 20,
    '*': 40, '/': 40,
}


# -------------------------
# ParseError
# -------------------------
class ParseError(SyntaxError):
    def __init__(self, message: str, token: Optional[Token] = None):
        self.token = token
        if token is not None:
            message = f"{message} at line {token.lineno}, col {token.col}"
        super().__init__(message)


# -------------------------
# Parser
# -------------------------
class ZlangParser:
    """
    Recursive-descent parser over a lazy token stream.
    """

    def __init__(self, tokens: Iterable[Token]):
        self._tokens: Iterator[Token] = iter(tokens)
        self.binop_precedence: Dict[str, int] = dict(DEFAULT_BINOP_PRECEDENCE)
        self.cur_tok: Optional[Token] = None

    @classmethod
    def from_source(cls, code: str) -> "ZlangParser":
        parser = cls(ZlangLexer().iter_tokens(code))
        parser.next_token()
        return parser

    def install_binop(self, op: str, precedence: int) -> None:
        if len(op) != 1 or not op.isascii():
            raise ValueError(f"binary operator must be a single ascii character: {op!r}")
        if precedence <= 0:
            raise ValueError("binary operator precedence must be positive")
        self.binop_precedence[op] = precedence

    # -------------------------
    # Token helpers
    # -------------------------
    def next_token(self) -> Token:
        tok = next(self._tokens, None)
        while tok is not None and tok.kind == 'COMMENT':
            tok = next(self._tokens, None)
        if tok is None:
            # the stream already produced EOF; stay there
            tok = self.cur_tok if self.cur_tok is not None and self.cur_tok.kind == 'EOF' else Token('EOF', '', 0, 0)
        self.cur_tok = tok
        return tok

    def skip_token(self) -> None:
        """Error recovery: drop the offending token."""
        LOG.debug("skipping token %r", self.cur_tok)
        self.next_token()

    def _expect_char(self, ch: str, message: str) -> None:
        if not self.cur_tok.is_char(ch):
            raise ParseError(message, self.cur_tok)
        self.next_token()

    def _expect_keyword(self, word: str, message: str) -> None:
        if not self.cur_tok.is_keyword(word):
            raise ParseError(message, self.cur_tok)
        self.next_token()

    def _tok_precedence(self) -> int:
        tok = self.cur_tok
        if tok.kind != 'CHAR' or not tok.value.isascii():
            return -1
        return self.binop_precedence.get(tok.value, -1)

    # -------------------------
    # Expressions
    # -------------------------
    def parse_expression(self, min_prec: int = 1) -> Expr:
        """expr := primary (binop primary)*"""
        lhs = self.parse_primary()
        while True:
            prec = self._tok_precedence()
            if prec < min_prec:
                return lhs
            op = self.cur_tok.value
            self.next_token()
            # operators of equal precedence stay left-associative
            rhs = self.parse_expression(prec + 1)
            lhs = BinaryExpr(op, lhs, rhs)

    def parse_primary(self) -> Expr:
        tok = self.cur_tok
        if tok.kind == 'ID':
            return self._parse_identifier()
        if tok.kind == 'NUMBER':
            self.next_token()
            return NumberExpr(tok.value)
        if tok.is_char('('):
            return self._parse_paren()
        if tok.is_keyword('if'):
            return self.parse_if()
        if tok.is_keyword('for'):
            return self.parse_for()
        raise ParseError("unknown token when expecting an expression", tok)

    def _parse_paren(self) -> Expr:
        self.next_token()  # eat '('
        expr = self.parse_expression()
        self._expect_char(')', "expected ')'")
        return expr

    def _parse_identifier(self) -> Expr:
        name = self.cur_tok.value
        self.next_token()
        if not self.cur_tok.is_char('('):
            return VariableExpr(name)
        self.next_token()  # eat '('
        args: List[Expr] = []
        if not self.cur_tok.is_char(')'):
            while True:
                args.append(self.parse_expression())
                if self.cur_tok.is_char(')'):
                    break
                self._expect_char(',', "Expected ')' or ',' in argument list")
        self.next_token()  # eat ')'
        return CallExpr(name, tuple(args))

    def parse_if(self) -> IfExpr:
        """ifExpr := 'if' expr 'then' expr 'else' expr"""
        self.next_token()
        cond = self.parse_expression()
        self._expect_keyword('then', "expected then")
        then = self.parse_expression()
        self._expect_keyword('else', "expected else")
        orelse = self.parse_expression()
        return IfExpr(cond, then, orelse)

    def parse_for(self) -> ForExpr:
        """forExpr := 'for' identifier '=' expr ',' expr (',' expr)? 'in' expr"""
        self.next_token()
        if self.cur_tok.kind != 'ID':
            raise ParseError("expected identifier after for", self.cur_tok)
        var_name = self.cur_tok.value
        self.next_token()
        self._expect_char('=', "expected '=' after for")
        start = self.parse_expression()
        self._expect_char(',', "expected ',' after for start value")
        end = self.parse_expression()
        step = None
        if self.cur_tok.is_char(','):
            self.next_token()
            step = self.parse_expression()
        self._expect_keyword('in', "expected 'in' after for")
        body = self.parse_expression()
        return ForExpr(var_name, start, end, step, body)

    # -------------------------
    # Top-level units
    # -------------------------
    def parse_prototype(self) -> Prototype:
        """prototype := identifier '(' identifier* ')'"""
        if self.cur_tok.kind != 'ID':
            raise ParseError("Expected function name in prototype", self.cur_tok)
        name = self.cur_tok.value
        self.next_token()
        self._expect_char('(', "Expected '(' in prototype")
        params: List[str] = []
        while self.cur_tok.kind == 'ID':
            if self.cur_tok.value in params:
                raise ParseError(f"Duplicate parameter name '{self.cur_tok.value}' in prototype", self.cur_tok)
            params.append(self.cur_tok.value)
            self.next_token()
        self._expect_char(')', "Expected ')' in prototype")
        return Prototype(name, tuple(params))

    def parse_definition(self) -> FunctionDef:
        """definition := 'def' prototype expr"""
        self.next_token()
        proto = self.parse_prototype()
        body = self.parse_expression()
        return FunctionDef(proto, body)

    def parse_extern(self) -> Prototype:
        """extern := 'extern' prototype"""
        self.next_token()
        return self.parse_prototype()

    def parse_top_level_expr(self) -> FunctionDef:
        """A bare expression becomes a zero-argument anonymous function."""
        body = self.parse_expression()
        return FunctionDef(Prototype(ANON_EXPR_NAME, ()), body)


def parse_expression_text(code: str) -> Expr:
    """Parse a single expression from source text; trailing tokens are an error."""
    parser = ZlangParser.from_source(code)
    expr = parser.parse_expression()
    if parser.cur_tok.kind != 'EOF':
        raise ParseError("unexpected trailing input", parser.cur_tok)
    return expr
