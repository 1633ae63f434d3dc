"""Tokenizer for the validation rule language.

Splits rule text into located tokens. Keywords are case-insensitive and
normalized to lower case; identifiers keep their original spelling.
"""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from trialrules.errors import RuleSyntaxError, Span


class TokenKind(StrEnum):
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    IDENT = "ident"
    KEYWORD = "keyword"
    OP = "op"
    LPAREN = "("
    RPAREN = ")"
    COMMA = ","
    PERCENT = "%"
    RANGE = ".."
    AT = "@"
    EOF = "eof"


KEYWORDS: frozenset[str] = frozenset(
    {
        "between",
        "and",
        "or",
        "not",
        "if",
        "then",
        "else",
        "endif",
        "in",
        "required",
        "allow",
        "missing",
        "within",
        "of",
        "today",
        "day",
        "days",
        "week",
        "weeks",
        "true",
        "false",
    }
)


class Token(BaseModel):
    """One lexeme with its position in the source text."""

    model_config = ConfigDict(frozen=True)

    kind: TokenKind
    value: str
    span: Span

    def is_keyword(self, *words: str) -> bool:
        return self.kind == TokenKind.KEYWORD and self.value in words

    def is_op(self, *ops: str) -> bool:
        return self.kind == TokenKind.OP and self.value in ops


# Order matters: DATE before NUMBER, two-char operators before one-char.
_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<date>\d{4}-\d{2}-\d{2}(?![\d.]))
  | (?P<number>\d+(?:\.\d+)?|\.\d+)
  | (?P<string>'(?:[^'\\\n]|\\.)*'|"(?:[^"\\\n]|\\.)*")
  | (?P<range>\.\.)
  | (?P<op>==|!=|<>|<=|>=|<|>|=|\+|-|\*|/)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<percent>%)
  | (?P<at>@)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_SIMPLE_KINDS: dict[str, TokenKind] = {
    "date": TokenKind.DATE,
    "number": TokenKind.NUMBER,
    "range": TokenKind.RANGE,
    "op": TokenKind.OP,
    "lparen": TokenKind.LPAREN,
    "rparen": TokenKind.RPAREN,
    "comma": TokenKind.COMMA,
    "percent": TokenKind.PERCENT,
    "at": TokenKind.AT,
}

_ESCAPE_RE = re.compile(r"\\(.)")


def tokenize(text: str) -> list[Token]:
    """Split rule text into tokens, ending with a single EOF token.

    Raises:
        RuleSyntaxError: On an unterminated string or a character that
            cannot start any token.
    """
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            span = Span(start=pos, end=pos + 1)
            if text[pos] in "'\"":
                raise RuleSyntaxError("Unterminated string literal", span, text)
            raise RuleSyntaxError(f"Unexpected character {text[pos]!r}", span, text)

        group = match.lastgroup
        lexeme = match.group()
        span = Span(start=match.start(), end=match.end())
        pos = match.end()

        if group == "ws":
            continue
        if group == "string":
            tokens.append(
                Token(kind=TokenKind.STRING, value=_ESCAPE_RE.sub(r"\1", lexeme[1:-1]), span=span)
            )
        elif group == "ident":
            lowered = lexeme.lower()
            if lowered in KEYWORDS:
                tokens.append(Token(kind=TokenKind.KEYWORD, value=lowered, span=span))
            else:
                tokens.append(Token(kind=TokenKind.IDENT, value=lexeme, span=span))
        else:
            tokens.append(Token(kind=_SIMPLE_KINDS[group], value=lexeme, span=span))

    tokens.append(Token(kind=TokenKind.EOF, value="", span=Span(start=len(text), end=len(text))))
    return tokens
