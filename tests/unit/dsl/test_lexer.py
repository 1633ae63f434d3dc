"""Tests for the rule language tokenizer."""

from __future__ import annotations

import pytest

from trialrules.dsl.lexer import TokenKind, tokenize
from trialrules.errors import RuleSyntaxError


def _kinds(text: str) -> list[TokenKind]:
    return [t.kind for t in tokenize(text)]


class TestTokenize:
    def test_simple_range(self) -> None:
        assert _kinds("between 40 and 200") == [
            TokenKind.KEYWORD,
            TokenKind.NUMBER,
            TokenKind.KEYWORD,
            TokenKind.NUMBER,
            TokenKind.EOF,
        ]

    def test_keywords_are_case_insensitive(self) -> None:
        tokens = tokenize("BETWEEN 1 And 2")
        assert tokens[0].value == "between"
        assert tokens[2].value == "and"

    def test_identifiers_keep_spelling(self) -> None:
        token = tokenize("Systolic_BP")[0]
        assert token.kind == TokenKind.IDENT
        assert token.value == "Systolic_BP"

    def test_date_literal(self) -> None:
        token = tokenize("2024-01-15")[0]
        assert token.kind == TokenKind.DATE
        assert token.value == "2024-01-15"

    def test_range_shorthand(self) -> None:
        assert _kinds("40..200") == [
            TokenKind.NUMBER,
            TokenKind.RANGE,
            TokenKind.NUMBER,
            TokenKind.EOF,
        ]

    def test_decimal_number(self) -> None:
        token = tokenize("37.5")[0]
        assert token.kind == TokenKind.NUMBER
        assert token.value == "37.5"

    def test_two_char_operators(self) -> None:
        values = [t.value for t in tokenize("a >= 1 <> 2 == 3")]
        assert ">=" in values
        assert "<>" in values
        assert "==" in values

    def test_string_escape(self) -> None:
        token = tokenize(r"'O\'Brien'")[0]
        assert token.kind == TokenKind.STRING
        assert token.value == "O'Brien"

    def test_double_quoted_string(self) -> None:
        token = tokenize('"Male"')[0]
        assert token.value == "Male"

    def test_visit_reference_tokens(self) -> None:
        assert _kinds("weight@baseline") == [
            TokenKind.IDENT,
            TokenKind.AT,
            TokenKind.IDENT,
            TokenKind.EOF,
        ]

    def test_spans_point_into_source(self) -> None:
        tokens = tokenize("age >= 65")
        op = tokens[1]
        assert op.span.start == 4
        assert op.span.end == 6

    def test_eof_span_at_end(self) -> None:
        eof = tokenize("age")[-1]
        assert eof.kind == TokenKind.EOF
        assert eof.span.start == 3


class TestTokenizeErrors:
    def test_unterminated_string(self) -> None:
        with pytest.raises(RuleSyntaxError, match="Unterminated string"):
            tokenize("sex == 'M")

    def test_unexpected_character(self) -> None:
        with pytest.raises(RuleSyntaxError, match="Unexpected character") as exc_info:
            tokenize("age > $5")
        assert exc_info.value.span.start == 6
        assert exc_info.value.column == 7

    def test_error_line_number(self) -> None:
        with pytest.raises(RuleSyntaxError) as exc_info:
            tokenize("age > 5\nand bp < #")
        assert exc_info.value.line == 2
