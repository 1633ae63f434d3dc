"""Recursive-descent parser for the validation rule language.

Grammar (lowest to highest precedence)::

    rule       := expr [ 'allow' 'missing' ] EOF
    expr       := and_expr ( 'or' and_expr )*
    and_expr   := not_expr ( 'and' not_expr )*
    not_expr   := 'not' not_expr | predicate
    predicate  := constraint | additive [ constraint ]
    constraint := cmp additive | 'between' additive 'and' additive
                | NUMBER '..' NUMBER | ['not'] 'in' '(' literals ')'
                | 'required' | 'within' NUMBER (days|weeks|%) 'of' additive
    additive   := term ( ('+'|'-') term )*
    term       := unary ( ('*'|'/') unary )*
    unary      := '-' unary | primary
    primary    := literal | duration | 'today' | IDENT ['@' IDENT]
                | IDENT '(' args ')' | '(' expr ')'
                | 'if' expr 'then' expr ['else' expr] 'endif'

A constraint with no subject applies to the rule's target field. The
parser stops at the first error; it never guesses past malformed input.
"""

from __future__ import annotations

import datetime as dt

from loguru import logger

from trialrules.dsl.ast import (
    AggregateRef,
    Arithmetic,
    Between,
    BoolOp,
    Comparison,
    Conditional,
    Constant,
    Duration,
    FieldRef,
    FunctionCall,
    InList,
    Negate,
    Node,
    Not,
    Required,
    RuleAST,
    TargetRef,
    Today,
    VisitRef,
    Within,
)
from trialrules.dsl.lexer import Token, TokenKind, tokenize
from trialrules.errors import RuleSyntaxError, Span
from trialrules.models.rule import RuleContext

COMPARISON_OPS: frozenset[str] = frozenset({"==", "=", "!=", "<>", "<", "<=", ">", ">="})
_NORMALIZED_OPS: dict[str, str] = {"=": "==", "<>": "!="}
_DAY_UNITS: dict[str, str] = {"day": "days", "days": "days", "week": "weeks", "weeks": "weeks"}
AGGREGATE_FUNCS: frozenset[str] = frozenset({"mean", "sd"})


def parse(text: str, context_hint: RuleContext | str | None = None) -> RuleAST:
    """Parse rule text into a RuleAST.

    Args:
        text: Rule source.
        context_hint: Context the rule is being authored for; recorded on
            the AST for the semantic validator and diagnostics.

    Raises:
        RuleSyntaxError: With the span of the first offending token.
    """
    hint = RuleContext(context_hint) if context_hint is not None else None
    ast = _Parser(text).parse_rule(hint)
    logger.debug("Parsed rule ({} chars, allow_missing={})", len(text), ast.allow_missing)
    return ast


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = tokenize(text)
        self._pos = 0

    # -- token helpers -----------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        index = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        if token.kind != TokenKind.EOF:
            self._pos += 1
        return token

    @property
    def _last_end(self) -> int:
        if self._pos == 0:
            return 0
        return self._tokens[self._pos - 1].span.end

    def _span_from(self, start: int) -> Span:
        return Span(start=start, end=max(self._last_end, start))

    def _error(self, message: str, token: Token | None = None) -> RuleSyntaxError:
        token = token or self._peek()
        return RuleSyntaxError(message, token.span, self._text)

    def _describe(self, token: Token) -> str:
        if token.kind == TokenKind.EOF:
            return "end of rule"
        return repr(token.value)

    def _expect_keyword(self, word: str) -> Token:
        token = self._peek()
        if not token.is_keyword(word):
            raise self._error(f"Expected '{word}' but found {self._describe(token)}", token)
        return self._advance()

    def _expect(self, kind: TokenKind, what: str) -> Token:
        token = self._peek()
        if token.kind != kind:
            raise self._error(f"Expected {what} but found {self._describe(token)}", token)
        return self._advance()

    # -- grammar -----------------------------------------------------------

    def parse_rule(self, context_hint: RuleContext | None) -> RuleAST:
        if self._peek().kind == TokenKind.EOF:
            raise self._error("Rule text is empty")

        root = self._expr()

        allow_missing = False
        if self._peek().is_keyword("allow"):
            self._advance()
            self._expect_keyword("missing")
            allow_missing = True

        trailing = self._peek()
        if trailing.kind != TokenKind.EOF:
            raise self._error(f"Unexpected {self._describe(trailing)} after end of rule", trailing)

        return RuleAST(
            text=self._text,
            root=root,
            allow_missing=allow_missing,
            context_hint=context_hint,
        )

    def _expr(self) -> Node:
        start = self._peek().span.start
        operands = [self._and_expr()]
        while self._peek().is_keyword("or"):
            self._advance()
            operands.append(self._and_expr())
        if len(operands) == 1:
            return operands[0]
        return BoolOp(op="or", operands=tuple(operands), span=self._span_from(start))

    def _and_expr(self) -> Node:
        start = self._peek().span.start
        operands = [self._not_expr()]
        while self._peek().is_keyword("and"):
            self._advance()
            operands.append(self._not_expr())
        if len(operands) == 1:
            return operands[0]
        return BoolOp(op="and", operands=tuple(operands), span=self._span_from(start))

    def _not_expr(self) -> Node:
        token = self._peek()
        if token.is_keyword("not") and not self._peek(1).is_keyword("in"):
            self._advance()
            operand = self._not_expr()
            return Not(operand=operand, span=self._span_from(token.span.start))
        return self._predicate()

    def _starts_constraint(self, implicit: bool) -> bool:
        token = self._peek()
        if token.kind == TokenKind.OP and token.value in COMPARISON_OPS:
            return True
        if token.is_keyword("between", "in", "required", "within"):
            return True
        if token.is_keyword("not") and self._peek(1).is_keyword("in"):
            return True
        return implicit and self._starts_range()

    def _starts_range(self) -> bool:
        offset = 1 if self._peek().is_op("-") else 0
        return (
            self._peek(offset).kind == TokenKind.NUMBER
            and self._peek(offset + 1).kind == TokenKind.RANGE
        )

    def _predicate(self) -> Node:
        start_token = self._peek()
        if self._starts_constraint(implicit=True):
            subject = TargetRef(span=Span(start=start_token.span.start, end=start_token.span.start))
            return self._constraint(subject)

        left = self._additive()
        if self._starts_constraint(implicit=False):
            return self._constraint(left)
        return left

    def _constraint(self, subject: Node) -> Node:
        start = min(subject.span.start, self._peek().span.start)
        if self._starts_range():
            low = self._signed_number()
            self._expect(TokenKind.RANGE, "'..'")
            high = self._signed_number()
            return Between(subject=subject, low=low, high=high, span=self._span_from(start))

        token = self._advance()

        if token.kind == TokenKind.OP:
            right = self._additive()
            op = _NORMALIZED_OPS.get(token.value, token.value)
            return Comparison(op=op, left=subject, right=right, span=self._span_from(start))

        if token.is_keyword("between"):
            low = self._additive()
            self._expect_keyword("and")
            high = self._additive()
            return Between(subject=subject, low=low, high=high, span=self._span_from(start))

        if token.is_keyword("not"):
            self._expect_keyword("in")
            items = self._literal_list()
            return InList(subject=subject, items=items, negated=True, span=self._span_from(start))

        if token.is_keyword("in"):
            items = self._literal_list()
            return InList(subject=subject, items=items, span=self._span_from(start))

        if token.is_keyword("required"):
            return Required(subject=subject, span=self._span_from(start))

        if token.is_keyword("within"):
            amount_token = self._expect(TokenKind.NUMBER, "a number after 'within'")
            unit_token = self._peek()
            if unit_token.kind == TokenKind.PERCENT:
                unit = "percent"
            elif unit_token.kind == TokenKind.KEYWORD and unit_token.value in _DAY_UNITS:
                unit = _DAY_UNITS[unit_token.value]
            else:
                raise self._error(
                    f"Expected 'days', 'weeks' or '%' but found {self._describe(unit_token)}",
                    unit_token,
                )
            self._advance()
            self._expect_keyword("of")
            reference = self._additive()
            return Within(
                subject=subject,
                amount=float(amount_token.value),
                unit=unit,
                reference=reference,
                span=self._span_from(start),
            )

        raise self._error(f"Unexpected {self._describe(token)}", token)

    def _signed_number(self) -> Constant:
        start = self._peek().span.start
        sign = 1.0
        if self._peek().is_op("-"):
            self._advance()
            sign = -1.0
        token = self._expect(TokenKind.NUMBER, "a number")
        return Constant(value=sign * float(token.value), span=self._span_from(start))

    def _literal_list(self) -> tuple[Constant, ...]:
        self._expect(TokenKind.LPAREN, "'('")
        items = [self._list_literal()]
        while self._peek().kind == TokenKind.COMMA:
            self._advance()
            items.append(self._list_literal())
        self._expect(TokenKind.RPAREN, "')'")
        return tuple(items)

    def _list_literal(self) -> Constant:
        token = self._peek()
        if token.kind == TokenKind.NUMBER or token.is_op("-"):
            return self._signed_number()
        if token.kind == TokenKind.STRING:
            self._advance()
            return Constant(value=token.value, span=token.span)
        if token.kind == TokenKind.DATE:
            self._advance()
            return Constant(value=self._date_value(token), span=token.span)
        if token.is_keyword("true", "false"):
            self._advance()
            return Constant(value=token.value == "true", span=token.span)
        raise self._error(f"Expected a literal value but found {self._describe(token)}", token)

    def _additive(self) -> Node:
        start = self._peek().span.start
        left = self._term()
        while self._peek().is_op("+", "-"):
            op = self._advance().value
            right = self._term()
            left = Arithmetic(op=op, left=left, right=right, span=self._span_from(start))
        return left

    def _term(self) -> Node:
        start = self._peek().span.start
        left = self._unary()
        while self._peek().is_op("*", "/"):
            op = self._advance().value
            right = self._unary()
            left = Arithmetic(op=op, left=left, right=right, span=self._span_from(start))
        return left

    def _unary(self) -> Node:
        token = self._peek()
        if token.is_op("-"):
            self._advance()
            operand = self._unary()
            if isinstance(operand, Constant) and isinstance(operand.value, float):
                return Constant(value=-operand.value, span=self._span_from(token.span.start))
            return Negate(operand=operand, span=self._span_from(token.span.start))
        return self._primary()

    def _date_value(self, token: Token) -> dt.date:
        try:
            return dt.date.fromisoformat(token.value)
        except ValueError:
            raise self._error(f"Invalid calendar date {token.value!r}", token) from None

    def _primary(self) -> Node:
        token = self._peek()

        if token.kind == TokenKind.NUMBER:
            self._advance()
            unit_token = self._peek()
            if unit_token.kind == TokenKind.KEYWORD and unit_token.value in _DAY_UNITS:
                self._advance()
                return Duration(
                    amount=float(token.value),
                    unit=_DAY_UNITS[unit_token.value],
                    span=self._span_from(token.span.start),
                )
            return Constant(value=float(token.value), span=token.span)

        if token.kind == TokenKind.STRING:
            self._advance()
            return Constant(value=token.value, span=token.span)

        if token.kind == TokenKind.DATE:
            self._advance()
            return Constant(value=self._date_value(token), span=token.span)

        if token.is_keyword("true", "false"):
            self._advance()
            return Constant(value=token.value == "true", span=token.span)

        if token.is_keyword("today"):
            self._advance()
            if self._peek().kind == TokenKind.LPAREN:
                self._advance()
                self._expect(TokenKind.RPAREN, "')'")
            return Today(span=self._span_from(token.span.start))

        if token.kind == TokenKind.IDENT:
            return self._identifier()

        if token.kind == TokenKind.LPAREN:
            self._advance()
            inner = self._expr()
            self._expect(TokenKind.RPAREN, "')'")
            return inner

        if token.is_keyword("if"):
            return self._conditional()

        if token.kind == TokenKind.EOF:
            raise self._error("Unexpected end of rule", token)
        raise self._error(f"Expected a value but found {self._describe(token)}", token)

    def _identifier(self) -> Node:
        token = self._advance()
        start = token.span.start

        if self._peek().kind == TokenKind.LPAREN:
            self._advance()
            args: list[Node] = []
            if self._peek().kind != TokenKind.RPAREN:
                args.append(self._expr())
                while self._peek().kind == TokenKind.COMMA:
                    self._advance()
                    args.append(self._expr())
            self._expect(TokenKind.RPAREN, "')'")
            func = token.value.lower()
            span = self._span_from(start)
            if func in AGGREGATE_FUNCS and len(args) == 1 and isinstance(args[0], FieldRef):
                return AggregateRef(func=func, field=args[0].name, span=span)
            return FunctionCall(func=func, args=tuple(args), span=span)

        if self._peek().kind == TokenKind.AT:
            self._advance()
            visit_token = self._expect(TokenKind.IDENT, "a visit name after '@'")
            return VisitRef(field=token.value, visit=visit_token.value, span=self._span_from(start))

        return FieldRef(name=token.value, span=token.span)

    def _conditional(self) -> Node:
        start = self._advance().span.start
        condition = self._expr()
        self._expect_keyword("then")
        then = self._expr()
        otherwise = None
        if self._peek().is_keyword("else"):
            self._advance()
            otherwise = self._expr()
        self._expect_keyword("endif")
        return Conditional(
            condition=condition,
            then=then,
            otherwise=otherwise,
            span=self._span_from(start),
        )
