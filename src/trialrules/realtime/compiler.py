"""Real-time code generation: TypedAST -> RealTimeValidator.

The compiler walks the type-checked tree once and composes closures that
call only functions from the primitive whitelist. Rule text is never
handed to ``eval``/``exec``/``compile``; the produced evaluator records
the set of primitive names it uses so this property can be asserted.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import date
from typing import assert_never

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
    TargetRef,
    Today,
    VisitRef,
    Within,
    describe,
)
from trialrules.dsl.semantic import TypedAST
from trialrules.errors import RuleCompileError
from trialrules.models.catalog import FieldCatalog, FieldSpec
from trialrules.models.results import ValidationResult, ValidationStatus
from trialrules.models.rule import RuleContext, Severity
from trialrules.realtime.primitives import (
    ARITHMETIC_PRIMITIVES,
    COMPARISON_PRIMITIVES,
    PRIMITIVES,
)
from trialrules.transforms.coerce import CoercionError, coerce_value, is_missing


class EvalEnv:
    """Inputs for one evaluation: coerced field values and the clock."""

    __slots__ = ("today", "values")

    def __init__(self, values: Mapping[str, object | None], today: date) -> None:
        self.values = values
        self.today = today


Evaluator = Callable[[EvalEnv], object]


class RealTimeValidator:
    """Compiled, immutable single-record evaluator for one rule."""

    __slots__ = (
        "_evaluate",
        "_specs",
        "allow_missing",
        "content_hash",
        "expected",
        "field",
        "message",
        "needed",
        "primitives",
        "rule_id",
        "severity",
    )

    def __init__(
        self,
        *,
        rule_id: str,
        content_hash: str,
        field: str,
        severity: Severity,
        message: str | None,
        expected: str,
        needed: frozenset[str],
        allow_missing: bool,
        specs: dict[str, FieldSpec],
        evaluate: Evaluator,
        primitives: frozenset[str],
    ) -> None:
        self.rule_id = rule_id
        self.content_hash = content_hash
        self.field = field
        self.severity = severity
        self.message = message
        self.expected = expected
        self.needed = needed
        self.allow_missing = allow_missing
        self.primitives = primitives
        self._specs = specs
        self._evaluate = evaluate

    def __repr__(self) -> str:
        return f"RealTimeValidator(rule_id={self.rule_id!r}, content_hash={self.content_hash!r})"

    def _result(self, status: ValidationStatus, message: str | None = None) -> ValidationResult:
        return ValidationResult(
            rule_id=self.rule_id,
            valid=status != ValidationStatus.INVALID,
            status=status,
            field=self.field,
            severity=self.severity,
            message=message,
        )

    def _failure_message(self, observed: object) -> str:
        text = self.message or self.expected
        if is_missing(observed):
            return text
        return f"{text} (observed {observed})"

    def evaluate(self, record: Mapping[str, object], *, today: date | None = None) -> ValidationResult:
        """Evaluate the rule against one record of raw form values.

        Deterministic and side-effect free given ``today``. Absent needed
        fields make the result SKIPPED (or VALID with ``allow missing``);
        an internal error fails open with status ERROR.
        """
        values: dict[str, object | None] = {}
        for name, spec in self._specs.items():
            try:
                values[name] = coerce_value(record.get(name), spec)
            except CoercionError as exc:
                return self._result(ValidationStatus.INVALID, str(exc))

        if any(values.get(name) is None for name in self.needed):
            if self.allow_missing:
                return self._result(ValidationStatus.VALID)
            return self._result(ValidationStatus.SKIPPED)

        try:
            outcome = self._evaluate(EvalEnv(values, today or date.today()))
        except Exception:
            logger.exception("Rule {} raised during real-time evaluation; failing open", self.rule_id)
            return self._result(ValidationStatus.ERROR)

        if outcome is True:
            return self._result(ValidationStatus.VALID)
        if outcome is False:
            return self._result(
                ValidationStatus.INVALID, self._failure_message(record.get(self.field))
            )
        return self._result(ValidationStatus.SKIPPED)


def compile_realtime(
    typed: TypedAST,
    catalog: FieldCatalog,
    *,
    rule_id: str,
    severity: Severity = Severity.ERROR,
    message: str | None = None,
    content_hash: str | None = None,
) -> RealTimeValidator:
    """Compile a TypedAST into a RealTimeValidator.

    Raises:
        RuleCompileError: If the tree contains something the semantic
            validator should have rejected (a defect, not an authoring error).
    """
    if typed.context != RuleContext.REALTIME:
        msg = f"Rule {rule_id}: cannot compile a {typed.context} rule for real-time use"
        raise RuleCompileError(msg)

    builder = _ClosureBuilder(rule_id)
    evaluate = builder.build(typed.root)

    specs: dict[str, FieldSpec] = {}
    for name in sorted(typed.fields | {typed.target}):
        spec = catalog.get(name)
        if spec is None:
            msg = f"Rule {rule_id}: field '{name}' vanished from the catalog after validation"
            raise RuleCompileError(msg)
        specs[name] = spec

    validator = RealTimeValidator(
        rule_id=rule_id,
        content_hash=content_hash or typed.content_hash,
        field=typed.target,
        severity=severity,
        message=message,
        expected=describe(typed.root, typed.target),
        needed=typed.needed,
        allow_missing=typed.allow_missing,
        specs=specs,
        evaluate=evaluate,
        primitives=frozenset(builder.used),
    )
    logger.debug("Compiled real-time rule {} using {}", rule_id, sorted(builder.used))
    return validator


class _ClosureBuilder:
    def __init__(self, rule_id: str) -> None:
        self._rule_id = rule_id
        self.used: set[str] = set()

    def _primitive(self, name: str) -> Callable[..., object]:
        self.used.add(name)
        return PRIMITIVES[name]

    def build(self, node: Node) -> Evaluator:
        match node:
            case Constant():
                value = node.value
                return lambda env: value

            case Duration():
                delta = self._primitive("duration")(node.days)
                return lambda env: delta

            case FieldRef():
                name = node.name
                return lambda env: env.values.get(name)

            case Today():
                today = self._primitive("today")
                return lambda env: today(env.today)

            case Arithmetic():
                op = self._primitive(ARITHMETIC_PRIMITIVES[node.op])
                left, right = self.build(node.left), self.build(node.right)
                return lambda env: op(left(env), right(env))

            case Negate():
                neg = self._primitive("neg")
                operand = self.build(node.operand)
                return lambda env: neg(operand(env))

            case Comparison():
                compare = self._primitive(COMPARISON_PRIMITIVES[node.op])
                left, right = self.build(node.left), self.build(node.right)
                return lambda env: compare(left(env), right(env))

            case Between():
                between = self._primitive("between")
                subject, low, high = (self.build(n) for n in (node.subject, node.low, node.high))
                return lambda env: between(subject(env), low(env), high(env))

            case InList():
                member = self._primitive("not_in_list" if node.negated else "in_list")
                subject = self.build(node.subject)
                items = tuple(item.value for item in node.items)
                return lambda env: member(subject(env), items)

            case Required():
                required = self._primitive("required")
                subject = self.build(node.subject)
                return lambda env: required(subject(env))

            case Within():
                subject, reference = self.build(node.subject), self.build(node.reference)
                if node.unit == "percent":
                    within = self._primitive("within_pct")
                    amount = node.amount
                else:
                    within = self._primitive("within_days")
                    amount = node.tolerance_days
                return lambda env: within(subject(env), reference(env), amount)

            case BoolOp():
                combine = self._primitive(node.op)
                operands = tuple(self.build(o) for o in node.operands)
                return lambda env: combine([o(env) for o in operands])

            case Not():
                negation = self._primitive("not")
                operand = self.build(node.operand)
                return lambda env: negation(operand(env))

            case Conditional():
                select = self._primitive("if_else")
                condition, then = self.build(node.condition), self.build(node.then)
                if node.otherwise is None:
                    otherwise: Evaluator = lambda env: True  # noqa: E731
                else:
                    otherwise = self.build(node.otherwise)
                return lambda env: select(condition(env), lambda: then(env), lambda: otherwise(env))

            case FunctionCall():
                func = self._primitive(node.func)
                args = tuple(self.build(a) for a in node.args)
                return lambda env: func(*(a(env) for a in args))

            case TargetRef() | VisitRef() | AggregateRef():
                msg = (
                    f"Rule {self._rule_id}: {node.kind} node reached the real-time "
                    "compiler; it should have been resolved or rejected earlier"
                )
                raise RuleCompileError(msg)

            case _:
                assert_never(node)
