"""Batch code generation: TypedAST -> BatchQuery.

Lowers the checked expression into plan expressions over the working
frame and chooses the frame-building steps the rule's scope needs.
"""

from __future__ import annotations

from collections import defaultdict
from typing import assert_never

from loguru import logger

from trialrules.batch.plan import (
    AggregateJoin,
    Apply,
    BatchQuery,
    ClockToday,
    Col,
    ExpectedGrid,
    Expr,
    FormJoin,
    FormScan,
    Lit,
    PreviousVisitJoin,
    Step,
    VisitJoin,
)
from trialrules.dsl.ast import (
    PREVIOUS_VISIT,
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
    ValueType,
    VisitRef,
    Within,
    describe,
)
from trialrules.dsl.semantic import TypedAST, column_key
from trialrules.errors import RuleCompileError
from trialrules.models.catalog import FieldCatalog, FieldSpec
from trialrules.models.rule import RuleContext, RuleScope
from trialrules.realtime.primitives import ARITHMETIC_PRIMITIVES, COMPARISON_PRIMITIVES


def aggregate_column(func: str, field: str) -> str:
    return f"{func}({field})"


def compile_batch(
    typed: TypedAST,
    scope: RuleScope | str,
    catalog: FieldCatalog,
    *,
    rule_id: str,
    field: str,
    form: str | None = None,
    message: str | None = None,
) -> BatchQuery:
    """Compile a TypedAST into a BatchQuery for the given scope.

    Args:
        typed: Checked rule in batch context.
        scope: Declared scope; decides which cross-record steps the plan has.
        catalog: Field catalog for form placement and coercion.
        rule_id: Id stamped on every candidate.
        field: Target field reported on every candidate.
        form: Form holding the target; defaults to the catalog's form.
        message: Custom expected-value text; defaults to a generated one.

    Raises:
        RuleCompileError: If the checked tree is inconsistent with the
            catalog or scope (a defect, not an authoring error).
    """
    scope = RuleScope(scope)
    if typed.context != RuleContext.BATCH:
        msg = f"Rule {rule_id}: cannot compile a {typed.context} rule as a batch query"
        raise RuleCompileError(msg)

    target_spec = _spec(catalog, field, rule_id)
    target_form = form or target_spec.form

    plain = sorted(name for name in typed.fields if "@" not in name)
    by_form: dict[str, list[FieldSpec]] = defaultdict(list)
    scan_fields = [target_spec]
    for name in plain:
        if name == field:
            continue
        spec = _spec(catalog, name, rule_id)
        if spec.form == target_form:
            scan_fields.append(spec)
        else:
            by_form[spec.form].append(spec)

    steps: list[Step] = [FormScan(form=target_form, target=field, fields=tuple(scan_fields))]
    if scope == RuleScope.DATASET:
        steps.append(ExpectedGrid(visits=tuple(catalog.protocol.visits)))
    for other_form in sorted(by_form):
        steps.append(FormJoin(form=other_form, fields=tuple(by_form[other_form])))

    for ref_field, visit in typed.visit_refs:
        spec = _spec(catalog, ref_field, rule_id)
        column = f"{ref_field}@{visit}"
        if visit == PREVIOUS_VISIT:
            steps.append(
                PreviousVisitJoin(
                    spec=spec, visit_order=tuple(catalog.protocol.visits), column=column
                )
            )
        else:
            steps.append(VisitJoin(spec=spec, visit=visit, column=column))

    for func, agg_field in typed.aggregates:
        spec = _spec(catalog, agg_field, rule_id)
        steps.append(
            AggregateJoin(func=func, spec=spec, column=aggregate_column(func, agg_field))
        )

    query = BatchQuery(
        rule_id=rule_id,
        field=field,
        form=target_form,
        scope=scope,
        steps=tuple(steps),
        predicate=_Lowering(rule_id).lower(typed.root),
        needed=tuple(sorted(typed.needed)),
        allow_missing=typed.allow_missing,
        expected=message or describe(typed.root, field),
    )

    if scope in (RuleScope.FIELD, RuleScope.CROSS_FIELD) and query.is_cross_record:
        msg = f"Rule {rule_id}: {scope} plan unexpectedly reaches beyond the record"
        raise RuleCompileError(msg)

    logger.debug("Compiled batch rule {} with steps {}", rule_id, query.step_kinds)
    return query


def _spec(catalog: FieldCatalog, name: str, rule_id: str) -> FieldSpec:
    spec = catalog.get(name)
    if spec is None:
        msg = f"Rule {rule_id}: field '{name}' vanished from the catalog after validation"
        raise RuleCompileError(msg)
    return spec


class _Lowering:
    def __init__(self, rule_id: str) -> None:
        self._rule_id = rule_id

    def _apply(self, primitive: str, *args: Expr, params: tuple = ()) -> Apply:
        return Apply(primitive=primitive, args=tuple(args), params=params)

    def lower(self, node: Node) -> Expr:
        match node:
            case Constant():
                if node.vtype is None:
                    msg = f"Rule {self._rule_id}: untyped constant at {node.span.start}"
                    raise RuleCompileError(msg)
                return Lit(value=node.value, vtype=node.vtype)

            case Duration():
                return Lit(value=node.days, vtype=ValueType.DURATION)

            case FieldRef() | VisitRef():
                return Col(column=column_key(node))

            case AggregateRef():
                return Col(column=aggregate_column(node.func, node.field))

            case Today():
                return ClockToday()

            case Arithmetic():
                return self._apply(
                    ARITHMETIC_PRIMITIVES[node.op], self.lower(node.left), self.lower(node.right)
                )

            case Negate():
                return self._apply("neg", self.lower(node.operand))

            case Comparison():
                return self._apply(
                    COMPARISON_PRIMITIVES[node.op], self.lower(node.left), self.lower(node.right)
                )

            case Between():
                return self._apply(
                    "between",
                    self.lower(node.subject),
                    self.lower(node.low),
                    self.lower(node.high),
                )

            case InList():
                return self._apply(
                    "not_in_list" if node.negated else "in_list",
                    self.lower(node.subject),
                    params=tuple(item.value for item in node.items),
                )

            case Required():
                return self._apply("required", self.lower(node.subject))

            case Within():
                if node.unit == "percent":
                    primitive, amount = "within_pct", node.amount
                else:
                    primitive, amount = "within_days", node.tolerance_days
                return self._apply(
                    primitive,
                    self.lower(node.subject),
                    self.lower(node.reference),
                    params=(amount,),
                )

            case BoolOp():
                return self._apply(node.op, *(self.lower(o) for o in node.operands))

            case Not():
                return self._apply("not", self.lower(node.operand))

            case Conditional():
                otherwise = (
                    Lit(value=True, vtype=ValueType.LOGICAL)
                    if node.otherwise is None
                    else self.lower(node.otherwise)
                )
                return self._apply(
                    "if_else", self.lower(node.condition), self.lower(node.then), otherwise
                )

            case FunctionCall():
                return self._apply(node.func, *(self.lower(a) for a in node.args))

            case TargetRef():
                msg = f"Rule {self._rule_id}: unresolved target reference reached the batch compiler"
                raise RuleCompileError(msg)

            case _:
                assert_never(node)
