"""Semantic validation: field resolution, type checking, scope legality.

Turns a parsed RuleAST into a TypedAST -- the single artifact consumed by
both the real-time and the batch code generators. All problems are
collected in one pass and raised together.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, ConfigDict

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
    RuleAST,
    TargetRef,
    Today,
    ValueType,
    VisitRef,
    Within,
    walk,
)
from trialrules.errors import RuleValidationError, SemanticError, Span
from trialrules.models.catalog import FieldCatalog, FieldType
from trialrules.models.rule import RuleContext, RuleScope, content_hash

_FIELD_TYPES: dict[FieldType, ValueType] = {
    FieldType.TEXT: ValueType.TEXT,
    FieldType.NUMERIC: ValueType.NUMERIC,
    FieldType.DATE: ValueType.DATE,
    FieldType.LOGICAL: ValueType.LOGICAL,
}

# name -> (allowed types per argument, return type). None allows any type.
FUNCTION_SIGNATURES: dict[str, tuple[tuple[frozenset[ValueType] | None, ...], ValueType]] = {
    "length": ((frozenset({ValueType.TEXT, ValueType.NUMERIC}),), ValueType.NUMERIC),
    "is_blank": ((None,), ValueType.LOGICAL),
    "date_diff": ((frozenset({ValueType.DATE}), frozenset({ValueType.DATE})), ValueType.NUMERIC),
    "abs": ((frozenset({ValueType.NUMERIC}),), ValueType.NUMERIC),
}

# Functions whose argument may legitimately be absent.
ABSENCE_TESTS: frozenset[str] = frozenset({"is_blank"})

_VISIT_PREFIXES: dict[str, str | None] = {"baseline_": None, "previous_": PREVIOUS_VISIT}

_ORDERED_TYPES = frozenset({ValueType.NUMERIC, ValueType.DATE, ValueType.TEXT})


def column_key(node: FieldRef | VisitRef) -> str:
    """Name under which a referenced value is exposed to the evaluators."""
    if isinstance(node, VisitRef):
        return f"{node.field}@{node.visit}"
    return node.name


class TypedAST(BaseModel):
    """Type-checked rule, ready for either code generator."""

    model_config = ConfigDict(frozen=True)

    text: str
    root: Node
    context: RuleContext
    scope: RuleScope
    target: str
    target_type: ValueType
    allow_missing: bool = False
    fields: frozenset[str]
    needed: frozenset[str]
    visit_refs: tuple[tuple[str, str], ...] = ()
    aggregates: tuple[tuple[str, str], ...] = ()
    content_hash: str


def validate(
    ast: RuleAST,
    catalog: FieldCatalog,
    context: RuleContext | str,
    *,
    scope: RuleScope | str = RuleScope.FIELD,
    target: str,
) -> TypedAST:
    """Type-check a parsed rule against the field catalog.

    Args:
        ast: Parsed rule.
        catalog: Field catalog supplying names, forms and declared types.
        context: Context the rule will execute in.
        scope: Declared breadth of records the rule depends on.
        target: Field the rule is attached to (subject of bare constraints).

    Returns:
        TypedAST with every node annotated with its value type.

    Raises:
        RuleValidationError: Carrying every SemanticError found.
    """
    context = RuleContext(context)
    scope = RuleScope(scope)
    checker = _Checker(catalog, context, scope, target)

    if context == RuleContext.REALTIME and scope != RuleScope.FIELD:
        checker.error(
            "illegal_scope",
            f"Scope '{scope}' is only allowed in batch context; "
            "real-time rules read the current record with scope 'field'",
            ast.root.span,
        )

    target_spec = catalog.get(target)
    if target_spec is None:
        checker.error("unknown_field", f"Unknown target field '{target}'", ast.root.span)

    root = checker.check(ast.root)
    if root.vtype is not None and root.vtype != ValueType.LOGICAL:
        checker.error(
            "not_a_condition",
            f"Rule must evaluate to true/false, not {root.vtype}",
            root.span,
        )

    if checker.errors:
        logger.debug("Rule failed semantic validation with {} error(s)", len(checker.errors))
        raise RuleValidationError(checker.errors)

    fields, needed = _collect_fields(root)
    visit_refs = sorted({(n.field, n.visit) for n in walk(root) if isinstance(n, VisitRef)})
    aggregates = sorted({(n.func, n.field) for n in walk(root) if isinstance(n, AggregateRef)})

    return TypedAST(
        text=ast.text,
        root=root,
        context=context,
        scope=scope,
        target=target,
        target_type=_FIELD_TYPES[target_spec.type],
        allow_missing=ast.allow_missing,
        fields=frozenset(fields),
        needed=frozenset(needed),
        visit_refs=tuple(visit_refs),
        aggregates=tuple(aggregates),
        content_hash=content_hash(ast.text, field=target, context=context, scope=scope),
    )


def _collect_fields(root: Node) -> tuple[set[str], set[str]]:
    """Return (all referenced value keys, keys whose absence skips the rule).

    A key used inside ``required`` or ``is_blank`` is tested for absence
    and therefore never makes the rule inconclusive.
    """
    referenced: set[str] = set()
    outside: set[str] = set()
    inside: set[str] = set()

    def visit(node: Node, absence_test: bool) -> None:
        if isinstance(node, (FieldRef, VisitRef)):
            key = column_key(node)
            referenced.add(key)
            (inside if absence_test else outside).add(key)
            return
        nested = absence_test or isinstance(node, Required) or (
            isinstance(node, FunctionCall) and node.func in ABSENCE_TESTS
        )
        for child in node.children():
            visit(child, nested)

    visit(root, False)
    return referenced, outside - inside


class _Checker:
    """Single-pass type checker that rebuilds the tree with value types."""

    def __init__(
        self,
        catalog: FieldCatalog,
        context: RuleContext,
        scope: RuleScope,
        target: str,
    ) -> None:
        self._catalog = catalog
        self._context = context
        self._scope = scope
        self._target = target
        self.errors: list[SemanticError] = []

    def error(self, code: str, message: str, span: Span) -> None:
        self.errors.append(SemanticError(code=code, message=message, span=span))

    def _typed(self, node: Node, vtype: ValueType | None, **updates: object) -> Node:
        return node.model_copy(update={"vtype": vtype, **updates})

    def _field_type(self, name: str, span: Span) -> ValueType | None:
        spec = self._catalog.get(name)
        if spec is None:
            self.error("unknown_field", f"Unknown field '{name}'", span)
            return None
        return _FIELD_TYPES[spec.type]

    def _require_cross_record(self, allowed: set[RuleScope], what: str, span: Span) -> None:
        if self._context != RuleContext.BATCH:
            self.error(
                "illegal_scope",
                f"{what} reaches beyond the current record and is not allowed in real-time rules",
                span,
            )
        elif self._scope not in allowed:
            names = " or ".join(sorted(s.value for s in allowed))
            self.error("illegal_scope", f"{what} requires scope {names}", span)

    def _expect(self, node: Node, allowed: set[ValueType], what: str) -> None:
        if node.vtype is not None and node.vtype not in allowed:
            names = "/".join(sorted(t.value for t in allowed))
            self.error("type_mismatch", f"{what} expects {names}, got {node.vtype}", node.span)

    def check(self, node: Node) -> Node:
        match node:
            case Constant():
                value = node.value
                if isinstance(value, bool):
                    vtype = ValueType.LOGICAL
                elif isinstance(value, float):
                    vtype = ValueType.NUMERIC
                elif isinstance(value, str):
                    vtype = ValueType.TEXT
                else:
                    vtype = ValueType.DATE
                return self._typed(node, vtype)

            case Duration():
                return self._typed(node, ValueType.DURATION)

            case TargetRef():
                ref = FieldRef(name=self._target, span=node.span)
                spec = self._catalog.get(self._target)
                return self._typed(ref, _FIELD_TYPES[spec.type] if spec else None)

            case FieldRef():
                if node.name not in self._catalog:
                    rewritten = self._visit_alias(node)
                    if rewritten is not None:
                        return self.check(rewritten)
                return self._typed(node, self._field_type(node.name, node.span))

            case VisitRef():
                self._require_cross_record({RuleScope.CROSS_VISIT}, "Visit reference", node.span)
                protocol = self._catalog.protocol
                if (
                    node.visit != PREVIOUS_VISIT
                    and protocol.visits
                    and protocol.order_of(node.visit) is None
                ):
                    self.error("unknown_visit", f"Unknown visit '{node.visit}'", node.span)
                return self._typed(node, self._field_type(node.field, node.span))

            case AggregateRef():
                self._require_cross_record(
                    {RuleScope.CROSS_PATIENT, RuleScope.DATASET},
                    f"Aggregate {node.func}()",
                    node.span,
                )
                vtype = self._field_type(node.field, node.span)
                if vtype is not None and vtype != ValueType.NUMERIC:
                    self.error(
                        "type_mismatch",
                        f"{node.func}() needs a numeric field, '{node.field}' is {vtype}",
                        node.span,
                    )
                return self._typed(node, ValueType.NUMERIC)

            case FunctionCall():
                return self._check_call(node)

            case Today():
                return self._typed(node, ValueType.DATE)

            case Arithmetic():
                left = self.check(node.left)
                right = self.check(node.right)
                vtype = self._arithmetic_type(node, left, right)
                return self._typed(node, vtype, left=left, right=right)

            case Negate():
                operand = self.check(node.operand)
                self._expect(operand, {ValueType.NUMERIC}, "Negation")
                return self._typed(node, ValueType.NUMERIC, operand=operand)

            case Comparison():
                left = self.check(node.left)
                right = self.check(node.right)
                if left.vtype and right.vtype:
                    if left.vtype != right.vtype:
                        self.error(
                            "type_mismatch",
                            f"Cannot compare {left.vtype} with {right.vtype}",
                            node.span,
                        )
                    elif node.op not in ("==", "!=") and left.vtype not in _ORDERED_TYPES:
                        self.error(
                            "type_mismatch",
                            f"Operator {node.op} is not defined for {left.vtype}",
                            node.span,
                        )
                return self._typed(node, ValueType.LOGICAL, left=left, right=right)

            case Between():
                subject = self.check(node.subject)
                low = self.check(node.low)
                high = self.check(node.high)
                self._expect(subject, {ValueType.NUMERIC, ValueType.DATE}, "between")
                for bound in (low, high):
                    if subject.vtype and bound.vtype and bound.vtype != subject.vtype:
                        self.error(
                            "type_mismatch",
                            f"between bound is {bound.vtype} but value is {subject.vtype}",
                            bound.span,
                        )
                return self._typed(
                    node, ValueType.LOGICAL, subject=subject, low=low, high=high
                )

            case InList():
                subject = self.check(node.subject)
                items = tuple(self.check(item) for item in node.items)
                for item in items:
                    if subject.vtype and item.vtype != subject.vtype:
                        self.error(
                            "type_mismatch",
                            f"List value {item.vtype} does not match {subject.vtype}",
                            item.span,
                        )
                return self._typed(node, ValueType.LOGICAL, subject=subject, items=items)

            case Required():
                subject = self.check(node.subject)
                if not isinstance(subject, (FieldRef, VisitRef)):
                    self.error("required_operand", "'required' applies to a field", node.span)
                return self._typed(node, ValueType.LOGICAL, subject=subject)

            case Within():
                subject = self.check(node.subject)
                reference = self.check(node.reference)
                if node.unit == "percent":
                    allowed, what = {ValueType.NUMERIC}, "within N%"
                else:
                    allowed, what = {ValueType.DATE}, f"within N {node.unit}"
                self._expect(subject, allowed, what)
                self._expect(reference, allowed, what)
                if node.amount < 0:
                    self.error("invalid_tolerance", "Tolerance must not be negative", node.span)
                return self._typed(
                    node, ValueType.LOGICAL, subject=subject, reference=reference
                )

            case BoolOp():
                operands = tuple(self.check(o) for o in node.operands)
                for operand in operands:
                    self._expect(operand, {ValueType.LOGICAL}, f"'{node.op}'")
                return self._typed(node, ValueType.LOGICAL, operands=operands)

            case Not():
                operand = self.check(node.operand)
                self._expect(operand, {ValueType.LOGICAL}, "'not'")
                return self._typed(node, ValueType.LOGICAL, operand=operand)

            case Conditional():
                condition = self.check(node.condition)
                then = self.check(node.then)
                otherwise = self.check(node.otherwise) if node.otherwise is not None else None
                self._expect(condition, {ValueType.LOGICAL}, "if condition")
                vtype = then.vtype
                if otherwise is None:
                    self._expect(then, {ValueType.LOGICAL}, "if without else")
                    vtype = ValueType.LOGICAL
                elif then.vtype and otherwise.vtype and then.vtype != otherwise.vtype:
                    self.error(
                        "type_mismatch",
                        f"then branch is {then.vtype} but else branch is {otherwise.vtype}",
                        node.span,
                    )
                return self._typed(
                    node, vtype, condition=condition, then=then, otherwise=otherwise
                )

            case _:
                raise TypeError(f"Unknown node kind: {type(node).__name__}")

    def _visit_alias(self, node: FieldRef) -> VisitRef | None:
        """Resolve ``baseline_weight`` / ``previous_weight`` convenience names."""
        for prefix, visit in _VISIT_PREFIXES.items():
            if node.name.startswith(prefix):
                field = node.name[len(prefix):]
                if field in self._catalog:
                    return VisitRef(
                        field=field,
                        visit=visit or self._catalog.protocol.baseline,
                        span=node.span,
                    )
        return None

    def _check_call(self, node: FunctionCall) -> Node:
        args = tuple(self.check(a) for a in node.args)

        if node.func in ("mean", "sd"):
            self.error(
                "aggregate_argument",
                f"{node.func}() takes a single field name",
                node.span,
            )
            return self._typed(node, None, args=args)

        signature = FUNCTION_SIGNATURES.get(node.func)
        if signature is None:
            self.error("unknown_function", f"Unknown function '{node.func}'", node.span)
            return self._typed(node, None, args=args)

        param_types, return_type = signature
        if len(args) != len(param_types):
            self.error(
                "arity",
                f"{node.func}() takes {len(param_types)} argument(s), got {len(args)}",
                node.span,
            )
            return self._typed(node, return_type, args=args)

        for arg, allowed in zip(args, param_types, strict=True):
            if allowed is not None:
                self._expect(arg, set(allowed), f"{node.func}()")
        return self._typed(node, return_type, args=args)

    def _arithmetic_type(self, node: Arithmetic, left: Node, right: Node) -> ValueType | None:
        lt, rt = left.vtype, right.vtype
        if lt is None or rt is None:
            return None

        if lt == rt == ValueType.NUMERIC:
            return ValueType.NUMERIC
        if node.op == "+" and {lt, rt} == {ValueType.DATE, ValueType.DURATION}:
            return ValueType.DATE
        if node.op == "-" and lt == ValueType.DATE and rt == ValueType.DURATION:
            return ValueType.DATE
        if node.op == "-" and lt == rt == ValueType.DATE:
            return ValueType.NUMERIC
        if node.op in ("+", "-") and lt == rt == ValueType.DURATION:
            return ValueType.DURATION

        self.error("type_mismatch", f"Cannot apply '{node.op}' to {lt} and {rt}", node.span)
        return None
