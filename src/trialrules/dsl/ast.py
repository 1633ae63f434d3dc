"""Rule abstract syntax tree.

Every node kind is a frozen Pydantic model carrying its source span and,
once the semantic validator has run, its value type. ``Node`` is the
discriminated union of all kinds; both code generators ``match`` over it
and finish with ``assert_never`` so an unhandled kind is a type error.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterator
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from trialrules.errors import Span
from trialrules.models.rule import RuleContext


class ValueType(StrEnum):
    """Static type of an expression."""

    NUMERIC = "numeric"
    TEXT = "text"
    DATE = "date"
    LOGICAL = "logical"
    DURATION = "duration"


PREVIOUS_VISIT = "previous"


class _NodeBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    span: Span
    vtype: ValueType | None = None

    def children(self) -> tuple[Node, ...]:
        return ()


class Constant(_NodeBase):
    """Number, text, date or logical literal."""

    kind: Literal["constant"] = "constant"
    value: bool | float | dt.date | str


class Duration(_NodeBase):
    """``N days`` / ``N weeks`` literal used in date arithmetic."""

    kind: Literal["duration"] = "duration"
    amount: float
    unit: Literal["days", "weeks"]

    @property
    def days(self) -> float:
        return self.amount * 7 if self.unit == "weeks" else self.amount


class FieldRef(_NodeBase):
    """Reference to a field of the current record."""

    kind: Literal["field"] = "field"
    name: str


class TargetRef(_NodeBase):
    """Implicit subject of a bare constraint: the rule's own field."""

    kind: Literal["target"] = "target"


class VisitRef(_NodeBase):
    """Value of a field at another visit of the same subject."""

    kind: Literal["visit"] = "visit"
    field: str
    visit: str


class AggregateRef(_NodeBase):
    """Population statistic over every record of a field."""

    kind: Literal["aggregate"] = "aggregate"
    func: Literal["mean", "sd"]
    field: str


class FunctionCall(_NodeBase):
    """Call to one of the whitelisted scalar functions."""

    kind: Literal["call"] = "call"
    func: str
    args: tuple[Node, ...] = ()

    def children(self) -> tuple[Node, ...]:
        return self.args


class Today(_NodeBase):
    kind: Literal["today"] = "today"


class Arithmetic(_NodeBase):
    """Numeric or date arithmetic."""

    kind: Literal["arithmetic"] = "arithmetic"
    op: Literal["+", "-", "*", "/"]
    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


class Negate(_NodeBase):
    kind: Literal["negate"] = "negate"
    operand: Node

    def children(self) -> tuple[Node, ...]:
        return (self.operand,)


class Comparison(_NodeBase):
    kind: Literal["comparison"] = "comparison"
    op: Literal["==", "!=", "<", "<=", ">", ">="]
    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


class Between(_NodeBase):
    """Inclusive range check ``subject between low and high``."""

    kind: Literal["between"] = "between"
    subject: Node
    low: Node
    high: Node

    def children(self) -> tuple[Node, ...]:
        return (self.subject, self.low, self.high)


class InList(_NodeBase):
    kind: Literal["in_list"] = "in_list"
    subject: Node
    items: tuple[Constant, ...]
    negated: bool = False

    def children(self) -> tuple[Node, ...]:
        return (self.subject, *self.items)


class Required(_NodeBase):
    """Fails when the subject is absent or blank."""

    kind: Literal["required"] = "required"
    subject: Node

    def children(self) -> tuple[Node, ...]:
        return (self.subject,)


class Within(_NodeBase):
    """Tolerance check: ``subject within N days|weeks|% of reference``."""

    kind: Literal["within"] = "within"
    subject: Node
    amount: float
    unit: Literal["days", "weeks", "percent"]
    reference: Node

    def children(self) -> tuple[Node, ...]:
        return (self.subject, self.reference)

    @property
    def tolerance_days(self) -> float:
        return self.amount * 7 if self.unit == "weeks" else self.amount


class BoolOp(_NodeBase):
    kind: Literal["bool_op"] = "bool_op"
    op: Literal["and", "or"]
    operands: tuple[Node, ...]

    def children(self) -> tuple[Node, ...]:
        return self.operands


class Not(_NodeBase):
    kind: Literal["not"] = "not"
    operand: Node

    def children(self) -> tuple[Node, ...]:
        return (self.operand,)


class Conditional(_NodeBase):
    """``if cond then a [else b] endif``; a missing else branch holds."""

    kind: Literal["conditional"] = "conditional"
    condition: Node
    then: Node
    otherwise: Node | None = None

    def children(self) -> tuple[Node, ...]:
        if self.otherwise is None:
            return (self.condition, self.then)
        return (self.condition, self.then, self.otherwise)


Node = Annotated[
    Constant
    | Duration
    | FieldRef
    | TargetRef
    | VisitRef
    | AggregateRef
    | FunctionCall
    | Today
    | Arithmetic
    | Negate
    | Comparison
    | Between
    | InList
    | Required
    | Within
    | BoolOp
    | Not
    | Conditional,
    Field(discriminator="kind"),
]


class RuleAST(BaseModel):
    """Parsed rule: the expression root plus rule-level clauses."""

    model_config = ConfigDict(frozen=True)

    text: str
    root: Node
    allow_missing: bool = False
    context_hint: RuleContext | None = None


for _model in (
    _NodeBase,
    FunctionCall,
    Arithmetic,
    Negate,
    Comparison,
    Between,
    InList,
    Required,
    Within,
    BoolOp,
    Not,
    Conditional,
    RuleAST,
):
    _model.model_rebuild()


def walk(node: Node) -> Iterator[Node]:
    """Yield node and all of its descendants, depth first."""
    yield node
    for child in node.children():
        yield from walk(child)


def _format_constant(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:g}"
    if isinstance(value, dt.date):
        return value.isoformat()
    return repr(str(value))


def render(node: Node, target: str | None = None) -> str:
    """Render a node back to normalized rule text.

    Used for author feedback and as the human-readable constraint
    description attached to failures. ``target`` names the rule's field so
    bare constraints read naturally ("bp between 90 and 180").
    """
    match node:
        case Constant():
            return _format_constant(node.value)
        case Duration():
            return f"{node.amount:g} {node.unit}"
        case FieldRef():
            return node.name
        case TargetRef():
            return target or "value"
        case VisitRef():
            return f"{node.field}@{node.visit}"
        case AggregateRef():
            return f"{node.func}({node.field})"
        case FunctionCall():
            return f"{node.func}({', '.join(render(a, target) for a in node.args)})"
        case Today():
            return "today"
        case Arithmetic():
            return f"{render(node.left, target)} {node.op} {render(node.right, target)}"
        case Negate():
            return f"-{render(node.operand, target)}"
        case Comparison():
            return f"{render(node.left, target)} {node.op} {render(node.right, target)}"
        case Between():
            return (
                f"{render(node.subject, target)} between "
                f"{render(node.low, target)} and {render(node.high, target)}"
            )
        case InList():
            items = ", ".join(render(i, target) for i in node.items)
            keyword = "not in" if node.negated else "in"
            return f"{render(node.subject, target)} {keyword}({items})"
        case Required():
            return f"{render(node.subject, target)} required"
        case Within():
            unit = "%" if node.unit == "percent" else f" {node.unit}"
            return (
                f"{render(node.subject, target)} within {node.amount:g}{unit} "
                f"of {render(node.reference, target)}"
            )
        case BoolOp():
            return f" {node.op} ".join(
                f"({render(o, target)})" if isinstance(o, BoolOp) else render(o, target)
                for o in node.operands
            )
        case Not():
            return f"not ({render(node.operand, target)})"
        case Conditional():
            text = f"if {render(node.condition, target)} then {render(node.then, target)}"
            if node.otherwise is not None:
                text += f" else {render(node.otherwise, target)}"
            return text + " endif"
        case _:
            raise TypeError(f"Unknown node kind: {type(node).__name__}")


_OP_WORDS: dict[str, str] = {
    "==": "equal to",
    "!=": "different from",
    "<": "less than",
    "<=": "at most",
    ">": "greater than",
    ">=": "at least",
}


def _is_subject(node: Node, target: str) -> bool:
    return isinstance(node, TargetRef) or (isinstance(node, FieldRef) and node.name == target)


def describe(node: Node, target: str) -> str:
    """Plain-language expectation for a rule, used in failure messages.

    Bare constraints on the rule's own field read as sentences
    ("systolic_bp must be between 40 and 200"); anything else falls back
    to the normalized rule text.
    """
    match node:
        case Between() if _is_subject(node.subject, target):
            return f"{target} must be between {render(node.low, target)} and {render(node.high, target)}"
        case Comparison() if _is_subject(node.left, target):
            return f"{target} must be {_OP_WORDS[node.op]} {render(node.right, target)}"
        case InList() if _is_subject(node.subject, target):
            items = ", ".join(render(i, target) for i in node.items)
            if node.negated:
                return f"{target} must not be one of {items}"
            return f"{target} must be one of {items}"
        case Required() if _is_subject(node.subject, target):
            return f"{target} is required"
        case Within() if _is_subject(node.subject, target):
            unit = "%" if node.unit == "percent" else f" {node.unit}"
            return f"{target} must be within {node.amount:g}{unit} of {render(node.reference, target)}"
        case _:
            return f"{target} must satisfy: {render(node, target)}"
