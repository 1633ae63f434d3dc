"""Batch query plans.

A BatchQuery is a frozen object graph: a list of frame-building steps
(scan the target form, join other forms, bring in other visits'
values, attach population statistics, expand to the protocol grid)
followed by one predicate expression. Executing it against a data
snapshot yields one ViolationCandidate per failing subject/visit/field.

Expression nodes only name primitives from ``VECTOR_PRIMITIVES``; there
is no string query text anywhere in a plan.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Literal, assert_never

import pandas as pd
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from trialrules.batch.source import (
    SUBJECT_COLUMN,
    VISIT_COLUMN,
    FormNotFound,
    Snapshot,
)
from trialrules.batch.vectorized import VECTOR_PRIMITIVES
from trialrules.dsl.ast import ValueType
from trialrules.errors import RuleFailure
from trialrules.models.catalog import FieldSpec
from trialrules.models.results import ViolationCandidate
from trialrules.models.rule import RuleScope
from trialrules.transforms.coerce import coerce_series, unreadable_mask, unreadable_message

OBSERVED_COLUMN = "__observed"
UNREADABLE_COLUMN = "__unreadable"
_JOINED_UNREADABLE = "__unreadable_joined"
PRESENT_COLUMN = "__present"
MISSING_RECORD = "record expected by protocol"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


class Col(_Frozen):
    """A column of the working frame."""

    kind: Literal["col"] = "col"
    column: str


class Lit(_Frozen):
    """Literal broadcast to every row; durations stay scalar."""

    kind: Literal["lit"] = "lit"
    value: bool | float | date | str
    vtype: ValueType


class ClockToday(_Frozen):
    kind: Literal["today"] = "today"


class Apply(_Frozen):
    """Call of a whitelisted vectorized primitive.

    ``params`` are plain constants passed after the evaluated arguments
    (list members, tolerances).
    """

    kind: Literal["apply"] = "apply"
    primitive: str
    args: tuple[Expr, ...] = ()
    params: tuple[bool | float | date | str, ...] = ()

    @field_validator("primitive")
    @classmethod
    def _whitelisted(cls, name: str) -> str:
        if name not in VECTOR_PRIMITIVES:
            msg = f"'{name}' is not a whitelisted batch primitive"
            raise ValueError(msg)
        return name


Expr = Annotated[Col | Lit | ClockToday | Apply, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Frame-building steps
# ---------------------------------------------------------------------------


class FormScan(_Frozen):
    """Project the target form: keys, coerced fields and the raw target value."""

    kind: Literal["scan"] = "scan"
    form: str
    target: str
    fields: tuple[FieldSpec, ...]


class FormJoin(_Frozen):
    """Left-join fields of another form on subject (and visit when both have one)."""

    kind: Literal["join"] = "join"
    form: str
    fields: tuple[FieldSpec, ...]


class VisitJoin(_Frozen):
    """Bring a field's value at a named visit alongside every row of the subject."""

    kind: Literal["visit_join"] = "visit_join"
    spec: FieldSpec
    visit: str
    column: str


class PreviousVisitJoin(_Frozen):
    """Bring a field's value at the subject's prior visit in protocol order."""

    kind: Literal["previous_join"] = "previous_join"
    spec: FieldSpec
    visit_order: tuple[str, ...] = ()
    column: str


class AggregateJoin(_Frozen):
    """Attach a population statistic (mean or sample sd) as a constant column."""

    kind: Literal["aggregate"] = "aggregate"
    func: Literal["mean", "sd"]
    spec: FieldSpec
    column: str


class ExpectedGrid(_Frozen):
    """Outer-join the frame with every subject x protocol visit pair."""

    kind: Literal["grid"] = "grid"
    visits: tuple[str, ...] = ()


Step = Annotated[
    FormScan | FormJoin | VisitJoin | PreviousVisitJoin | AggregateJoin | ExpectedGrid,
    Field(discriminator="kind"),
]

CROSS_RECORD_STEPS = frozenset({"visit_join", "previous_join", "aggregate", "grid"})


class BatchQuery(_Frozen):
    """Executable, immutable plan for one batch rule."""

    rule_id: str
    field: str
    form: str
    scope: RuleScope
    steps: tuple[Step, ...]
    predicate: Expr
    needed: tuple[str, ...] = ()
    allow_missing: bool = False
    expected: str

    @property
    def step_kinds(self) -> list[str]:
        return [step.kind for step in self.steps]

    @property
    def is_cross_record(self) -> bool:
        return any(kind in CROSS_RECORD_STEPS for kind in self.step_kinds)

    def execute(self, snapshot: Snapshot, *, today: date) -> list[ViolationCandidate]:
        """Run the plan against a data snapshot.

        Raises:
            RuleFailure: If a form or column the plan needs is missing, or
                the data cannot be evaluated.
        """
        return _PlanRun(self, snapshot, today).candidates()


Apply.model_rebuild()
BatchQuery.model_rebuild()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class _PlanRun:
    def __init__(self, query: BatchQuery, snapshot: Snapshot, today: date) -> None:
        self._query = query
        self._snapshot = snapshot
        self._today = today

    def _fail(self, message: str) -> RuleFailure:
        return RuleFailure(self._query.rule_id, message)

    def _load(self, form: str, specs: tuple[FieldSpec, ...] = ()) -> pd.DataFrame:
        try:
            df = self._snapshot.form(form)
        except FormNotFound:
            raise self._fail(f"form '{form}' not found in data source") from None
        required = [SUBJECT_COLUMN, *(s.name for s in specs)]
        for column in required:
            if column not in df.columns:
                raise self._fail(f"column '{column}' not found in form '{form}'")
        return df

    def _keys(self, df: pd.DataFrame) -> pd.DataFrame:
        keys = pd.DataFrame({SUBJECT_COLUMN: df[SUBJECT_COLUMN].astype("string")}, index=df.index)
        if VISIT_COLUMN in df.columns:
            keys[VISIT_COLUMN] = df[VISIT_COLUMN].astype("string")
        return keys

    def frame(self) -> pd.DataFrame:
        frame: pd.DataFrame | None = None
        for step in self._query.steps:
            frame = self._apply(step, frame)
        if frame is None:
            raise self._fail("plan has no steps")
        return frame

    def _coerce_fields(
        self, df: pd.DataFrame, specs: tuple[FieldSpec, ...], out: pd.DataFrame
    ) -> pd.Series:
        """Add the coerced columns to ``out``.

        Returns, per row, why the first unreadable value could not be used
        (NA when every value was readable or missing).
        """
        unreadable = pd.Series(pd.NA, index=df.index, dtype="string")
        for spec in specs:
            coerced = coerce_series(df[spec.name], spec)
            out[spec.name] = coerced
            bad = unreadable_mask(df[spec.name], coerced, spec) & unreadable.isna()
            if bad.any():
                logger.debug(
                    "Rule {}: {} unreadable value(s) in {}",
                    self._query.rule_id,
                    int(bad.sum()),
                    spec.name,
                )
                unreadable = unreadable.mask(bad, unreadable_message(spec))
        return unreadable

    def _apply(self, step: Step, frame: pd.DataFrame | None) -> pd.DataFrame:
        match step:
            case FormScan():
                df = self._load(step.form, step.fields)
                out = self._keys(df)
                out[UNREADABLE_COLUMN] = self._coerce_fields(df, step.fields, out)
                out[OBSERVED_COLUMN] = df[step.target]
                return out.reset_index(drop=True)

            case FormJoin():
                assert frame is not None
                df = self._load(step.form, step.fields)
                other = self._keys(df)
                other[_JOINED_UNREADABLE] = self._coerce_fields(df, step.fields, other)
                on = [SUBJECT_COLUMN]
                if VISIT_COLUMN in other.columns and VISIT_COLUMN in frame.columns:
                    on.append(VISIT_COLUMN)
                columns = [*on, *(s.name for s in step.fields), _JOINED_UNREADABLE]
                other = other[columns].drop_duplicates(subset=on)
                merged = frame.merge(other, on=on, how="left")
                joined = merged.pop(_JOINED_UNREADABLE)
                merged[UNREADABLE_COLUMN] = merged[UNREADABLE_COLUMN].fillna(joined)
                return merged

            case VisitJoin():
                assert frame is not None
                df = self._load(step.spec.form, (step.spec,))
                if VISIT_COLUMN not in df.columns:
                    raise self._fail(f"form '{step.spec.form}' has no visit column")
                rows = df[df[VISIT_COLUMN].astype("string") == step.visit]
                other = pd.DataFrame(
                    {
                        SUBJECT_COLUMN: rows[SUBJECT_COLUMN].astype("string"),
                        step.column: coerce_series(rows[step.spec.name], step.spec),
                    }
                ).drop_duplicates(subset=[SUBJECT_COLUMN])
                return frame.merge(other, on=SUBJECT_COLUMN, how="left")

            case PreviousVisitJoin():
                assert frame is not None
                df = self._load(step.spec.form, (step.spec,))
                if VISIT_COLUMN not in df.columns or VISIT_COLUMN not in frame.columns:
                    raise self._fail(f"form '{step.spec.form}' has no visit column")
                other = self._keys(df)
                other[step.column] = coerce_series(df[step.spec.name], step.spec)
                order = list(step.visit_order) or list(pd.unique(other[VISIT_COLUMN].dropna()))
                other["__order"] = other[VISIT_COLUMN].map({v: i for i, v in enumerate(order)})
                other = other.dropna(subset=["__order"]).sort_values([SUBJECT_COLUMN, "__order"])
                other[step.column] = other.groupby(SUBJECT_COLUMN)[step.column].shift(1)
                other = other[[SUBJECT_COLUMN, VISIT_COLUMN, step.column]].drop_duplicates(
                    subset=[SUBJECT_COLUMN, VISIT_COLUMN]
                )
                return frame.merge(other, on=[SUBJECT_COLUMN, VISIT_COLUMN], how="left")

            case AggregateJoin():
                assert frame is not None
                df = self._load(step.spec.form, (step.spec,))
                values = coerce_series(df[step.spec.name], step.spec).astype("Float64")
                stat = values.mean() if step.func == "mean" else values.std(ddof=1)
                if pd.isna(stat):
                    stat = pd.NA
                logger.debug(
                    "Rule {}: {}({}) = {}", self._query.rule_id, step.func, step.spec.name, stat
                )
                out = frame.copy()
                out[step.column] = pd.Series(stat, index=out.index, dtype="Float64")
                return out

            case ExpectedGrid():
                assert frame is not None
                if VISIT_COLUMN not in frame.columns:
                    raise self._fail(f"form '{self._query.form}' has no visit column")
                visits = list(step.visits) or sorted(frame[VISIT_COLUMN].dropna().unique())
                subjects = self._snapshot.subjects()
                grid = pd.DataFrame(
                    [(s, v) for s in subjects for v in visits],
                    columns=[SUBJECT_COLUMN, VISIT_COLUMN],
                ).astype("string")
                present = frame.assign(**{PRESENT_COLUMN: True})
                merged = grid.merge(present, on=[SUBJECT_COLUMN, VISIT_COLUMN], how="outer")
                merged[PRESENT_COLUMN] = merged[PRESENT_COLUMN].astype("boolean").fillna(False)
                return merged

            case _:
                assert_never(step)

    def _evaluate(self, expr: Expr, frame: pd.DataFrame) -> object:
        match expr:
            case Col():
                if expr.column not in frame.columns:
                    raise self._fail(f"column '{expr.column}' missing from working frame")
                return frame[expr.column]

            case Lit():
                return _broadcast(expr, frame.index)

            case ClockToday():
                return VECTOR_PRIMITIVES["today"](self._today, frame.index)

            case Apply():
                args = [self._evaluate(a, frame) for a in expr.args]
                return VECTOR_PRIMITIVES[expr.primitive](*args, *expr.params)

            case _:
                assert_never(expr)

    def candidates(self) -> list[ViolationCandidate]:
        query = self._query
        frame = self.frame()

        try:
            outcome = pd.Series(self._evaluate(query.predicate, frame), index=frame.index)
        except RuleFailure:
            raise
        except (TypeError, ValueError, KeyError) as exc:
            raise self._fail(f"could not evaluate predicate: {exc}") from exc
        outcome = outcome.astype("boolean")

        if query.needed:
            absent = frame[list(query.needed)].isna().any(axis=1)
            outcome = outcome.mask(absent, True) if query.allow_missing else outcome.mask(absent)
        failing = outcome.eq(False).fillna(False).astype(bool)
        unreadable = frame[UNREADABLE_COLUMN].notna().astype(bool)
        failing = failing | unreadable

        missing_record = pd.Series(False, index=frame.index)
        if PRESENT_COLUMN in frame.columns:
            present = frame[PRESENT_COLUMN].astype(bool)
            missing_record = ~present
            failing = failing & present

        has_visit = VISIT_COLUMN in frame.columns
        found: list[ViolationCandidate] = []
        for idx in frame.index[failing | missing_record]:
            row = frame.loc[idx]
            observed = row.get(OBSERVED_COLUMN)
            visit = row[VISIT_COLUMN] if has_visit else None
            found.append(
                ViolationCandidate(
                    rule_id=query.rule_id,
                    subject_id=str(row[SUBJECT_COLUMN]),
                    visit=None if visit is None or pd.isna(visit) else str(visit),
                    field=query.field,
                    observed_value=None if observed is None or pd.isna(observed) else str(observed),
                    expected=self._expected(row, missing_record[idx]),
                )
            )

        found.sort(key=lambda c: (c.subject_id, c.visit or "", c.field))
        logger.debug(
            "Rule {}: {} row(s) checked, {} candidate(s)", query.rule_id, len(frame), len(found)
        )
        return found

    def _expected(self, row: pd.Series, missing_record: bool) -> str:
        if missing_record:
            return MISSING_RECORD
        reason = row[UNREADABLE_COLUMN]
        return self._query.expected if pd.isna(reason) else str(reason)


def _broadcast(lit: Lit, index: pd.Index) -> object:
    match lit.vtype:
        case ValueType.NUMERIC:
            return pd.Series(float(lit.value), index=index, dtype="Float64")
        case ValueType.TEXT:
            return pd.Series(str(lit.value), index=index, dtype="string")
        case ValueType.DATE:
            return pd.Series(pd.Timestamp(lit.value), index=index)
        case ValueType.LOGICAL:
            return pd.Series(bool(lit.value), index=index, dtype="boolean")
        case ValueType.DURATION:
            return VECTOR_PRIMITIVES["duration"](float(lit.value))
        case _:
            assert_never(lit.vtype)
