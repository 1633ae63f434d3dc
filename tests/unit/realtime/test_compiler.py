"""Tests for real-time code generation and evaluation."""

from __future__ import annotations

import builtins
import types
from datetime import date
from unittest.mock import patch

import pytest

from trialrules.dsl.parser import parse
from trialrules.dsl.semantic import validate
from trialrules.errors import RuleCompileError
from trialrules.models.catalog import FieldCatalog, FieldSpec, FieldType
from trialrules.models.results import ValidationStatus
from trialrules.models.rule import Rule, RuleContext, RuleScope, Severity
from trialrules.pipeline import build_realtime
from trialrules.realtime import primitives
from trialrules.realtime.compiler import RealTimeValidator, compile_realtime

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def catalog() -> FieldCatalog:
    return FieldCatalog.from_specs(
        [
            FieldSpec(name="systolic_bp", form="vitals", type=FieldType.NUMERIC),
            FieldSpec(name="bp", form="vitals", type=FieldType.NUMERIC),
            FieldSpec(name="age", form="demographics", type=FieldType.NUMERIC),
            FieldSpec(name="sex", form="demographics", type=FieldType.TEXT),
            FieldSpec(name="smoker", form="demographics", type=FieldType.LOGICAL),
            FieldSpec(name="visit_date", form="vitals", type=FieldType.DATE),
            FieldSpec(name="consent_date", form="demographics", type=FieldType.DATE),
        ]
    )


def _compile(
    catalog: FieldCatalog,
    text: str,
    field: str,
    *,
    message: str | None = None,
    scope: RuleScope = RuleScope.FIELD,
) -> RealTimeValidator:
    rule = Rule(
        rule_id="R1",
        text=text,
        field=field,
        scope=scope,
        severity=Severity.ERROR,
        message=message,
    )
    return build_realtime(rule, catalog)


def _functions(obj: object, seen: set[int] | None = None) -> list[types.FunctionType]:
    """Every Python function reachable through closure cells."""
    seen = seen if seen is not None else set()
    if id(obj) in seen:
        return []
    seen.add(id(obj))
    found: list[types.FunctionType] = []
    if isinstance(obj, types.FunctionType):
        found.append(obj)
        for cell in obj.__closure__ or ():
            found.extend(_functions(cell.cell_contents, seen))
    elif isinstance(obj, tuple):
        for item in obj:
            found.extend(_functions(item, seen))
    return found


# ------------------------------------------------------------------ #
# Concrete scenarios
# ------------------------------------------------------------------ #


class TestRangeRule:
    def test_out_of_range_is_invalid(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "between 40 and 200", "systolic_bp")
        result = validator.evaluate({"systolic_bp": 35})
        assert result.status == ValidationStatus.INVALID
        assert not result.valid
        assert "40" in result.message
        assert "200" in result.message
        assert "observed 35" in result.message
        assert result.field == "systolic_bp"
        assert result.severity == Severity.ERROR

    @pytest.mark.parametrize("value", [40, 200, 120.5, "40", " 200 "])
    def test_bounds_are_inclusive(self, catalog: FieldCatalog, value: object) -> None:
        validator = _compile(catalog, "between 40 and 200", "systolic_bp")
        assert validator.evaluate({"systolic_bp": value}).status == ValidationStatus.VALID

    @pytest.mark.parametrize("value", [39.99, 200.01, -5])
    def test_outside_bounds(self, catalog: FieldCatalog, value: float) -> None:
        validator = _compile(catalog, "40..200", "systolic_bp")
        assert validator.evaluate({"systolic_bp": value}).status == ValidationStatus.INVALID

    def test_custom_message(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "between 40 and 200", "systolic_bp", message="BP implausible")
        result = validator.evaluate({"systolic_bp": 250})
        assert result.message == "BP implausible (observed 250)"


class TestConditionalRule:
    TEXT = "if age >= 65 then between 90 and 180 else between 110 and 200 endif"

    def test_elderly_in_range(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, self.TEXT, "bp")
        assert validator.evaluate({"age": 70, "bp": 150}).status == ValidationStatus.VALID

    def test_young_out_of_range(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, self.TEXT, "bp")
        result = validator.evaluate({"age": 40, "bp": 250})
        assert result.status == ValidationStatus.INVALID

    def test_branch_chosen_by_condition(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, self.TEXT, "bp")
        assert validator.evaluate({"age": 70, "bp": 100}).status == ValidationStatus.VALID
        assert validator.evaluate({"age": 40, "bp": 100}).status == ValidationStatus.INVALID

    def test_missing_else_holds(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "if age >= 65 then between 90 and 180 endif", "bp")
        assert validator.evaluate({"age": 40, "bp": 250}).status == ValidationStatus.VALID


# ------------------------------------------------------------------ #
# Missing values and coercion
# ------------------------------------------------------------------ #


class TestMissingValues:
    def test_absent_field_skips(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "between 40 and 200", "systolic_bp")
        result = validator.evaluate({})
        assert result.status == ValidationStatus.SKIPPED
        assert result.valid

    def test_missing_token_skips(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "between 40 and 200", "systolic_bp")
        assert validator.evaluate({"systolic_bp": "NA"}).status == ValidationStatus.SKIPPED

    def test_allow_missing_is_valid(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "between 40 and 200 allow missing", "systolic_bp")
        assert validator.evaluate({"systolic_bp": ""}).status == ValidationStatus.VALID

    def test_required_fails_on_blank(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "required", "sex")
        result = validator.evaluate({"sex": "  "})
        assert result.status == ValidationStatus.INVALID
        assert result.message == "sex is required"

    def test_conditional_required(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "if smoker == true then sex required endif", "sex")
        assert validator.evaluate({"smoker": "yes"}).status == ValidationStatus.INVALID
        assert validator.evaluate({"smoker": "no"}).status == ValidationStatus.VALID

    def test_unreadable_number_is_invalid(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "between 40 and 200", "systolic_bp")
        result = validator.evaluate({"systolic_bp": "abc"})
        assert result.status == ValidationStatus.INVALID
        assert "is not a number" in result.message


class TestValueKinds:
    def test_text_list_ignores_case(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "in ('M', 'F')", "sex")
        assert validator.evaluate({"sex": "m"}).status == ValidationStatus.VALID
        result = validator.evaluate({"sex": "X"})
        assert result.status == ValidationStatus.INVALID
        assert result.message == "sex must be one of 'M', 'F' (observed X)"

    def test_date_window(self, catalog: FieldCatalog) -> None:
        validator = _compile(
            catalog,
            "visit_date within 7 days of consent_date",
            "visit_date",
        )
        ok = validator.evaluate({"visit_date": "2024-01-08", "consent_date": "01 Jan 2024"})
        late = validator.evaluate({"visit_date": "2024-01-09", "consent_date": "2024-01-01"})
        assert ok.status == ValidationStatus.VALID
        assert late.status == ValidationStatus.INVALID

    def test_today_uses_supplied_clock(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "visit_date <= today", "visit_date")
        record = {"visit_date": "2024-06-01"}
        assert validator.evaluate(record, today=date(2024, 6, 1)).status == ValidationStatus.VALID
        assert validator.evaluate(record, today=date(2024, 5, 31)).status == ValidationStatus.INVALID

    def test_future_window(self, catalog: FieldCatalog) -> None:
        validator = _compile(catalog, "visit_date <= today + 30 days", "visit_date")
        record = {"visit_date": "2024-01-31"}
        assert validator.evaluate(record, today=date(2024, 1, 1)).status == ValidationStatus.VALID
        record = {"visit_date": "2024-02-01"}
        assert validator.evaluate(record, today=date(2024, 1, 1)).status == ValidationStatus.INVALID


# ------------------------------------------------------------------ #
# Compiler properties
# ------------------------------------------------------------------ #


class TestCompilerProperties:
    def test_identical_text_identical_behaviour(self, catalog: FieldCatalog) -> None:
        first = _compile(catalog, "between 40 and 200", "systolic_bp")
        second = _compile(catalog, "between 40 and 200", "systolic_bp")
        assert first.content_hash == second.content_hash
        for value in (35, 40, 120, 200, 201, None):
            record = {"systolic_bp": value}
            assert first.evaluate(record) == second.evaluate(record)

    def test_uses_only_whitelisted_primitives(self, catalog: FieldCatalog) -> None:
        validator = _compile(
            catalog,
            "if age >= 65 then between 90 and 180 else bp < 200 and not bp in (0) endif",
            "bp",
        )
        assert validator.primitives
        assert validator.primitives <= set(primitives.PRIMITIVES)

    def test_closures_never_reach_code_evaluation(self, catalog: FieldCatalog) -> None:
        validator = _compile(
            catalog,
            "visit_date <= today + 30 days and length(sex) == 1 or sex required",
            "visit_date",
        )
        functions = _functions(validator._evaluate)
        assert functions
        forbidden = {builtins.eval, builtins.exec, builtins.compile}
        for fn in functions:
            assert fn not in forbidden
            assert not {"eval", "exec", "compile"} & set(fn.__code__.co_names)

    def test_batch_tree_rejected(self, catalog: FieldCatalog) -> None:
        typed = validate(
            parse("between 40 and 200"), catalog, RuleContext.BATCH, target="systolic_bp"
        )
        with pytest.raises(RuleCompileError):
            compile_realtime(typed, catalog, rule_id="R1")

    def test_runtime_error_fails_open(self, catalog: FieldCatalog) -> None:
        def broken(value: object, low: object, high: object) -> bool:
            raise RuntimeError("boom")

        with patch.dict(primitives.PRIMITIVES, {"between": broken}):
            validator = _compile(catalog, "between 40 and 200", "systolic_bp")
        result = validator.evaluate({"systolic_bp": 100})
        assert result.status == ValidationStatus.ERROR
        assert result.valid
