"""Tests for semantic validation: field resolution, typing and scope legality."""

from __future__ import annotations

import pytest

from trialrules.dsl.ast import Comparison, FieldRef, ValueType, VisitRef, Within
from trialrules.dsl.parser import parse
from trialrules.dsl.semantic import TypedAST, validate
from trialrules.errors import RuleValidationError
from trialrules.models.catalog import FieldCatalog, FieldSpec, FieldType, ProtocolSchedule
from trialrules.models.rule import RuleContext, RuleScope


def _make_catalog() -> FieldCatalog:
    return FieldCatalog.from_specs(
        [
            FieldSpec(name="systolic_bp", form="vitals", type=FieldType.NUMERIC),
            FieldSpec(name="weight", form="vitals", type=FieldType.NUMERIC),
            FieldSpec(name="visit_date", form="vitals", type=FieldType.DATE),
            FieldSpec(name="age", form="demographics", type=FieldType.NUMERIC),
            FieldSpec(name="sex", form="demographics", type=FieldType.TEXT),
            FieldSpec(name="consent_date", form="demographics", type=FieldType.DATE),
            FieldSpec(name="smoker", form="demographics", type=FieldType.LOGICAL),
        ],
        ProtocolSchedule(visits=["baseline", "week4", "week8"]),
    )


def _check(
    text: str,
    target: str,
    context: RuleContext = RuleContext.REALTIME,
    scope: RuleScope = RuleScope.FIELD,
) -> TypedAST:
    return validate(parse(text), _make_catalog(), context, scope=scope, target=target)


def _codes(exc: RuleValidationError) -> list[str]:
    return [e.code for e in exc.errors]


# ------------------------------------------------------------------ #
# Resolution and typing
# ------------------------------------------------------------------ #


class TestResolution:
    def test_bare_constraint_bound_to_target(self) -> None:
        typed = _check("between 40 and 200", "systolic_bp")
        assert typed.target == "systolic_bp"
        assert typed.target_type == ValueType.NUMERIC
        assert typed.fields == frozenset({"systolic_bp"})
        assert isinstance(typed.root.subject, FieldRef)
        assert typed.root.vtype == ValueType.LOGICAL

    def test_unknown_field_reported_with_span(self) -> None:
        text = "foo_bar > 1"
        with pytest.raises(RuleValidationError) as exc_info:
            _check(text, "systolic_bp")
        error = exc_info.value.errors[0]
        assert error.code == "unknown_field"
        assert "foo_bar" in error.message
        assert text[error.span.start : error.span.end] == "foo_bar"

    def test_all_errors_collected(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("foo > 1 and bar > 2", "systolic_bp")
        assert _codes(exc_info.value) == ["unknown_field", "unknown_field"]

    def test_unknown_target(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("> 1", "nope")
        assert "unknown_field" in _codes(exc_info.value)

    def test_cross_form_reference_in_realtime(self) -> None:
        typed = _check("visit_date >= consent_date", "visit_date")
        assert typed.fields == frozenset({"visit_date", "consent_date"})

    def test_needed_excludes_absence_tests(self) -> None:
        typed = _check("if smoker == true then sex required endif", "sex")
        assert typed.fields == frozenset({"smoker", "sex"})
        assert typed.needed == frozenset({"smoker"})

    def test_is_blank_argument_not_needed(self) -> None:
        typed = _check("is_blank(sex) or age >= 18", "age")
        assert typed.needed == frozenset({"age"})

    def test_allow_missing_carried(self) -> None:
        assert _check("between 1 and 2 allow missing", "weight").allow_missing


class TestTypeChecking:
    def test_text_compared_with_number(self) -> None:
        with pytest.raises(RuleValidationError, match="Cannot compare text with numeric"):
            _check("> 5", "sex")

    def test_date_plus_duration(self) -> None:
        typed = _check("visit_date <= today + 30 days", "visit_date")
        assert isinstance(typed.root, Comparison)
        assert typed.root.right.vtype == ValueType.DATE

    def test_date_difference_is_numeric(self) -> None:
        typed = _check("visit_date - consent_date <= 30", "visit_date")
        assert typed.root.left.vtype == ValueType.NUMERIC

    def test_date_plus_number_rejected(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("visit_date + 5 > 3", "visit_date")
        assert "type_mismatch" in _codes(exc_info.value)

    def test_between_on_text_rejected(self) -> None:
        with pytest.raises(RuleValidationError, match="between expects"):
            _check("between 1 and 2", "sex")

    def test_in_list_type_mismatch(self) -> None:
        with pytest.raises(RuleValidationError, match="List value"):
            _check("in (1, 2)", "sex")

    def test_rule_must_be_condition(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("systolic_bp + 1", "systolic_bp")
        assert _codes(exc_info.value) == ["not_a_condition"]

    def test_within_percent_needs_numbers(self) -> None:
        with pytest.raises(RuleValidationError, match="within N%"):
            _check("visit_date within 10% of consent_date", "visit_date")

    def test_within_days_needs_dates(self) -> None:
        typed = _check("visit_date within 7 days of consent_date", "visit_date")
        assert isinstance(typed.root, Within)

    def test_unknown_function(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("frobnicate(age) > 1", "age")
        assert _codes(exc_info.value) == ["unknown_function"]

    def test_function_arity(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("abs(age, age) > 1", "age")
        assert _codes(exc_info.value) == ["arity"]

    def test_aggregate_needs_plain_field(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("mean(age + 1) > 1", "age", RuleContext.BATCH, RuleScope.CROSS_PATIENT)
        assert "aggregate_argument" in _codes(exc_info.value)

    def test_conditional_branch_types_must_agree(self) -> None:
        with pytest.raises(RuleValidationError, match="then branch"):
            _check("if age > 1 then 5 else sex endif == 5", "age")


# ------------------------------------------------------------------ #
# Scope legality
# ------------------------------------------------------------------ #


class TestScope:
    def test_cross_patient_rejected_in_realtime(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("> 1", "weight", RuleContext.REALTIME, RuleScope.CROSS_PATIENT)
        assert "illegal_scope" in _codes(exc_info.value)

    @pytest.mark.parametrize(
        "scope", [RuleScope.CROSS_FIELD, RuleScope.CROSS_VISIT, RuleScope.DATASET]
    )
    def test_other_scopes_rejected_in_realtime(self, scope: RuleScope) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("> 1", "weight", RuleContext.REALTIME, scope)
        assert "illegal_scope" in _codes(exc_info.value)

    def test_visit_reference_rejected_in_realtime(self) -> None:
        with pytest.raises(RuleValidationError, match="not allowed in real-time"):
            _check("within 10% of weight@baseline", "weight")

    def test_visit_reference_needs_cross_visit_scope(self) -> None:
        with pytest.raises(RuleValidationError, match="requires scope cross_visit"):
            _check("within 10% of weight@baseline", "weight", RuleContext.BATCH)

    def test_visit_reference_in_batch(self) -> None:
        typed = _check(
            "within 10% of weight@baseline", "weight", RuleContext.BATCH, RuleScope.CROSS_VISIT
        )
        assert typed.visit_refs == (("weight", "baseline"),)
        assert typed.fields == frozenset({"weight", "weight@baseline"})

    def test_unknown_visit(self) -> None:
        with pytest.raises(RuleValidationError) as exc_info:
            _check("weight > weight@week99", "weight", RuleContext.BATCH, RuleScope.CROSS_VISIT)
        assert _codes(exc_info.value) == ["unknown_visit"]

    def test_baseline_alias(self) -> None:
        typed = _check(
            "weight within 10% of baseline_weight",
            "weight",
            RuleContext.BATCH,
            RuleScope.CROSS_VISIT,
        )
        assert isinstance(typed.root.reference, VisitRef)
        assert typed.visit_refs == (("weight", "baseline"),)

    def test_previous_alias(self) -> None:
        typed = _check(
            "weight >= previous_weight - 5", "weight", RuleContext.BATCH, RuleScope.CROSS_VISIT
        )
        assert typed.visit_refs == (("weight", "previous"),)

    def test_aggregate_needs_cross_patient_scope(self) -> None:
        with pytest.raises(RuleValidationError, match="requires scope"):
            _check("weight <= mean(weight) + 3 * sd(weight)", "weight", RuleContext.BATCH)

    def test_aggregate_in_cross_patient(self) -> None:
        typed = _check(
            "weight <= mean(weight) + 3 * sd(weight)",
            "weight",
            RuleContext.BATCH,
            RuleScope.CROSS_PATIENT,
        )
        assert typed.aggregates == (("mean", "weight"), ("sd", "weight"))

    def test_aggregate_of_text_field(self) -> None:
        with pytest.raises(RuleValidationError, match="needs a numeric field"):
            _check("mean(sex) > 1", "age", RuleContext.BATCH, RuleScope.DATASET)


class TestContentHash:
    def test_same_text_same_hash(self) -> None:
        first = _check("between 40 and 200", "systolic_bp")
        second = _check("between 40 and 200", "systolic_bp")
        assert first.content_hash == second.content_hash

    def test_hash_ignores_surrounding_whitespace(self) -> None:
        first = _check("between 40 and 200", "systolic_bp")
        second = _check("  between 40 and 200 ", "systolic_bp")
        assert first.content_hash == second.content_hash

    def test_hash_changes_with_text(self) -> None:
        first = _check("between 40 and 200", "systolic_bp")
        second = _check("between 40 and 210", "systolic_bp")
        assert first.content_hash != second.content_hash

    def test_hash_changes_with_context(self) -> None:
        realtime = _check("between 40 and 200", "systolic_bp")
        batch = _check("between 40 and 200", "systolic_bp", RuleContext.BATCH)
        assert realtime.content_hash != batch.content_hash
