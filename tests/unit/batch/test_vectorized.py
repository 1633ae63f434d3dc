"""Tests for the vectorized primitive whitelist."""

from __future__ import annotations

from datetime import date

import pandas as pd

from trialrules.batch.vectorized import VECTOR_PRIMITIVES
from trialrules.realtime.primitives import PRIMITIVES


def _num(*values: float | None) -> pd.Series:
    return pd.Series(values, dtype="Float64")


def _bool(*values: bool | None) -> pd.Series:
    return pd.Series(values, dtype="boolean")


def _as_list(series: pd.Series) -> list[object]:
    return [None if pd.isna(v) else bool(v) for v in series]


class TestWhitelist:
    def test_same_names_as_realtime(self) -> None:
        assert set(VECTOR_PRIMITIVES) == set(PRIMITIVES)


class TestComparisons:
    def test_between_inclusive(self) -> None:
        values = _num(39.9, 40, 120, 200, 200.1, None)
        low, high = _num(*[40] * 6), _num(*[200] * 6)
        result = VECTOR_PRIMITIVES["between"](values, low, high)
        assert _as_list(result) == [False, True, True, True, False, None]

    def test_missing_operand_is_unknown(self) -> None:
        result = VECTOR_PRIMITIVES["gt"](_num(5, None), _num(1, 1))
        assert _as_list(result) == [True, None]

    def test_text_equality_ignores_case(self) -> None:
        left = pd.Series(["Male", "female", None], dtype="string")
        right = pd.Series(["male", "Male", "x"], dtype="string")
        assert _as_list(VECTOR_PRIMITIVES["eq"](left, right)) == [True, False, None]

    def test_ordered_text_comparison_ignores_case(self) -> None:
        left = pd.Series(["apple", "ABC", None], dtype="string")
        right = pd.Series(["Banana", "abc", "x"], dtype="string")
        assert _as_list(VECTOR_PRIMITIVES["lt"](left, right)) == [True, False, None]
        assert _as_list(VECTOR_PRIMITIVES["ge"](left, right)) == [False, True, None]

    def test_in_list(self) -> None:
        values = pd.Series(["m", "X", None], dtype="string")
        assert _as_list(VECTOR_PRIMITIVES["in_list"](values, "M", "F")) == [True, False, None]
        assert _as_list(VECTOR_PRIMITIVES["not_in_list"](values, "M", "F")) == [
            False,
            True,
            None,
        ]

    def test_date_comparison(self) -> None:
        visits = pd.Series(pd.to_datetime(["2024-01-01", "2024-03-01", None]))
        cutoff = VECTOR_PRIMITIVES["today"](date(2024, 2, 1), visits.index)
        assert _as_list(VECTOR_PRIMITIVES["le"](visits, cutoff)) == [True, False, None]


class TestLogic:
    def test_kleene_and(self) -> None:
        result = VECTOR_PRIMITIVES["and"](_bool(True, True, False), _bool(True, None, None))
        assert _as_list(result) == [True, None, False]

    def test_kleene_or(self) -> None:
        result = VECTOR_PRIMITIVES["or"](_bool(False, False, True), _bool(False, None, None))
        assert _as_list(result) == [False, None, True]

    def test_not(self) -> None:
        assert _as_list(VECTOR_PRIMITIVES["not"](_bool(True, None))) == [False, None]

    def test_if_else_row_wise(self) -> None:
        condition = _bool(True, False, None)
        then = _bool(True, True, True)
        otherwise = _bool(False, False, False)
        result = VECTOR_PRIMITIVES["if_else"](condition, then, otherwise)
        assert _as_list(result) == [True, False, None]


class TestValues:
    def test_required_and_blank(self) -> None:
        values = pd.Series(["a", " ", None], dtype="string")
        assert _as_list(VECTOR_PRIMITIVES["required"](values)) == [True, False, False]

    def test_divide_by_zero_is_missing(self) -> None:
        result = VECTOR_PRIMITIVES["div"](_num(6, 1), _num(3, 0))
        assert result.iloc[0] == 2
        assert pd.isna(result.iloc[1])

    def test_date_difference_in_days(self) -> None:
        later = pd.Series(pd.to_datetime(["2024-01-31"]))
        earlier = pd.Series(pd.to_datetime(["2024-01-01"]))
        assert VECTOR_PRIMITIVES["sub"](later, earlier).iloc[0] == 30

    def test_date_plus_duration(self) -> None:
        visits = pd.Series(pd.to_datetime(["2024-01-01"]))
        shifted = VECTOR_PRIMITIVES["add"](visits, VECTOR_PRIMITIVES["duration"](7.0))
        assert shifted.iloc[0] == pd.Timestamp("2024-01-08")


class TestTolerances:
    def test_within_pct_inclusive(self) -> None:
        result = VECTOR_PRIMITIVES["within_pct"](_num(77, 63, 85, None), _num(70, 70, 70, 70), 10)
        assert _as_list(result) == [True, True, False, None]

    def test_within_days_inclusive(self) -> None:
        visits = pd.Series(pd.to_datetime(["2024-01-08", "2024-01-09"]))
        consent = pd.Series(pd.to_datetime(["2024-01-01", "2024-01-01"]))
        result = VECTOR_PRIMITIVES["within_days"](visits, consent, 7)
        assert _as_list(result) == [True, False]
