"""Vectorized counterparts of the real-time primitive whitelist.

Operands are pandas Series aligned on the working frame's index (or
scalar durations). Missing values use pandas NA; logical results use the
nullable ``boolean`` dtype so ``&``/``|``/``~`` follow the same
three-valued logic as the real-time evaluator.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from functools import reduce

import pandas as pd


def _is_text(value: object) -> bool:
    return isinstance(value, pd.Series) and isinstance(value.dtype, pd.StringDtype)


def _unknown(result: object, *operands: object) -> pd.Series:
    """Cast to nullable boolean and blank out rows with a missing operand."""
    out = pd.Series(result).astype("boolean")
    for operand in operands:
        if isinstance(operand, pd.Series):
            out = out.mask(operand.isna())
    return out


def _fold(left: pd.Series, right: pd.Series) -> tuple[pd.Series, pd.Series]:
    if _is_text(left) and _is_text(right):
        return left.str.casefold(), right.str.casefold()
    return left, right


def _compare(test: Callable[[pd.Series, pd.Series], object]) -> Callable[..., pd.Series]:
    """Text operands compare case-insensitively, as in the real-time whitelist."""

    def primitive(left: pd.Series, right: pd.Series) -> pd.Series:
        return _unknown(test(*_fold(left, right)), left, right)

    return primitive


def between(value: pd.Series, low: pd.Series, high: pd.Series) -> pd.Series:
    """Inclusive at both ends."""
    return _unknown((value >= low) & (value <= high), value, low, high)


def in_list(value: pd.Series, *items: object) -> pd.Series:
    if _is_text(value):
        hits = value.str.casefold().isin([str(i).casefold() for i in items])
    elif pd.api.types.is_datetime64_any_dtype(value):
        hits = value.isin([pd.Timestamp(i) for i in items])
    else:
        hits = value.isin(list(items))
    return _unknown(hits, value)


def not_in_list(value: pd.Series, *items: object) -> pd.Series:
    return ~in_list(value, *items)


def is_blank(value: pd.Series) -> pd.Series:
    blank = value.isna()
    if _is_text(value):
        blank = blank | value.str.strip().eq("").fillna(False).astype(bool)
    return pd.Series(blank, index=value.index).astype("boolean")


def required(value: pd.Series) -> pd.Series:
    return ~is_blank(value)


def length(value: pd.Series) -> pd.Series:
    if _is_text(value):
        return value.str.len().astype("Float64")
    return (
        value.astype("object")
        .map(lambda v: None if pd.isna(v) else float(len(f"{v:g}")))
        .astype("Float64")
    )


def _days(delta: pd.Series) -> pd.Series:
    return delta.dt.days.astype("Float64")


def date_diff(later: pd.Series, earlier: pd.Series) -> pd.Series:
    """Whole days from ``earlier`` to ``later``."""
    return _days(later - earlier)


def absolute(value: pd.Series) -> pd.Series:
    return value.abs()


def add(left: object, right: object) -> object:
    return left + right  # type: ignore[operator]


def sub(left: object, right: object) -> object:
    if (
        isinstance(left, pd.Series)
        and isinstance(right, pd.Series)
        and pd.api.types.is_datetime64_any_dtype(left)
        and pd.api.types.is_datetime64_any_dtype(right)
    ):
        return _days(left - right)
    return left - right  # type: ignore[operator]


def mul(left: object, right: object) -> object:
    return left * right  # type: ignore[operator]


def div(left: pd.Series, right: pd.Series) -> pd.Series:
    """Division with a zero divisor giving a missing value."""
    return left / right.mask(right == 0)


def neg(value: object) -> object:
    return -value  # type: ignore[operator]


def all_of(*operands: pd.Series) -> pd.Series:
    return reduce(lambda a, b: a & b, (o.astype("boolean") for o in operands))


def any_of(*operands: pd.Series) -> pd.Series:
    return reduce(lambda a, b: a | b, (o.astype("boolean") for o in operands))


def negation(value: pd.Series) -> pd.Series:
    return ~value.astype("boolean")


def if_else(condition: pd.Series, then: pd.Series, otherwise: pd.Series) -> pd.Series:
    """Row-wise select; an unknown condition gives an unknown result."""
    condition = condition.astype("boolean")
    chosen = then.where(condition.fillna(False).astype(bool), otherwise)
    return chosen.mask(condition.isna())


def within_days(value: pd.Series, reference: pd.Series, tolerance: float) -> pd.Series:
    """``|value - reference| <= tolerance`` days, inclusive."""
    return _days(value - reference).abs() <= tolerance


def within_pct(value: pd.Series, reference: pd.Series, percent: float) -> pd.Series:
    """``|value - reference| <= percent/100 * |reference|``, inclusive, no rounding."""
    return (value - reference).abs() <= reference.abs() * (percent / 100)


def today(clock: date, index: pd.Index) -> pd.Series:
    return pd.Series(pd.Timestamp(clock), index=index)


def duration(days: float) -> pd.Timedelta:
    return pd.Timedelta(days=days)


VECTOR_PRIMITIVES: dict[str, Callable[..., object]] = {
    "eq": _compare(lambda a, b: a == b),
    "ne": _compare(lambda a, b: a != b),
    "lt": _compare(lambda a, b: a < b),
    "le": _compare(lambda a, b: a <= b),
    "gt": _compare(lambda a, b: a > b),
    "ge": _compare(lambda a, b: a >= b),
    "between": between,
    "in_list": in_list,
    "not_in_list": not_in_list,
    "required": required,
    "is_blank": is_blank,
    "length": length,
    "date_diff": date_diff,
    "abs": absolute,
    "add": add,
    "sub": sub,
    "mul": mul,
    "div": div,
    "neg": neg,
    "and": all_of,
    "or": any_of,
    "not": negation,
    "if_else": if_else,
    "within_days": within_days,
    "within_pct": within_pct,
    "today": today,
    "duration": duration,
}
