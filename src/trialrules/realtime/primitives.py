"""Whitelist of pure primitives that compiled real-time rules are built from.

Every primitive takes already-evaluated operands and returns a value, with
``None`` standing for "unknown" (an absent field). Comparisons involving
an unknown operand are unknown; boolean combinators use three-valued
(Kleene) logic. Text operands compare case-insensitively in every
comparison, ordered ones included. Nothing here touches I/O or global
state, and nothing interprets text.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, timedelta

Value = object | None


def _fold(left: object, right: object) -> tuple[object, object]:
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold(), right.casefold()
    return left, right


def _compare(test: Callable[[object, object], bool]) -> Callable[[Value, Value], bool | None]:
    """Lift a comparison to unknown-aware form; text compares case-insensitively."""

    def primitive(left: Value, right: Value) -> bool | None:
        if left is None or right is None:
            return None
        return test(*_fold(left, right))

    return primitive


def between(value: Value, low: Value, high: Value) -> bool | None:
    """Inclusive at both ends."""
    if value is None or low is None or high is None:
        return None
    return low <= value <= high  # type: ignore[operator]


def in_list(value: Value, items: tuple[object, ...]) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return any(isinstance(i, str) and i.casefold() == value.casefold() for i in items)
    return value in items


def not_in_list(value: Value, items: tuple[object, ...]) -> bool | None:
    result = in_list(value, items)
    return None if result is None else not result


def is_blank(value: Value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def required(value: Value) -> bool:
    return not is_blank(value)


def length(value: Value) -> float | None:
    if value is None:
        return None
    if isinstance(value, float):
        return float(len(f"{value:g}"))
    return float(len(str(value)))


def date_diff(later: Value, earlier: Value) -> float | None:
    """Whole days from ``earlier`` to ``later``."""
    if later is None or earlier is None:
        return None
    return float((later - earlier).days)  # type: ignore[operator]


def absolute(value: Value) -> float | None:
    return None if value is None else abs(value)  # type: ignore[arg-type]


def add(left: Value, right: Value) -> Value:
    if left is None or right is None:
        return None
    return left + right  # type: ignore[operator]


def subtract(left: Value, right: Value) -> Value:
    if left is None or right is None:
        return None
    if isinstance(left, date) and isinstance(right, date):
        return float((left - right).days)
    return left - right  # type: ignore[operator]


def multiply(left: Value, right: Value) -> Value:
    if left is None or right is None:
        return None
    return left * right  # type: ignore[operator]


def divide(left: Value, right: Value) -> Value:
    if left is None or right is None or right == 0:
        return None
    return left / right  # type: ignore[operator]


def negate(value: Value) -> Value:
    return None if value is None else -value  # type: ignore[operator]


def all_of(values: list[bool | None]) -> bool | None:
    """Kleene AND: any False wins, otherwise any unknown makes it unknown."""
    if any(v is False for v in values):
        return False
    if any(v is None for v in values):
        return None
    return True


def any_of(values: list[bool | None]) -> bool | None:
    """Kleene OR: any True wins, otherwise any unknown makes it unknown."""
    if any(v is True for v in values):
        return True
    if any(v is None for v in values):
        return None
    return False


def negation(value: bool | None) -> bool | None:
    return None if value is None else not value


def if_else(condition: bool | None, then: Callable[[], Value], otherwise: Callable[[], Value]) -> Value:
    """Conditional select; only the chosen branch is evaluated."""
    if condition is None:
        return None
    return then() if condition else otherwise()


def within_days(value: Value, reference: Value, tolerance: float) -> bool | None:
    """``|value - reference| <= tolerance`` days, inclusive."""
    if value is None or reference is None:
        return None
    return abs((value - reference).days) <= tolerance  # type: ignore[operator]


def within_pct(value: Value, reference: Value, percent: float) -> bool | None:
    """``|value - reference| <= percent/100 * |reference|``, inclusive, no rounding."""
    if value is None or reference is None:
        return None
    return abs(value - reference) <= percent / 100 * abs(reference)  # type: ignore[operator]


def today(clock: date) -> date:
    return clock


def duration(days: float) -> timedelta:
    return timedelta(days=days)


PRIMITIVES: dict[str, Callable[..., object]] = {
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
    "sub": subtract,
    "mul": multiply,
    "div": divide,
    "neg": negate,
    "and": all_of,
    "or": any_of,
    "not": negation,
    "if_else": if_else,
    "within_days": within_days,
    "within_pct": within_pct,
    "today": today,
    "duration": duration,
}

COMPARISON_PRIMITIVES: dict[str, str] = {
    "==": "eq",
    "!=": "ne",
    "<": "lt",
    "<=": "le",
    ">": "gt",
    ">=": "ge",
}

ARITHMETIC_PRIMITIVES: dict[str, str] = {"+": "add", "-": "sub", "*": "mul", "/": "div"}
