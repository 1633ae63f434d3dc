"""Value coercion from raw form/database values to typed rule values.

Both evaluators see values through these converters, so a string "35"
in a numeric field and a "30 Mar 2022" in a date field behave the same in
real-time and batch execution. Missing-value tokens become absent.

All functions are pure -- no I/O, no guessing beyond the documented formats.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime

import pandas as pd
from loguru import logger

from trialrules.models.catalog import FieldSpec, FieldType


class CoercionError(ValueError):
    """A present value cannot be read as the field's declared type."""


_MONTH_ABBREV: dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_PATTERN_YYYY_MM_DD = re.compile(r"^\s*(\d{4})-(\d{2})-(\d{2})(?:[T ][\d:.]+)?\s*$")
_PATTERN_DD_MON_YYYY = re.compile(
    r"^\s*(\d{1,2})\s*(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\s*(\d{4})\s*$",
    re.IGNORECASE,
)
_PATTERN_SLASH_DMY_OR_MDY = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})\s*$")

_TRUE_WORDS = frozenset({"true", "yes", "y", "1"})
_FALSE_WORDS = frozenset({"false", "no", "n", "0"})


def _is_nan(value: object) -> bool:
    """Check if a value is NaN/NA (works for float, numpy and pandas types)."""
    if value is None:
        return True
    if value is pd.NA or value is pd.NaT:
        return True
    try:
        return math.isnan(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return False


def _build_date(year: int, month: int, day: int, raw: str) -> date:
    try:
        return date(year, month, day)
    except ValueError:
        msg = f"Invalid calendar date: {raw!r}"
        raise CoercionError(msg) from None


def parse_date(value: object) -> date:
    """Parse a complete calendar date.

    Supported formats:
        - date / datetime / pandas Timestamp objects
        - "YYYY-MM-DD" (optionally followed by a time part)
        - "DD Mon YYYY" and "DDMONYYYY" (e.g., "30 Mar 2022", "30MAR2022")
        - "DD/MM/YYYY" or "MM/DD/YYYY" (when the first field > 12 or the
          second > 12); ambiguous slash dates are read as DD/MM/YYYY

    Partial dates ("Mar 2022", "2022") cannot be compared day-exact and
    are rejected.

    Raises:
        CoercionError: If the value is not a complete, real calendar date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()

    m = _PATTERN_YYYY_MM_DD.match(s)
    if m:
        return _build_date(int(m.group(1)), int(m.group(2)), int(m.group(3)), s)

    m = _PATTERN_DD_MON_YYYY.match(s)
    if m:
        month = _MONTH_ABBREV[m.group(2).lower()]
        return _build_date(int(m.group(3)), month, int(m.group(1)), s)

    m = _PATTERN_SLASH_DMY_OR_MDY.match(s)
    if m:
        first = int(m.group(1))
        second = int(m.group(2))
        year = int(m.group(3))
        if first > 12:
            day, month = first, second
        elif second > 12:
            month, day = first, second
        else:
            day, month = first, second
            logger.debug("Ambiguous date '{}': assuming DD/MM/YYYY", s)
        return _build_date(year, month, day, s)

    msg = f"Not a complete date: {s!r}"
    raise CoercionError(msg)


def is_missing(value: object, spec: FieldSpec | None = None) -> bool:
    """True for None/NaN, blank strings and the field's missing-value tokens."""
    if _is_nan(value):
        return True
    if isinstance(value, str):
        if not value.strip():
            return True
        if spec is not None and spec.is_missing_token(value):
            return True
    return False


def coerce_value(value: object, spec: FieldSpec) -> object | None:
    """Convert one raw value to the field's declared type.

    Returns:
        float, str, date or bool -- or None when the value is missing.

    Raises:
        CoercionError: If a present value cannot be read as the declared type.
    """
    if is_missing(value, spec):
        return None

    match spec.type:
        case FieldType.NUMERIC:
            if isinstance(value, bool):
                return float(value)
            try:
                return float(str(value).strip()) if isinstance(value, str) else float(value)
            except (TypeError, ValueError):
                msg = f"{spec.name}: {value!r} is not a number"
                raise CoercionError(msg) from None
        case FieldType.DATE:
            return parse_date(value)
        case FieldType.LOGICAL:
            if isinstance(value, bool):
                return value
            word = str(value).strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
            msg = f"{spec.name}: {value!r} is not a yes/no value"
            raise CoercionError(msg)
        case _:
            return str(value).strip()


def coerce_record(
    record: dict[str, object],
    specs: dict[str, FieldSpec],
) -> dict[str, object | None]:
    """Coerce every catalogued field present in a record.

    Fields absent from the record map to None. Unknown keys are dropped.
    """
    return {name: coerce_value(record.get(name), spec) for name, spec in specs.items()}


def _safe_date(value: object) -> date | None:
    try:
        return parse_date(value)
    except CoercionError:
        logger.debug("Unparseable date value {!r} left unset", value)
        return None


def present_mask(series: pd.Series, spec: FieldSpec) -> pd.Series:
    """Vectorized negation of is_missing: True where a cell holds a value."""
    tokens = {t.upper() for t in spec.missing_tokens}
    as_text = series.astype("string").str.strip()
    upper = as_text.str.upper()
    # "nan" text reads as a float NaN, which is_missing treats as absent.
    nan_text = upper.str.lstrip("+-") == "NAN"
    missing = (
        (series.isna() | (as_text == "") | upper.isin(tokens) | nan_text)
        .fillna(True)
        .astype(bool)
    )
    return ~missing


_TYPE_NOUNS: dict[FieldType, str] = {
    FieldType.NUMERIC: "a number",
    FieldType.DATE: "a complete date",
    FieldType.LOGICAL: "a yes/no value",
}


def unreadable_message(spec: FieldSpec) -> str:
    """Describe what a field's unreadable values should have been."""
    return f"{spec.name} must be {_TYPE_NOUNS.get(spec.type, 'text')}"


def unreadable_mask(series: pd.Series, coerced: pd.Series, spec: FieldSpec) -> pd.Series:
    """True where a present raw value did not survive coerce_series.

    These are the cells coerce_value would reject with CoercionError.
    """
    return (present_mask(series, spec) & coerced.isna().to_numpy()).astype(bool)


def coerce_series(series: pd.Series, spec: FieldSpec) -> pd.Series:
    """Vectorized counterpart of coerce_value for batch execution.

    Unparseable values become NA rather than raising, so one bad cell
    cannot abort a whole rule; they are logged at debug level. Use
    unreadable_mask to tell them apart from missing values.
    """
    missing = ~present_mask(series, spec)
    as_text = series.astype("string").str.strip()
    cleaned = series.mask(missing)

    match spec.type:
        case FieldType.NUMERIC:
            source = cleaned if pd.api.types.is_numeric_dtype(series) else as_text.mask(missing)
            return pd.to_numeric(source, errors="coerce").astype("Float64")
        case FieldType.DATE:
            parsed = cleaned.map(lambda v: None if _is_nan(v) else _safe_date(v))
            return pd.to_datetime(parsed, errors="coerce")
        case FieldType.LOGICAL:
            def _to_bool(v: object) -> object:
                if _is_nan(v):
                    return pd.NA
                if isinstance(v, bool):
                    return v
                word = str(v).strip().lower()
                if word in _TRUE_WORDS:
                    return True
                if word in _FALSE_WORDS:
                    return False
                return pd.NA

            return cleaned.map(_to_bool).astype("boolean")
        case _:
            return cleaned.astype("string").str.strip()
