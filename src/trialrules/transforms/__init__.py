"""Raw value coercion shared by the real-time and batch evaluators."""

from trialrules.transforms.coerce import CoercionError, coerce_series, coerce_value, parse_date

__all__ = ["CoercionError", "coerce_series", "coerce_value", "parse_date"]
