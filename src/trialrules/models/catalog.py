"""Field catalog and protocol visit schedule.

The catalog is supplied by the host application and is the only source of
truth for which fields exist, which form holds them, and how they are typed.
"""

from __future__ import annotations

import json
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

DEFAULT_MISSING_TOKENS: tuple[str, ...] = ("", "NA", "N/A", "UNK")


class FieldType(StrEnum):
    """Declared type of a catalog field."""

    TEXT = "text"
    NUMERIC = "numeric"
    DATE = "date"
    LOGICAL = "logical"


class FieldSpec(BaseModel):
    """One catalog entry."""

    name: str = Field(..., description="Field code as used in rule text")
    form: str = Field(default="records", description="Form (table) holding the field")
    type: FieldType = Field(default=FieldType.TEXT)
    missing_tokens: list[str] = Field(
        default_factory=lambda: list(DEFAULT_MISSING_TOKENS),
        description="Values recorded for 'not collected' that count as absent",
    )
    label: str | None = Field(default=None)

    def is_missing_token(self, value: object) -> bool:
        """True if the raw value is one of this field's missing-value tokens."""
        if not isinstance(value, str):
            return False
        stripped = value.strip()
        return any(stripped.upper() == t.upper() for t in self.missing_tokens)


class ProtocolSchedule(BaseModel):
    """Visits every enrolled subject is expected to attend, in protocol order."""

    visits: list[str] = Field(default_factory=list)
    baseline: str = Field(default="baseline")

    @model_validator(mode="after")
    def _validate_unique(self) -> ProtocolSchedule:
        if len(set(self.visits)) != len(self.visits):
            msg = "Protocol visit names must be unique"
            raise ValueError(msg)
        return self

    def order_of(self, visit: str) -> int | None:
        """Return the protocol position of a visit, or None if unscheduled."""
        try:
            return self.visits.index(visit)
        except ValueError:
            return None


class FieldCatalog(BaseModel):
    """Lookup of field specifications by name."""

    fields: dict[str, FieldSpec] = Field(default_factory=dict)
    protocol: ProtocolSchedule = Field(default_factory=ProtocolSchedule)

    @classmethod
    def from_specs(
        cls,
        specs: list[FieldSpec],
        protocol: ProtocolSchedule | None = None,
    ) -> FieldCatalog:
        """Build a catalog from a list of FieldSpec entries."""
        return cls(
            fields={s.name: s for s in specs},
            protocol=protocol or ProtocolSchedule(),
        )

    @classmethod
    def from_json(cls, path: str | Path) -> FieldCatalog:
        """Load a catalog file.

        Expected layout::

            {
              "fields": [{"name": "weight", "form": "vitals", "type": "numeric"}],
              "protocol": {"visits": ["baseline", "week4"], "baseline": "baseline"}
            }
        """
        catalog_file = Path(path)
        if not catalog_file.exists():
            msg = f"Field catalog not found at {catalog_file}"
            raise FileNotFoundError(msg)

        with open(catalog_file) as f:
            raw = json.load(f)

        specs = [FieldSpec(**entry) for entry in raw.get("fields", [])]
        protocol = ProtocolSchedule(**raw["protocol"]) if "protocol" in raw else None
        return cls.from_specs(specs, protocol)

    def get(self, name: str) -> FieldSpec | None:
        """Return the spec for a field, or None if unknown."""
        return self.fields.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def forms(self) -> list[str]:
        """Return the distinct form names, sorted."""
        return sorted({s.form for s in self.fields.values()})
