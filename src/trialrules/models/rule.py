"""Rule entity and its classification enums.

A Rule is authored outside this package (rule store, admin UI) and is the
unit that gets parsed, validated, compiled, cached and scheduled.
"""

from __future__ import annotations

import hashlib
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class RuleContext(StrEnum):
    """Where a rule executes.

    REALTIME: synchronous single-record check on field change.
    BATCH: scheduled set-oriented QC sweep.
    """

    REALTIME = "realtime"
    BATCH = "batch"


class RuleScope(StrEnum):
    """Breadth of records a rule depends on."""

    FIELD = "field"
    CROSS_FIELD = "cross_field"
    CROSS_VISIT = "cross_visit"
    CROSS_PATIENT = "cross_patient"
    DATASET = "dataset"

    @property
    def is_cross_record(self) -> bool:
        """True when the scope reaches beyond the current record."""
        return self in (RuleScope.CROSS_VISIT, RuleScope.CROSS_PATIENT, RuleScope.DATASET)


class Severity(StrEnum):
    """Severity classification for rule findings.

    ERROR: Blocks data entry until corrected.
    WARNING: Alerts the user but allows save.
    INFO: Informational message only.
    """

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def display_name(self) -> str:
        """Human-friendly display name."""
        return self.value.capitalize()


class Rule(BaseModel):
    """A validation rule as persisted by the rule store."""

    rule_id: str = Field(..., description="Unique rule identifier (e.g., 'BP_SYS')")
    text: str = Field(..., description="Rule source in the validation DSL")
    field: str = Field(..., description="Target field; bare constraints apply to it")
    form: str | None = Field(default=None, description="Form holding the target field")
    context: RuleContext = Field(default=RuleContext.REALTIME)
    scope: RuleScope = Field(default=RuleScope.FIELD)
    severity: Severity = Field(default=Severity.ERROR)
    message: str | None = Field(default=None, description="Custom failure message")
    schedule: str | None = Field(
        default=None,
        description="Batch schedule such as 'nightly' or 'every 6 hours'",
    )
    active: bool = Field(default=True)
    updated_at: str | None = Field(default=None, description="ISO 8601 timestamp of last edit")

    @model_validator(mode="after")
    def _validate_schedule_context(self) -> Rule:
        """Only batch rules carry a schedule."""
        if self.schedule is not None and self.context != RuleContext.BATCH:
            msg = f"Rule {self.rule_id}: schedule is only valid for batch rules"
            raise ValueError(msg)
        return self

    @property
    def content_hash(self) -> str:
        """Hash of everything that affects compilation output."""
        return content_hash(
            self.text,
            field=self.field,
            context=self.context,
            scope=self.scope,
            severity=self.severity,
            message=self.message,
        )


def content_hash(
    text: str,
    *,
    field: str,
    context: RuleContext,
    scope: RuleScope,
    severity: Severity = Severity.ERROR,
    message: str | None = None,
) -> str:
    """Stable hash of rule text plus the settings that shape its compiled form."""
    payload = "\x1f".join(
        [text.strip(), field, context.value, scope.value, severity.value, message or ""]
    )
    return hashlib.sha256(payload.encode()).hexdigest()[:16]
