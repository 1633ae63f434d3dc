"""Result, violation and run-record models.

Shapes returned to the host application and persisted by the stores:
ValidationResult (real-time), CompileResult (rule save), ViolationCandidate
and Violation (batch QC), QCRunRecord (one scheduler run).
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from trialrules.models.rule import Severity


class ValidationStatus(StrEnum):
    """Outcome of evaluating one rule against one record.

    SKIPPED: a needed field is absent and the rule has no allow clause.
    ERROR: the evaluator hit an internal defect; fails open.
    """

    VALID = "valid"
    INVALID = "invalid"
    SKIPPED = "skipped"
    ERROR = "error"


class ValidationResult(BaseModel):
    """Real-time evaluation result returned on field change."""

    rule_id: str
    valid: bool
    status: ValidationStatus
    field: str | None = None
    severity: Severity = Severity.ERROR
    message: str | None = None


class DiagnosticKind(StrEnum):
    SYNTAX = "syntax"
    SEMANTIC = "semantic"
    COMPILE = "compile"
    SCHEDULE = "schedule"


class Diagnostic(BaseModel):
    """One author-facing problem with a rule, located when possible."""

    kind: DiagnosticKind
    message: str
    start: int | None = Field(default=None, description="0-based start offset in rule text")
    end: int | None = Field(default=None, description="0-based end offset (exclusive)")
    line: int | None = None
    column: int | None = None


class CompileResult(BaseModel):
    """Author feedback from compiling rule text at save time."""

    ok: bool
    rule_id: str | None = None
    content_hash: str | None = None
    errors: list[Diagnostic] = Field(default_factory=list)
    description: str | None = Field(
        default=None, description="Normalized rendering of the compiled rule"
    )


class ViolationStatus(StrEnum):
    OPEN = "open"
    REVIEW = "review"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class ViolationCandidate(BaseModel):
    """One failing subject/visit/field triple produced by a batch query."""

    rule_id: str
    subject_id: str
    visit: str | None = None
    field: str
    observed_value: str | None = None
    expected: str

    @property
    def key(self) -> tuple[str, str, str, str]:
        """Diff key used to match candidates against stored violations."""
        return (self.rule_id, self.subject_id, self.visit or "", self.field)


class Violation(BaseModel):
    """Persisted record of a rule failing for a specific subject/visit/field."""

    id: int | None = None
    rule_id: str
    subject_id: str
    visit: str | None = None
    field: str
    observed_value: str | None = None
    expected: str
    severity: Severity
    detected_at: str
    status: ViolationStatus = ViolationStatus.OPEN
    resolved_at: str | None = None
    note: str | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.rule_id, self.subject_id, self.visit or "", self.field)


class RunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class QCRunRecord(BaseModel):
    """Summary of one QC run."""

    run_id: str
    started_at: str
    ended_at: str | None = None
    rules_run: list[str] = Field(default_factory=list)
    violations_found: int = 0
    status: RunStatus = RunStatus.SUCCESS
    error: str | None = None
    rule_failures: dict[str, str] = Field(
        default_factory=dict, description="rule_id -> failure message"
    )


class ViolationFilter(BaseModel):
    """Filters accepted by the violation read interface."""

    rule_id: str | None = None
    subject_id: str | None = None
    visit: str | None = None
    status: ViolationStatus | None = None
    severity: Severity | None = None
    limit: int | None = None
