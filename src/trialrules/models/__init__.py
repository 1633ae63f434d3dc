"""Pydantic data models shared across all trialrules components.

All models are re-exported here for convenient imports:
    from trialrules.models import Rule, FieldCatalog, Violation
"""

from trialrules.models.catalog import (
    DEFAULT_MISSING_TOKENS,
    FieldCatalog,
    FieldSpec,
    FieldType,
    ProtocolSchedule,
)
from trialrules.models.results import (
    CompileResult,
    Diagnostic,
    DiagnosticKind,
    QCRunRecord,
    RunStatus,
    ValidationResult,
    ValidationStatus,
    Violation,
    ViolationCandidate,
    ViolationFilter,
    ViolationStatus,
)
from trialrules.models.rule import Rule, RuleContext, RuleScope, Severity, content_hash

__all__ = [
    # rule
    "Rule",
    "RuleContext",
    "RuleScope",
    "Severity",
    "content_hash",
    # catalog
    "DEFAULT_MISSING_TOKENS",
    "FieldCatalog",
    "FieldSpec",
    "FieldType",
    "ProtocolSchedule",
    # results
    "CompileResult",
    "Diagnostic",
    "DiagnosticKind",
    "QCRunRecord",
    "RunStatus",
    "ValidationResult",
    "ValidationStatus",
    "Violation",
    "ViolationCandidate",
    "ViolationFilter",
    "ViolationStatus",
]
