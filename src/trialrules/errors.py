"""Exception hierarchy for rule authoring, compilation and QC execution."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class Span(BaseModel):
    """Half-open character range [start, end) in the rule text."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    def cover(self, other: Span) -> Span:
        """Smallest span enclosing both spans."""
        return Span(start=min(self.start, other.start), end=max(self.end, other.end))

    def line_col(self, text: str) -> tuple[int, int]:
        """1-based line and column of the span start within text."""
        before = text[: self.start]
        line = before.count("\n") + 1
        column = self.start - (before.rfind("\n") + 1) + 1
        return line, column


class RuleError(Exception):
    """Base class for all trialrules errors."""


class RuleSyntaxError(RuleError):
    """Malformed rule text, located at the failing span."""

    def __init__(self, message: str, span: Span, text: str = "") -> None:
        self.message = message
        self.span = span
        self.text = text
        self.line, self.column = span.line_col(text)
        super().__init__(f"{message} (line {self.line}, column {self.column})")


class SemanticError(BaseModel):
    """One semantic problem found while type-checking a rule."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    span: Span


class RuleValidationError(RuleError):
    """Raised with every semantic problem found in one pass."""

    def __init__(self, errors: list[SemanticError]) -> None:
        self.errors = list(errors)
        summary = "; ".join(e.message for e in self.errors)
        super().__init__(f"{len(self.errors)} semantic error(s): {summary}")


class RuleCompileError(RuleError):
    """Internal invariant violated while generating code from a checked AST.

    Treated as a defect: the rule is deactivated and the error logged.
    """


class RuleFailure(RuleError):
    """A single batch rule failed at runtime."""

    def __init__(self, rule_id: str, message: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} failed: {message}")


class RuleTimeout(RuleFailure):
    """A batch rule exceeded the configured time ceiling."""


class SchedulerFailure(RuleError):
    """QC infrastructure unreachable; the whole run is aborted."""


class QCEngineBusy(RuleError):
    """A QC run was requested while another run is in progress."""


class RuleNotFound(RuleError):
    """No rule with the requested id exists in the rule store."""
