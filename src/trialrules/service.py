"""Host-facing facade over the rule stores, the real-time cache and the QC engine.

Usage:
    service = RuleService.open(db_path, catalog, source)
    result = service.save_rule(rule)
    service.validate_field("BP_SYS", {"systolic_bp": "35"})
    service.run_qc_now()
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Protocol

from loguru import logger

from trialrules.batch.source import DataSource
from trialrules.config import QCSettings
from trialrules.dsl.ast import render
from trialrules.errors import (
    RuleCompileError,
    RuleNotFound,
    RuleSyntaxError,
    RuleValidationError,
)
from trialrules.models.catalog import FieldCatalog
from trialrules.models.results import (
    CompileResult,
    Diagnostic,
    DiagnosticKind,
    QCRunRecord,
    ValidationResult,
    ValidationStatus,
    Violation,
    ViolationFilter,
    ViolationStatus,
)
from trialrules.models.rule import Rule, RuleContext, RuleScope
from trialrules.pipeline import (
    build_batch,
    build_realtime,
    check_rule,
    compile_text,
    diagnostics_for,
)
from trialrules.qc.engine import QCEngine
from trialrules.qc.schedule import QCScheduler, ScheduleError, parse_schedule
from trialrules.realtime.cache import RuleCache
from trialrules.storage.rules import RuleStore
from trialrules.storage.violations import ViolationStore


class RecordProvider(Protocol):
    """Supplies the current, unsaved values of a form being edited."""

    def get_current_values(self, form_id: str) -> dict[str, object]: ...


class RuleService:
    """Single entry point for rule authoring, real-time checks and batch QC."""

    def __init__(
        self,
        *,
        rules: RuleStore,
        violations: ViolationStore,
        catalog: FieldCatalog,
        source: DataSource,
        settings: QCSettings | None = None,
        provider: RecordProvider | None = None,
    ) -> None:
        self._rules = rules
        self._violations = violations
        self._catalog = catalog
        self._provider = provider
        self.cache = RuleCache(rules, catalog)
        self.engine = QCEngine(
            rules=rules,
            violations=violations,
            source=source,
            catalog=catalog,
            settings=settings,
        )
        self.scheduler = QCScheduler(
            self.engine.run_due_rules, tick_seconds=self.engine.settings.tick_seconds
        )

    @classmethod
    def open(
        cls,
        db_path: Path,
        catalog: FieldCatalog,
        source: DataSource,
        *,
        settings: QCSettings | None = None,
        provider: RecordProvider | None = None,
    ) -> RuleService:
        """Build a service whose rules and violations live in one SQLite file."""
        return cls(
            rules=RuleStore(db_path),
            violations=ViolationStore(db_path),
            catalog=catalog,
            source=source,
            settings=settings,
            provider=provider,
        )

    @property
    def rules(self) -> RuleStore:
        return self._rules

    @property
    def violations(self) -> ViolationStore:
        return self._violations

    def close(self) -> None:
        """Stop the scheduler and close both stores."""
        if self.scheduler.running:
            self.scheduler.stop()
        self._rules.close()
        self._violations.close()

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    def compile_rule(
        self,
        text: str,
        context: RuleContext | str,
        *,
        field: str,
        scope: RuleScope | str = RuleScope.FIELD,
    ) -> CompileResult:
        """Compile rule text for author feedback; nothing is stored."""
        return compile_text(text, self._catalog, context, field=field, scope=scope)

    def save_rule(self, rule: Rule) -> CompileResult:
        """Compile and persist a rule.

        A rule that fails to compile (or carries an unreadable schedule) is
        stored inactive, so it is never cached or scheduled.
        """
        try:
            if rule.schedule is not None:
                parse_schedule(rule.schedule)
            if rule.context == RuleContext.REALTIME:
                validator = build_realtime(rule, self._catalog)
                description = validator.expected
            else:
                query = build_batch(rule, self._catalog)
                description = query.expected
        except ScheduleError as exc:
            errors = [Diagnostic(kind=DiagnosticKind.SCHEDULE, message=str(exc))]
        except (RuleSyntaxError, RuleValidationError, RuleCompileError) as exc:
            if isinstance(exc, RuleCompileError):
                logger.error("Rule {} hit a compiler defect: {}", rule.rule_id, exc)
            errors = diagnostics_for(exc, rule.text)
        else:
            self._rules.save(rule)
            logger.info("Saved rule {} ({}, {})", rule.rule_id, rule.context, rule.scope)
            return CompileResult(
                ok=True,
                rule_id=rule.rule_id,
                content_hash=rule.content_hash,
                description=description,
            )

        self._rules.save(rule.model_copy(update={"active": False}))
        logger.warning(
            "Rule {} saved inactive: {}", rule.rule_id, "; ".join(e.message for e in errors)
        )
        return CompileResult(ok=False, rule_id=rule.rule_id, errors=errors)

    def deactivate_rule(self, rule_id: str) -> None:
        self._rules.set_active(rule_id, False)

    def describe_rule(self, rule_id: str) -> str:
        """Normalized text of a stored rule, for display."""
        rule = self._rules.get(rule_id)
        if rule is None:
            msg = f"Rule '{rule_id}' not found"
            raise RuleNotFound(msg)
        typed = check_rule(rule.text, self._catalog, rule.context, field=rule.field, scope=rule.scope)
        return render(typed.root, rule.field)

    # ------------------------------------------------------------------
    # Real-time
    # ------------------------------------------------------------------

    def validate_field(
        self,
        rule_id: str,
        record: dict[str, object],
        *,
        today: date | None = None,
    ) -> ValidationResult:
        """Evaluate one real-time rule against a record.

        A rule whose stored text no longer compiles, or whose compilation
        fails unexpectedly, fails open (status error); a compiler defect
        also deactivates it.

        Raises:
            RuleNotFound: If there is no active real-time rule with that id.
        """
        try:
            validator = self.cache.get_or_compile(rule_id)
        except RuleNotFound:
            raise
        except (RuleSyntaxError, RuleValidationError, RuleCompileError) as exc:
            logger.warning("Rule {} cannot be compiled; failing open: {}", rule_id, exc)
            if isinstance(exc, RuleCompileError):
                self._rules.set_active(rule_id, False)
            return ValidationResult(
                rule_id=rule_id, valid=True, status=ValidationStatus.ERROR, message=str(exc)
            )
        except Exception as exc:
            logger.exception("Unexpected failure compiling rule {}; failing open", rule_id)
            return ValidationResult(
                rule_id=rule_id, valid=True, status=ValidationStatus.ERROR, message=str(exc)
            )
        return validator.evaluate(record, today=today)

    def validate_form(
        self,
        form_id: str,
        field: str,
        *,
        today: date | None = None,
    ) -> list[ValidationResult]:
        """Run every active real-time rule attached to a field on the form being edited."""
        if self._provider is None:
            msg = "validate_form needs a RecordProvider"
            raise RuntimeError(msg)
        record = self._provider.get_current_values(form_id)
        rules = [
            r
            for r in self._rules.list_rules(context=RuleContext.REALTIME, active_only=True)
            if r.field == field and (r.form is None or r.form == form_id)
        ]
        return [self.validate_field(r.rule_id, record, today=today) for r in rules]

    # ------------------------------------------------------------------
    # Batch QC
    # ------------------------------------------------------------------

    def run_qc_now(self, rule_ids: list[str] | None = None) -> QCRunRecord:
        return self.engine.run_rules(rule_ids)

    def start_scheduler(self) -> None:
        """Run due batch rules in the background every ``tick_seconds``."""
        self.scheduler.start()

    def stop_scheduler(self, timeout: float | None = None) -> None:
        self.scheduler.stop(timeout)

    def get_violations(self, filters: ViolationFilter | None = None) -> list[Violation]:
        return self._violations.list_violations(filters)

    def update_violation_status(
        self,
        violation_id: int,
        status: ViolationStatus | str,
        note: str | None = None,
    ) -> Violation:
        return self._violations.update_status(violation_id, ViolationStatus(status), note)
