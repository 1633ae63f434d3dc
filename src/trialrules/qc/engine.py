"""QC engine: runs batch rules against a data snapshot and persists violations.

Each run moves Idle -> Running -> Completed | Failed -> Idle. Rules run one
after another on a worker pool so each can be held to a time ceiling; a
rule that raises or times out is recorded as that rule's failure and the
run carries on with the remaining rules.

A timed-out rule keeps its worker thread, so the remaining rules move to a
fresh pool. A violation store that cannot be written aborts the run with
SchedulerFailure.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import UTC, datetime
from enum import StrEnum

from loguru import logger

from trialrules.batch.plan import BatchQuery
from trialrules.batch.source import DataSource, Snapshot
from trialrules.config import QCSettings
from trialrules.errors import (
    QCEngineBusy,
    RuleCompileError,
    RuleNotFound,
    RuleTimeout,
    SchedulerFailure,
)
from trialrules.models.catalog import FieldCatalog
from trialrules.models.results import QCRunRecord, RunStatus, ViolationCandidate
from trialrules.models.rule import Rule, RuleContext
from trialrules.pipeline import build_batch
from trialrules.qc.schedule import ScheduleError, parse_schedule, parse_timestamp
from trialrules.storage.rules import RuleStore
from trialrules.storage.violations import ViolationStore

BatchCompiler = Callable[[Rule, FieldCatalog], BatchQuery]

CANCELLED = "cancelled"


class EngineState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QCEngine:
    """Executes batch rules and reconciles their findings with stored violations."""

    def __init__(
        self,
        *,
        rules: RuleStore,
        violations: ViolationStore,
        source: DataSource,
        catalog: FieldCatalog,
        settings: QCSettings | None = None,
        compiler: BatchCompiler = build_batch,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            rules: Store supplying batch rules and their schedules.
            violations: Store receiving violations and run records.
            source: Clinical data source; read once per run.
            catalog: Field catalog used to compile rules.
            settings: QC tunables; defaults when omitted.
            compiler: Rule -> BatchQuery function.
            clock: Returns the current time; defaults to UTC now.
        """
        self._rules = rules
        self._violations = violations
        self._source = source
        self._catalog = catalog
        self._settings = settings or QCSettings()
        self._compiler = compiler
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._state = EngineState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self.last_outcome: EngineState | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def settings(self) -> QCSettings:
        return self._settings

    def cancel(self) -> None:
        """Ask the current run to stop before its next rule."""
        if self._state == EngineState.RUNNING:
            logger.warning("Cancellation requested for running QC run")
            self._cancel.set()

    # ------------------------------------------------------------------
    # Rule selection
    # ------------------------------------------------------------------

    def is_due(self, rule: Rule, now: datetime) -> bool:
        """True when a scheduled batch rule has never run or its cadence elapsed.

        Rules without a schedule only run on demand.
        """
        if rule.schedule is None:
            return False
        try:
            schedule = parse_schedule(rule.schedule)
        except ScheduleError as exc:
            logger.warning("Rule {} has an invalid schedule and is skipped: {}", rule.rule_id, exc)
            return False
        return schedule.is_due(parse_timestamp(self._violations.last_run(rule.rule_id)), now)

    def due_rules(self, now: datetime) -> list[Rule]:
        return [
            rule
            for rule in self._rules.list_rules(context=RuleContext.BATCH, active_only=True)
            if self.is_due(rule, now)
        ]

    def run_due_rules(self, now: datetime | None = None) -> QCRunRecord:
        """Run every active batch rule whose schedule is due."""
        now = now or self._clock()
        return self._run(self.due_rules(now), now)

    def run_rules(
        self,
        rule_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> QCRunRecord:
        """Run the given batch rules (all active ones when None), ignoring schedules.

        Raises:
            RuleNotFound: If an id names no batch rule.
        """
        now = now or self._clock()
        if rule_ids is None:
            selected = self._rules.list_rules(context=RuleContext.BATCH, active_only=True)
        else:
            selected = []
            for rule_id in rule_ids:
                rule = self._rules.get(rule_id)
                if rule is None or rule.context != RuleContext.BATCH:
                    msg = f"No batch rule '{rule_id}'"
                    raise RuleNotFound(msg)
                if not rule.active:
                    logger.warning("Rule {} is inactive; not run", rule_id)
                    continue
                selected.append(rule)
        return self._run(selected, now)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _enter(self) -> None:
        with self._state_lock:
            if self._state == EngineState.RUNNING:
                msg = "A QC run is already in progress"
                raise QCEngineBusy(msg)
            self._state = EngineState.RUNNING
            self._cancel.clear()

    def _leave(self, outcome: EngineState) -> None:
        with self._state_lock:
            self.last_outcome = outcome
            self._state = EngineState.IDLE
        logger.debug("QC engine {} -> idle", outcome.value)

    def _run(self, rules: list[Rule], now: datetime) -> QCRunRecord:
        self._enter()
        outcome = EngineState.FAILED
        try:
            run = self._execute_run(rules, now)
            outcome = EngineState.COMPLETED
            return run
        finally:
            self._leave(outcome)

    def _execute_run(self, rules: list[Rule], now: datetime) -> QCRunRecord:
        run = QCRunRecord(run_id=uuid.uuid4().hex[:12], started_at=now.isoformat())
        logger.info("QC run {} started with {} rule(s)", run.run_id, len(rules))

        try:
            snapshot = self._source.snapshot()
        except SchedulerFailure as exc:
            self._abort(run, exc)
            raise

        cancelled = False
        pool = self._new_pool()
        try:
            for rule in rules:
                if self._cancel.is_set():
                    cancelled = True
                    break
                if not self._run_one(rule, snapshot, now, run, pool):
                    pool.shutdown(wait=False, cancel_futures=True)
                    pool = self._new_pool()
        except sqlite3.Error as exc:
            msg = f"Violation store unavailable: {exc}"
            failure = SchedulerFailure(msg)
            self._abort(run, failure)
            raise failure from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if cancelled:
            run.status = RunStatus.PARTIAL
            run.error = CANCELLED
            logger.warning(
                "QC run {} cancelled after {} of {} rule(s)",
                run.run_id,
                len(run.rules_run) + len(run.rule_failures),
                len(rules),
            )
        elif run.rule_failures:
            run.status = RunStatus.PARTIAL
        run.ended_at = self._clock().isoformat()
        try:
            self._violations.record_run(run)
        except sqlite3.Error as exc:
            msg = f"QC run {run.run_id} could not be recorded: {exc}"
            logger.error("QC run {} could not be recorded: {}", run.run_id, exc)
            raise SchedulerFailure(msg) from exc
        logger.info(
            "QC run {} finished: {} ({} new violation(s), {} failure(s))",
            run.run_id,
            run.status.value,
            run.violations_found,
            len(run.rule_failures),
        )
        return run

    def _run_one(
        self,
        rule: Rule,
        snapshot: Snapshot,
        now: datetime,
        run: QCRunRecord,
        pool: ThreadPoolExecutor,
    ) -> bool:
        """Run one rule and store its findings.

        Returns False when the rule timed out and still holds its worker.
        """
        timeout = self._settings.rule_timeout_seconds
        future = pool.submit(self._execute, rule, snapshot, now)
        try:
            candidates = future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            failure = RuleTimeout(rule.rule_id, f"timed out after {timeout:g}s")
            run.rule_failures[rule.rule_id] = str(failure)
            logger.warning("Rule {} exceeded {}s and was abandoned", rule.rule_id, timeout)
            return False
        except RuleCompileError as exc:
            run.rule_failures[rule.rule_id] = str(exc)
            logger.error("Rule {} hit a compiler defect and is deactivated: {}", rule.rule_id, exc)
            self._rules.set_active(rule.rule_id, False)
            return True
        except Exception as exc:
            run.rule_failures[rule.rule_id] = str(exc)
            logger.error("Rule {} failed: {}", rule.rule_id, exc)
            return True

        inserted = self._violations.apply_candidates(
            rule.rule_id,
            candidates,
            severity=rule.severity,
            detected_at=now.isoformat(),
            auto_resolve=self._settings.auto_resolve,
            run_id=run.run_id,
        )
        run.rules_run.append(rule.rule_id)
        run.violations_found += inserted
        logger.info(
            "Rule {}: {} candidate(s), {} new violation(s)", rule.rule_id, len(candidates), inserted
        )
        return True

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._settings.max_workers, thread_name_prefix="qc-rule"
        )

    def _abort(self, run: QCRunRecord, exc: Exception) -> None:
        """Mark a run failed and try to leave a record of it."""
        run.status = RunStatus.FAILED
        run.error = str(exc)
        run.ended_at = self._clock().isoformat()
        logger.error("QC run {} aborted: {}", run.run_id, exc)
        try:
            self._violations.record_run(run)
        except sqlite3.Error as store_exc:
            logger.error("QC run {} could not be recorded: {}", run.run_id, store_exc)

    def _execute(self, rule: Rule, snapshot: Snapshot, now: datetime) -> list[ViolationCandidate]:
        query = self._compiler(rule, self._catalog)
        return query.execute(snapshot, today=now.date())
