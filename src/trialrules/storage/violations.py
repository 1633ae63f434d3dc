"""SQLite-backed violation and QC run history store.

Violations are keyed by (rule, subject, visit, field). A QC run diffs each
rule's candidates against the stored rows for that rule in a single
transaction, so re-running over unchanged data never duplicates a row.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from trialrules.models.results import (
    QCRunRecord,
    RunStatus,
    Violation,
    ViolationCandidate,
    ViolationFilter,
    ViolationStatus,
)
from trialrules.models.rule import Severity

# Statuses that mean "already known"; a matching candidate is not re-inserted.
_TRACKED_STATUSES = (
    ViolationStatus.OPEN.value,
    ViolationStatus.REVIEW.value,
    ViolationStatus.FALSE_POSITIVE.value,
)


class ViolationStore:
    """Persistence for violations, QC run records and per-rule last-run times."""

    def __init__(self, db_path: Path) -> None:
        """Open or create the SQLite database.

        Args:
            db_path: Path to the SQLite database file.
                     Parent directory is created if needed.
        """
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        """Create tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS violations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                visit TEXT NOT NULL DEFAULT '',
                field TEXT NOT NULL,
                observed_value TEXT,
                expected TEXT NOT NULL,
                severity TEXT NOT NULL,
                detected_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                resolved_at TEXT,
                note TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_violations_key
                ON violations (rule_id, subject_id, visit, field);
            CREATE TABLE IF NOT EXISTS qc_runs (
                run_id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                rules_run_json TEXT NOT NULL DEFAULT '[]',
                violations_found INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                error TEXT,
                rule_failures_json TEXT NOT NULL DEFAULT '{}'
            );
            CREATE TABLE IF NOT EXISTS rule_runs (
                rule_id TEXT PRIMARY KEY,
                last_run_at TEXT NOT NULL,
                run_id TEXT
            );
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Violations
    # ------------------------------------------------------------------

    def apply_candidates(
        self,
        rule_id: str,
        candidates: list[ViolationCandidate],
        *,
        severity: Severity,
        detected_at: str,
        auto_resolve: bool = False,
        run_id: str | None = None,
    ) -> int:
        """Diff one rule's candidates against stored violations and persist.

        Inserts candidates whose key has no open/review/false_positive row,
        optionally resolves open rows whose key disappeared, and records the
        rule's last-run time. Everything happens in one transaction.

        Returns:
            Number of newly inserted violations.
        """
        with self._lock, self._conn:
            rows = self._conn.execute(
                "SELECT id, subject_id, visit, field, status FROM violations "
                f"WHERE rule_id = ? AND status IN ({', '.join('?' * len(_TRACKED_STATUSES))})",
                (rule_id, *_TRACKED_STATUSES),
            ).fetchall()
            existing = {(rule_id, r["subject_id"], r["visit"], r["field"]): r for r in rows}

            inserted = 0
            seen: set[tuple[str, str, str, str]] = set()
            for candidate in candidates:
                key = candidate.key
                if key in existing or key in seen:
                    continue
                seen.add(key)
                self._conn.execute(
                    """INSERT INTO violations
                       (rule_id, subject_id, visit, field, observed_value,
                        expected, severity, detected_at, status)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        rule_id,
                        candidate.subject_id,
                        candidate.visit or "",
                        candidate.field,
                        candidate.observed_value,
                        candidate.expected,
                        severity.value,
                        detected_at,
                        ViolationStatus.OPEN.value,
                    ),
                )
                inserted += 1

            if auto_resolve:
                current = {c.key for c in candidates}
                stale = [
                    row["id"]
                    for key, row in existing.items()
                    if key not in current and row["status"] == ViolationStatus.OPEN.value
                ]
                for violation_id in stale:
                    self._conn.execute(
                        "UPDATE violations SET status = ?, resolved_at = ?, note = ? WHERE id = ?",
                        (
                            ViolationStatus.RESOLVED.value,
                            detected_at,
                            "auto-resolved: no longer detected",
                            violation_id,
                        ),
                    )
                if stale:
                    logger.info("Rule {}: auto-resolved {} violation(s)", rule_id, len(stale))

            self._conn.execute(
                "INSERT OR REPLACE INTO rule_runs (rule_id, last_run_at, run_id) VALUES (?, ?, ?)",
                (rule_id, detected_at, run_id),
            )
        return inserted

    def list_violations(self, filters: ViolationFilter | None = None) -> list[Violation]:
        """Return violations matching the filters, newest first."""
        filters = filters or ViolationFilter()
        query = "SELECT * FROM violations WHERE 1 = 1"
        params: list[object] = []
        for column, value in (
            ("rule_id", filters.rule_id),
            ("subject_id", filters.subject_id),
            ("visit", filters.visit),
            ("status", filters.status.value if filters.status else None),
            ("severity", filters.severity.value if filters.severity else None),
        ):
            if value is not None:
                query += f" AND {column} = ?"
                params.append(value)
        query += " ORDER BY detected_at DESC, id DESC"
        if filters.limit is not None:
            query += " LIMIT ?"
            params.append(filters.limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_violation(r) for r in rows]

    def get(self, violation_id: int) -> Violation | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM violations WHERE id = ?", (violation_id,)
            ).fetchone()
        return self._row_to_violation(row) if row is not None else None

    def update_status(
        self,
        violation_id: int,
        status: ViolationStatus,
        note: str | None = None,
    ) -> Violation:
        """Move a violation through the review workflow.

        Resolving stamps ``resolved_at``; any other status clears it.

        Raises:
            KeyError: If the violation does not exist.
        """
        resolved_at = datetime.now(tz=UTC).isoformat() if status == ViolationStatus.RESOLVED else None
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """UPDATE violations
                   SET status = ?, resolved_at = ?, note = COALESCE(?, note)
                   WHERE id = ?""",
                (status.value, resolved_at, note, violation_id),
            )
        if cursor.rowcount == 0:
            msg = f"Violation {violation_id} not found"
            raise KeyError(msg)
        logger.info("Violation {} -> {}", violation_id, status.value)
        violation = self.get(violation_id)
        assert violation is not None
        return violation

    def summary(self) -> dict[str, dict[str, int]]:
        """Violation counts by status and by severity, for dashboards."""
        with self._lock:
            by_status = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM violations GROUP BY status"
            ).fetchall()
            by_severity = self._conn.execute(
                "SELECT severity, COUNT(*) AS n FROM violations GROUP BY severity"
            ).fetchall()
        return {
            "status": {r["status"]: r["n"] for r in by_status},
            "severity": {r["severity"]: r["n"] for r in by_severity},
        }

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM violations").fetchone()
        return row[0]

    def _row_to_violation(self, row: sqlite3.Row) -> Violation:
        return Violation(
            id=row["id"],
            rule_id=row["rule_id"],
            subject_id=row["subject_id"],
            visit=row["visit"] or None,
            field=row["field"],
            observed_value=row["observed_value"],
            expected=row["expected"],
            severity=row["severity"],
            detected_at=row["detected_at"],
            status=row["status"],
            resolved_at=row["resolved_at"],
            note=row["note"],
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def last_run(self, rule_id: str) -> str | None:
        """ISO timestamp of the rule's last completed execution, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT last_run_at FROM rule_runs WHERE rule_id = ?", (rule_id,)
            ).fetchone()
        return row["last_run_at"] if row is not None else None

    def record_run(self, run: QCRunRecord) -> None:
        """Insert or update a QC run record."""
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT OR REPLACE INTO qc_runs
                   (run_id, started_at, ended_at, rules_run_json, violations_found,
                    status, error, rule_failures_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.run_id,
                    run.started_at,
                    run.ended_at,
                    json.dumps(run.rules_run),
                    run.violations_found,
                    run.status.value,
                    run.error,
                    json.dumps(run.rule_failures),
                ),
            )

    def runs(self, limit: int = 20) -> list[QCRunRecord]:
        """Most recent QC runs first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM qc_runs ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            QCRunRecord(
                run_id=r["run_id"],
                started_at=r["started_at"],
                ended_at=r["ended_at"],
                rules_run=json.loads(r["rules_run_json"]),
                violations_found=r["violations_found"],
                status=RunStatus(r["status"]),
                error=r["error"],
                rule_failures=json.loads(r["rule_failures_json"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
