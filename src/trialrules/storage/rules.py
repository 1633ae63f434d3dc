"""SQLite-backed rule store.

Holds rule definitions authored outside the engine. Every write notifies
registered listeners with the affected rule id so the compiled-rule cache
can drop stale entries.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from trialrules.errors import RuleNotFound
from trialrules.models.rule import Rule, RuleContext

RuleListener = Callable[[str], None]


class RuleStore:
    """SQLite-backed persistence for validation rules.

    Safe to share between the request thread and QC workers: writes are
    serialized on an internal lock and each one is its own transaction.
    """

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
        self._listeners: list[RuleListener] = []
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        """Create tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS rules (
                rule_id TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                field TEXT NOT NULL,
                form TEXT,
                context TEXT NOT NULL,
                scope TEXT NOT NULL,
                severity TEXT NOT NULL,
                message TEXT,
                schedule TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            );
        """)
        self._conn.commit()

    def subscribe(self, listener: RuleListener) -> None:
        """Register a callback invoked with the rule id after every change."""
        self._listeners.append(listener)

    def _notify(self, rule_id: str) -> None:
        for listener in self._listeners:
            listener(rule_id)

    def save(self, rule: Rule) -> Rule:
        """Insert or replace a rule, stamping ``updated_at``.

        Returns:
            The rule as stored.
        """
        stored = rule.model_copy(update={"updated_at": datetime.now(tz=UTC).isoformat()})
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT OR REPLACE INTO rules
                   (rule_id, text, field, form, context, scope, severity,
                    message, schedule, active, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    stored.rule_id,
                    stored.text,
                    stored.field,
                    stored.form,
                    stored.context.value,
                    stored.scope.value,
                    stored.severity.value,
                    stored.message,
                    stored.schedule,
                    int(stored.active),
                    stored.updated_at,
                ),
            )
        logger.debug("Saved rule {} (active={})", stored.rule_id, stored.active)
        self._notify(stored.rule_id)
        return stored

    def set_active(self, rule_id: str, active: bool) -> None:
        """Activate or deactivate a rule.

        Raises:
            RuleNotFound: If no such rule exists.
        """
        now = datetime.now(tz=UTC).isoformat()
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE rules SET active = ?, updated_at = ? WHERE rule_id = ?",
                (int(active), now, rule_id),
            )
        if cursor.rowcount == 0:
            msg = f"Rule '{rule_id}' not found"
            raise RuleNotFound(msg)
        logger.info("Rule {} {}", rule_id, "activated" if active else "deactivated")
        self._notify(rule_id)

    def delete(self, rule_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM rules WHERE rule_id = ?", (rule_id,))
        self._notify(rule_id)

    def get(self, rule_id: str) -> Rule | None:
        """Return a rule by id, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM rules WHERE rule_id = ?", (rule_id,)
            ).fetchone()
        return self._row_to_rule(row) if row is not None else None

    def list_rules(
        self,
        *,
        context: RuleContext | None = None,
        active_only: bool = False,
    ) -> list[Rule]:
        """Return rules ordered by id, optionally filtered."""
        query = "SELECT * FROM rules WHERE 1 = 1"
        params: list[object] = []
        if context is not None:
            query += " AND context = ?"
            params.append(context.value)
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY rule_id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def _row_to_rule(self, row: sqlite3.Row) -> Rule:
        return Rule(
            rule_id=row["rule_id"],
            text=row["text"],
            field=row["field"],
            form=row["form"],
            context=row["context"],
            scope=row["scope"],
            severity=row["severity"],
            message=row["message"],
            schedule=row["schedule"],
            active=bool(row["active"]),
            updated_at=row["updated_at"],
        )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
