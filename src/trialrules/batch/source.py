"""Clinical data sources for batch QC.

A data source hands out a Snapshot: a consistent, read-only view of every
form taken once per QC run. Form tables are long-format frames with one
row per subject (and visit, for visit-based forms) and one column per
field.
"""

from __future__ import annotations

import re
import sqlite3
from pathlib import Path
from typing import Protocol

import pandas as pd
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from trialrules.errors import SchedulerFailure

SUBJECT_COLUMN = "subject_id"
VISIT_COLUMN = "visit"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Snapshot(Protocol):
    def form(self, name: str) -> pd.DataFrame: ...

    def subjects(self) -> list[str]: ...


class DataSource(Protocol):
    def snapshot(self) -> Snapshot: ...


class FormNotFound(KeyError):
    """The snapshot holds no table for the requested form."""


class FrameSnapshot:
    """Snapshot backed by in-memory DataFrames."""

    def __init__(self, forms: dict[str, pd.DataFrame]) -> None:
        self._forms = forms

    def form(self, name: str) -> pd.DataFrame:
        """Return a copy of a form table.

        Raises:
            FormNotFound: If the form is absent from the snapshot.
        """
        if name not in self._forms:
            msg = f"Form '{name}' not found in data snapshot"
            raise FormNotFound(msg)
        return self._forms[name].copy()

    def forms(self) -> list[str]:
        return sorted(self._forms)

    def subjects(self) -> list[str]:
        """Every subject id seen on any form, sorted."""
        seen: set[str] = set()
        for df in self._forms.values():
            if SUBJECT_COLUMN in df.columns:
                seen.update(df[SUBJECT_COLUMN].dropna().astype(str))
        return sorted(seen)


class FrameDataSource:
    """Data source over DataFrames supplied by the host (and by tests)."""

    def __init__(self, forms: dict[str, pd.DataFrame] | None = None) -> None:
        self._forms: dict[str, pd.DataFrame] = dict(forms or {})

    def set_form(self, name: str, df: pd.DataFrame) -> None:
        self._forms[name] = df

    def drop_form(self, name: str) -> None:
        self._forms.pop(name, None)

    def snapshot(self) -> FrameSnapshot:
        return FrameSnapshot({name: df.copy() for name, df in self._forms.items()})


class SqliteDataSource:
    """Data source reading every form table from a SQLite database.

    Each table is one form. Transient ``sqlite3.OperationalError`` (locked
    database, busy file) is retried with exponential backoff; when the
    retries run out the run is aborted with SchedulerFailure.
    """

    def __init__(self, db_path: Path, *, retry_attempts: int = 3) -> None:
        self._db_path = Path(db_path)
        self._retry_attempts = max(1, retry_attempts)

    def snapshot(self) -> FrameSnapshot:
        """Read every form table in one transaction.

        Raises:
            SchedulerFailure: If the database cannot be read.
        """
        if not self._db_path.exists():
            msg = f"Clinical database not found at {self._db_path}"
            raise SchedulerFailure(msg)

        reader = retry(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(min=0.1, max=5),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            reraise=True,
        )(self._read_all)

        try:
            forms = reader()
        except sqlite3.Error as exc:
            msg = f"Clinical database unreadable after {self._retry_attempts} attempt(s): {exc}"
            logger.error(msg)
            raise SchedulerFailure(msg) from exc

        logger.info("Loaded data snapshot with {} form(s) from {}", len(forms), self._db_path)
        return FrameSnapshot(forms)

    def _read_all(self) -> dict[str, pd.DataFrame]:
        conn = sqlite3.connect(str(self._db_path))
        try:
            conn.execute("BEGIN")
            names = [
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' "
                    "AND name NOT LIKE 'sqlite_%' ORDER BY name"
                )
            ]
            forms: dict[str, pd.DataFrame] = {}
            for name in names:
                if not _IDENTIFIER.match(name):
                    logger.warning("Skipping table with unsupported name {!r}", name)
                    continue
                forms[name] = pd.read_sql_query(f'SELECT * FROM "{name}"', conn)
            conn.rollback()
            return forms
        finally:
            conn.close()
