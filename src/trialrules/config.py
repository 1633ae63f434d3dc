"""QC engine settings.

Settings are a plain Pydantic model so hosts can build them in code;
``load_settings`` reads the same shape from a JSON file.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field


class QCSettings(BaseModel):
    """Tunables for batch QC runs and the scheduler loop."""

    auto_resolve: bool = Field(
        default=False,
        description="Mark open violations resolved when their candidate disappears",
    )
    rule_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-rule execution ceiling in a QC run"
    )
    max_workers: int = Field(default=4, ge=1, description="Worker threads per QC run")
    tick_seconds: float = Field(default=60.0, gt=0, description="Scheduler polling interval")
    source_retry_attempts: int = Field(
        default=3, ge=1, description="Attempts to read the clinical data source"
    )


def load_settings(path: str | Path | None = None) -> QCSettings:
    """Load QC settings from a JSON file, or return defaults when path is None.

    Raises:
        FileNotFoundError: If a path is given and does not exist.
    """
    if path is None:
        return QCSettings()

    settings_file = Path(path)
    if not settings_file.exists():
        msg = f"Settings file not found at {settings_file}"
        raise FileNotFoundError(msg)

    with open(settings_file) as f:
        return QCSettings(**json.load(f))
