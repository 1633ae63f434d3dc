"""Batch QC: data sources, query plans and the plan compiler.

Re-exports for convenient imports:
    from trialrules.batch import compile_batch, BatchQuery, FrameDataSource
"""

from trialrules.batch.compiler import compile_batch
from trialrules.batch.plan import BatchQuery
from trialrules.batch.source import (
    DataSource,
    FrameDataSource,
    FrameSnapshot,
    Snapshot,
    SqliteDataSource,
)

__all__ = [
    "BatchQuery",
    "DataSource",
    "FrameDataSource",
    "FrameSnapshot",
    "Snapshot",
    "SqliteDataSource",
    "compile_batch",
]
