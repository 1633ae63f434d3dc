"""SQLite persistence for rules, violations and QC run history."""

from trialrules.storage.rules import RuleStore
from trialrules.storage.violations import ViolationStore

__all__ = ["RuleStore", "ViolationStore"]
