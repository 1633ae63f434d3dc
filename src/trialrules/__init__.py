"""Clinical-trial validation rule language.

One authored rule syntax, two execution paths: a pure single-record
evaluator for interactive data entry, and a set-oriented pandas query
for scheduled quality-control sweeps.
"""

__version__ = "0.1.0"
