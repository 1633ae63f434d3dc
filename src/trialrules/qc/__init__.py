"""Batch QC engine and background scheduler."""
