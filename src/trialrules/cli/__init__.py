"""CLI for trialrules."""
