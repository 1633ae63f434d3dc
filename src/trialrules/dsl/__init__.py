"""Rule language front end: lexer, parser and semantic validator."""

from trialrules.dsl.parser import parse
from trialrules.dsl.semantic import TypedAST, validate

__all__ = ["TypedAST", "parse", "validate"]
