"""Rule text -> checked tree -> executable artifact.

Glue used by the cache, the QC engine and the service so every caller
runs the same parse/validate/compile sequence and reports problems the
same way.
"""

from __future__ import annotations

from loguru import logger

from trialrules.batch.compiler import compile_batch
from trialrules.batch.plan import BatchQuery
from trialrules.dsl.ast import render
from trialrules.dsl.parser import parse
from trialrules.dsl.semantic import TypedAST, validate
from trialrules.errors import RuleCompileError, RuleSyntaxError, RuleValidationError
from trialrules.models.catalog import FieldCatalog
from trialrules.models.results import CompileResult, Diagnostic, DiagnosticKind
from trialrules.models.rule import Rule, RuleContext, RuleScope
from trialrules.realtime.compiler import RealTimeValidator, compile_realtime


def check_rule(
    text: str,
    catalog: FieldCatalog,
    context: RuleContext | str,
    *,
    field: str,
    scope: RuleScope | str = RuleScope.FIELD,
) -> TypedAST:
    """Parse and type-check rule text.

    Raises:
        RuleSyntaxError: On the first malformed token.
        RuleValidationError: With every semantic problem found.
    """
    ast = parse(text, context_hint=context)
    return validate(ast, catalog, context, scope=scope, target=field)


def build_realtime(rule: Rule, catalog: FieldCatalog) -> RealTimeValidator:
    """Compile a stored real-time rule."""
    typed = check_rule(rule.text, catalog, rule.context, field=rule.field, scope=rule.scope)
    return compile_realtime(
        typed,
        catalog,
        rule_id=rule.rule_id,
        severity=rule.severity,
        message=rule.message,
        content_hash=rule.content_hash,
    )


def build_batch(rule: Rule, catalog: FieldCatalog) -> BatchQuery:
    """Compile a stored batch rule into its query plan."""
    typed = check_rule(rule.text, catalog, rule.context, field=rule.field, scope=rule.scope)
    return compile_batch(
        typed,
        rule.scope,
        catalog,
        rule_id=rule.rule_id,
        field=rule.field,
        form=rule.form,
        message=rule.message,
    )


def diagnostics_for(exc: Exception, text: str) -> list[Diagnostic]:
    """Convert a compilation failure into author-facing diagnostics."""
    match exc:
        case RuleSyntaxError():
            return [
                Diagnostic(
                    kind=DiagnosticKind.SYNTAX,
                    message=exc.message,
                    start=exc.span.start,
                    end=exc.span.end,
                    line=exc.line,
                    column=exc.column,
                )
            ]
        case RuleValidationError():
            diagnostics = []
            for error in exc.errors:
                line, column = error.span.line_col(text)
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.SEMANTIC,
                        message=error.message,
                        start=error.span.start,
                        end=error.span.end,
                        line=line,
                        column=column,
                    )
                )
            return diagnostics
        case _:
            return [Diagnostic(kind=DiagnosticKind.COMPILE, message=str(exc))]


def compile_text(
    text: str,
    catalog: FieldCatalog,
    context: RuleContext | str,
    *,
    field: str,
    scope: RuleScope | str = RuleScope.FIELD,
    rule_id: str | None = None,
) -> CompileResult:
    """Compile rule text for author feedback without persisting anything."""
    context = RuleContext(context)
    scope = RuleScope(scope)
    draft = Rule(
        rule_id=rule_id or "_check",
        text=text,
        field=field,
        context=context,
        scope=scope,
    )
    try:
        typed = check_rule(text, catalog, context, field=field, scope=scope)
        if context == RuleContext.REALTIME:
            build_realtime(draft, catalog)
        else:
            build_batch(draft, catalog)
    except (RuleSyntaxError, RuleValidationError, RuleCompileError) as exc:
        if isinstance(exc, RuleCompileError):
            logger.error("Compile invariant violated for rule text {!r}: {}", text, exc)
        return CompileResult(ok=False, rule_id=rule_id, errors=diagnostics_for(exc, text))

    return CompileResult(
        ok=True,
        rule_id=rule_id,
        content_hash=typed.content_hash,
        description=render(typed.root, field),
    )
