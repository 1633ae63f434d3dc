"""Rich display helpers for terminal output.

Provides formatted display functions for compile feedback, rule lists,
real-time results, violations and QC run history using Rich tables.
"""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from trialrules.models.results import (
    CompileResult,
    QCRunRecord,
    RunStatus,
    ValidationResult,
    ValidationStatus,
    Violation,
    ViolationStatus,
)
from trialrules.models.rule import Rule, Severity

_SEVERITY_STYLES: dict[Severity, str] = {
    Severity.ERROR: "bold red",
    Severity.WARNING: "yellow",
    Severity.INFO: "cyan",
}

_RUN_STYLES: dict[RunStatus, str] = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "bold red",
}


def caret_line(text: str, start: int | None, end: int | None) -> str:
    """Return the source line holding ``start`` with a caret underline beneath it."""
    if start is None:
        return text
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", start)
    if line_end == -1:
        line_end = len(text)
    width = max(1, min(end or start + 1, line_end) - start)
    return f"{text[line_start:line_end]}\n{' ' * (start - line_start)}{'^' * width}"


def display_compile_result(result: CompileResult, text: str, console: Console) -> None:
    """Print compile feedback: the normalized rule, or every error with a caret.

    Args:
        result: Output of compiling the rule text.
        text: The rule text that was compiled.
        console: Rich Console for output.
    """
    if result.ok:
        body = f"[bold]{result.description}[/bold]\n[dim]hash {result.content_hash}[/dim]"
        console.print(Panel(body, title="Rule compiles", border_style="green"))
        return

    table = Table(title="Rule errors", show_lines=True)
    table.add_column("Kind", style="bold", no_wrap=True)
    table.add_column("Where", justify="right", style="dim")
    table.add_column("Problem")

    for error in result.errors:
        where = f"{error.line}:{error.column}" if error.line is not None else "-"
        problem = Text(error.message)
        if error.start is not None:
            problem.append("\n")
            problem.append(caret_line(text, error.start, error.end), style="yellow")
        table.add_row(error.kind.value, where, problem)

    console.print(table)
    console.print(f"\n[bold red]{len(result.errors)}[/bold red] error(s)")


def display_rules(rules: list[Rule], console: Console) -> None:
    table = Table(title="Rules", show_lines=False)
    table.add_column("Rule", style="bold cyan", no_wrap=True)
    table.add_column("Field")
    table.add_column("Context")
    table.add_column("Scope")
    table.add_column("Severity")
    table.add_column("Schedule", style="dim")
    table.add_column("Active", justify="center")
    table.add_column("Text")

    for rule in rules:
        table.add_row(
            rule.rule_id,
            rule.field,
            rule.context.value,
            rule.scope.value,
            Text(rule.severity.display_name, style=_SEVERITY_STYLES[rule.severity]),
            rule.schedule or "",
            "[green]yes[/green]" if rule.active else "[red]no[/red]",
            rule.text,
        )

    console.print(table)
    console.print(f"\n[bold]{len(rules)}[/bold] rule(s)")


def display_validation_result(result: ValidationResult, console: Console) -> None:
    if result.status == ValidationStatus.INVALID:
        style = _SEVERITY_STYLES[result.severity]
        console.print(f"[{style}]{result.severity.display_name}:[/{style}] {result.message}")
    elif result.status == ValidationStatus.VALID:
        console.print("[green]Valid[/green]")
    else:
        detail = f" ({result.message})" if result.message else ""
        console.print(f"[yellow]{result.status.value.capitalize()}[/yellow]{detail}")


def display_violations(violations: list[Violation], console: Console) -> None:
    table = Table(title="Violations", show_lines=False)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Rule", style="bold cyan")
    table.add_column("Subject")
    table.add_column("Visit")
    table.add_column("Field")
    table.add_column("Observed", justify="right")
    table.add_column("Expected")
    table.add_column("Severity")
    table.add_column("Status")

    for v in violations:
        status_style = "bold" if v.status == ViolationStatus.OPEN else "dim"
        table.add_row(
            str(v.id),
            v.rule_id,
            v.subject_id,
            v.visit or "",
            v.field,
            v.observed_value or "",
            v.expected,
            Text(v.severity.display_name, style=_SEVERITY_STYLES[v.severity]),
            Text(v.status.value, style=status_style),
        )

    console.print(table)
    console.print(f"\n[bold]{len(violations)}[/bold] violation(s)")


def display_run(run: QCRunRecord, console: Console) -> None:
    style = _RUN_STYLES[run.status]
    lines = [
        f"Run [bold]{run.run_id}[/bold]: [{style}]{run.status.value}[/{style}]",
        f"Rules run: {len(run.rules_run)}  New violations: {run.violations_found}",
    ]
    if run.error:
        lines.append(f"[red]Error:[/red] {run.error}")
    for rule_id, message in sorted(run.rule_failures.items()):
        lines.append(f"[yellow]{rule_id}[/yellow]: {message}")
    console.print(Panel("\n".join(lines), title="QC run", border_style=style))


def display_runs(runs: list[QCRunRecord], console: Console) -> None:
    table = Table(title="QC runs")
    table.add_column("Run", style="bold cyan", no_wrap=True)
    table.add_column("Started")
    table.add_column("Ended")
    table.add_column("Rules", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Status")

    for run in runs:
        table.add_row(
            run.run_id,
            run.started_at,
            run.ended_at or "",
            str(len(run.rules_run)),
            str(run.violations_found),
            str(len(run.rule_failures)),
            Text(run.status.value, style=_RUN_STYLES[run.status]),
        )

    console.print(table)
