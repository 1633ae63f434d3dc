"""trialrules CLI application entry point.

Provides commands for compiling rule text, evaluating real-time rules
against a record, managing stored rules and running batch QC.

Usage:
    trialrules check "between 40 and 200" --field systolic_bp --catalog catalog.json
    trialrules validate BP_SYS '{"systolic_bp": 35}' --catalog catalog.json
    trialrules rules list
    trialrules qc run --data clinical.db --catalog catalog.json
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from loguru import logger
from rich.console import Console

from trialrules.models.results import ViolationStatus
from trialrules.models.rule import RuleContext, RuleScope, Severity

if TYPE_CHECKING:
    from trialrules.models.catalog import FieldCatalog
    from trialrules.service import RuleService

app = typer.Typer(
    name="trialrules",
    help="Validation rules for clinical trial data: real-time checks and batch QC.",
    no_args_is_help=True,
)
rules_app = typer.Typer(help="Manage stored rules.", no_args_is_help=True)
qc_app = typer.Typer(help="Run batch QC and review violations.", no_args_is_help=True)
app.add_typer(rules_app, name="rules")
app.add_typer(qc_app, name="qc")

console = Console()

DbOption = Annotated[
    Path,
    typer.Option("--db", help="SQLite file holding rules, violations and QC runs"),
]
CatalogOption = Annotated[
    Path,
    typer.Option("--catalog", "-c", help="Field catalog JSON file"),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
) -> None:
    """Configure logging for every command."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _load_catalog(path: Path) -> FieldCatalog:
    from trialrules.models.catalog import FieldCatalog

    try:
        return FieldCatalog.from_json(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error loading catalog:[/bold red] {e}")
        raise typer.Exit(code=1) from e


def _open_service(
    db: Path,
    catalog: Path,
    data: Path | None = None,
    settings: Path | None = None,
) -> RuleService:
    from trialrules.batch.source import FrameDataSource, SqliteDataSource
    from trialrules.config import load_settings
    from trialrules.service import RuleService

    try:
        qc_settings = load_settings(settings)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error loading settings:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    source = (
        SqliteDataSource(data, retry_attempts=qc_settings.source_retry_attempts)
        if data is not None
        else FrameDataSource()
    )
    return RuleService.open(db, _load_catalog(catalog), source, settings=qc_settings)


@app.command()
def version() -> None:
    """Show the current version."""
    from trialrules import __version__

    console.print(f"trialrules {__version__}")


@app.command()
def check(
    text: Annotated[str, typer.Argument(help="Rule text to compile")],
    field: Annotated[str, typer.Option("--field", "-f", help="Target field of the rule")],
    catalog: CatalogOption,
    context: Annotated[
        RuleContext,
        typer.Option("--context", help="Execution context"),
    ] = RuleContext.REALTIME,
    scope: Annotated[
        RuleScope,
        typer.Option("--scope", help="Declared rule scope"),
    ] = RuleScope.FIELD,
) -> None:
    """Compile rule text and show errors located in the source."""
    from trialrules.cli.display import display_compile_result
    from trialrules.pipeline import compile_text

    result = compile_text(text, _load_catalog(catalog), context, field=field, scope=scope)
    display_compile_result(result, text, console)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def validate(
    rule_id: Annotated[str, typer.Argument(help="Stored real-time rule id")],
    record_json: Annotated[str, typer.Argument(help="Record as a JSON object")],
    catalog: CatalogOption,
    db: DbOption = Path("trialrules.db"),
) -> None:
    """Evaluate a stored real-time rule against one record."""
    from trialrules.cli.display import display_validation_result
    from trialrules.errors import RuleNotFound

    try:
        record = json.loads(record_json)
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Error:[/bold red] Record is not valid JSON: {e}")
        raise typer.Exit(code=1) from e
    if not isinstance(record, dict):
        console.print("[bold red]Error:[/bold red] Record must be a JSON object")
        raise typer.Exit(code=1)

    service = _open_service(db, catalog)
    try:
        result = service.validate_field(rule_id, record)
    except RuleNotFound as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        service.close()

    display_validation_result(result, console)
    if not result.valid:
        raise typer.Exit(code=2)


# ---------------------------------------------------------------------------
# rules
# ---------------------------------------------------------------------------


@rules_app.command("list")
def rules_list(
    db: DbOption = Path("trialrules.db"),
    context: Annotated[
        RuleContext | None,
        typer.Option("--context", help="Only rules of this context"),
    ] = None,
) -> None:
    """List stored rules."""
    from trialrules.cli.display import display_rules
    from trialrules.storage.rules import RuleStore

    store = RuleStore(db)
    try:
        display_rules(store.list_rules(context=context), console)
    finally:
        store.close()


@rules_app.command("add")
def rules_add(
    rule_id: Annotated[str, typer.Argument(help="Unique rule id")],
    text: Annotated[str, typer.Argument(help="Rule text")],
    field: Annotated[str, typer.Option("--field", "-f", help="Target field")],
    catalog: CatalogOption,
    db: DbOption = Path("trialrules.db"),
    context: Annotated[RuleContext, typer.Option("--context")] = RuleContext.REALTIME,
    scope: Annotated[RuleScope, typer.Option("--scope")] = RuleScope.FIELD,
    severity: Annotated[Severity, typer.Option("--severity")] = Severity.ERROR,
    form: Annotated[str | None, typer.Option("--form", help="Form holding the field")] = None,
    message: Annotated[str | None, typer.Option("--message", help="Custom message")] = None,
    schedule: Annotated[
        str | None,
        typer.Option("--schedule", help="Batch schedule, e.g. 'nightly' or 'every 6 hours'"),
    ] = None,
) -> None:
    """Compile and store a rule. Rules that fail to compile are stored inactive."""
    from pydantic import ValidationError

    from trialrules.cli.display import display_compile_result
    from trialrules.models.rule import Rule

    try:
        rule = Rule(
            rule_id=rule_id,
            text=text,
            field=field,
            form=form,
            context=context,
            scope=scope,
            severity=severity,
            message=message,
            schedule=schedule,
        )
    except ValidationError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    service = _open_service(db, catalog)
    try:
        result = service.save_rule(rule)
    finally:
        service.close()
    display_compile_result(result, text, console)
    if not result.ok:
        console.print(f"Rule [bold]{rule_id}[/bold] stored [red]inactive[/red]")
        raise typer.Exit(code=1)
    console.print(f"Rule [bold]{rule_id}[/bold] saved")


@rules_app.command("deactivate")
def rules_deactivate(
    rule_id: Annotated[str, typer.Argument(help="Rule id")],
    db: DbOption = Path("trialrules.db"),
) -> None:
    """Deactivate a stored rule."""
    from trialrules.errors import RuleNotFound
    from trialrules.storage.rules import RuleStore

    store = RuleStore(db)
    try:
        store.set_active(rule_id, False)
    except RuleNotFound as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        store.close()
    console.print(f"Rule [bold]{rule_id}[/bold] deactivated")


# ---------------------------------------------------------------------------
# qc
# ---------------------------------------------------------------------------


@qc_app.command("run")
def qc_run(
    data: Annotated[Path, typer.Option("--data", "-d", help="Clinical SQLite database")],
    catalog: CatalogOption,
    db: DbOption = Path("trialrules.db"),
    rule: Annotated[
        list[str] | None,
        typer.Option("--rule", "-r", help="Run only these rule ids (repeatable)"),
    ] = None,
    due: Annotated[
        bool,
        typer.Option("--due", help="Run only rules whose schedule is due"),
    ] = False,
    settings: Annotated[
        Path | None,
        typer.Option("--settings", help="QC settings JSON file"),
    ] = None,
) -> None:
    """Run batch QC now and persist new violations."""
    from trialrules.cli.display import display_run
    from trialrules.errors import QCEngineBusy, RuleNotFound, SchedulerFailure

    service = _open_service(db, catalog, data=data, settings=settings)
    try:
        if due:
            run = service.engine.run_due_rules()
        else:
            run = service.run_qc_now(rule or None)
    except (RuleNotFound, SchedulerFailure, QCEngineBusy) as e:
        console.print(f"[bold red]QC run failed:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        service.close()

    display_run(run, console)


@qc_app.command("violations")
def qc_violations(
    db: DbOption = Path("trialrules.db"),
    status: Annotated[
        ViolationStatus | None,
        typer.Option("--status", help="Filter by status"),
    ] = None,
    rule: Annotated[str | None, typer.Option("--rule", help="Filter by rule id")] = None,
    subject: Annotated[str | None, typer.Option("--subject", help="Filter by subject")] = None,
    limit: Annotated[int | None, typer.Option("--limit", help="Maximum rows")] = None,
    summary: Annotated[
        bool,
        typer.Option("--summary", help="Show counts by status and severity"),
    ] = False,
) -> None:
    """List stored violations."""
    from trialrules.cli.display import display_violations
    from trialrules.models.results import ViolationFilter
    from trialrules.storage.violations import ViolationStore

    store = ViolationStore(db)
    try:
        if summary:
            counts = store.summary()
            for group, values in counts.items():
                line = ", ".join(f"{k}={n}" for k, n in sorted(values.items())) or "none"
                console.print(f"[bold]{group}:[/bold] {line}")
            return
        filters = ViolationFilter(rule_id=rule, subject_id=subject, status=status, limit=limit)
        display_violations(store.list_violations(filters), console)
    finally:
        store.close()


@qc_app.command("status")
def qc_status(
    violation_id: Annotated[int, typer.Argument(help="Violation id")],
    status: Annotated[ViolationStatus, typer.Argument(help="New status")],
    db: DbOption = Path("trialrules.db"),
    note: Annotated[str | None, typer.Option("--note", help="Reviewer note")] = None,
) -> None:
    """Move a violation through the review workflow."""
    from trialrules.storage.violations import ViolationStore

    store = ViolationStore(db)
    try:
        violation = store.update_status(violation_id, status, note)
    except KeyError as e:
        console.print(f"[bold red]Error:[/bold red] Violation {violation_id} not found")
        raise typer.Exit(code=1) from e
    finally:
        store.close()
    console.print(f"Violation {violation.id} is now [bold]{violation.status.value}[/bold]")


@qc_app.command("runs")
def qc_runs(
    db: DbOption = Path("trialrules.db"),
    limit: Annotated[int, typer.Option("--limit", help="Number of runs")] = 20,
) -> None:
    """Show recent QC runs."""
    from trialrules.cli.display import display_runs
    from trialrules.storage.violations import ViolationStore

    store = ViolationStore(db)
    try:
        display_runs(store.runs(limit), console)
    finally:
        store.close()
