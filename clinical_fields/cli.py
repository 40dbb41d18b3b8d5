"""Command Line Interface for the clinical field engine.

Administrative commands: database initialization, formula checking and
evaluation, formula templates and bulk recalculation of a calculated field.
"""

import logging
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from clinical_fields import __version__
from clinical_fields.domain.formula import (
    FormulaSyntaxError,
    available_operators,
    evaluate_formula,
    validate_formula,
)
from clinical_fields.domain.models import Actor, UserRole
from clinical_fields.domain.ports import FieldEngineError
from clinical_fields.domain.templates import get_all_templates, get_templates_by_category
from clinical_fields.infrastructure.logging_config import setup_logging
from clinical_fields.infrastructure.settings import settings

app = typer.Typer(
    name="clinical-fields",
    help="Clinical custom-field calculation engine",
    add_completion=False
)
console = Console()

logger = logging.getLogger(__name__)


def _parse_variables(assignments: List[str]) -> dict:
    """Turn ``name=value`` pairs into a variable map (numbers where possible)."""
    variables = {}
    for assignment in assignments:
        if "=" not in assignment:
            raise typer.BadParameter(f"Expected name=value, got '{assignment}'", param_hint="--var")
        name, raw = assignment.split("=", 1)
        name = name.strip()
        raw = raw.strip()
        try:
            variables[name] = float(raw)
        except ValueError:
            variables[name] = raw
    return variables


@app.command("init-db")
def init_db() -> None:
    """Create the database tables if they do not exist."""
    from clinical_fields.main import create_storage_adapter

    try:
        store = create_storage_adapter()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to initialize database: {str(e)}")
        raise typer.Exit(code=1)
    store.close()
    console.print(f"[green]✓[/green] Database ready: {settings.get_db_path()}")


@app.command("validate-formula")
def validate_formula_command(
    formula: str = typer.Argument(..., help="Formula text, e.g. \"{weight} / ({height} ^ 2)\""),
) -> None:
    """Check formula syntax and list its references."""
    result = validate_formula(formula)
    if not result["valid"]:
        console.print(f"[red]✗[/red] Invalid formula: {result['error']}")
        raise typer.Exit(code=1)

    console.print("[green]✓[/green] Formula is valid")
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row("References:", ", ".join(result["dependencies"]) or "-")
    table.add_row("Volatile:", "yes" if result["volatile"] else "no")
    console.print(table)


@app.command()
def evaluate(
    formula: str = typer.Argument(..., help="Formula text"),
    var: Optional[List[str]] = typer.Option(None, "--var", "-v", help="Variable as name=value (repeatable)"),
    decimals: int = typer.Option(2, "--decimals", "-d", min=0, max=4, help="Decimal places of the result"),
) -> None:
    """Evaluate a formula against the given variables.

    Examples:
        clinical-fields evaluate "{weight} / ({height} ^ 2)" --var weight=70 --var height=1.70
        clinical-fields evaluate "{measure:weight} * 2" --var measure:weight=75
    """
    variables = _parse_variables(var or [])
    try:
        result = evaluate_formula(formula, variables, decimal_places=decimals)
    except FormulaSyntaxError as e:
        console.print(f"[red]✗[/red] Invalid formula: {str(e)}")
        raise typer.Exit(code=1)

    if result.is_success():
        console.print(f"[bold]{result.value}[/bold]")
    else:
        console.print(f"[yellow]⚠[/yellow] Unresolvable: {result.error}")


@app.command()
def templates(
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Only show one template category"),
) -> None:
    """List the available calculated-field templates."""
    selected = get_templates_by_category(category) if category else get_all_templates()
    if not selected:
        console.print(f"[yellow]⚠[/yellow] No templates in category '{category}'")
        raise typer.Exit(code=1)

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Category")
    table.add_column("Formula")
    table.add_column("Unit")
    for template in selected:
        table.add_row(template.id, template.category, template.formula, template.unit or "")
    console.print(table)


@app.command()
def operators() -> None:
    """List the operators and functions usable in formulas."""
    catalogue = available_operators()
    table = Table(show_header=True, header_style="bold")
    table.add_column("Symbol / Function")
    table.add_column("Description")
    for operator in catalogue["operators"]:
        table.add_row(operator["symbol"], operator["description"])
    for function in catalogue["functions"]:
        suffix = " (volatile)" if function["volatile"] else ""
        table.add_row(f"{function['name']}()", function["description"] + suffix)
    console.print(table)


@app.command()
def recalculate(
    definition_id: str = typer.Argument(..., help="Calculated field definition id"),
    start_after: Optional[str] = typer.Option(None, "--start-after", help="Resume after this entity id"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum number of rows"),
    actor_id: str = typer.Option("system", "--actor", help="User id recorded in the audit trail"),
) -> None:
    """Recalculate a calculated field for every entity that has a value for it."""
    from clinical_fields.main import create_field_services

    try:
        patient_service, _ = create_field_services()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to initialize storage: {str(e)}")
        raise typer.Exit(code=1)

    actor = Actor(id=actor_id, username=actor_id, role=UserRole.ADMIN)
    try:
        with console.status("[bold green]Recalculating..."):
            report = patient_service.recalculate_all_values_for_field(
                definition_id, actor, start_after=start_after, limit=limit
            )
    except FieldEngineError as e:
        console.print(f"[red]✗[/red] {str(e)}")
        raise typer.Exit(code=1)
    finally:
        patient_service.repository.close()

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Rows processed:", f"[bold]{report.total:,}[/bold]")
    summary_table.add_row("Recalculated:", f"[green]{report.recalculated:,}[/green]")
    summary_table.add_row(
        "Unresolvable:",
        f"[yellow]{report.errors:,}[/yellow]" if report.errors else f"{report.errors:,}"
    )
    summary_table.add_row("Last entity:", report.last_entity_id or "-")
    console.print(summary_table)


@app.command()
def info() -> None:
    """Display configuration."""
    engine_config = settings.engine_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Default Language:", engine_config.default_language)
    info_table.add_row("Fallback Language:", engine_config.fallback_language)
    info_table.add_row("Batch Size:", str(engine_config.recalculation_batch_size))
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
) -> None:
    """Clinical custom-field calculation engine."""
    if version:
        console.print(f"clinical-fields v{__version__}")
        raise typer.Exit()
    setup_logging(use_json=json_logs, log_level="DEBUG" if verbose else settings.log_level)


if __name__ == "__main__":
    app()
