"""Rich renderers shared by the build and validate commands."""

from __future__ import annotations

from rich import box
from rich.table import Table

from flowsmith.cli.main import console, severity_style
from flowsmith.core.models import StageError, ValidationReport


def show_violations(report: ValidationReport, title: str = "Violations") -> None:
    if not report.violations:
        console.print(f"[green]No violations[/green] [dim](kb {report.kb_version}, {report.rules_evaluated} rules)[/dim]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Severity", no_wrap=True)
    table.add_column("Rule", style="bold")
    table.add_column("Location", style="dim")
    table.add_column("Message")
    table.add_column("Fix", justify="center")
    for v in report.violations:
        style = severity_style(v.severity.value)
        table.add_row(
            f"[{style}]{v.severity.value}[/{style}]",
            v.rule_id,
            v.location or "-",
            v.message,
            "auto" if v.mechanical else "manual",
        )
    console.print(table)


def show_errors(errors: tuple[StageError, ...] | list[StageError]) -> None:
    if not errors:
        return
    table = Table(title="Errors", box=box.ROUNDED)
    table.add_column("Stage", style="bold")
    table.add_column("Kind")
    table.add_column("Fatal", justify="center")
    table.add_column("Message")
    for e in errors:
        table.add_row(e.stage, e.kind.value, "[red]yes[/red]" if e.fatal else "no", e.message)
    console.print(table)
