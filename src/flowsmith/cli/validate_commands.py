"""Validate command: score a workflow file against the knowledge base."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich import box
from rich.panel import Panel
from rich.table import Table

from flowsmith.cli.display import show_violations
from flowsmith.cli.main import console, kb_option


def fixed_path(path: Path) -> Path:
    """``flow.json`` -> ``flow.fixed.json``."""
    return path.with_name(f"{path.stem}.fixed{path.suffix or '.json'}")


@click.command()
@click.argument("workflow_json", type=click.Path(exists=True, dir_okay=False))
@click.option("--fix", is_flag=True, help="Apply mechanical fixes and write <name>.fixed.json")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@kb_option
def validate(workflow_json: str, fix: bool, output_json: bool, kb_path: str | None):
    """Validate a workflow definition against the knowledge base.

    Exits 1 when violations remain (after fixing, when --fix is given).
    """
    from flowsmith.build.corrector import AutoCorrector
    from flowsmith.build.knowledge import load_knowledge_base
    from flowsmith.build.validators import KnowledgeValidator
    from flowsmith.config import get_settings
    from flowsmith.core.errors import KnowledgeBaseError

    path = Path(workflow_json)
    try:
        workflow = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {path}:[/red] {e}")
        sys.exit(1)
    if not isinstance(workflow, dict):
        console.print(f"[red]Expected a JSON object in {path}[/red]")
        sys.exit(1)

    try:
        kb = load_knowledge_base(Path(kb_path) if kb_path else get_settings().knowledge_base_path)
    except KnowledgeBaseError as e:
        console.print(f"[red]Knowledge base error:[/red] {e}")
        sys.exit(1)

    validator = KnowledgeValidator(kb)
    report = validator.validate(workflow)
    correction = None
    if fix and not report.passed:
        correction = AutoCorrector(validator).correct(workflow, report.violations)
        if correction.applied_count:
            out = fixed_path(path)
            out.write_text(json.dumps(correction.artifact, indent=2) + "\n")
    final = correction.report if correction is not None else report

    if output_json:
        payload = {"file": str(path), "report": report.to_dict()}
        if correction is not None:
            payload["correction"] = correction.to_dict()
            payload["fixed_report"] = correction.report.to_dict()
            payload["fixed_file"] = str(fixed_path(path)) if correction.applied_count else None
        click.echo(json.dumps(payload, indent=2))
    else:
        _display(path, report, correction)

    if not final.passed:
        sys.exit(1)


def _display(path: Path, report, correction) -> None:
    console.print(
        Panel(
            f"[bold]File:[/bold] {path}\n"
            f"[bold]Knowledge base:[/bold] {report.kb_version}\n"
            f"[bold]Score:[/bold] {report.score:.2f}",
            title="[bold cyan]Flowsmith Validate[/bold cyan]",
            border_style="cyan",
        )
    )
    show_violations(report)
    if correction is None:
        return

    table = Table(title="Corrections", box=box.ROUNDED)
    table.add_column("Rule", style="bold")
    table.add_column("Location", style="dim")
    table.add_column("Action")
    table.add_column("Detail")
    for action in correction.actions:
        colour = {"applied": "green", "skipped": "yellow"}.get(action.action, "red")
        table.add_row(
            action.rule_id,
            action.location or "-",
            f"[{colour}]{action.action}[/{colour}]",
            action.reason or action.description,
        )
    console.print(table)
    console.print(
        f"\n[bold]Applied:[/bold] {correction.applied_count}, "
        f"[bold]Skipped:[/bold] {correction.skipped_count}, "
        f"[bold]Unresolved:[/bold] {correction.unresolved_count}, "
        f"[bold]Score after fixes:[/bold] {correction.report.score:.2f}"
    )
    if correction.applied_count:
        console.print(f"[green]Wrote[/green] {fixed_path(path)}")
