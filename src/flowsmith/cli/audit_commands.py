"""Audit command: show what the SQL audit store recorded for a request."""

from __future__ import annotations

import sys

import click
from rich import box
from rich.table import Table

from flowsmith.cli.main import console, outcome_style


@click.command()
@click.argument("request_id")
def audit(request_id: str):
    """Show stage transitions, errors and the stored result of REQUEST_ID.

    Requires FLOWSMITH_AUDIT_ENABLED=1 when the request was built.
    """
    from flowsmith.config import get_settings
    from flowsmith.db.engine import get_audit_engine, get_audit_session, init_audit_db
    from flowsmith.services.audit import get_workflow, list_errors, list_transitions

    settings = get_settings()
    if not settings.audit_db_path.exists():
        console.print(f"[red]No audit database at[/red] {settings.audit_db_path}")
        sys.exit(1)

    init_audit_db(get_audit_engine(settings))
    with get_audit_session(settings) as session:
        transitions = list_transitions(session, request_id)
        errors = list_errors(session, request_id)
        workflow = get_workflow(session, request_id)

        if not transitions and workflow is None:
            console.print(f"[yellow]No audit records for request[/yellow] {request_id}")
            sys.exit(1)

        if workflow is not None:
            style = outcome_style(workflow.outcome)
            score = f"{workflow.score:.2f}" if workflow.score is not None else "-"
            console.print(
                f"[bold]{request_id}[/bold]  [{style}]{workflow.outcome}[/{style}]  "
                f"state={workflow.state} score={score} corrected={workflow.corrected_count} "
                f"kb={workflow.kb_version or '-'}"
            )

        table = Table(title="Stage transitions", box=box.ROUNDED)
        table.add_column("Stage", style="bold")
        table.add_column("Outcome")
        table.add_column("Entered", style="dim")
        table.add_column("Time", justify="right")
        for t in transitions:
            table.add_row(
                t.stage,
                t.outcome,
                t.entered_at.isoformat(timespec="seconds"),
                f"{(t.exited_at - t.entered_at).total_seconds():.2f}s",
            )
        console.print(table)

        for e in errors:
            marker = "[red]fatal[/red]" if e.fatal else "[yellow]non-fatal[/yellow]"
            console.print(f"  {marker} {e.stage} {e.kind}: {e.message}")
