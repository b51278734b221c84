"""The flowsmith build command."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from flowsmith.cli.display import show_errors, show_violations
from flowsmith.cli.main import console, kb_option, outcome_style


@click.command()
@click.argument("brief")
@click.option("--email", "contact_ref", default=None, help="Contact address attached to the request")
@click.option(
    "--priority",
    type=click.Choice(["standard", "high"]),
    default="standard",
    show_default=True,
    help="High priority bypasses the response cache",
)
@click.option("--json", "output_json", is_flag=True, help="Output the final envelope as JSON")
@click.option("--outbox", default=None, type=click.Path(file_okay=False), help="Write the terminal snapshot here")
@kb_option
@click.option("--verbose", "-v", count=True, help="Verbosity level: -v per-stage progress, -vv model attempts")
def build(
    brief: str,
    contact_ref: str | None,
    priority: str,
    output_json: bool,
    outbox: str | None,
    kb_path: str | None,
    verbose: int,
):
    """Generate a workflow from BRIEF, validate it and auto-correct it."""
    from flowsmith.config import get_settings
    from flowsmith.core.errors import KnowledgeBaseError
    from flowsmith.core.logging import Verbosity
    from flowsmith.core.models import PipelineState
    from flowsmith.pipeline import WorkflowBuilder

    settings = get_settings()
    if kb_path:
        settings = settings.model_copy(update={"knowledge_base_path": Path(kb_path)})

    try:
        builder = WorkflowBuilder(
            settings,
            outbox_dir=Path(outbox) if outbox else None,
            verbosity=Verbosity(min(verbose, Verbosity.DEBUG)),
            console=Console(stderr=True, quiet=True) if output_json else None,
        )
    except KnowledgeBaseError as e:
        console.print(f"[red]Knowledge base error:[/red] {e}")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    with builder:
        envelope = builder.build(brief, contact_ref=contact_ref, priority=priority)

    if output_json:
        click.echo(json.dumps(envelope.to_dict(), indent=2))
    else:
        _display_envelope(envelope)

    if envelope.state is not PipelineState.COMPLETED:
        sys.exit(1)


def _display_envelope(envelope) -> None:
    outcome = envelope.outcome.value
    style = outcome_style(outcome)
    lines = [
        f"[bold]Request:[/bold] {envelope.request_id}",
        f"[bold]State:[/bold] {envelope.state.value}"
        + (f" [dim](at {envelope.current_stage})[/dim]" if envelope.current_stage else ""),
    ]
    if envelope.validation is not None:
        lines.append(f"[bold]Score:[/bold] {envelope.validation.score:.2f}")
        lines.append(f"[bold]Auto-corrected:[/bold] {envelope.validation.corrected_count}")
    lines.append(f"[bold]Time:[/bold] {envelope.total_latency:.2f}s")
    console.print(
        Panel(
            "\n".join(lines),
            title=f"[bold {style}]{outcome.upper()}[/bold {style}]",
            border_style=style,
        )
    )

    latencies = envelope.stage_latencies()
    if latencies:
        table = Table(title="Stages", box=box.ROUNDED)
        table.add_column("Stage", style="bold")
        table.add_column("Time", justify="right")
        table.add_column("Errors", justify="right")
        for stage, elapsed in latencies.items():
            errors = envelope.errors_for(stage)
            table.add_row(stage, f"{elapsed:.2f}s", str(len(errors)) if errors else "")
        console.print(table)

    show_errors(envelope.errors)
    if envelope.validation is not None:
        show_violations(envelope.validation, title="Remaining violations")
    if envelope.artifact is not None:
        console.print(Syntax(json.dumps(envelope.artifact, indent=2), "json", word_wrap=True))
