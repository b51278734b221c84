"""The flowsmith kb command."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich import box
from rich.table import Table

from flowsmith.cli.main import console, kb_option, severity_style


@click.command()
@kb_option
def kb(kb_path: str | None):
    """Show the knowledge base version, rules and penalties."""
    from flowsmith.build.knowledge import load_knowledge_base
    from flowsmith.config import get_settings
    from flowsmith.core.errors import KnowledgeBaseError

    try:
        knowledge_base = load_knowledge_base(Path(kb_path) if kb_path else get_settings().knowledge_base_path)
    except KnowledgeBaseError as e:
        console.print(f"[red]Knowledge base error:[/red] {e}")
        sys.exit(1)

    console.print(f"[bold]Knowledge base[/bold] v{knowledge_base.version} [dim]{knowledge_base.source}[/dim]")

    penalties = Table(title="Penalties", box=box.ROUNDED)
    penalties.add_column("Severity")
    penalties.add_column("Penalty", justify="right")
    for severity, value in sorted(knowledge_base.penalties.items(), key=lambda kv: -kv[0].rank):
        style = severity_style(severity.value)
        penalties.add_row(f"[{style}]{severity.value}[/{style}]", f"{value:.2f}")
    console.print(penalties)

    rules = Table(title="Rules", box=box.ROUNDED)
    rules.add_column("Rule", style="bold")
    rules.add_column("Severity")
    rules.add_column("Check", style="dim")
    rules.add_column("Message")
    for rule in knowledge_base.rules:
        style = severity_style(rule.severity.value)
        rules.add_row(rule.id, f"[{style}]{rule.severity.value}[/{style}]", rule.check, rule.message)
    console.print(rules)

    if knowledge_base.best_practices:
        console.print("\n[bold]Best practices[/bold]")
        for practice in knowledge_base.best_practices:
            console.print(f"  - {practice}")
