"""Flowsmith CLI: main entry point and shared utilities."""

from __future__ import annotations

import click
from rich.console import Console

console = Console()

OUTCOME_STYLES = {
    "validated": "green",
    "unresolved": "yellow",
    "halted": "red",
}

SEVERITY_STYLES = {
    "critical": "red",
    "major": "yellow",
    "minor": "dim",
}


def outcome_style(outcome: str) -> str:
    return OUTCOME_STYLES.get(outcome, "white")


def severity_style(severity: str) -> str:
    return SEVERITY_STYLES.get(severity, "white")


def kb_option(fn):
    """Shared --kb option: path to a knowledge base YAML file."""
    return click.option(
        "--kb",
        "kb_path",
        default=None,
        type=click.Path(exists=True, dir_okay=False),
        help="Knowledge base file (defaults to the bundled rule set)",
    )(fn)


@click.group()
def main():
    """Flowsmith: turn automation briefs into validated workflows."""
    pass


def cli():
    """Entrypoint that loads .env before running the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    main()


# Import subcommand modules to register commands
from flowsmith.cli.audit_commands import audit  # noqa: E402
from flowsmith.cli.build_commands import build  # noqa: E402
from flowsmith.cli.kb_commands import kb  # noqa: E402
from flowsmith.cli.validate_commands import validate  # noqa: E402

# Register commands
main.add_command(build)
main.add_command(validate)
main.add_command(kb)
main.add_command(audit)
