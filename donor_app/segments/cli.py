"""
CLI commands for segment definitions.
"""

from __future__ import annotations

import click
from flask.cli import with_appcontext

from .service import SegmentDefinitionService


@click.group(name="segments")
def segments_cli():
    """Segment definition maintenance."""


@segments_cli.command("refresh")
@click.option(
    "--auto-only",
    is_flag=True,
    help="Only refresh definitions flagged as auto-updated.",
)
@with_appcontext
def segments_refresh(auto_only: bool):
    """Recalculate cached counts and SQL for active segment definitions."""
    refreshed = SegmentDefinitionService().refresh_all(auto_updated_only=auto_only)
    for definition in refreshed:
        click.echo(f"{definition.id}  {definition.estimated_count:>7}  {definition.name}")
    click.echo(f"Refreshed {len(refreshed)} segment definition(s).")


def register_segments_cli(app) -> None:
    if segments_cli.name in app.cli.commands:
        app.cli.commands.pop(segments_cli.name)
    app.cli.add_command(segments_cli)
