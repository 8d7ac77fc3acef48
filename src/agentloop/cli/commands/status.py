"""agentloop status -- show a run's status, budget, and pending ids."""

from __future__ import annotations

import click

from agentloop.cli.formatting import format_status


@click.command()
@click.argument("run_id")
@click.pass_context
def status(ctx: click.Context, run_id: str) -> None:
    """Show status, budget usage, and pending tool calls for RUN_ID."""
    from agentloop.cli import _store_session

    with _store_session(ctx) as (store, console):
        info = store.get(run_id)
        state, budget = store.load(run_id)
        format_status(info, state, budget, console)
