"""agentloop log -- show a run's conversation turn by turn."""

from __future__ import annotations

import click

from agentloop.cli.formatting import format_log_compact, format_log_verbose


@click.command()
@click.argument("run_id")
@click.option("-v", "--verbose", is_flag=True, help="Show every block of every turn.")
@click.pass_context
def log(ctx: click.Context, run_id: str, verbose: bool) -> None:
    """Show the conversation stored for RUN_ID."""
    from agentloop.cli import _store_session

    with _store_session(ctx) as (store, console):
        turns = store.load_checkpoint(run_id).turns
        if verbose:
            format_log_verbose(turns, console)
        else:
            format_log_compact(turns, console)
