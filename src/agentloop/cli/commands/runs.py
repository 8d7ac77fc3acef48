"""agentloop runs -- list stored runs."""

from __future__ import annotations

import click

from agentloop.cli.formatting import format_runs


@click.command()
@click.pass_context
def runs(ctx: click.Context) -> None:
    """List checkpointed runs, most recently updated first."""
    from agentloop.cli import _store_session

    with _store_session(ctx) as (store, console):
        format_runs(store.list_runs(), console)
