"""Agentloop CLI -- inspect checkpointed agent runs from the terminal.

This module is NEVER imported from agentloop/__init__.py.
It is only loaded via the ``agentloop`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import TYPE_CHECKING

try:
    import click
except ImportError:
    raise ImportError(
        "CLI dependencies not installed. Install with: pip install agentloop[cli]"
    ) from None

from agentloop.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from agentloop.storage.sqlite import SqliteCheckpointStore


@click.group()
@click.option(
    "--db",
    default=".agentloop.db",
    envvar="AGENTLOOP_DB",
    help="Path to the checkpoint database.",
)
@click.pass_context
def cli(ctx: click.Context, db: str) -> None:
    """Agentloop: inspect checkpointed agent runs."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db


@contextmanager
def _store_session(ctx: click.Context) -> Iterator[tuple[SqliteCheckpointStore, Console]]:
    """Open the checkpoint store, yield (store, console), and dispose of it.

    Exceptions are formatted as CLI errors and exit with status 1.
    """
    from agentloop.storage.engine import create_store_engine
    from agentloop.storage.sqlite import SqliteCheckpointStore

    console = get_console()
    db_path = ctx.obj["db_path"]
    if not os.path.exists(db_path):
        format_error(f"Database not found: {db_path}", console)
        raise SystemExit(1)

    try:
        engine = create_store_engine(db_path)
        try:
            yield SqliteCheckpointStore(engine), console
        finally:
            engine.dispose()
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from agentloop.cli.commands.log import log  # noqa: E402
from agentloop.cli.commands.runs import runs  # noqa: E402
from agentloop.cli.commands.status import status  # noqa: E402

cli.add_command(runs)
cli.add_command(log)
cli.add_command(status)
