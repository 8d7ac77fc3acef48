"""Rich formatting helpers for the agentloop CLI.

Provides functions that format stored checkpoints for terminal display.
Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentloop.models.content import (
    ApprovalDecisionBlock,
    ApprovalRequestBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from agentloop.models.outcome import LoopStatus

if TYPE_CHECKING:
    from agentloop.conversation import ConversationState
    from agentloop.models.content import ContentBlock, Turn
    from agentloop.orchestrator.budget import Budget
    from agentloop.storage.sqlite import CheckpointInfo

_STATUS_COLORS = {
    LoopStatus.RUNNING: "cyan",
    LoopStatus.COMPLETED: "green",
    LoopStatus.EXHAUSTED: "yellow",
    LoopStatus.FAILED: "red",
    LoopStatus.CANCELLED: "magenta",
}

_PREVIEW_CHARS = 60


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def _status(status: LoopStatus) -> str:
    color = _STATUS_COLORS[status]
    return f"[{color}]{status.value}[/{color}]"


def _preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return escape(text)


def format_runs(runs: list[CheckpointInfo], console: Console) -> None:
    """Display stored runs in a table."""
    if not runs:
        console.print("[dim]No runs.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Run", style="yellow")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")
    table.add_column("Turns", justify="right", style="green")
    table.add_column("Updated", style="dim")

    for info in runs:
        table.add_row(
            escape(info.run_id),
            _status(info.status),
            f"{info.iterations}/{info.max_iterations}",
            str(info.turn_count),
            info.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


def _describe_block(block: ContentBlock) -> str:
    if isinstance(block, TextBlock):
        return _preview(block.text)
    if isinstance(block, ToolCallBlock):
        return f"[cyan]call[/cyan] {escape(block.name)} [dim]({escape(block.id)})[/dim]"
    if isinstance(block, ToolResultBlock):
        if block.is_error:
            kind = block.error_kind.value if block.error_kind else "error"
            label = f"[red]error[/red] [dim]{escape(kind)}[/dim]"
        else:
            label = "[green]result[/green]"
        return f"{label} [dim]({escape(block.call_id)})[/dim] {_preview(block.output)}"
    if isinstance(block, ApprovalRequestBlock):
        return (
            f"[yellow]approval?[/yellow] {escape(block.action)} "
            f"[dim]risk={block.risk.value}[/dim]"
        )
    if isinstance(block, ApprovalDecisionBlock):
        verdict = "[green]approved[/green]" if block.approved else "[red]denied[/red]"
        reason = f" {escape(block.reason)}" if block.reason else ""
        return f"{verdict}{reason}"
    return escape(str(block))


def format_log_compact(turns: tuple[Turn, ...], console: Console) -> None:
    """Display one line per turn."""
    if not turns:
        console.print("[dim]No turns.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Role", style="cyan", width=6)
    table.add_column("Blocks", justify="right")
    table.add_column("Summary")

    for index, turn in enumerate(turns):
        first = _describe_block(turn.blocks[0]) if turn.blocks else ""
        table.add_row(str(index), turn.role, str(len(turn.blocks)), first)

    console.print(table)


def format_log_verbose(turns: tuple[Turn, ...], console: Console) -> None:
    """Display every block of every turn."""
    if not turns:
        console.print("[dim]No turns.[/dim]")
        return

    for index, turn in enumerate(turns):
        if index > 0:
            console.print()
        console.print(f"[yellow]turn {index}[/yellow] [cyan]{turn.role}[/cyan]")
        for block in turn.blocks:
            if isinstance(block, TextBlock):
                console.print(f"  {escape(block.text)}", highlight=False)
            else:
                console.print(f"  {_describe_block(block)}", highlight=False)
            if isinstance(block, ToolCallBlock) and block.input:
                args = ", ".join(f"{k}={v!r}" for k, v in block.input.items())
                console.print(f"    [dim]{escape(args)}[/dim]", highlight=False)


def format_status(
    info: CheckpointInfo,
    state: ConversationState,
    budget: Budget,
    console: Console,
) -> None:
    """Display the status, budget, and pending ids of one run."""
    console.print(f"Run [yellow]{escape(info.run_id)}[/yellow]  {_status(info.status)}")
    console.print(f"  Turns:      {len(state)}")

    pct = budget.elapsed_iterations / budget.max_iterations if budget.max_iterations else 1.0
    color = "red" if pct >= 1 else "yellow" if pct > 0.7 else "green"
    console.print(
        f"  Iterations: [{color}]{budget.elapsed_iterations}[/{color}] / "
        f"{budget.max_iterations}"
    )
    if budget.per_call_timeout is not None:
        console.print(f"  Per call:   {budget.per_call_timeout:g}s")
    if budget.wall_clock_timeout is not None:
        console.print(f"  Wall clock: {budget.wall_clock_timeout:g}s")
    console.print(f"  Updated:    {info.updated_at.strftime('%Y-%m-%d %H:%M:%S')}")

    if state.pending_call_ids:
        console.print()
        console.print("[bold]Pending tool calls:[/bold]")
        for call_id in state.pending_call_ids:
            console.print(f"  [yellow]{escape(call_id)}[/yellow]")
    if state.pending_approval_ids:
        console.print()
        console.print("[bold]Pending approvals:[/bold]")
        for request_id in state.pending_approval_ids:
            console.print(f"  [yellow]{escape(request_id)}[/yellow]")


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {message}", highlight=False)
