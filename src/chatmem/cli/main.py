"""
CLI entrypoint for chatmem.

Every command opens the store, does one thing and closes it again.
Compaction runs inline so a command never exits with work still queued.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from ..config import resolve_memory_config
from ..internal import to_iso
from ..store import MemoryService
from ..types import MEMORY_SECTIONS, MemoryContext, MemoryStats, SystemMemory

app = typer.Typer(
    name="chatmem",
    help="Bounded conversational memory: facts, rolling summary and recent turns",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _get_service(ctx: typer.Context) -> MemoryService:
    """Create a MemoryService from the global options and env config."""
    options = ctx.obj or {}
    overrides: dict[str, Any] = {"compaction_mode": "inline"}
    if options.get("dsn"):
        overrides["driver"] = "postgres"
        overrides["pg_dsn"] = options["dsn"]
    elif options.get("db"):
        overrides["driver"] = "sqlite"
        overrides["db_path"] = options["db"]
    return MemoryService(config=resolve_memory_config(overrides))


def _open(ctx: typer.Context) -> MemoryService:
    try:
        return _get_service(ctx)
    except Exception as exc:
        err_console.print(f"[red]Failed to open memory store:[/red] {exc}")
        raise typer.Exit(1) from exc


def _system_memory_json(memory: SystemMemory) -> dict[str, Any]:
    return memory.to_dict()


def _context_json(context: MemoryContext) -> dict[str, Any]:
    return {
        "system_memory": _system_memory_json(context.system_memory),
        "rolling_summary": context.rolling_summary,
        "recent_messages": [
            {"role": m.role, "content": m.content, "timestamp": to_iso(m.timestamp)}
            for m in context.recent_messages
        ],
        "total_messages": context.total_messages,
        "meta": {
            "raw_message_count": context.meta.raw_message_count,
            "summary_tokens": context.meta.summary_tokens,
            "last_summarized_at": to_iso(context.meta.last_summarized_at),
        },
    }


def _stats_json(stats: MemoryStats) -> dict[str, Any]:
    return {
        "conversation_id": stats.conversation_id,
        "exists": stats.exists,
        "total_messages": stats.total_messages,
        "raw_message_count": stats.raw_message_count,
        "summary_tokens": stats.summary_tokens,
        "system_memory_keys": stats.system_memory_keys,
        "last_summarized_at": to_iso(stats.last_summarized_at),
        "created_at": to_iso(stats.created_at),
        "updated_at": to_iso(stats.updated_at),
    }


def _print_system_memory(memory: SystemMemory) -> None:
    if memory.is_empty():
        console.print("[dim]No stored facts.[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Kind", style="dim")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for section in MEMORY_SECTIONS:
        for key, value in getattr(memory, section).items():
            table.add_row(section, key, value)
    console.print(table)


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    ctx: typer.Context,
    db: str | None = typer.Option(
        None, "--db", help="SQLite database path", envvar="CHATMEM_DB_PATH"
    ),
    dsn: str | None = typer.Option(
        None, "--dsn", help="PostgreSQL DSN (selects the postgres backend)", envvar="CHATMEM_PG_DSN"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    ctx.obj = {"db": db, "dsn": dsn}
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the store schema if it does not exist yet."""
    service = _open(ctx)
    with service:
        config = service.config
        target = config.db_path if config.driver == "sqlite" else "postgres"
    console.print(f"[green]Memory store ready:[/green] [cyan]{target}[/cyan]")


# ---------------------------------------------------------------------------
# add
# ---------------------------------------------------------------------------


@app.command()
def add(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    role: str = typer.Argument(..., help="user or assistant"),
    content: str = typer.Argument(..., help="Message text"),
    tokens: int | None = typer.Option(None, "--tokens", help="Token count (estimated if omitted)"),
) -> None:
    """Append one message to a conversation."""
    service = _open(ctx)
    try:
        with service:
            message = service.add_message(
                user_id, conversation_id, role, content, token_count=tokens
            )
    except Exception as exc:
        err_console.print(f"[red]Add failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    console.print(
        f"[green]Stored[/green] {message.role} message "
        f"[dim]#{message.message_index} ({message.token_count} tokens)[/dim]"
    )


# ---------------------------------------------------------------------------
# context
# ---------------------------------------------------------------------------


@app.command()
def context(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
    prompt: bool = typer.Option(False, "--prompt", help="Print the rendered prompt block only"),
) -> None:
    """Show global plus conversation memory."""
    service = _open(ctx)
    try:
        with service:
            memory = service.get_combined_memory_context(user_id, conversation_id)
            prompt_text = service.build_prompt_context(memory)
    except Exception as exc:
        err_console.print(f"[red]Context failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    if output_json:
        console.print_json(json.dumps(_context_json(memory)))
        return

    if prompt:
        console.print(prompt_text, markup=False, highlight=False)
        return

    console.print(f"[bold]Conversation[/bold] [cyan]{conversation_id}[/cyan]")
    console.print(f"  [dim]Messages:[/dim] {memory.total_messages}")
    console.print(f"  [dim]Summary:[/dim]  ~{memory.meta.summary_tokens} tokens")
    _print_system_memory(memory.system_memory)
    if memory.rolling_summary:
        console.print("[bold]Summary[/bold]")
        console.print(Text(memory.rolling_summary, style="dim"))
    if memory.recent_messages:
        console.print("[bold]Recent[/bold]")
        for m in memory.recent_messages:
            console.print(Text(f"{m.role}: ", style="cyan"), Text(m.content))


# ---------------------------------------------------------------------------
# remember
# ---------------------------------------------------------------------------


@app.command()
def remember(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    key: str = typer.Argument(..., help="Fact key"),
    value: str = typer.Argument(..., help="Fact value"),
    kind: str = typer.Option(
        "facts", "--kind", "-k", help="facts, preferences or decisions"
    ),
) -> None:
    """Store a fact, preference or decision for a conversation."""
    if kind not in MEMORY_SECTIONS:
        err_console.print(f"[red]Unknown kind:[/red] {kind} (use {', '.join(MEMORY_SECTIONS)})")
        raise typer.Exit(1)

    service = _open(ctx)
    try:
        with service:
            merged = service.update_system_memory(user_id, conversation_id, {kind: {key: value}})
    except Exception as exc:
        err_console.print(f"[red]Remember failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    stored = getattr(merged, kind).get(key)
    if stored is None:
        console.print(f"[yellow]Not stored:[/yellow] {kind} is full")
        return
    console.print(f"[green]Remembered[/green] {kind}.[cyan]{key}[/cyan]")


# ---------------------------------------------------------------------------
# global
# ---------------------------------------------------------------------------


@app.command(name="global")
def global_memory(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the facts shared across all of a user's conversations."""
    service = _open(ctx)
    try:
        with service:
            memory = service.get_global_user_memory(user_id)
    except Exception as exc:
        err_console.print(f"[red]Global lookup failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    if output_json:
        console.print_json(json.dumps(_system_memory_json(memory)))
        return
    _print_system_memory(memory)


# ---------------------------------------------------------------------------
# stats
# ---------------------------------------------------------------------------


@app.command()
def stats(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show counters for one conversation."""
    service = _open(ctx)
    try:
        with service:
            st = service.get_stats(user_id, conversation_id)
    except Exception as exc:
        err_console.print(f"[red]Stats failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    if output_json:
        console.print_json(json.dumps(_stats_json(st)))
        return

    if not st.exists:
        console.print("[dim]No memory for this conversation.[/dim]")
        return

    keys = st.system_memory_keys
    console.print(f"[bold]Memory[/bold] [cyan]{st.conversation_id}[/cyan]")
    console.print(f"  [dim]Messages:[/dim] [green]{st.total_messages}[/green]")
    console.print(f"  [dim]Raw:[/dim]      {st.raw_message_count}")
    console.print(f"  [dim]Summary:[/dim]  ~{st.summary_tokens} tokens")
    console.print(
        "  [dim]Keys:[/dim]     "
        + " · ".join(f"{name} {keys.get(name, 0)}" for name in MEMORY_SECTIONS)
    )
    if st.last_summarized_at:
        console.print(f"  [dim]Compacted:[/dim] {to_iso(st.last_summarized_at)}")


# ---------------------------------------------------------------------------
# compact
# ---------------------------------------------------------------------------


@app.command()
def compact(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    conversation_id: str = typer.Argument(..., help="Conversation id"),
) -> None:
    """Fold old messages into the rolling summary now."""
    service = _open(ctx)
    try:
        with service:
            result = service.compact(user_id, conversation_id)
    except Exception as exc:
        err_console.print(f"[red]Compaction failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    if result.skipped:
        console.print(f"[dim]Nothing to compact ({result.reason}).[/dim]")
        return
    console.print(
        f"[green]Compacted[/green] {result.compacted} messages, kept {result.kept} "
        f"[dim](summary ~{result.summary_tokens} tokens)[/dim]"
    )


# ---------------------------------------------------------------------------
# clear
# ---------------------------------------------------------------------------


@app.command()
def clear(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    conversation_id: str = typer.Argument(..., help="Conversation id"),
) -> None:
    """Delete a conversation's memory and messages."""
    service = _open(ctx)
    try:
        with service:
            removed = service.clear_memory(user_id, conversation_id)
    except Exception as exc:
        err_console.print(f"[red]Clear failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    if removed:
        console.print(f"[green]Cleared[/green] [cyan]{conversation_id}[/cyan]")
    else:
        console.print("[dim]No memory for this conversation.[/dim]")


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


@app.command(name="list")
def list_conversations(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List a user's conversations, most recent first."""
    service = _open(ctx)
    try:
        with service:
            conversations = service.list_conversations(user_id)
    except Exception as exc:
        err_console.print(f"[red]List failed:[/red] {exc}")
        raise typer.Exit(1) from exc

    if output_json:
        console.print_json(json.dumps(conversations))
        return
    if not conversations:
        console.print("[dim]No conversations.[/dim]")
        return
    for cid in conversations:
        console.print(Text(cid, style="cyan"))


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


def main() -> None:
    app()


if __name__ == "__main__":
    main()
