"""
Concierge — command-line entry point.

    concierge chat --owner alice                 interactive chat
    concierge chat --owner alice "Who mentioned baseball?"
    concierge orchestrate [--once]               scheduled task resumption
    concierge index --owner alice [--source mail]
    concierge search --owner alice "quarterly review"
    concierge tasks --owner alice [--status waiting]
    concierge instructions add --owner alice "When someone emails me ..."
    concierge instructions list --owner alice
    concierge link --owner alice --provider google

Logging is configured once, here, before any component logs: structlog over
the standard library, with user content truncated before it reaches a log line.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
from typing import Any, Optional

import click
import structlog
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from concierge import __version__
from concierge.api.gateway import GatewayInitError
from concierge.capabilities.base import CapabilityError
from concierge.capabilities.credentials import PROVIDERS
from concierge.config import ConciergeConfig
from concierge.retrieval.ingest import SOURCE_CALENDAR, SOURCE_CRM, SOURCE_MAIL
from concierge.runtime import Runtime, build_runtime
from concierge.tasks import TaskStatus

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that keeps user data out of log output.

    Message bodies, queries and task descriptions are truncated; bearer
    tokens in any string field are masked.
    """
    sensitive_keys = {"content", "query", "message", "description", "response"}
    max_display_len = 80

    for key, val in list(event_dict.items()):
        if not isinstance(val, str):
            continue
        val = _BEARER_RE.sub(r"\1[REDACTED]", val)
        if key in sensitive_keys and len(val) > max_display_len:
            val = val[:max_display_len] + "... [truncated]"
        event_dict[key] = val

    return event_dict


_logging_configured = False


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure structlog and standard-library logging. Subsequent calls are no-ops."""
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)
console = Console()


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(str(v) for v in row))
    return table


def _open_runtime(require_model: bool = False) -> Runtime:
    try:
        return build_runtime(ConciergeConfig(), require_model=require_model)
    except GatewayInitError as e:
        raise click.ClickException(f"Model unavailable: {e}") from e


def _emit(ctx: click.Context, payload: Any, table: Optional[Table] = None) -> None:
    if ctx.obj.get("json") or table is None:
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        console.print(table)


owner_option = click.option(
    "--owner", "-o", required=True, envvar="CONCIERGE_OWNER", help="Tenant to act for"
)


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
@click.version_option(__version__, prog_name="concierge")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool) -> None:
    """Concierge - an assistant for your mail, calendar and contacts."""
    configure_logging(logging.INFO if verbose else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------


@cli.command("chat")
@owner_option
@click.argument("message", required=False)
@async_cmd
async def chat_cmd(owner: str, message: Optional[str]) -> None:
    """Talk to the assistant, once or interactively."""
    runtime = _open_runtime(require_model=True)
    await runtime.start()
    try:
        if message:
            await _chat_once(runtime, owner, message)
            return
        console.print("[dim]Type 'exit' to quit.[/dim]")
        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold cyan]you>[/bold cyan] ")
            except (EOFError, KeyboardInterrupt):
                break
            text = text.strip()
            if not text:
                continue
            if text.lower() in {"exit", "quit", "/exit"}:
                break
            await _chat_once(runtime, owner, text)
    finally:
        await runtime.close()


async def _chat_once(runtime: Runtime, owner: str, text: str) -> None:
    tool_sub = runtime.event_bus.subscribe(
        f"{owner}.tool.executing",
        lambda e: console.print(f"[dim]  using {e.tool_name}...[/dim]"),
    )
    try:
        with console.status("Thinking..."):
            result = await runtime.assistant.chat(owner, text)
    finally:
        runtime.event_bus.unsubscribe(tool_sub)
    if result is None:
        console.print("[red]Sorry, I couldn't complete that. Run with -v for details.[/red]")
        return
    console.print(Markdown(result.content))


# ---------------------------------------------------------------------------
# orchestrate
# ---------------------------------------------------------------------------


@cli.command("orchestrate")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@click.pass_context
@async_cmd
async def orchestrate_cmd(ctx: click.Context, once: bool) -> None:
    """Resume unfinished tasks for every linked owner."""
    runtime = _open_runtime(require_model=True)
    await runtime.start()
    try:
        if once:
            results = await runtime.driver.run_pass()
            rows = [[owner, "ok" if ok else "failed"] for owner, ok in sorted(results.items())]
            _emit(ctx, results, build_table("Orchestration pass", ["Owner", "Result"], rows))
            return
        await runtime.driver.start()
        console.print(
            f"Orchestrating every {runtime.config.orchestration.interval_seconds:g}s. "
            "Press Ctrl+C to stop."
        )
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
    finally:
        await runtime.close()


# ---------------------------------------------------------------------------
# index / search
# ---------------------------------------------------------------------------


@cli.command("index")
@owner_option
@click.option(
    "--source",
    type=click.Choice(["all", SOURCE_MAIL, SOURCE_CRM, SOURCE_CALENDAR]),
    default="all",
    show_default=True,
)
@click.pass_context
@async_cmd
async def index_cmd(ctx: click.Context, owner: str, source: str) -> None:
    """Pull data from linked services into the search index."""
    runtime = _open_runtime()
    try:
        ingestor = runtime.ingestor
        try:
            if source == "all":
                counts = await ingestor.ingest_all(owner)
            elif source == SOURCE_MAIL:
                counts = {SOURCE_MAIL: await ingestor.ingest_emails(owner)}
            elif source == SOURCE_CRM:
                counts = {SOURCE_CRM: await ingestor.ingest_contacts(owner)}
            else:
                counts = {SOURCE_CALENDAR: await ingestor.ingest_calendar(owner)}
        except CapabilityError as e:
            raise click.ClickException(f"{source} fetch failed ({e.status}): {e}") from e
        rows = [[name, n] for name, n in counts.items()]
        _emit(ctx, counts, build_table("Indexed", ["Source", "Chunks"], rows))
    finally:
        await runtime.close()


@cli.command("search")
@owner_option
@click.argument("query")
@click.option("--limit", "-n", type=int, default=5, show_default=True)
@click.option("--source", type=click.Choice([SOURCE_MAIL, SOURCE_CRM, SOURCE_CALENDAR]))
@click.pass_context
@async_cmd
async def search_cmd(
    ctx: click.Context, owner: str, query: str, limit: int, source: Optional[str]
) -> None:
    """Semantic search over the owner's indexed data."""
    runtime = _open_runtime()
    try:
        results = await asyncio.to_thread(
            runtime.index.query, owner, query, limit, source
        )
        rows = [[f"{r.similarity:.3f}", r.source, r.content[:100]] for r in results]
        _emit(
            ctx,
            [r.to_dict() for r in results],
            build_table(f"Results for {query!r}", ["Similarity", "Source", "Content"], rows),
        )
    finally:
        await runtime.close()


# ---------------------------------------------------------------------------
# tasks / instructions
# ---------------------------------------------------------------------------


@cli.command("tasks")
@owner_option
@click.option("--status", type=click.Choice([s.value for s in TaskStatus]))
@click.pass_context
@async_cmd
async def tasks_cmd(ctx: click.Context, owner: str, status: Optional[str]) -> None:
    """List the owner's tasks."""
    runtime = _open_runtime()
    try:
        if status:
            tasks = runtime.tasks.list_by_status(owner, status)
        else:
            tasks = runtime.tasks.list_tasks(owner)
        rows = [[t.task_id, t.status.value, t.version, t.description] for t in tasks]
        _emit(
            ctx,
            [t.to_dict() for t in tasks],
            build_table("Tasks", ["ID", "Status", "Version", "Description"], rows),
        )
    finally:
        await runtime.close()


@cli.group("instructions")
def instructions_group() -> None:
    """Standing rules the assistant applies to new events."""


@instructions_group.command("add")
@owner_option
@click.argument("description")
@async_cmd
async def instructions_add_cmd(owner: str, description: str) -> None:
    runtime = _open_runtime()
    try:
        instruction = runtime.instructions.create(owner, description)
        console.print(f"Saved instruction [bold]{instruction.instruction_id}[/bold]")
    finally:
        await runtime.close()


@instructions_group.command("list")
@owner_option
@click.option("--active-only", is_flag=True)
@click.pass_context
@async_cmd
async def instructions_list_cmd(ctx: click.Context, owner: str, active_only: bool) -> None:
    runtime = _open_runtime()
    try:
        items = runtime.instructions.list_instructions(owner, active_only=active_only)
        rows = [[i.instruction_id, "yes" if i.active else "no", i.description] for i in items]
        _emit(
            ctx,
            [i.to_dict() for i in items],
            build_table("Instructions", ["ID", "Active", "Description"], rows),
        )
    finally:
        await runtime.close()


# ---------------------------------------------------------------------------
# link
# ---------------------------------------------------------------------------


@cli.command("link")
@owner_option
@click.option("--provider", type=click.Choice(list(PROVIDERS)), required=True)
@click.option("--token", prompt=True, hide_input=True, help="OAuth access token")
@async_cmd
async def link_cmd(owner: str, provider: str, token: str) -> None:
    """Store an access token for a provider (token acquisition happens elsewhere)."""
    runtime = _open_runtime()
    try:
        runtime.credentials.link(owner, provider, token)
        console.print(f"Linked [bold]{provider}[/bold] for {owner}")
    finally:
        await runtime.close()


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
