"""codex-warp CLI - talk to a running sidecar from the terminal."""

import asyncio
import logging

import click

from .. import __version__
from ..agents.remote import RemoteClient, SSEStreamTransport
from ..core.config import load_settings
from ..core.multiplexer import SessionMultiplexer
from ..core.usage import daily_rollup
from .display import BlockPrinter, format_daily_usage, format_sessions

STATUS_POLL_SECONDS = 30.0


def _resolve_url(ctx, param, value: str | None) -> str:
    return value or load_settings().remote_url


url_option = click.option(
    "--url",
    default=None,
    callback=_resolve_url,
    help="Sidecar base URL (default: remote_url from settings)",
)
format_option = click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
def cli(verbose: bool):
    """Watch and drive codex sessions through a codex-warp sidecar."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@cli.command()
@url_option
@format_option
def sessions(url: str, output_format: str):
    """List sessions, most recently used first."""
    client = RemoteClient(url)
    metas = sorted(
        client.list_sessions(),
        key=lambda m: max(m.last_used_at_ms, m.created_at_ms),
        reverse=True,
    )
    click.echo(format_sessions(metas, output_format))


@cli.command()
@url_option
@format_option
@click.option("--limit", "-n", type=int, default=None, help="Only the newest N runs")
def usage(url: str, output_format: str, limit: int | None):
    """Show token usage per day."""
    client = RemoteClient(url)
    click.echo(format_daily_usage(daily_rollup(client.list_usage(limit)), output_format))


@cli.command()
@url_option
@click.argument("session_id")
def watch(url: str, session_id: str):
    """Print SESSION_ID's timeline and follow it until the run finishes."""
    asyncio.run(_follow(url, session_id=session_id))


@cli.command()
@url_option
@click.argument("prompt")
@click.option("--cwd", default=None, help="Working directory for the run")
def run(url: str, prompt: str, cwd: str | None):
    """Start a codex run with PROMPT and follow it."""
    asyncio.run(_follow(url, prompt=prompt, cwd=cwd))


@cli.command(name="continue")
@url_option
@click.argument("session_id")
@click.argument("prompt")
def continue_(url: str, session_id: str, prompt: str):
    """Send a follow-up PROMPT to SESSION_ID and follow it."""
    asyncio.run(_follow(url, session_id=session_id, prompt=prompt))


@cli.command()
@url_option
@click.argument("session_id")
def stop(url: str, session_id: str):
    """Ask a running session to stop."""
    meta = asyncio.run(RemoteClient(url).stop(session_id))
    click.echo(f"{meta.id}: {meta.status}")


async def _follow(
    url: str,
    session_id: str | None = None,
    prompt: str | None = None,
    cwd: str | None = None,
) -> None:
    client = RemoteClient(url)
    multiplexer = SessionMultiplexer(
        history=client,
        transport=SSEStreamTransport(url),
        run_control=client,
        usage=None,
    )
    printer = BlockPrinter(click.echo)
    finished = asyncio.Event()
    shown_notices: set[str] = set()

    def on_change(changed_id: str, what: str) -> None:
        for notice in multiplexer.notices:
            if notice.message not in shown_notices:
                shown_notices.add(notice.message)
                click.echo(f"! {notice.message}", err=True)
        target = multiplexer.active_id
        if target is None or changed_id != target:
            return
        timeline = multiplexer.timeline(target)
        if timeline is not None and what in ("replayed", "event"):
            printer.render(timeline.blocks)
        if what == "finished":
            finished.set()

    multiplexer.subscribe(on_change)
    await multiplexer.open()
    try:
        if session_id is None:
            meta = await multiplexer.start(prompt or "", cwd)
            if meta is None:
                raise click.ClickException("Run could not be started")
            session_id = meta.id
        else:
            await multiplexer.activate(session_id)
            if prompt:
                if await multiplexer.continue_run(session_id, prompt) is None:
                    raise click.ClickException("Follow-up could not be sent")

        meta = multiplexer.sessions.get(session_id)
        if meta is not None and meta.status == "running":
            await _wait_until_finished(multiplexer, session_id, finished)
            # the outcome line and conclusion land just after the finish record
            await multiplexer.activate(session_id, reload=True)

        timeline = multiplexer.timeline(session_id)
        if timeline is not None:
            printer.render(timeline.blocks, final=True)
            if timeline.conclusion:
                click.echo("")
                click.echo(timeline.conclusion)
    finally:
        await multiplexer.close()


async def _wait_until_finished(multiplexer: SessionMultiplexer, session_id: str, finished: asyncio.Event) -> None:
    # a run that ends between the history fetch and the stream attach sends no
    # finish record to this client, so the session list is polled as well
    while not finished.is_set():
        try:
            await asyncio.wait_for(finished.wait(), timeout=STATUS_POLL_SECONDS)
        except TimeoutError:
            await multiplexer.refresh_sessions()
            meta = multiplexer.sessions.get(session_id)
            if meta is None or meta.status != "running":
                return
