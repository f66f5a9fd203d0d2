"""examshare-offline command line."""
import asyncio
import json
from typing import Any, Awaitable, Callable

import click

from . import __version__
from .errors import OfflineError
from .logging_setup import configure_logging
from .main import Runtime, build_runtime
from .settings import Settings
from .store import PENDING_SUBMISSIONS
from .sync import SUBMIT_ANSWER_TAG


def _run(ctx: click.Context, fn: Callable[[Runtime], Awaitable[Any]]) -> Any:
    obj = ctx.obj
    async def runner():
        rt = build_runtime(obj["settings"], transport=obj.get("transport"))
        try:
            await rt.store.open()
            await rt.sync.load()
            rt.sync.on(SUBMIT_ANSWER_TAG, rt.reconciler.handle_sync)
            return await fn(rt)
        finally:
            await rt.router.aclose()
            rt.store.close()
    try:
        return asyncio.run(runner())
    except OfflineError as e:
        raise click.ClickException(str(e))


def _print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option("--database-url", default=None, help="Local store database URL.")
@click.option("--upstream", default=None, help="Base URL of the ExamShare server.")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, ...).")
@click.pass_context
def cli(ctx, database_url, upstream, log_level):
    """ExamShare offline submission queue."""
    ctx.ensure_object(dict)
    overrides = {"connectivity_monitor": False}
    if database_url:
        overrides["database_url"] = database_url
    if upstream:
        overrides["upstream_url"] = upstream
    if log_level:
        overrides["log_level"] = log_level
    s = ctx.obj.get("settings") or Settings()
    s = s.model_copy(update=overrides)
    ctx.obj["settings"] = s
    configure_logging(s.log_level, s.log_file)


@cli.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8080, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Run the edge proxy."""
    import uvicorn
    from .main import create_app

    s = ctx.obj["settings"].model_copy(update={"connectivity_monitor": True})
    uvicorn.run(create_app(s), host=host, port=port, log_config=None)


@cli.command()
@click.argument("paper_id", type=int)
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--accept", default="application/pdf", help="Accepted MIME types, comma separated.")
@click.option("--max-size-mb", default=50.0, type=float)
@click.pass_context
def submit(ctx, paper_id, file, accept, max_size_mb):
    """Submit FILE as the answer for PAPER_ID, queueing it when offline."""
    result = _run(ctx, lambda rt: rt.capture.capture_file(paper_id, file, accept, max_size_mb))
    if result.delivered:
        click.echo(f"Submitted {file} for paper {paper_id}")
    elif result.queued:
        click.echo(f"Offline: queued as #{result.record_id}, it will be sent when the connection is back")
    else:
        raise click.ClickException(f"Server rejected the submission ({result.status_code}): {result.detail}")


@cli.command()
@click.pass_context
def pending(ctx):
    """List queued submissions."""
    records = _run(ctx, lambda rt: rt.store.get_all(PENDING_SUBMISSIONS))
    if not records:
        click.echo("Queue is empty")
        return
    for r in records:
        click.echo(f"  [{r.id}] paper {r.payload.get('paperId')} {r.payload.get('fileName')} @ {r.timestamp.isoformat()}")


@cli.command("sync")
@click.pass_context
def do_sync(ctx):
    """Try to deliver every queued submission now."""
    report = _run(ctx, lambda rt: rt.sync.fire(SUBMIT_ANSWER_TAG))
    _print_json(report.model_dump())


@cli.command()
@click.argument("record_id", type=int)
@click.pass_context
def drop(ctx, record_id):
    """Remove a queued submission without sending it."""
    _run(ctx, lambda rt: rt.store.delete(PENDING_SUBMISSIONS, record_id))
    click.echo(f"Dropped #{record_id}")


if __name__ == "__main__":
    cli()
