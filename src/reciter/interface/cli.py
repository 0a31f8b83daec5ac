"""reciter CLI: document import, reviews, progress and sync."""

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer

from reciter.application.config import AppConfig, resolve_config
from reciter.application.factory import get_local_store, get_remote_mirror
from reciter.application.importer import load_parsed_document
from reciter.application.migration import migrate_with_report
from reciter.application.progress import ProgressCalculator
from reciter.application.review_service import ReviewService
from reciter.application.state import AppState
from reciter.application.sync.reconciler import SyncReconciler
from reciter.domain.constants import MAX_DUE_LISTING
from reciter.domain.exceptions import ReciterError
from reciter.domain.serialization import format_timestamp

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="reciter: spaced-repetition memorization with local-first sync.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

config_app = typer.Typer(help="Manage reciter configuration.")
app.add_typer(config_app, name="config")


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose", "-v", count=True, help="Increase verbosity. Repeat for more detail."
        ),
    ] = 0,
    data_dir: Annotated[
        Path | None, typer.Option(help="Directory holding the local database.")
    ] = None,
    backend: Annotated[
        str | None, typer.Option(help="Mirror backend: auto, offline, memory, http.")
    ] = None,
    user: Annotated[str | None, typer.Option(help="User id for sync.")] = None,
    mirror_url: Annotated[str | None, typer.Option(help="Mirror endpoint.")] = None,
):
    """Global settings for reciter."""
    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {
        "data_dir": data_dir,
        "backend": backend,
        "user_id": user,
        "mirror_url": mirror_url,
        "verbose": 1 + verbose if verbose else None,
    }


def _config(ctx: typer.Context) -> AppConfig:
    overrides = (ctx.obj or {}).get("overrides", {})
    config = resolve_config(overrides)
    if config.verbose >= 2:
        logging.getLogger().setLevel(logging.DEBUG)
    elif config.verbose == 0:
        logging.getLogger().setLevel(logging.WARNING)
    return config


def _now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


@asynccontextmanager
async def _session(config: AppConfig) -> AsyncIterator[ReviewService]:
    """Hydrate local state and, when a mirror is available, run a sync session around it."""
    state = AppState.hydrate(get_local_store(config))
    mirror = await get_remote_mirror(config)
    if mirror is None:
        yield ReviewService(state)
        return

    reconciler = SyncReconciler(
        mirror, state, config.user_id, debounce_seconds=config.debounce_seconds
    )
    try:
        async with reconciler:
            yield ReviewService(state, reconciler)
    finally:
        await mirror.close()


def _run(config: AppConfig, body: Callable[[ReviewService], Awaitable[T]]) -> T:
    async def main() -> T:
        async with _session(config) as service:
            return await body(service)

    try:
        return asyncio.run(main())
    except ReciterError as e:
        typer.secho(str(e), fg="red", err=True)
        raise typer.Exit(1) from e


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="YAML document produced by a parser.")],
    version: Annotated[str | None, typer.Option(help="Translation or edition qualifier.")] = None,
    collection: Annotated[str | None, typer.Option(help="Collection qualifier.")] = None,
):
    """[bold green]Import[/bold green] a parsed document."""
    try:
        parsed = load_parsed_document(path)
    except (OSError, ValueError) as e:
        typer.secho(f"Could not read {path}: {e}", fg="red", err=True)
        raise typer.Exit(1) from e

    async def body(service: ReviewService):
        return await service.import_document(parsed, version=version, collection=collection)

    document = _run(_config(ctx), body)
    typer.secho(f"Imported '{document.title}' as {document.id}", fg="green")
    for unit in document.units:
        typer.echo(f"  {unit.id}  ({unit.range_label})")


@app.command("delete")
def delete_cmd(
    ctx: typer.Context,
    document_id: Annotated[str, typer.Argument(help="Document id.")],
):
    """Delete a document with its review states, locally and on the mirror."""

    async def body(service: ReviewService):
        await service.delete_document(document_id)

    _run(_config(ctx), body)
    typer.secho(f"Deleted {document_id}", fg="green")


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


@app.command("review")
def review_cmd(
    ctx: typer.Context,
    document_id: Annotated[str, typer.Argument(help="Document id.")],
    unit_id: Annotated[str, typer.Argument(help="Unit id.")],
    score: Annotated[float, typer.Argument(help="Recall score between 0 and 1.")],
):
    """Record a graded review of one unit."""

    async def body(service: ReviewService):
        return await service.grade(document_id, unit_id, score)

    updated = _run(_config(ctx), body)
    color = "yellow" if updated.suppressed_until is not None else "green"
    typer.secho(
        f"{updated.id}: next due {format_timestamp(updated.next_due_at)} "
        f"(interval {updated.interval_days}d, ease {updated.ease:.2f})",
        fg=color,
    )
    if updated.mastered:
        typer.secho("Mastered.", fg="green")
    if updated.suppressed_until is not None:
        typer.secho(f"Held back until {format_timestamp(updated.suppressed_until)}", fg="yellow")


@app.command("master")
def master_cmd(
    ctx: typer.Context,
    document_id: Annotated[str, typer.Argument(help="Document id.")],
    unit_id: Annotated[str, typer.Argument(help="Unit id.")],
    unset: Annotated[bool, typer.Option("--unset", help="Clear the mastered flag.")] = False,
):
    """Mark a unit as mastered (or clear the flag)."""

    async def body(service: ReviewService):
        return await service.set_mastered(document_id, unit_id, not unset)

    updated = _run(_config(ctx), body)
    typer.echo(f"{updated.id}: mastered={updated.mastered}")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


def _progress_dict(p) -> dict[str, Any]:
    return {
        "document_id": p.document_id,
        "title": p.title,
        "units": p.total_units,
        "mastered": p.mastered,
        "due": p.due,
        "suppressed": p.suppressed,
        "new": p.new,
        "streak": p.streak,
        "lapse_rate": p.lapse_rate,
        "average_ease": p.average_ease,
    }


@app.command("status")
def status_cmd(
    ctx: typer.Context,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show progress for every document."""

    async def body(service: ReviewService):
        return service.state.blob

    blob = _run(_config(ctx), body)
    summaries = ProgressCalculator().summarize_all(blob, _now())

    if json_output:
        typer.echo(json.dumps([_progress_dict(p) for p in summaries], indent=2))
        return

    if not summaries:
        typer.secho("No documents. Import one with 'reciter import'.", fg="yellow")
        return

    for p in summaries:
        marker = "*" if p.document_id == blob.selected_document_id else " "
        typer.echo(
            f"{marker} {p.document_id}  {p.title}: {p.mastered}/{p.total_units} mastered, "
            f"{p.due} due, streak {p.streak}"
        )


@app.command("due")
def due_cmd(
    ctx: typer.Context,
    document_id: Annotated[
        str | None, typer.Argument(help="Document id. Defaults to the selected document.")
    ] = None,
    limit: Annotated[int, typer.Option(help="Maximum units to list.")] = MAX_DUE_LISTING,
):
    """List units due for review."""

    async def body(service: ReviewService):
        return service.state.blob

    blob = _run(_config(ctx), body)
    doc_id = document_id or blob.selected_document_id
    if doc_id is None or doc_id not in blob.documents:
        typer.secho(f"Unknown document: {doc_id}", fg="red", err=True)
        raise typer.Exit(1)

    due = ProgressCalculator().due_units(blob, doc_id, _now(), limit=limit)
    if not due:
        typer.secho("Nothing due.", fg="green")
        return

    document = blob.documents[doc_id]
    for state in due:
        unit = document.unit(state.id)
        label = unit.range_label if unit is not None else ""
        typer.echo(f"{state.id}  {label}  due {format_timestamp(state.next_due_at)}")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@app.command("migrate")
def migrate_cmd(
    ctx: typer.Context,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Preview changes without saving.")
    ] = False,
):
    """Re-key stored documents and units onto canonical ids."""
    config = _config(ctx)
    store = get_local_store(config)
    blob = store.load()

    try:
        migrated, report = migrate_with_report(blob, _now())
    except ReciterError as e:
        typer.secho(str(e), fg="red", err=True)
        raise typer.Exit(1) from e

    if not report.changed:
        typer.secho("Already canonical.", fg="green")
        return

    for old, new in report.documents:
        typer.echo(f"document {old} -> {new}")
    for doc_id, old, new in report.units:
        typer.echo(f"unit {old} -> {new}  ({doc_id})")
    for doc_id in report.streaks_reset:
        typer.echo(f"streak reset: {doc_id}")

    if dry_run:
        typer.secho("Dry run: nothing saved.", fg="yellow")
        return

    if not store.save(migrated):
        typer.secho("Failed to save migrated state.", fg="red", err=True)
        raise typer.Exit(1)
    typer.secho("Migrated.", fg="green")


@app.command("sync")
def sync_cmd(
    ctx: typer.Context,
    watch: Annotated[
        float | None,
        typer.Option(help="Keep following live updates for this many seconds."),
    ] = None,
    publish: Annotated[
        bool, typer.Option("--publish", help="Re-publish every mastered unit to your groups.")
    ] = False,
):
    """Pull remote changes (and optionally follow live updates)."""
    config = _config(ctx)
    if not config.sync_enabled:
        typer.secho("Sync needs a user id (--user) and a non-offline backend.", fg="red", err=True)
        raise typer.Exit(1)

    async def body(service: ReviewService):
        if service.reconciler is None:
            return None
        published = await service.reconciler.sync_all_mastered() if publish else 0
        if watch:
            await asyncio.sleep(watch)
        return published

    published = _run(config, body)
    if published is None:
        typer.secho("Mirror unreachable; local state unchanged.", fg="yellow")
        raise typer.Exit(1)
    if publish:
        typer.echo(f"Published {published} mastered unit(s).")
    typer.secho("Synced.", fg="green")


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Display final resolved configuration."""
    config = _config(ctx)
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    typer.echo(json.dumps(d, indent=2))


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@app.command("serve")
def serve(
    port: Annotated[int, typer.Option(help="Port to bind the server to.")] = 8787,
    host: Annotated[str, typer.Option(help="Host to bind the server to.")] = "127.0.0.1",
    reload: Annotated[bool, typer.Option(help="Enable auto-reload.")] = False,
):
    """Run the remote mirror server."""
    import uvicorn

    typer.secho(f"Starting reciter mirror on http://{host}:{port}", fg="green")
    uvicorn.run("reciter.server:app", host=host, port=port, reload=reload)
