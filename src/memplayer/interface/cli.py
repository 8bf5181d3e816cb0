"""memplayer CLI: vault checks, cloze edits, review queue, sync and server."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Annotated

import typer

from memplayer.application.config import AppConfig, resolve_config
from memplayer.domain.errors import (
    AmbiguousReviewError,
    ConfirmationRequiredError,
    MemplayerError,
)

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="memplayer: spaced repetition straight from your markdown notes.",
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

config_app = typer.Typer(help="Manage memplayer configuration.")
app.add_typer(config_app, name="config")


def humanize_error(msg: str) -> str:
    """Turn raw YAML / remote error text into something a note author can act on."""
    if "expected <block end>" in msg:
        return f"Indentation Error: check the nesting of your frontmatter keys. ({msg})"
    if "found duplicate key" in msg:
        return f"Duplicate Key: a frontmatter key appears twice. ({msg})"
    if "scanner error" in msg or "did not find expected key" in msg:
        return f"Syntax Error: the frontmatter is not valid YAML. ({msg})"
    if "timed out" in msg:
        return f"Timeout: the remote store did not answer in time. ({msg})"
    return msg


def _config(ctx: typer.Context, path: Path | None = None, **overrides) -> AppConfig:
    verbose = ctx.obj.get("verbose_bonus", 1) if ctx.obj else 1
    return resolve_config({"vault_root": path, "verbose": verbose, **overrides})


def _fail(e: Exception) -> None:
    typer.secho(humanize_error(str(e)), fg="red", err=True)
    raise typer.Exit(1)


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
    ] = 1,
):
    """Global settings for memplayer."""
    ctx.ensure_object(dict)
    ctx.obj["verbose_bonus"] = verbose
    if verbose >= 2:
        logging.getLogger().setLevel(logging.DEBUG)


# ---------------------------------------------------------------------------
# Note integrity
# ---------------------------------------------------------------------------


@app.command()
def check(
    ctx: typer.Context,
    path: Annotated[
        Path | None, typer.Argument(help="Vault directory. Defaults to config or CWD.")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Report unclosed, malformed, missing and heavily shared cloze ids."""
    from memplayer.application.sync_service import utc_now
    from memplayer.application.vault_service import VaultService

    config = _config(ctx, path)
    vault = VaultService(config.vault_root, config.occurrence_warning_threshold)
    vault.scan(utc_now())

    findings = []
    for note, report in zip(vault.notes(), vault.reports()):
        if not report.has_warnings and note.frontmatter_error is None:
            continue
        findings.append(
            {
                "file": note.filepath,
                "cards": report.card_count,
                "missing_ids": list(report.missing_ids),
                "overused_ids": report.overused_ids or {},
                "unclosed": report.unclosed_count,
                "malformed": report.malformed_count,
                "frontmatter_error": (
                    humanize_error(note.frontmatter_error) if note.frontmatter_error else None
                ),
            }
        )

    if json_output:
        typer.echo(json.dumps({"ok": not findings, "notes": findings}, indent=2))
    else:
        typer.echo(f"Notes: {len(vault.notes())}  Cards: {len(vault.cards())}")
        for item in findings:
            typer.secho(item["file"], fg="yellow")
            if item["frontmatter_error"]:
                typer.echo(f"  {item['frontmatter_error']}")
            if item["unclosed"]:
                typer.echo(f"  unclosed spans: {item['unclosed']}")
            if item["malformed"]:
                typer.echo(f"  malformed spans: {item['malformed']} (fix with 'memplayer clean')")
            if item["missing_ids"]:
                typer.echo(f"  missing ids: {item['missing_ids']}")
            for cid, count in item["overused_ids"].items():
                typer.echo(f"  c{cid} used {count} times")
        if not findings:
            typer.secho("All notes OK.", fg="green")

    if findings:
        raise typer.Exit(1)


@app.command()
def clean(
    file: Annotated[Path, typer.Argument(help="Markdown note to clean.", exists=True, dir_okay=False)],
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Report without rewriting the file.")
    ] = False,
):
    """Strip the wrapper from malformed cloze spans, keeping their text."""
    from memplayer.application.cloze import clean_invalid

    result = clean_invalid(file.read_text(encoding="utf-8"))
    if result.cleaned_count and not dry_run:
        file.write_text(result.text, encoding="utf-8")
    verb = "Would clean" if dry_run else "Cleaned"
    typer.echo(f"{verb} {result.cleaned_count} malformed span(s) in {file.name}")


@app.command()
def normalize(
    ctx: typer.Context,
    file: Annotated[Path, typer.Argument(help="Markdown note inside the vault.", exists=True, dir_okay=False)],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt.")] = False,
):
    """Renumber a note's cloze ids to 1..K. Shifted ids lose their review history."""
    from memplayer.application.factory import open_vault, save_vault
    from memplayer.application.sync_service import utc_now

    config = _config(ctx)
    try:
        rel = file.resolve().relative_to(config.vault_root).as_posix()
    except ValueError:
        _fail(ValueError(f"{file} is not inside the vault {config.vault_root}"))

    now = utc_now()
    vault = open_vault(config, now)
    note = next((n for n in vault.notes() if n.filepath == rel), None)
    if note is None:
        _fail(ValueError(f"{rel} is not a loaded note"))

    confirmed = yes or typer.confirm(
        "Renumbering resets scheduling history for every shifted id. Continue?"
    )
    try:
        result = vault.normalize_note_ids(note.id, now, confirm=confirmed)
    except ConfirmationRequiredError:
        typer.secho("Aborted.", fg="yellow")
        raise typer.Exit(1) from None

    if not result.changed:
        typer.secho("Ids already dense, nothing to do.", fg="green")
        return
    file.write_text(result.text, encoding="utf-8")
    save_vault(config, vault)
    for old, new in result.mapping.items():
        if old != new:
            typer.echo(f"  c{old} -> c{new}")


@app.command()
def cloze(
    file: Annotated[Path, typer.Argument(help="Markdown note to edit.", exists=True, dir_okay=False)],
    text: Annotated[str, typer.Argument(help="Exact text to wrap (first occurrence).")],
    hint: Annotated[str | None, typer.Option(help="Hint shown on the card front.")] = None,
    continue_previous: Annotated[
        bool,
        typer.Option("--continue", help="Reuse the id of the preceding cloze instead of max + 1."),
    ] = False,
):
    """Wrap text in a new cloze using the next free id."""
    from memplayer.application.cloze import create_cloze, next_cloze_id

    raw = file.read_text(encoding="utf-8")
    start = raw.find(text)
    if not text or start < 0:
        _fail(ValueError(f"Text not found in {file.name}"))

    cloze_id = next_cloze_id(raw, start, continue_previous=continue_previous)
    wrapped = create_cloze(text, cloze_id, hint)
    file.write_text(raw[:start] + wrapped + raw[start + len(text) :], encoding="utf-8")
    typer.echo(f"Created c{cloze_id} in {file.name}")


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@app.command("queue")
def queue(
    ctx: typer.Context,
    path: Annotated[
        Path | None, typer.Argument(help="Vault directory. Defaults to config or CWD.")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show today's session: overdue, due today, then new cards within daily limits."""
    from memplayer.application.factory import open_vault
    from memplayer.application.queue_builder import select_session
    from memplayer.application.sync_service import utc_now

    config = _config(ctx, path)
    now = utc_now()
    vault = open_vault(config, now)
    review_queue = vault.build_queue(now)
    session = select_session(review_queue, config.new_cards_per_day, config.reviews_per_day)

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "counts": review_queue.counts(),
                    "session": [
                        {
                            "note_id": item.note_id,
                            "file": item.filepath,
                            "cloze_index": item.cloze_index,
                            "due": item.due.isoformat(),
                        }
                        for item in session
                    ],
                },
                indent=2,
            )
        )
        return

    counts = review_queue.counts()
    typer.echo(
        f"Overdue: {counts['overdue']}  Today: {counts['today']}"
        f"  New: {counts['new']}  Later: {counts['future']}  Suspended: {counts['suspended']}"
    )
    if not session:
        typer.secho("Nothing to review.", fg="green")
    for item in session:
        typer.echo(f"  {item.filepath}  c{item.cloze_index}  ({item.note_id})")


@app.command()
def forecast(
    ctx: typer.Context,
    path: Annotated[
        Path | None, typer.Argument(help="Vault directory. Defaults to config or CWD.")
    ] = None,
    days: Annotated[int, typer.Option(help="Number of days to forecast.", min=1)] = 7,
):
    """Due-card counts per day; today includes overdue cards."""
    from memplayer.application.factory import open_vault
    from memplayer.application.sync_service import utc_now

    config = _config(ctx, path)
    now = utc_now()
    vault = open_vault(config, now)
    for day, count in vault.forecast(now, days).items():
        typer.echo(f"{day}  {count}")


@app.command()
def review(
    ctx: typer.Context,
    note_id: Annotated[str, typer.Argument(help="Note id.")],
    cloze_index: Annotated[int, typer.Argument(help="Cloze id within the note.")],
    rating: Annotated[int, typer.Argument(help="1=Again 2=Hard 3=Good 4=Easy.")],
    path: Annotated[Path | None, typer.Option(help="Vault directory.")] = None,
):
    """Grade one card and record the review remotely, then locally."""
    from memplayer.application.factory import get_reconciler, open_vault, save_vault
    from memplayer.application.sync_service import utc_now
    from memplayer.domain.models import CardKey

    config = _config(ctx, path)
    vault = open_vault(config, utc_now())

    async def run():
        reconciler = get_reconciler(config, vault)
        try:
            return await reconciler.submit_review(CardKey(note_id, cloze_index), rating)
        finally:
            await reconciler.close()

    try:
        outcome = asyncio.run(run())
    except AmbiguousReviewError as e:
        typer.secho(str(e), fg="yellow", err=True)
        raise typer.Exit(1) from None
    except MemplayerError as e:
        _fail(e)

    save_vault(config, vault)
    card = outcome.card
    typer.echo(
        f"c{card.cloze_index} of {note_id}: {card.state.name.lower()}, "
        f"next due {card.due.isoformat(timespec='minutes')}"
    )
    if outcome.leech:
        typer.secho(f"Leech: {card.lapses} lapses", fg="yellow")


def _card_command(ctx: typer.Context, path: Path | None, action):
    """Open the vault, run `action(reconciler)` against the remote, then save."""
    from memplayer.application.factory import get_reconciler, open_vault, save_vault
    from memplayer.application.sync_service import utc_now

    config = _config(ctx, path)
    vault = open_vault(config, utc_now())

    async def run():
        reconciler = get_reconciler(config, vault)
        try:
            return await action(reconciler)
        finally:
            await reconciler.close()

    try:
        card = asyncio.run(run())
    except (MemplayerError, ValueError) as e:
        _fail(e)

    save_vault(config, vault)
    return card


@app.command()
def suspend(
    ctx: typer.Context,
    note_id: Annotated[str, typer.Argument(help="Note id.")],
    cloze_index: Annotated[int, typer.Argument(help="Cloze id within the note.")],
    off: Annotated[bool, typer.Option("--off", help="Unsuspend instead.")] = False,
    path: Annotated[Path | None, typer.Option(help="Vault directory.")] = None,
):
    """Keep a card out of the review queue, or put it back with --off."""
    from memplayer.domain.models import CardKey

    key = CardKey(note_id, cloze_index)
    card = _card_command(ctx, path, lambda r: r.suspend_card(key, suspended=not off))
    verb = "suspended" if card.suspended else "unsuspended"
    typer.echo(f"c{card.cloze_index} of {note_id}: {verb}")


@app.command()
def reset(
    ctx: typer.Context,
    note_id: Annotated[str, typer.Argument(help="Note id.")],
    cloze_index: Annotated[int, typer.Argument(help="Cloze id within the note.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt.")] = False,
    path: Annotated[Path | None, typer.Option(help="Vault directory.")] = None,
):
    """Forget a card's progress; it returns as a New card. Review history is kept."""
    from memplayer.domain.models import CardKey

    if not yes and not typer.confirm(f"Reset all progress of c{cloze_index} in {note_id}?"):
        typer.secho("Aborted.", fg="yellow")
        raise typer.Exit(1)

    key = CardKey(note_id, cloze_index)
    card = _card_command(ctx, path, lambda r: r.reset_card(key))
    typer.echo(f"c{card.cloze_index} of {note_id}: reset, due {card.due.isoformat(timespec='minutes')}")


@app.command()
def sync(
    ctx: typer.Context,
    path: Annotated[
        Path | None, typer.Argument(help="Vault directory. Defaults to config or CWD.")
    ] = None,
    backend: Annotated[str | None, typer.Option(help="Remote store: memory or postgrest.")] = None,
    pull: Annotated[
        bool, typer.Option("--pull/--no-pull", help="Fetch remote scheduling state afterwards.")
    ] = True,
    workers: Annotated[int | None, typer.Option(help="Concurrent note syncs.")] = None,
):
    """[bold green]Sync[/bold green] pending notes to the remote store."""
    from memplayer.application.factory import get_reconciler, open_vault, save_vault
    from memplayer.application.sync_service import utc_now

    config = _config(ctx, path, backend=backend, sync_concurrency=workers)
    vault = open_vault(config, utc_now())

    async def run():
        reconciler = get_reconciler(config, vault)
        try:
            bulk = await reconciler.sync_all_pending()
            pulled = await reconciler.pull_states() if pull else 0
            return bulk, pulled
        finally:
            await reconciler.close()

    try:
        bulk, pulled = asyncio.run(run())
    except (MemplayerError, ValueError) as e:
        _fail(e)

    save_vault(config, vault)
    typer.echo(f"Notes: {bulk.summary()}")
    if pull:
        typer.echo(f"Card states pulled: {pulled}")
    for result in bulk.results:
        if not result.ok:
            typer.secho(f"  {result.note_id}: {humanize_error(result.error or '')}", fg="red")
    if bulk.error_count:
        raise typer.Exit(1)


@app.command("assign-ids")
def assign_ids(
    ctx: typer.Context,
    path: Annotated[
        Path | None, typer.Argument(help="Vault directory. Defaults to config or CWD.")
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Report without rewriting files.")
    ] = False,
):
    """Write a stable note id into the frontmatter of every note lacking one."""
    from memplayer.application.id_service import assign_note_ids

    config = _config(ctx, path)
    count = assign_note_ids(config.vault_root, dry_run=dry_run)
    verb = "Would assign" if dry_run else "Assigned"
    typer.secho(f"{verb} {count} note id(s).", fg="green")


@app.command()
def stats(
    ctx: typer.Context,
    path: Annotated[
        Path | None, typer.Argument(help="Vault directory. Defaults to config or CWD.")
    ] = None,
    days: Annotated[int, typer.Option(help="Activity window in days.", min=1)] = 30,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Card state counts, per-section difficulty and review activity."""
    from dataclasses import asdict

    from memplayer.application.factory import get_remote_store, open_vault
    from memplayer.application.scheduler import Scheduler
    from memplayer.application.stats import MetricsCalculator, StatsService
    from memplayer.application.sync_service import utc_now

    config = _config(ctx, path)
    now = utc_now()
    vault = open_vault(config, now)
    calculator = MetricsCalculator(Scheduler(config.scheduler_params()), config.leech_threshold)

    async def run():
        # The in-memory backend only knows what the local state file holds
        store = get_remote_store(config) if config.backend == "postgrest" else None
        service = StatsService(vault, store, calculator)
        try:
            return service, await service.activity(now, days)
        finally:
            if store is not None:
                await store.close()

    try:
        service, activity = asyncio.run(run())
    except (MemplayerError, ValueError) as e:
        _fail(e)

    health = service.health()
    sections = service.sections()
    leeches = service.leeches(now)

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "health": asdict(health),
                    "sections": [asdict(s) for s in sections],
                    "leeches": [
                        {"note_id": c.note_id, "cloze_index": c.cloze_index, "lapses": c.lapses}
                        for c in leeches
                    ],
                    "activity": activity,
                },
                indent=2,
            )
        )
        return

    typer.echo(
        f"Cards: {health.total}  New: {health.new}  Learning: {health.learning}"
        f"  Review: {health.review}  Relearning: {health.relearning}"
    )
    if health.orphaned:
        typer.secho(f"Orphaned: {health.orphaned}", fg="yellow")
    if health.leeches:
        typer.secho(f"Leeches: {health.leeches}", fg="yellow")
    for s in sections:
        difficulty = f"{s.mean_difficulty:.2f}" if s.mean_difficulty is not None else "-"
        typer.echo(f"  {s.section}: {s.card_count} card(s), difficulty {difficulty}")
    typer.echo(f"Reviews in the last {days} day(s): {sum(activity.values())}")


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show():
    """Display final resolved configuration."""
    config = resolve_config()
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    if d.get("remote_key"):
        d["remote_key"] = "***"
    typer.echo(json.dumps(d, indent=2))


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@app.command()
def serve(
    port: Annotated[int, typer.Option(help="Port to bind the server to.")] = 8777,
    host: Annotated[str, typer.Option(help="Host to bind the server to.")] = "127.0.0.1",
    reload: Annotated[bool, typer.Option(help="Enable auto-reload.")] = False,
):
    """Run the HTTP server for editor integrations."""
    import uvicorn

    typer.secho(f"Starting memplayer server on http://{host}:{port}", fg="green")
    uvicorn.run("memplayer.server:app", host=host, port=port, reload=reload)
