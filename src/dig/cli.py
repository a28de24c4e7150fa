"""DIG CLI — producer and query interface for the decision-trace store."""

import json
import sys
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

import click

from dig.bootstrap import GitBootstrapper
from dig.codec import event_from_dict
from dig.config import Settings, configure_logging
from dig.correlation import CancelToken, CanonicalAttemptPolicy, CorrelationEngine
from dig.errors import DigError
from dig.formatting import (
    format_batch_result,
    format_compact,
    format_incidents_compact,
    format_interaction_stats_compact,
    format_json,
    format_matches_compact,
    format_matches_json,
    format_psr_compact,
    format_psr_json,
    format_trace_compact,
    format_trace_json,
)
from dig.matcher import LearningMatcher
from dig.query import QueryEngine, parse_tag_filters, parse_window
from dig.store import EventStore
from dig.validation import collect_errors

FORMAT_OPTION = click.option("--format", "-f", "fmt", default="compact",
                             type=click.Choice(["compact", "json"]))


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _get_store(settings: Settings) -> EventStore:
    """Get an initialized EventStore for the configured home."""
    if not settings.db_path.exists():
        click.echo(f"Error: DIG store not initialized in {settings.home}", err=True)
        click.echo("Run 'dig init' first.", err=True)
        sys.exit(1)
    return EventStore(settings.db_path)


@contextmanager
def _open_store(ctx):
    """Yield the store; DigErrors become 'Error: ...' with exit code 1."""
    store = _get_store(ctx.obj["settings"])
    try:
        yield store
    except DigError as e:
        _fail(str(e))
    finally:
        store.close()


def _engine(ctx, store: EventStore) -> CorrelationEngine:
    settings = ctx.obj["settings"]
    return CorrelationEngine(store, CanonicalAttemptPolicy(settings.production_environment))


@click.group()
@click.option("--home", "-H", default=None, help="Store directory (env DIG_HOME, default .dig)")
@click.pass_context
def cli(ctx, home):
    """DIG — decision traces from AI session to production outcome."""
    ctx.ensure_object(dict)
    try:
        settings = Settings.from_env(home)
    except ValueError as e:
        _fail(str(e))
    configure_logging(settings.log_level)
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def init(ctx):
    """Create the event store."""
    settings = ctx.obj["settings"]
    if settings.db_path.exists():
        click.echo(f"DIG already initialized in {settings.home}")
        return

    settings.home.mkdir(parents=True, exist_ok=True)
    store = EventStore(settings.db_path)
    store.initialize()
    store.set_meta("initialized_at", datetime.now(timezone.utc).isoformat())
    store.close()
    click.echo(f"DIG initialized in {settings.home}")


@cli.command()
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
@click.option("--idempotent", is_flag=True,
              help="Treat a duplicate id with identical content as already stored")
@click.option("--check", is_flag=True, help="Validate only; list every problem, write nothing")
@FORMAT_OPTION
@click.pass_context
def append(ctx, source, idempotent, check, fmt):
    """Append events from a JSON file (or - for stdin).

    The file holds one event object or an array of them. Each event in an
    array is attempted on its own; rejected events are reported and the
    rest are still stored.
    """
    try:
        data = json.load(source)
    except json.JSONDecodeError as e:
        _fail(f"invalid JSON: {e}")
    items = data if isinstance(data, list) else [data]
    if not all(isinstance(item, dict) for item in items):
        _fail("expected a JSON object or an array of objects")

    if check:
        _check_events(items)
        return

    with _open_store(ctx) as store:
        if isinstance(data, dict):
            event = event_from_dict(data)
            stored = store.append_idempotent(event) if idempotent else store.append(event)
            click.echo(format_json([stored]) if fmt == "json" else format_compact([stored]))
            return

        if idempotent:
            stored = []
            for item in items:
                try:
                    stored.append(store.append_idempotent(event_from_dict(item)))
                except DigError as e:
                    click.echo(f"Error: {item.get('id') or 'new event'}: {e}", err=True)
            click.echo(format_json(stored) if fmt == "json" else format_compact(stored))
            if len(stored) < len(items):
                sys.exit(1)
            return

        result = store.append_batch(items)
        if fmt == "json":
            click.echo(json.dumps({
                "accepted": [e.id for e in result.accepted],
                "rejected": [
                    {"index": f.index, "id": f.event_id, "error": f.error, "duplicate": f.duplicate}
                    for f in result.rejected
                ],
            }, indent=2))
        else:
            click.echo(format_batch_result(result))
        if result.rejected:
            sys.exit(1)


def _check_events(items: list[dict]) -> None:
    failed = False
    for index, item in enumerate(items):
        label = item.get("id") or f"#{index}"
        try:
            problems = collect_errors(EventStore.with_defaults(event_from_dict(item)))
        except DigError as e:
            problems = [e]
        if problems:
            failed = True
            for problem in problems:
                click.echo(f"{label}: {problem}")
        else:
            click.echo(f"{label}: ok")
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("event_id")
@click.option("--raw", is_flag=True, help="Print the stored record exactly as written")
@FORMAT_OPTION
@click.pass_context
def get(ctx, event_id, raw, fmt):
    """Show one event by id."""
    with _open_store(ctx) as store:
        if raw:
            click.echo(store.get_raw(event_id))
            return
        event = store.get(event_id)
        click.echo(format_json([event]) if fmt == "json" else format_compact([event]))


@cli.command()
@click.argument("change_id")
@FORMAT_OPTION
@click.pass_context
def change(ctx, change_id, fmt):
    """All events keyed to a change, oldest first."""
    with _open_store(ctx) as store:
        events = QueryEngine(store).by_change(change_id)
        click.echo(format_json(events) if fmt == "json" else format_compact(events))


@cli.command()
@click.argument("change_id")
@FORMAT_OPTION
@click.pass_context
def trace(ctx, change_id, fmt):
    """Full decision trace of a change: sessions through learnings."""
    with _open_store(ctx) as store:
        result = _engine(ctx, store).trace(change_id)
        click.echo(format_trace_json(result) if fmt == "json" else format_trace_compact(result))


@cli.command("list")
@click.argument("event_type")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag filter key=value (repeatable)")
@click.option("--since", default=None, help="Time filter: 24h, 7d, or ISO date")
@click.option("--until", default=None, help="Upper time bound: 24h, 7d, or ISO date")
@click.option("--change", "change_id", default=None, help="Only events keyed to this change")
@click.option("--limit", "-n", default=50, help="Max results")
@FORMAT_OPTION
@click.pass_context
def list_events(ctx, event_type, tags, since, until, change_id, limit, fmt):
    """List events of one type, oldest first."""
    with _open_store(ctx) as store:
        results = list(QueryEngine(store).by_type(
            event_type, tags=parse_tag_filters(tags), since=since, until=until,
            change_id=change_id, limit=limit,
        ))
        click.echo(format_json(results) if fmt == "json" else format_compact(results))


@cli.command()
@click.option("--group-by", "-g", "group_by", required=True, multiple=True,
              help="Grouping key(s): model_id, change_type, risk_level, strategy, or a tag name")
@click.option("--min-sample", type=int, default=None, help="Minimum labelled outcomes per group")
@click.option("--since", default=None, help="Only outcomes observed since: 24h, 7d, or ISO date")
@click.option("--until", default=None, help="Only outcomes observed until")
@click.option("--timeout", type=float, default=None, help="Abandon the run after N seconds")
@FORMAT_OPTION
@click.pass_context
def psr(ctx, group_by, min_sample, since, until, timeout, fmt):
    """Production Survival Rate per group."""
    settings = ctx.obj["settings"]
    with _open_store(ctx) as store:
        keys = [k for value in group_by for k in value.split(",")]
        report = _engine(ctx, store).compute_psr(
            keys,
            min_sample_size=min_sample if min_sample is not None else settings.min_sample_size,
            window=parse_window(since, until),
            cancel=CancelToken(timeout if timeout is not None else settings.aggregation_timeout),
        )
        click.echo(format_psr_json(report) if fmt == "json" else format_psr_compact(report))


@cli.command()
@click.argument("change_id")
@FORMAT_OPTION
@click.pass_context
def match(ctx, change_id, fmt):
    """Learnings whose pattern conditions fit a stored change."""
    with _open_store(ctx) as store:
        matches = LearningMatcher(store).match_change_id(change_id)
        click.echo(format_matches_json(matches) if fmt == "json" else format_matches_compact(matches))


@cli.command()
@click.argument("change_id")
@FORMAT_OPTION
@click.pass_context
def incidents(ctx, change_id, fmt):
    """Incidents attributed to a change, as primary or contributing cause."""
    with _open_store(ctx) as store:
        links = _engine(ctx, store).incidents_for_change(change_id)
        if fmt == "json":
            click.echo(json.dumps([
                {"incident_id": link.incident_id, "outcome_id": link.outcome_id,
                 "change_id": link.change_id, "role": link.role.value,
                 "severity": link.severity.value if link.severity else None,
                 "attributed": link.attributed, "title": link.title}
                for link in links
            ], indent=2))
        else:
            click.echo(format_incidents_compact(links))


@cli.command()
@click.option("--since", default=None, help="Only interactions since: 24h, 7d, or ISO date")
@click.option("--until", default=None, help="Only interactions until")
@FORMAT_OPTION
@click.pass_context
def models(ctx, since, until, fmt):
    """How often developers kept each model's output."""
    settings = ctx.obj["settings"]
    with _open_store(ctx) as store:
        stats = _engine(ctx, store).interaction_stats(
            window=parse_window(since, until),
            cancel=CancelToken(settings.aggregation_timeout),
        )
        if fmt == "json":
            click.echo(json.dumps([asdict(s) for s in stats], indent=2))
        else:
            click.echo(format_interaction_stats_compact(stats))


@cli.command("seed-git")
@click.argument("repo", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".")
@click.option("--max-commits", default=100, help="Max git commits to mine")
@click.option("--repository", default=None, help="Repository name (default: detected)")
@click.pass_context
def seed_git(ctx, repo, max_commits, repository):
    """Seed Change events from a repository's git history."""
    try:
        bootstrapper = GitBootstrapper(repo.resolve())
    except ValueError as e:
        _fail(str(e))
    with _open_store(ctx) as store:
        changes = bootstrapper.mine_changes(max_commits=max_commits, repository=repository)
        result = store.append_batch(changes)
        duplicates = sum(1 for f in result.rejected if f.duplicate)
        click.echo(f"Seeded {len(result.accepted)} changes from git history "
                   f"({duplicates} already present).")
        for failure in result.rejected:
            if not failure.duplicate:
                click.echo(f"Error: {failure.event_id}: {failure.error}", err=True)


@cli.command()
@FORMAT_OPTION
@click.pass_context
def status(ctx, fmt):
    """Show store status."""
    settings = ctx.obj["settings"]
    with _open_store(ctx) as store:
        counts = store.count_by_type()
        info = {
            "home": str(settings.home),
            "total_events": store.count(),
            "events_by_type": counts,
            "latest_seq": store.latest_seq(),
            "last_activity": store.last_activity(),
            "initialized_at": store.get_meta("initialized_at"),
            "db_size_bytes": settings.db_path.stat().st_size,
        }
        if fmt == "json":
            click.echo(json.dumps(info, indent=2))
            return
        click.echo(f"Home:          {info['home']}")
        click.echo(f"Events:        {info['total_events']}")
        for event_type, count in counts.items():
            click.echo(f"  {event_type}: {count}")
        click.echo(f"Latest seq:    {info['latest_seq']}")
        click.echo(f"Last activity: {info['last_activity'] or 'none'}")
        click.echo(f"Initialized:   {info['initialized_at'] or 'unknown'}")
        click.echo(f"DB size:       {info['db_size_bytes']:,} bytes")


if __name__ == "__main__":
    cli()
