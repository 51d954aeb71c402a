# Operator CLI. Every command calls the same idempotent functions the
# scheduler worker and the HTTP API use; none of them has its own logic.
#
# Commands (installed as `checkpoint`):
# - checkpoint events end EVENT_ID
#   End an event now and schedule its auto-checkout (needs Redis).
# - checkpoint events auto-close EVENT_ID
#   Close attendees still inside, if the grace period has passed.
# - checkpoint events distribute-points EVENT_ID [--force]
#   Award attendee and leader points; --force reverses and recomputes.
# - checkpoint events sweep
#   Close and distribute every event whose grace period has passed.
# - checkpoint events reset-flags EVENT_ID
#   Clear the scheduling flags after a terminal task failure.
# - checkpoint militant generate CAMPAIGN_ID
#   Issue missing fast-track codes for every privileged persona.
# - checkpoint militant regenerate CAMPAIGN_ID PERSONA_ID
#   Replace one militant's lost code.
# - checkpoint militant distribute CAMPAIGN_ID
#   Send the campaign's fast-track codes to the notification webhook.

from __future__ import annotations

import asyncio
import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import click
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.config import get_settings
from checkpoint.database import close_db, get_session_factory, init_db
from checkpoint.errors import CheckpointError
from checkpoint.events import grace_period
from checkpoint.middleware.logging import setup_logging
from checkpoint.militant import issuer
from checkpoint.points.distribution import distribute
from checkpoint.workers.queue import close_queue, get_queue, init_queue


@asynccontextmanager
async def _session(with_queue: bool = False) -> AsyncIterator[AsyncSession]:
    settings = get_settings()
    await init_db(settings.database_url)
    if with_queue:
        await init_queue(settings.redis_url)
    try:
        async with get_session_factory()() as session:
            yield session
    finally:
        if with_queue:
            await close_queue()
        await close_db()


def _run(coro_fn: Callable[..., Awaitable[Any]]) -> Callable[..., Any]:
    """Run an async command body, turning domain errors into clean CLI errors."""

    @functools.wraps(coro_fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:  # noqa: ANN401
        try:
            return asyncio.run(coro_fn(*args, **kwargs))
        except CheckpointError as exc:
            raise click.ClickException(f"{exc.kind}: {exc}") from exc

    return wrapper


@click.group()
def cli() -> None:
    """Checkpoint attendance and points operations."""
    setup_logging(get_settings())


@cli.group("events")
def events_group() -> None:
    """Event lifecycle: end, auto-close, points."""


@events_group.command("end")
@click.argument("event_id", type=int)
@_run
async def end_event(event_id: int) -> None:
    async with _session(with_queue=True) as db:
        result = await grace_period.end_event(db, get_queue(), event_id)
    verb = "was already ended" if result["already_ended"] else "ended"
    click.echo(f"Event {event_id} {verb} at {result['ended_at']:%Y-%m-%d %H:%M:%S}")
    if result["scheduled"]:
        click.echo(f"Auto-checkout scheduled for {result['not_before']:%Y-%m-%d %H:%M:%S} UTC")


@events_group.command("auto-close")
@click.argument("event_id", type=int)
@_run
async def auto_close(event_id: int) -> None:
    """Close attendees still inside (exit stamped at the end of the grace period)."""
    async with _session() as db:
        report = await grace_period.run_auto_checkout(db, None, event_id)
    if report.outcome is grace_period.TaskOutcome.COMPLETED:
        click.echo(f"Closed {report.closed} attendees of event {event_id}")
    elif report.not_before is not None:
        click.echo(f"Grace period of event {event_id} ends at {report.not_before:%Y-%m-%d %H:%M:%S} UTC; nothing done")
    else:
        click.echo(f"Event {event_id} is not ended or inactive; nothing done")


@events_group.command("distribute-points")
@click.argument("event_id", type=int)
@click.option("--force", is_flag=True, help="Reverse the previous distribution and recompute it.")
@_run
async def distribute_points(event_id: int, force: bool) -> None:
    async with _session() as db:
        result = await distribute(db, event_id, force=force)
    click.echo(
        f"Event {event_id}: {result.attendees_count} attendees, "
        f"{result.attendee_points_total} attendee points, "
        f"{result.leader_points_total} leader points to {len(result.leaders)} leaders"
    )
    if force:
        click.echo(f"Reversed {result.reversed_points} points from the previous run")


@events_group.command("sweep")
@_run
async def sweep() -> None:
    """Process every event whose grace period has passed without distribution."""
    async with _session() as db:
        reports = await grace_period.sweep(db)
    if not reports:
        click.echo("No overdue events")
    for report in reports:
        click.echo(f"Event {report.event_id}: {report.outcome.value}")


@events_group.command("reset-flags")
@click.argument("event_id", type=int)
@_run
async def reset_flags(event_id: int) -> None:
    async with _session() as db:
        await grace_period.reset_schedule_flags(db, event_id)
    click.echo(f"Scheduling flags cleared for event {event_id}")


@cli.group("militant")
def militant_group() -> None:
    """Militant fast-track codes."""


@militant_group.command("generate")
@click.argument("campaign_id", type=int)
@_run
async def generate(campaign_id: int) -> None:
    async with _session() as db:
        result = await issuer.issue_for_campaign(db, campaign_id)
    click.echo(f"Campaign {campaign_id}: {result['created']} created, {result['existing']} already existed")


@militant_group.command("regenerate")
@click.argument("campaign_id", type=int)
@click.argument("persona_id", type=int)
@_run
async def regenerate(campaign_id: int, persona_id: int) -> None:
    async with _session() as db:
        qr = await issuer.regenerate(db, campaign_id, persona_id)
    click.echo(f"New code for persona {persona_id}: {qr.code}")


@militant_group.command("distribute")
@click.argument("campaign_id", type=int)
@_run
async def distribute_militant(campaign_id: int) -> None:
    async with _session() as db:
        stats = await issuer.distribute_codes(db, campaign_id)
    click.echo(f"Campaign {campaign_id}: {stats['prepared']} sent, {stats['skipped']} skipped")
    for error in stats["errors"]:
        click.echo(f"  {error}", err=True)


if __name__ == "__main__":
    cli()
