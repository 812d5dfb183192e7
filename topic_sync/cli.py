from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from topic_sync.common import configure_logging
from topic_sync.deletion import DeletionRangeCoalescer
from topic_sync.errors import TopicSyncError
from topic_sync.loopback import DBBusyError, LoopbackSession, SchemaMismatchError
from topic_sync.models import (
    BoundedRange,
    DeletionRange,
    MessageEntry,
    OpenRange,
    TopicCounters,
    WatermarkKind,
)
from topic_sync.topic import TopicController

T = TypeVar("T")


@click.group()
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $TOPIC_SYNC_DB or ~/.topic_sync/topic_sync.sqlite).",
)
@click.option("--user", default=None, help="Acting user id (defaults to $TOPIC_SYNC_USER).")
@click.option(
    "--log-level",
    default=None,
    help="Logging level (defaults to $TOPIC_SYNC_LOG_LEVEL or WARNING).",
)
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, user: str | None, log_level: str | None) -> None:
    """Inspect and drive topics against a local loopback backend."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["user"] = user


def _session(ctx: click.Context) -> LoopbackSession:
    obj = ctx.obj or {}
    return LoopbackSession(path=obj.get("db_path"), user_id=obj.get("user"))


def _run(ctx: click.Context, topic: str, action: Callable[[TopicController], Awaitable[T]]) -> T:
    """Subscribe a controller to ``topic`` and run ``action`` with it."""

    async def _go() -> T:
        controller = TopicController(topic, _session(ctx))
        await controller.subscribe()
        return await action(controller)

    try:
        return asyncio.run(_go())
    except (DBBusyError, SchemaMismatchError, TopicSyncError) as e:
        raise click.ClickException(str(e)) from e


def parse_range(raw: str) -> DeletionRange:
    """Parse ``N``, ``LOW:HI`` (hi exclusive) or ``LOW:`` (open ended)."""
    try:
        if ":" not in raw:
            low = int(raw)
            return BoundedRange(low, low + 1)
        lo_s, hi_s = raw.split(":", 1)
        if not hi_s:
            return OpenRange(int(lo_s))
        return BoundedRange(int(lo_s), int(hi_s))
    except ValueError as e:
        raise click.BadParameter(f"invalid range {raw!r}: {e}") from None


def _entry_dict(entry: MessageEntry) -> dict[str, Any]:
    return {
        "seq": entry.seq.value,
        "sender": entry.sender,
        "content": entry.content,
        "created_at": entry.created_at.isoformat(),
    }


@cli.group("topics")
def topics_group() -> None:
    """Topic operations."""


@topics_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def topics_list(ctx: click.Context, *, as_json: bool) -> None:
    """List topics with message counts."""
    session = _session(ctx)
    try:
        rows = session.topic_list_with_counts()
    except (DBBusyError, SchemaMismatchError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps({"topics": rows}, ensure_ascii=True, sort_keys=True, indent=2))
        return

    click.echo(f"DB path: {session.path}")
    click.echo(f"Topics: {len(rows)}")
    if not rows:
        return

    headers = ["name", "messages", "last_seq", "del_id"]
    cols = {h: len(h) for h in headers}
    for r in rows:
        cols["name"] = max(cols["name"], len(str(r["name"])))
        for key in ("messages", "last_seq", "del_id"):
            cols[key] = max(cols[key], len(str(r["counts"][key])))

    def _cell(key: str, val: Any) -> str:
        s = str(val)
        return s.ljust(cols[key]) if key == "name" else s.rjust(cols[key])

    click.echo(" ".join(_cell(h, h) for h in headers))
    for r in rows:
        click.echo(
            " ".join(
                [
                    _cell("name", r["name"]),
                    _cell("messages", r["counts"]["messages"]),
                    _cell("last_seq", r["counts"]["last_seq"]),
                    _cell("del_id", r["counts"]["del_id"]),
                ]
            )
        )


@topics_group.command("delete")
@click.argument("topic")
@click.option("--hard", is_flag=True, help="Hard-delete the topic.")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def topics_delete(ctx: click.Context, topic: str, *, hard: bool, yes: bool) -> None:
    """Delete a topic and all related data (messages, subscriptions, sequences)."""
    click.echo(click.style(f"Topic: {topic}", fg="green", bold=True))
    click.echo(click.style("This will delete the topic and all related data.", fg="red"))

    if not yes and not click.confirm("Delete this topic?", default=False):
        raise click.ClickException("Canceled.")

    _run(ctx, topic, lambda t: t.del_topic(hard=hard))
    click.echo(f"Deleted topic {topic}.")


@cli.group("messages")
def messages_group() -> None:
    """Message operations."""


@messages_group.command("list")
@click.argument("topic")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def messages_list(ctx: click.Context, topic: str, *, as_json: bool) -> None:
    """Show the cached page of messages after subscribing."""

    async def _messages(t: TopicController) -> list[MessageEntry]:
        return t.messages()

    entries = _run(ctx, topic, _messages)

    if as_json:
        payload = {"topic": topic, "messages": [_entry_dict(e) for e in entries]}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    if not entries:
        click.echo("No messages.")
        return
    for e in entries:
        seq_styled = click.style(f"[{e.seq.value}]", fg="white", dim=True)
        sender_styled = click.style(str(e.sender), fg="cyan", bold=True)
        ts = e.created_at.strftime("%H:%M:%S")
        click.echo(f"{seq_styled} {sender_styled} {ts}: {e.content}")


@messages_group.command("publish")
@click.argument("topic")
@click.argument("text")
@click.pass_context
def messages_publish(ctx: click.Context, topic: str, text: str) -> None:
    """Publish a plain text message."""
    ctrl = _run(ctx, topic, lambda t: t.publish(text))
    click.echo(f"Published seq={ctrl.seq} to {topic}.")


@messages_group.command("delete")
@click.argument("topic")
@click.argument("ranges", nargs=-1, required=True)
@click.option("--hard", is_flag=True, help="Hard-delete the messages.")
@click.pass_context
def messages_delete(ctx: click.Context, topic: str, ranges: tuple[str, ...], *, hard: bool) -> None:
    """Delete messages by range.

    Each RANGE is a single seq (``5``), a half-open range (``1:8`` deletes
    1 to 7) or an open-ended range (``10:``).

    Examples:

        topic-sync messages delete grpX 3
        topic-sync messages delete grpX 1:8 10:21 --hard
    """
    parsed = [parse_range(r) for r in ranges]
    ctrl = _run(ctx, topic, lambda t: t.del_messages(parsed, hard=hard))
    click.echo(f"Deleted from {topic}, del_id={ctrl.del_id}.")


@messages_group.command("plan")
@click.argument("ranges", nargs=-1, required=True)
@click.option("--max-seq", type=int, required=True, help="Highest confirmed seq known.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
def messages_plan(ranges: tuple[str, ...], *, max_seq: int, as_json: bool) -> None:
    """Preview how RANGES would be coalesced, without touching any topic."""
    if max_seq < 0:
        raise click.ClickException("max-seq must be >= 0")
    counters = TopicCounters(max_seq=max_seq)
    plan = DeletionRangeCoalescer(counters).plan(parse_range(r) for r in ranges)

    if as_json:
        payload = {
            "remote": [[r.low, r.hi] for r in plan.to_send_remotely],
            "local": [[r.low, r.hi] for r in plan.to_flush_locally],
        }
        click.echo(json.dumps(payload, sort_keys=True))
        return

    for label, items in (("remote", plan.to_send_remotely), ("local", plan.to_flush_locally)):
        rendered = ", ".join(f"[{r.low}, {r.hi})" for r in items) or "-"
        click.echo(f"{label}: {rendered}")


@cli.command("note")
@click.argument("topic")
@click.argument("kind", type=click.Choice(["recv", "read"]))
@click.argument("seq", type=int)
@click.pass_context
def note(ctx: click.Context, topic: str, kind: str, seq: int) -> None:
    """Report that messages up to SEQ were received or read."""
    if seq <= 0:
        raise click.ClickException("seq must be > 0")

    async def _note(t: TopicController) -> tuple[bool, int]:
        wm_kind: WatermarkKind = "recv" if kind == "recv" else "read"
        moved = t.note(wm_kind, seq)
        record = t.subscriber(t.current_user_id)
        return moved, record.watermark(wm_kind) if record else 0

    moved, current = _run(ctx, topic, _note)
    if moved:
        click.echo(f"{kind} watermark on {topic} is now {current}.")
    else:
        click.echo(f"No-op: {kind} watermark on {topic} is already at {current}.")
