from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from topic_sync.common import (
    DEL_CHAR,
    default_db_path,
    default_user_id,
    json_dumps,
    json_loads,
    merge_obj,
    now,
)
from topic_sync.errors import RemoteRejectedError
from topic_sync.models import BoundedRange, WatermarkKind
from topic_sync.schemas import (
    CtrlResult,
    DataMessage,
    GetQuery,
    MetaReply,
    SetParams,
    SubscriptionInfo,
    TopicDescription,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

DEFAULT_MODE = "JRWPS"
DEFAULT_PAGE = 24


class DBBusyError(RuntimeError):
    pass


class SchemaMismatchError(RuntimeError):
    pass


def _ensure_parent_dir(path: str) -> None:
    p = Path(path)
    if p.name == ":memory:":
        return
    p.parent.mkdir(parents=True, exist_ok=True)


def _ts(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class LoopbackSession:
    """A ``Session`` backed by a local SQLite file.

    It plays the server's part: assigns seqs per topic, stores messages and
    subscriptions, applies deletions and hands out deletion ids. Useful for
    exercising a ``TopicController`` without a network backend.
    """

    def __init__(self, *, path: str | None = None, user_id: str | None = None) -> None:
        raw_path = path or default_db_path()
        if raw_path != ":memory:":
            raw_path = str(Path(raw_path).expanduser())
        self.path = raw_path
        self.current_user_id = user_id or default_user_id()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(self.path, timeout=2.0)
        except sqlite3.OperationalError as e:
            msg = str(e).lower()
            if "locked" in msg or "busy" in msg:
                raise DBBusyError(str(e)) from e
            raise
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=2000;")
        try:
            self._ensure_schema(conn)
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            cast(str, r["name"])
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'",
            ).fetchall()
        }
        if "meta" not in tables:
            if tables:
                raise SchemaMismatchError(
                    "Database schema is outdated (missing schema version). "
                    "Delete the file at $TOPIC_SYNC_DB."
                )
            conn.executescript(
                f"""
                CREATE TABLE meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                INSERT INTO meta(key, value)
                VALUES ('schema_version', '{SCHEMA_VERSION}');
                """
            )
        else:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'",
            ).fetchone()
            if row is None or cast(str, row["value"]) != SCHEMA_VERSION:
                raise SchemaMismatchError(
                    "Database schema version mismatch. Delete the file at $TOPIC_SYNC_DB."
                )

        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS topics (
              name TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              public_json TEXT NULL,
              private_json TEXT NULL,
              tags_json TEXT NULL,
              del_id INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS topic_seq (
              topic TEXT PRIMARY KEY,
              next_seq INTEGER NOT NULL,
              updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
              topic TEXT NOT NULL,
              seq INTEGER NOT NULL,
              sender TEXT NOT NULL,
              head_json TEXT NULL,
              content_json TEXT NOT NULL,
              created_at REAL NOT NULL,
              PRIMARY KEY(topic, seq)
            );

            CREATE TABLE IF NOT EXISTS subscriptions (
              topic TEXT NOT NULL,
              user_id TEXT NOT NULL,
              mode TEXT NOT NULL,
              recv_seq INTEGER NOT NULL DEFAULT 0,
              read_seq INTEGER NOT NULL DEFAULT 0,
              updated_at REAL NOT NULL,
              PRIMARY KEY(topic, user_id)
            );
            """
        )

    # Helpers shared by the session methods and the CLI.

    def _require_topic(self, conn: sqlite3.Connection, topic: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM topics WHERE name = ?", (topic,)).fetchone()
        if row is None:
            raise RemoteRejectedError(f"topic not found: {topic}", status=404)
        return row

    def _describe(self, row: sqlite3.Row, conn: sqlite3.Connection) -> TopicDescription:
        seq_row = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE topic = ?",
            (row["name"],),
        ).fetchone()
        sub_row = conn.execute(
            "SELECT * FROM subscriptions WHERE topic = ? AND user_id = ?",
            (row["name"], self.current_user_id),
        ).fetchone()
        return TopicDescription(
            created=_ts(row["created_at"]),
            updated=_ts(row["updated_at"]),
            public=None if row["public_json"] is None else json_loads(row["public_json"]),
            private=None if row["private_json"] is None else json_loads(row["private_json"]),
            acs={"mode": sub_row["mode"]} if sub_row is not None else None,
            seq=cast(int, seq_row["max_seq"]),
            recv=cast(int, sub_row["recv_seq"]) if sub_row is not None else None,
            read=cast(int, sub_row["read_seq"]) if sub_row is not None else None,
        )

    def _subscriptions(self, conn: sqlite3.Connection, topic: str) -> list[SubscriptionInfo]:
        rows = conn.execute(
            "SELECT * FROM subscriptions WHERE topic = ? ORDER BY rowid ASC",
            (topic,),
        ).fetchall()
        return [_subscription_from_row(r) for r in rows]

    def _tags(self, row: sqlite3.Row) -> list[str]:
        return [] if row["tags_json"] is None else cast(list[str], json_loads(row["tags_json"]))

    def _messages(
        self,
        conn: sqlite3.Connection,
        topic: str,
        *,
        since: int | None = None,
        before: int | None = None,
        limit: int = DEFAULT_PAGE,
    ) -> list[DataMessage]:
        where = ["topic = ?"]
        params: list[Any] = [topic]
        if since is not None:
            where.append("seq >= ?")
            params.append(since)
        if before is not None:
            where.append("seq < ?")
            params.append(before)
        params.append(limit)
        # Newest first so that a limit keeps the latest page, then flip back.
        rows = conn.execute(
            f"""
            SELECT topic, seq, sender, head_json, content_json, created_at
            FROM messages
            WHERE {" AND ".join(where)}
            ORDER BY seq {"ASC" if since is not None else "DESC"}
            LIMIT ?
            """,
            tuple(params),
        ).fetchall()
        if since is None:
            rows = list(reversed(rows))
        return [_message_from_row(r) for r in rows]

    def _reply(self, conn: sqlite3.Connection, topic: str, query: GetQuery) -> MetaReply:
        row = self._require_topic(conn, topic)
        what = set(query.what.split())
        reply = MetaReply(ctrl=CtrlResult(code=200, text="ok", ts=now()))
        if "desc" in what:
            reply.desc = self._describe(row, conn)
        if "sub" in what:
            reply.sub = self._subscriptions(conn, topic)
        if "tags" in what:
            reply.tags = self._tags(row)
        if "data" in what:
            data = query.data
            reply.data = self._messages(
                conn,
                topic,
                since=data.since if data else None,
                before=data.before if data else None,
                limit=(data.limit if data and data.limit else DEFAULT_PAGE),
            )
            reply.ctrl.params["count"] = len(reply.data)
        return reply

    # Session protocol

    async def subscribe(self, topic: str, query: GetQuery | None) -> MetaReply:
        ts = now().timestamp()
        with self.connect() as conn, conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO topics(name, created_at, updated_at, del_id)
                VALUES (?, ?, ?, 0)
                """,
                (topic, ts, ts),
            )
            conn.execute(
                """
                INSERT OR IGNORE INTO subscriptions(topic, user_id, mode, recv_seq, read_seq, updated_at)
                VALUES (?, ?, ?, 0, 0, ?)
                """,
                (topic, self.current_user_id, DEFAULT_MODE, ts),
            )
            return self._reply(conn, topic, query or GetQuery(what="desc sub tags data"))

    async def publish(self, topic: str, message: dict[str, Any]) -> CtrlResult:
        created_at = now()
        ts = created_at.timestamp()
        with self.connect() as conn, conn:
            self._require_topic(conn, topic)
            conn.execute(
                """
                INSERT OR IGNORE INTO topic_seq(topic, next_seq, updated_at)
                VALUES (?, 1, ?)
                """,
                (topic, ts),
            )
            next_seq_row = conn.execute(
                "SELECT next_seq FROM topic_seq WHERE topic = ?",
                (topic,),
            ).fetchone()
            assert next_seq_row is not None
            seq = cast(int, next_seq_row["next_seq"])
            head = message.get("head")
            conn.execute(
                """
                INSERT INTO messages(topic, seq, sender, head_json, content_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    topic,
                    seq,
                    self.current_user_id,
                    json_dumps(head) if head else None,
                    json_dumps(message.get("content")),
                    ts,
                ),
            )
            conn.execute(
                "UPDATE topic_seq SET next_seq = ?, updated_at = ? WHERE topic = ?",
                (seq + 1, ts, topic),
            )
        return CtrlResult(code=202, text="accepted", ts=created_at, params={"seq": seq})

    async def get_meta(self, topic: str, query: GetQuery) -> MetaReply:
        with self.connect() as conn:
            return self._reply(conn, topic, query)

    async def set_meta(self, topic: str, params: SetParams) -> CtrlResult:
        updated = now()
        ts = updated.timestamp()
        out: dict[str, Any] = {}
        with self.connect() as conn, conn:
            row = self._require_topic(conn, topic)
            if params.desc is not None:
                public = None if row["public_json"] is None else json_loads(row["public_json"])
                private = None if row["private_json"] is None else json_loads(row["private_json"])
                if params.desc.public is not None:
                    public = merge_obj(public, params.desc.public)
                if params.desc.private is not None:
                    private = merge_obj(private, params.desc.private)
                conn.execute(
                    """
                    UPDATE topics SET public_json = ?, private_json = ?, updated_at = ?
                    WHERE name = ?
                    """,
                    (
                        None if public is None else json_dumps(public),
                        None if private is None else json_dumps(private),
                        ts,
                        topic,
                    ),
                )
            if params.sub is not None:
                user_id = params.sub.user or self.current_user_id
                mode = params.sub.mode or DEFAULT_MODE
                conn.execute(
                    """
                    INSERT INTO subscriptions(topic, user_id, mode, recv_seq, read_seq, updated_at)
                    VALUES (?, ?, ?, 0, 0, ?)
                    ON CONFLICT(topic, user_id) DO UPDATE SET
                      mode = excluded.mode,
                      updated_at = excluded.updated_at
                    """,
                    (topic, user_id, mode, ts),
                )
                out["acs"] = {"mode": mode}
            if params.tags is not None:
                tags = [] if params.tags == [DEL_CHAR] else params.tags
                conn.execute(
                    "UPDATE topics SET tags_json = ?, updated_at = ? WHERE name = ?",
                    (json_dumps(tags), ts, topic),
                )
        return CtrlResult(code=200, text="ok", ts=updated, params=out)

    async def delete_messages(
        self, topic: str, ranges: list[BoundedRange], hard: bool
    ) -> CtrlResult:
        with self.connect() as conn, conn:
            row = self._require_topic(conn, topic)
            for r in ranges:
                conn.execute(
                    "DELETE FROM messages WHERE topic = ? AND seq >= ? AND seq < ?",
                    (topic, r.low, r.hi),
                )
            del_id = cast(int, row["del_id"]) + 1
            conn.execute("UPDATE topics SET del_id = ? WHERE name = ?", (del_id, topic))
        logger.debug("Deleted %d range(s) from %s (hard=%s)", len(ranges), topic, hard)
        return CtrlResult(code=200, text="ok", ts=now(), params={"del": del_id})

    async def delete_subscription(self, topic: str, user_id: str) -> CtrlResult:
        with self.connect() as conn, conn:
            self._require_topic(conn, topic)
            cur = conn.execute(
                "DELETE FROM subscriptions WHERE topic = ? AND user_id = ?",
                (topic, user_id),
            )
            if cur.rowcount == 0:
                raise RemoteRejectedError(f"subscription not found: {user_id}", status=404)
        return CtrlResult(code=200, text="ok", ts=now())

    async def leave(self, topic: str, unsubscribe: bool) -> CtrlResult:
        if unsubscribe:
            with self.connect() as conn, conn:
                conn.execute(
                    "DELETE FROM subscriptions WHERE topic = ? AND user_id = ?",
                    (topic, self.current_user_id),
                )
        return CtrlResult(code=200, text="ok", ts=now())

    async def delete_topic(self, topic: str, hard: bool) -> CtrlResult:
        with self.connect() as conn, conn:
            self._require_topic(conn, topic)
            conn.execute("DELETE FROM messages WHERE topic = ?", (topic,))
            conn.execute("DELETE FROM subscriptions WHERE topic = ?", (topic,))
            conn.execute("DELETE FROM topic_seq WHERE topic = ?", (topic,))
            conn.execute("DELETE FROM topics WHERE name = ?", (topic,))
        return CtrlResult(code=200, text="ok", ts=now())

    def send_watermark(self, topic: str, kind: WatermarkKind, seq: int) -> None:
        column = "recv_seq" if kind == "recv" else "read_seq"
        with self.connect() as conn, conn:
            conn.execute(
                f"""
                UPDATE subscriptions
                SET {column} = ?, updated_at = ?
                WHERE topic = ? AND user_id = ? AND {column} < ?
                """,
                (seq, now().timestamp(), topic, self.current_user_id, seq),
            )

    def note_key_press(self, topic: str) -> None:
        logger.debug("%s is typing in %s", self.current_user_id, topic)

    # Administrative helpers

    def topic_list_with_counts(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                  t.name,
                  t.created_at,
                  t.del_id,
                  COUNT(m.seq) AS message_count,
                  COALESCE(MAX(m.seq), 0) AS last_seq
                FROM topics t
                LEFT JOIN messages m ON m.topic = t.name
                GROUP BY t.name
                ORDER BY t.created_at DESC
                """,
            ).fetchall()
        return [
            {
                "name": r["name"],
                "created_at": r["created_at"],
                "counts": {
                    "messages": cast(int, r["message_count"]),
                    "last_seq": cast(int, r["last_seq"]),
                    "del_id": cast(int, r["del_id"]),
                },
            }
            for r in rows
        ]

    def get_subscription(self, *, topic: str, user_id: str) -> SubscriptionInfo | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE topic = ? AND user_id = ?",
                (topic, user_id),
            ).fetchone()
        return None if row is None else _subscription_from_row(row)


def _subscription_from_row(row: sqlite3.Row) -> SubscriptionInfo:
    return SubscriptionInfo(
        user=row["user_id"],
        topic=row["topic"],
        mode=row["mode"],
        recv=cast(int, row["recv_seq"]),
        read=cast(int, row["read_seq"]),
        updated=_ts(row["updated_at"]),
    )


def _message_from_row(row: sqlite3.Row) -> DataMessage:
    head_json = row["head_json"]
    return DataMessage(
        topic=row["topic"],
        seq=cast(int, row["seq"]),
        ts=cast(datetime, _ts(row["created_at"])),
        sender=row["sender"],
        head={} if head_json is None else cast(dict[str, Any], json_loads(head_json)),
        content=json_loads(row["content_json"]),
    )
