from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from topic_sync.errors import RemoteRejectedError
from topic_sync.models import BoundedRange, WatermarkKind
from topic_sync.schemas import (
    CtrlResult,
    GetQuery,
    MetaReply,
    SetParams,
    SubscriptionInfo,
)
from topic_sync.topic import TopicController

TS = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeSession:
    """Records every call; ``reject`` makes the named method fail."""

    def __init__(self, user_id: str = "usr-me") -> None:
        self.current_user_id = user_id
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.reject: dict[str, CtrlResult | Exception] = {}
        self.next_seq = 1
        self.next_del_id = 1
        self.meta_reply: MetaReply | None = None
        self.watermarks: list[tuple[str, str, int]] = []
        self.key_presses: list[str] = []

    def _record(self, name: str, *args: Any) -> CtrlResult | None:
        self.calls.append((name, args))
        outcome = self.reject.get(name)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [args for n, args in self.calls if n == name]

    async def subscribe(self, topic: str, query: GetQuery | None) -> MetaReply:
        rejected = self._record("subscribe", topic, query)
        if rejected is not None:
            return MetaReply(ctrl=rejected)
        return self.meta_reply or MetaReply(
            ctrl=CtrlResult(code=200, ts=TS),
            sub=[SubscriptionInfo(user=self.current_user_id, mode="JRWPS")],
        )

    async def publish(self, topic: str, message: dict[str, Any]) -> CtrlResult:
        rejected = self._record("publish", topic, message)
        if rejected is not None:
            return rejected
        seq = self.next_seq
        self.next_seq += 1
        return CtrlResult(code=202, text="accepted", ts=TS, params={"seq": seq})

    async def get_meta(self, topic: str, query: GetQuery) -> MetaReply:
        rejected = self._record("get_meta", topic, query)
        if rejected is not None:
            return MetaReply(ctrl=rejected)
        return self.meta_reply or MetaReply(ctrl=CtrlResult(params={"count": 0}))

    async def set_meta(self, topic: str, params: SetParams) -> CtrlResult:
        rejected = self._record("set_meta", topic, params)
        if rejected is not None:
            return rejected
        out: dict[str, Any] = {}
        if params.sub is not None:
            out["acs"] = {"mode": params.sub.mode or "JRWPS"}
        return CtrlResult(ts=TS, params=out)

    async def delete_messages(
        self, topic: str, ranges: list[BoundedRange], hard: bool
    ) -> CtrlResult:
        rejected = self._record("delete_messages", topic, ranges, hard)
        if rejected is not None:
            return rejected
        del_id = self.next_del_id
        self.next_del_id += 1
        return CtrlResult(ts=TS, params={"del": del_id})

    async def delete_subscription(self, topic: str, user_id: str) -> CtrlResult:
        return self._record("delete_subscription", topic, user_id) or CtrlResult(ts=TS)

    async def leave(self, topic: str, unsubscribe: bool) -> CtrlResult:
        return self._record("leave", topic, unsubscribe) or CtrlResult(ts=TS)

    async def delete_topic(self, topic: str, hard: bool) -> CtrlResult:
        return self._record("delete_topic", topic, hard) or CtrlResult(ts=TS)

    def send_watermark(self, topic: str, kind: WatermarkKind, seq: int) -> None:
        self.watermarks.append((topic, kind, seq))

    def note_key_press(self, topic: str) -> None:
        self.key_presses.append(topic)


def rejected(status: int = 500, text: str = "internal error") -> RemoteRejectedError:
    return RemoteRejectedError(text, status=status)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def topic(session: FakeSession) -> TopicController:
    return TopicController("grpX", session)

