from __future__ import annotations

import pytest
from conftest import TS, FakeSession, rejected

from topic_sync.common import DEL_CHAR
from topic_sync.errors import InactiveTopicError, NotFoundError, RemoteRejectedError
from topic_sync.models import BoundedRange, OpenRange
from topic_sync.schemas import (
    Credential,
    CtrlResult,
    DataMessage,
    MetaReply,
    SetParams,
    SubscriptionInfo,
    TopicDescription,
)
from topic_sync.topic import TopicController, topic_type


def _push(topic: TopicController, *seqs: int, sender: str = "usr-b") -> None:
    for seq in seqs:
        topic.route_data(DataMessage(seq=seq, ts=TS, sender=sender, content=f"m{seq}"))


@pytest.mark.anyio
async def test_subscribe_routes_initial_meta(session: FakeSession, topic: TopicController) -> None:
    session.meta_reply = MetaReply(
        ctrl=CtrlResult(params={"count": 2}),
        desc=TopicDescription(public={"fn": "Team"}, acs={"mode": "JRWPS"}),
        sub=[SubscriptionInfo(user="usr-me"), SubscriptionInfo(user="usr-b", read=3, recv=4)],
        tags=["alpha", "beta"],
        data=[DataMessage(seq=3, ts=TS, content="c"), DataMessage(seq=4, ts=TS, content="d")],
    )
    counts: list[int] = []
    topic.events.all_messages_received.subscribe(counts.append)

    ctrl = await topic.subscribe()

    assert ctrl.code == 200
    assert topic.subscribed is True
    assert topic.public == {"fn": "Team"}
    assert [r.user_id for r in topic.subscriber_list()] == ["usr-me", "usr-b"]
    assert topic.subscriber("usr-b").read == 3  # type: ignore[union-attr]
    assert topic.get_tags() == ["alpha", "beta"]
    assert topic.cache.seqs() == [3, 4]
    assert (topic.counters.min_seq, topic.counters.max_seq) == (3, 4)
    assert counts == [2]


@pytest.mark.anyio
async def test_subscribe_twice_is_not_modified(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    ctrl = await topic.subscribe()

    assert ctrl.code == 304
    assert len(session.called("subscribe")) == 1


@pytest.mark.anyio
async def test_subscribe_rejected_leaves_topic_inactive(
    session: FakeSession, topic: TopicController
) -> None:
    session.reject["subscribe"] = CtrlResult(code=404, text="not found")

    with pytest.raises(RemoteRejectedError):
        await topic.subscribe()

    assert topic.subscribed is False


# Receipts


@pytest.mark.anyio
async def test_note_only_moves_forward(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()

    assert topic.note_read(5) is True
    assert topic.note_read(3) is False
    assert topic.note_read(5) is False
    assert topic.note_recv(7) is True

    me = topic.subscriber("usr-me")
    assert me is not None
    assert (me.received, me.read) == (7, 5)
    assert session.watermarks == [("grpX", "read", 5), ("grpX", "recv", 7)]


@pytest.mark.anyio
async def test_note_read_defaults_to_max_seq(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    assert topic.note_read() is False

    _push(topic, 1, 2, 3)

    assert topic.note_read() is True
    assert session.watermarks == [("grpX", "read", 3)]


@pytest.mark.anyio
async def test_note_on_inactive_topic_is_local_only(
    session: FakeSession, topic: TopicController
) -> None:
    await topic.subscribe()
    topic.reset_sub()

    assert topic.note_recv(4) is True

    assert topic.subscriber("usr-me").received == 4  # type: ignore[union-attr]
    assert session.watermarks == []


def test_note_for_unknown_user_raises(topic: TopicController) -> None:
    with pytest.raises(NotFoundError):
        topic.note_read(1)


def test_registry_rejects_unknown_kind(topic: TopicController) -> None:
    topic.process_meta_sub([SubscriptionInfo(user="usr-me")])

    with pytest.raises(ValueError):
        topic.subscribers.note_watermark("usr-me", "seen", 3)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_key_press_needs_active_topic(session: FakeSession, topic: TopicController) -> None:
    topic.note_key_press()
    assert session.key_presses == []

    await topic.subscribe()
    topic.note_key_press()
    assert session.key_presses == ["grpX"]


# Deleting messages


@pytest.mark.anyio
async def test_del_messages_coalesces_and_flushes(
    session: FakeSession, topic: TopicController
) -> None:
    await topic.subscribe()
    _push(topic, *range(1, 21))
    changes: list[object] = []
    topic.events.data.subscribe(changes.append)

    ctrl = await topic.del_messages(
        [BoundedRange(1, 3), BoundedRange(2, 5), BoundedRange(5, 8), BoundedRange(10, 12), OpenRange(11)],
        hard=True,
    )

    [(name, ranges, hard)] = session.called("delete_messages")
    assert name == "grpX"
    assert [(r.low, r.hi) for r in ranges] == [(1, 8), (10, 21)]
    assert hard is True
    assert ctrl.del_id == 1
    assert topic.counters.max_deletion_id == 1
    assert topic.cache.seqs() == [8, 9]
    assert changes == [None]


@pytest.mark.anyio
async def test_del_messages_provisional_only_never_calls_session(
    session: FakeSession, topic: TopicController
) -> None:
    await topic.subscribe()
    session.reject["publish"] = rejected()
    draft = topic.create_message("lost")
    with pytest.raises(RemoteRejectedError):
        await topic.publish_draft(draft)
    _push(topic, 1, 2)

    await topic.del_messages([BoundedRange(-1, 0)])

    assert session.called("delete_messages") == []
    assert topic.cache.seqs() == [1, 2]
    assert topic.counters.max_deletion_id == 0


@pytest.mark.anyio
async def test_del_messages_rejected_changes_nothing(
    session: FakeSession, topic: TopicController
) -> None:
    await topic.subscribe()
    _push(topic, 1, 2, 3)
    session.reject["delete_messages"] = CtrlResult(code=403, text="denied")

    with pytest.raises(RemoteRejectedError):
        await topic.del_messages([BoundedRange(1, 3)])

    assert topic.cache.seqs() == [1, 2, 3]
    assert topic.counters.max_deletion_id == 0


@pytest.mark.anyio
async def test_del_messages_requires_active_topic(
    session: FakeSession, topic: TopicController
) -> None:
    with pytest.raises(InactiveTopicError):
        await topic.del_messages([BoundedRange(1, 2)])
    assert session.called("delete_messages") == []


@pytest.mark.anyio
async def test_del_messages_list_and_all(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    _push(topic, 1, 2, 3, 4, 5, 6)

    await topic.del_messages_list([2, 3, 5])
    assert topic.cache.seqs() == [1, 4, 6]
    assert [(r.low, r.hi) for r in session.called("delete_messages")[0][1]] == [(2, 4), (5, 6)]

    await topic.del_messages_all()
    assert topic.cache.seqs() == []
    sent = session.called("delete_messages")[1][1]
    assert [(r.low, r.hi, r.covers_all) for r in sent] == [(1, 7, True)]


@pytest.mark.anyio
async def test_del_messages_all_on_empty_topic(topic: TopicController) -> None:
    await topic.subscribe()
    assert await topic.del_messages_all() is None


def test_flush_message_is_local(session: FakeSession, topic: TopicController) -> None:
    _push(topic, 1, 2)

    flushed = topic.flush_message(1)

    assert flushed is not None
    assert topic.cache.seqs() == [2]
    assert topic.flush_message(1) is None
    assert session.calls == []


# Metadata


@pytest.mark.anyio
async def test_set_meta_normalizes_tags(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    updates: list[list[str]] = []
    topic.events.tags_updated.subscribe(updates.append)

    await topic.set_meta(SetParams(tags=[" Beta", "alpha", "beta", ""]))

    sent = session.called("set_meta")[0][1]
    assert sent.tags == ["alpha", "beta"]
    assert topic.get_tags() == ["alpha", "beta"]
    assert updates == [["alpha", "beta"]]

    await topic.set_meta(SetParams(tags=[]))
    assert session.called("set_meta")[1][1].tags == [DEL_CHAR]
    assert topic.get_tags() == []


@pytest.mark.anyio
async def test_invite_adds_subscriber(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    subs: list[list[str]] = []
    topic.events.subs_updated.subscribe(subs.append)

    await topic.invite("usr-new", "JRW")

    record = topic.subscriber("usr-new")
    assert record is not None
    assert record.access_mode == {"mode": "JRW"}
    assert subs == [["usr-me", "usr-new"]]


@pytest.mark.anyio
async def test_archive_sets_private_flag(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()

    await topic.archive(True)
    assert topic.private == {"arch": True}
    assert await topic.archive(True) is None

    await topic.archive(False)
    assert session.called("set_meta")[1][1].desc.private == {"arch": DEL_CHAR}
    assert topic.private == {}


def test_set_params_needs_content() -> None:
    with pytest.raises(ValueError):
        SetParams()


@pytest.mark.anyio
async def test_del_subscription(session: FakeSession, topic: TopicController) -> None:
    session.meta_reply = MetaReply(sub=[SubscriptionInfo(user="usr-me"), SubscriptionInfo(user="usr-b")])
    await topic.subscribe()

    await topic.del_subscription("usr-b")

    assert topic.subscriber("usr-b") is None
    assert session.called("delete_subscription") == [("grpX", "usr-b")]


@pytest.mark.anyio
async def test_get_messages_page_marks_end_of_history(
    session: FakeSession, topic: TopicController
) -> None:
    await topic.subscribe()
    _push(topic, 30, 31)

    await topic.get_messages_page(10)

    [(_, query)] = session.called("get_meta")
    assert query.what == "data"
    assert query.data.before == 30
    assert query.data.limit == 10
    assert topic.no_earlier_msgs is True


def test_meta_query_builder_uses_counters(topic: TopicController) -> None:
    _push(topic, 5, 9)

    query = topic.start_meta_query().with_desc().with_sub().with_later_data(20).build()

    assert query.what == "desc sub data"
    assert query.data is not None
    assert (query.data.since, query.data.limit) == (10, 20)


def test_process_meta_creds_merges_on_update(topic: TopicController) -> None:
    topic.process_meta_creds([Credential(meth="email", val="a@example.com")])
    topic.process_meta_creds([Credential(meth="tel", val="+1555")], update=True)
    topic.process_meta_creds([Credential(meth="email", val="a@example.com", done=True)], update=True)

    assert [(c.meth, c.done) for c in topic.credentials] == [("tel", False), ("email", True)]


# Inbound routing


def test_route_data_ignores_duplicates(topic: TopicController) -> None:
    seen: list[object] = []
    topic.events.data.subscribe(seen.append)

    first = topic.route_data({"seq": 2, "ts": "2024-05-01T12:00:00Z", "from": "usr-b", "content": "x"})
    second = topic.route_data({"seq": 2, "ts": "2024-05-01T12:00:00Z", "from": "usr-b", "content": "y"})

    assert first is not None
    assert second is None
    assert seen == [first]
    assert topic.cache.get(2).content == "x"  # type: ignore[union-attr]


def test_route_info_updates_other_subscriber(topic: TopicController) -> None:
    topic.process_meta_sub([SubscriptionInfo(user="usr-b")])

    topic.route_info({"what": "read", "from": "usr-b", "seq": 9})
    topic.route_info({"what": "read", "from": "usr-b", "seq": 4})
    topic.route_info({"what": "kp", "from": "usr-b"})
    topic.route_info({"what": "read", "from": "usr-unknown", "seq": 4})

    assert topic.subscriber("usr-b").read == 9  # type: ignore[union-attr]


def test_route_pres_tracks_deletion_id(topic: TopicController) -> None:
    topic.route_pres({"what": "del", "src": "grpX", "clear": 7})
    topic.route_pres({"what": "del", "src": "grpX", "clear": 3})

    assert topic.counters.max_deletion_id == 7


def test_subscription_marked_deleted_is_removed(topic: TopicController) -> None:
    topic.process_meta_sub([SubscriptionInfo(user="usr-b"), SubscriptionInfo(user="usr-c")])
    topic.process_meta_sub([SubscriptionInfo(user="usr-b", deleted=TS)])

    assert [r.user_id for r in topic.subscriber_list()] == ["usr-c"]


def test_p2p_peer_lookup(session: FakeSession) -> None:
    topic = TopicController("usrAlice", session)
    topic.process_meta_sub([SubscriptionInfo(user="usrAlice", public={"fn": "Alice"})])

    assert topic.topic_type == "p2p"
    assert topic.p2p_peer().public == {"fn": "Alice"}  # type: ignore[union-attr]
    assert topic_type("grpX") == "grp"
    assert topic_type("me") == "me"


# Lifecycle


@pytest.mark.anyio
async def test_leave_keeps_cache(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    _push(topic, 1)

    await topic.leave()

    assert topic.subscribed is False
    assert topic.cache.seqs() == [1]
    with pytest.raises(InactiveTopicError):
        await topic.leave()


@pytest.mark.anyio
async def test_unsubscribe_forgets_topic(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    _push(topic, 1, 2)
    gone: list[str] = []
    topic.events.topic_deleted.subscribe(gone.append)

    await topic.leave(unsubscribe=True)

    assert len(topic.cache) == 0
    assert len(topic.subscribers) == 0
    assert topic.counters.max_seq == 0
    assert gone == ["grpX"]


@pytest.mark.anyio
async def test_del_topic(session: FakeSession, topic: TopicController) -> None:
    await topic.subscribe()
    _push(topic, 1)

    await topic.del_topic(hard=True)

    assert session.called("delete_topic") == [("grpX", True)]
    assert topic.subscribed is False
    assert len(topic.cache) == 0
