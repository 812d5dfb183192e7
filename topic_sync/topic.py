from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterable
from datetime import datetime
from typing import Any, Literal

from topic_sync.cache import OrderedMessageCache, ProvisionalIdAllocator
from topic_sync.channels import TopicEvents
from topic_sync.common import DEL_CHAR, default_page_size, merge_obj, normalize_tags, now
from topic_sync.deletion import DeletionRangeCoalescer, ranges_from_ids
from topic_sync.errors import InactiveTopicError
from topic_sync.models import (
    BoundedRange,
    Confirmed,
    DeletionRange,
    MessageEntry,
    SeqId,
    SubscriberRecord,
    TopicCounters,
    WatermarkKind,
)
from topic_sync.publish import Draft, PublishPipeline
from topic_sync.schemas import (
    Credential,
    CtrlResult,
    DataMessage,
    GetQuery,
    InfoNote,
    MetaQuery,
    MetaReply,
    Presence,
    SetParams,
    SubscriptionInfo,
    TopicDescription,
)
from topic_sync.session import ContentCodec, PlainTextCodec, Session, check_ctrl
from topic_sync.subscribers import SubscriberRegistry

logger = logging.getLogger(__name__)

TopicType = Literal["me", "fnd", "grp", "p2p", "sys"]


def topic_type(name: str) -> TopicType:
    if name in ("me", "fnd", "sys"):
        return name  # type: ignore[return-value]
    if name.startswith(("p2p", "usr")):
        return "p2p"
    return "grp"


class TopicController:
    """Local mirror of one topic.

    Owns the message cache, the subscriber registry and the counters, and is
    the only thing that talks to the session on the topic's behalf. All state
    changes happen synchronously between awaits on the session.
    """

    def __init__(
        self,
        name: str,
        session: Session,
        *,
        codec: ContentCodec | None = None,
        page_size: int | None = None,
    ) -> None:
        self.name = name
        self.session = session
        self.page_size = page_size or default_page_size()

        self.counters = TopicCounters()
        self.cache = OrderedMessageCache()
        self.subscribers = SubscriberRegistry()
        self.events = TopicEvents()
        self.allocator = ProvisionalIdAllocator(self.counters)
        self.coalescer = DeletionRangeCoalescer(self.counters)
        self.pipeline = PublishPipeline(
            topic=name,
            session=session,
            cache=self.cache,
            allocator=self.allocator,
            events=self.events,
            codec=codec or PlainTextCodec(),
            on_confirmed=self._confirm,
            require_active=lambda: self._require_active("publish"),
        )

        self.subscribed = False
        self.is_new = True
        self.created: datetime | None = None
        self.updated: datetime | None = None
        self.touched: datetime | None = None
        self.access_mode: Any = None
        self.public: Any = None
        self.private: Any = None
        self.tags: list[str] = []
        self.credentials: list[Credential] = []
        self.no_earlier_msgs = False
        self.last_desc_update: datetime | None = None
        self.last_subs_update: datetime | None = None

    @property
    def current_user_id(self) -> str:
        return self.session.current_user_id

    @property
    def topic_type(self) -> TopicType:
        return topic_type(self.name)

    def _require_active(self, action: str) -> None:
        if not self.subscribed:
            raise InactiveTopicError(f"Cannot {action} in inactive topic {self.name}")

    # Subscription lifecycle

    async def subscribe(self, query: GetQuery | None = None) -> CtrlResult:
        if self.subscribed:
            return CtrlResult(code=304, text="already subscribed")
        reply = await self.session.subscribe(self.name, query)
        check_ctrl(reply.ctrl)
        self.subscribed = True
        self.is_new = False
        self.route_meta(reply)
        return reply.ctrl

    async def leave(self, unsubscribe: bool = False) -> CtrlResult:
        # Unsubscribing from an inactive topic is allowed.
        if not self.subscribed and not unsubscribe:
            raise InactiveTopicError(f"Cannot leave inactive topic {self.name}")
        ctrl = check_ctrl(await self.session.leave(self.name, unsubscribe))
        self.reset_sub()
        if unsubscribe:
            self.gone()
        return ctrl

    async def del_topic(self, hard: bool = False) -> CtrlResult:
        ctrl = check_ctrl(await self.session.delete_topic(self.name, hard))
        self.reset_sub()
        self.gone()
        return ctrl

    def reset_sub(self) -> None:
        self.subscribed = False

    def gone(self) -> None:
        """Forget everything known about the topic."""
        self.cache.clear()
        self.subscribers.clear()
        self.counters.reset()
        self.tags = []
        self.credentials = []
        self.no_earlier_msgs = False
        self.events.topic_deleted.emit(self.name)

    # Publishing

    def create_message(self, content: Any, no_echo: bool = False) -> Draft:
        return Draft(topic=self.name, content=content, no_echo=no_echo)

    async def publish(self, content: Any, no_echo: bool = False) -> CtrlResult:
        return await self.publish_message(self.create_message(content, no_echo))

    async def publish_message(self, draft: Draft) -> CtrlResult:
        return await self.pipeline.send(draft)

    async def publish_draft(
        self, draft: Draft, precondition: Awaitable[Any] | None = None
    ) -> CtrlResult:
        """Show the draft in the cache right away and send it once ``precondition`` resolves.

        Without a precondition the draft is sent immediately, which needs an
        active topic. A failed precondition discards the draft from the cache.
        """
        if precondition is None:
            self._require_active("publish")
        return await self.pipeline.publish_draft(draft, precondition)

    def _confirm(self, entry: MessageEntry, seq: Confirmed) -> MessageEntry:
        """Move a confirmed entry to its server seq and return the cached copy.

        If the server already pushed that seq, the pushed entry wins.
        """
        if self.cache.get(entry.seq) is entry:
            self.cache.reposition(entry.seq, seq)
        else:
            entry.seq = seq
            self.cache.insert(entry)
        cached = self.cache.get(seq) or entry
        self.counters.note_seq(seq.value)
        self.touched = entry.created_at
        self.events.data.emit(cached)
        return cached

    def flush_message(self, seq: int | SeqId) -> MessageEntry | None:
        """Drop one message from the cache without telling the server."""
        idx = self.cache.find_by_seq(seq)
        if idx is None:
            return None
        entry = self.cache.delete_at(idx)
        self.events.data.emit(None)
        return entry

    # Deleting messages

    async def del_messages(
        self, ranges: Iterable[DeletionRange], hard: bool = False
    ) -> CtrlResult:
        """Delete ranges of messages; all or nothing.

        Parts of ranges that only cover provisional ids are flushed locally and
        never sent. Nothing is flushed if the server rejects the request.
        """
        self._require_active("delete messages")
        plan = self.coalescer.plan(ranges)
        if plan.remote:
            ctrl = check_ctrl(
                await self.session.delete_messages(self.name, plan.to_send_remotely, hard)
            )
        else:
            ctrl = CtrlResult(params={"del": 0})

        if ctrl.del_id > self.counters.max_deletion_id:
            self.counters.max_deletion_id = ctrl.del_id
        for r in (*plan.to_flush_locally, *plan.to_send_remotely):
            self.cache.delete_range(r.low, r.hi)
        self.events.data.emit(None)
        return ctrl

    async def del_messages_all(self, hard: bool = False) -> CtrlResult | None:
        if self.counters.max_seq <= 0:
            return None
        return await self.del_messages(
            [BoundedRange(1, self.counters.max_seq + 1, covers_all=True)], hard
        )

    async def del_messages_list(self, seq_ids: Iterable[int], hard: bool = False) -> CtrlResult:
        return await self.del_messages(ranges_from_ids(seq_ids), hard)

    # Metadata

    def start_meta_query(self) -> MetaQuery:
        return MetaQuery(self.counters)

    async def get_meta(self, query: GetQuery) -> CtrlResult:
        reply = await self.session.get_meta(self.name, query)
        check_ctrl(reply.ctrl)
        self.route_meta(reply)
        return reply.ctrl

    async def get_messages_page(self, limit: int | None = None, forward: bool = False) -> CtrlResult:
        query = self.start_meta_query()
        if forward:
            query.with_later_data(limit or self.page_size)
        else:
            query.with_earlier_data(limit or self.page_size)
        ctrl = await self.get_meta(query.build())
        if not forward and not ctrl.count:
            self.no_earlier_msgs = True
        return ctrl

    async def set_meta(self, params: SetParams) -> CtrlResult:
        if params.tags is not None:
            params = params.model_copy(update={"tags": normalize_tags(params.tags)})
        ctrl = check_ctrl(await self.session.set_meta(self.name, params))
        if ctrl.code >= 300:
            # Not modified.
            return ctrl

        desc = params.desc
        if params.sub is not None:
            sub = params.sub.model_copy()
            sub.topic = self.name
            if ctrl.acs is not None:
                sub.acs = ctrl.acs
                sub.updated = ctrl.ts
            if not sub.user:
                # An update of the current user's own subscription.
                sub.user = self.current_user_id
                if desc is None:
                    desc = TopicDescription()
            self.process_meta_sub([sub])

        if desc is not None:
            if ctrl.acs is not None:
                desc = desc.model_copy(update={"acs": ctrl.acs, "updated": ctrl.ts})
            self.process_meta_desc(desc)
        if params.tags is not None:
            self.process_meta_tags(params.tags)
        if params.cred is not None:
            self.process_meta_creds([params.cred], update=True)
        return ctrl

    async def invite(self, user_id: str, mode: str | None = None) -> CtrlResult:
        return await self.set_meta(SetParams(sub=SubscriptionInfo(user=user_id, mode=mode)))

    async def archive(self, archived: bool) -> CtrlResult | None:
        if isinstance(self.private, dict) and self.private.get("arch") == archived:
            return None
        return await self.set_meta(
            SetParams(desc=TopicDescription(private={"arch": True if archived else DEL_CHAR}))
        )

    async def del_subscription(self, user_id: str) -> CtrlResult:
        self._require_active("delete subscription")
        ctrl = check_ctrl(await self.session.delete_subscription(self.name, user_id))
        self.subscribers.remove(user_id)
        self.events.subs_updated.emit(self.subscribers.user_ids())
        return ctrl

    # Receipts

    def note(self, kind: WatermarkKind, seq: int) -> bool:
        """Record that the current user received or read up to ``seq``.

        The server is only told when the watermark actually moves and the topic
        is active; receipts on an inactive topic are kept locally and dropped.
        """
        if not self.subscribers.note_watermark(self.current_user_id, kind, seq):
            return False
        if self.subscribed:
            self.session.send_watermark(self.name, kind, seq)
        else:
            logger.info("Not sending %s note on inactive topic %s", kind, self.name)
        return True

    def note_recv(self, seq: int) -> bool:
        return self.note("recv", seq)

    def note_read(self, seq: int | None = None) -> bool:
        seq = seq or self.counters.max_seq
        if seq > 0:
            return self.note("read", seq)
        return False

    def note_key_press(self) -> None:
        if self.subscribed:
            self.session.note_key_press(self.name)
        else:
            logger.info("Cannot send key press on inactive topic %s", self.name)

    # Lookups

    def subscriber(self, user_id: str) -> SubscriberRecord | None:
        return self.subscribers.get(user_id)

    def subscriber_list(self) -> list[SubscriberRecord]:
        return list(self.subscribers)

    def p2p_peer(self) -> SubscriberRecord | None:
        if self.topic_type != "p2p":
            return None
        return self.subscribers.get(self.name)

    def get_tags(self) -> list[str]:
        return list(self.tags)

    def messages(self) -> list[MessageEntry]:
        return self.cache.entries()

    # Inbound routing

    def route_data(self, data: DataMessage | dict[str, Any]) -> MessageEntry | None:
        msg = data if isinstance(data, DataMessage) else DataMessage.model_validate(data)
        self.counters.note_seq(msg.seq)
        if msg.seq >= self.counters.max_seq:
            self.touched = msg.ts
        entry = MessageEntry(
            seq=Confirmed(msg.seq),
            content=msg.content,
            created_at=msg.ts,
            sender=msg.sender,
            head=dict(msg.head),
        )
        if not self.cache.insert(entry):
            logger.debug("Duplicate message %s on %s", msg.seq, self.name)
            return None
        self.events.data.emit(entry)
        return entry

    def route_meta(self, reply: MetaReply) -> None:
        if reply.desc is not None:
            self.process_meta_desc(reply.desc)
        if reply.sub is not None:
            self.process_meta_sub(reply.sub)
        if reply.tags is not None:
            self.process_meta_tags(reply.tags)
        if reply.cred is not None:
            self.process_meta_creds(reply.cred)
        for msg in reply.data:
            self.route_data(msg)
        if reply.data or reply.ctrl.count is not None:
            count = reply.ctrl.count if reply.ctrl.count is not None else len(reply.data)
            self.events.all_messages_received.emit(count)
        self.events.meta.emit(reply)

    def route_pres(self, pres: Presence | dict[str, Any]) -> Presence:
        p = pres if isinstance(pres, Presence) else Presence.model_validate(pres)
        if p.what == "del" and p.clear is not None and p.clear > self.counters.max_deletion_id:
            self.counters.max_deletion_id = p.clear
        self.events.pres.emit(p)
        return p

    def route_info(self, info: InfoNote | dict[str, Any]) -> InfoNote:
        note = info if isinstance(info, InfoNote) else InfoNote.model_validate(info)
        if note.what in ("recv", "read") and note.seq:
            if note.sender in self.subscribers:
                self.subscribers.note_watermark(note.sender, note.what, note.seq)
            else:
                logger.debug("Receipt from unknown subscriber %s on %s", note.sender, self.name)
        self.events.info.emit(note)
        return note

    def process_meta_desc(self, desc: TopicDescription) -> None:
        for attr in ("created", "updated", "touched"):
            value = getattr(desc, attr)
            if value is not None:
                setattr(self, attr, value)
        if desc.public is not None:
            self.public = merge_obj(self.public, desc.public)
        if desc.private is not None:
            self.private = merge_obj(self.private, desc.private)
        if desc.acs is not None:
            self.access_mode = desc.acs
        if self.current_user_id in self.subscribers:
            if desc.recv:
                self.subscribers.note_watermark(self.current_user_id, "recv", desc.recv)
            if desc.read:
                self.subscribers.note_watermark(self.current_user_id, "read", desc.read)
        self.last_desc_update = now()
        self.events.meta_desc.emit(self)

    def process_meta_sub(self, subs: Iterable[SubscriptionInfo]) -> None:
        changed = False
        for sub in subs:
            if not sub.user:
                continue
            changed = True
            if sub.deleted is not None:
                self.subscribers.remove(sub.user)
                continue
            record = self.subscribers.get(sub.user) or SubscriberRecord(user_id=sub.user)
            if sub.acs is not None:
                record.access_mode = sub.acs
            elif sub.mode is not None:
                record.access_mode = sub.mode
            record.received = max(record.received, sub.recv)
            record.read = max(record.read, sub.read)
            if sub.updated is not None:
                record.updated = sub.updated
            if sub.public is not None:
                record.public = sub.public
            self.subscribers.upsert(record)
            self.events.meta_sub.emit(record)
        if changed:
            self.last_subs_update = now()
            self.events.subs_updated.emit(self.subscribers.user_ids())

    def process_meta_tags(self, tags: list[str]) -> None:
        if tags == [DEL_CHAR]:
            tags = []
        self.tags = list(tags)
        self.events.tags_updated.emit(self.get_tags())

    def process_meta_creds(self, creds: list[Credential], update: bool = False) -> None:
        if update:
            merged = list(self.credentials)
            for cred in creds:
                merged = [c for c in merged if (c.meth, c.val) != (cred.meth, cred.val)]
                merged.append(cred)
            self.credentials = merged
        else:
            self.credentials = list(creds)
        self.events.creds_updated.emit(list(self.credentials))
