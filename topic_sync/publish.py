from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from topic_sync.cache import OrderedMessageCache, ProvisionalIdAllocator
from topic_sync.channels import TopicEvents
from topic_sync.common import now
from topic_sync.errors import DraftCancelledError, RemoteRejectedError
from topic_sync.models import TERMINAL_STATES, Confirmed, DraftState, MessageEntry, SeqId
from topic_sync.schemas import CtrlResult
from topic_sync.session import ContentCodec, Session, check_ctrl

logger = logging.getLogger(__name__)

CANCELLED_RESULT_CODE = 300


@dataclass(eq=False)
class Draft:
    """A message on its way to the server.

    ``entry`` is created when the draft is queued (or sent directly) and is the
    same object that sits in the topic's message cache.
    """

    topic: str
    content: Any
    no_echo: bool = False
    head: dict[str, Any] = field(default_factory=dict)
    state: DraftState = DraftState.DRAFT
    cancelled: bool = False
    entry: MessageEntry | None = None
    error: BaseException | None = None

    @property
    def seq(self) -> SeqId | None:
        return None if self.entry is None else self.entry.seq

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self) -> bool:
        """Ask for the draft not to be sent.

        Only honoured while the draft has not been handed to the session yet.
        """
        if self.state not in (DraftState.DRAFT, DraftState.QUEUED):
            return False
        self.cancelled = True
        if self.entry is not None:
            self.entry.cancelled = True
        return True

    def to_wire(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"topic": self.topic, "content": self.content}
        if self.head:
            msg["head"] = dict(self.head)
        if self.no_echo:
            msg["noecho"] = True
        return msg


class PublishPipeline:
    """Drives drafts through queued, sending and one of the terminal states.

    Each draft runs on its own; no ordering is imposed between drafts published
    concurrently on the same topic.
    """

    def __init__(
        self,
        *,
        topic: str,
        session: Session,
        cache: OrderedMessageCache,
        allocator: ProvisionalIdAllocator,
        events: TopicEvents,
        codec: ContentCodec,
        on_confirmed: Callable[[MessageEntry, Confirmed], MessageEntry],
        require_active: Callable[[], None],
    ) -> None:
        self._topic = topic
        self._session = session
        self._cache = cache
        self._allocator = allocator
        self._events = events
        self._codec = codec
        self._on_confirmed = on_confirmed
        self._require_active = require_active

    def _ensure_entry(self, draft: Draft) -> MessageEntry:
        if draft.entry is None:
            draft.entry = MessageEntry(
                seq=self._allocator.next(),
                content=draft.content,
                created_at=now(),
                sender=self._session.current_user_id,
                head=draft.head,
                cancelled=draft.cancelled,
                locally_originated=True,
            )
        return draft.entry

    def enqueue(self, draft: Draft) -> MessageEntry:
        """Put the draft in the cache so it shows up before any network activity."""
        if draft.state is not DraftState.DRAFT:
            return self._ensure_entry(draft)
        entry = self._ensure_entry(draft)
        entry.created_at = now()
        entry.sender = self._session.current_user_id
        # The entry is already cached; an echo from the server would duplicate it.
        draft.no_echo = True
        self._cache.insert(entry)
        draft.state = DraftState.QUEUED
        self._events.data.emit(entry)
        return entry

    async def publish_draft(
        self, draft: Draft, precondition: Awaitable[Any] | None = None
    ) -> CtrlResult:
        entry = self.enqueue(draft)
        if precondition is not None:
            try:
                await precondition
            except Exception as e:
                logger.warning("Message draft %s discarded: %s", entry.seq.value, e)
                entry.sending = False
                entry.failed = True
                idx = self._cache.find_by_seq(entry.seq)
                if idx is not None:
                    self._cache.delete_at(idx)
                draft.state = DraftState.FAILED
                draft.error = e
                self._events.data.emit(None)
                raise

        if draft.cancelled:
            draft.state = DraftState.CANCELLED
            return CtrlResult(code=CANCELLED_RESULT_CODE, text="cancelled")
        return await self.send(draft)

    async def send(self, draft: Draft) -> CtrlResult:
        self._require_active()
        if draft.cancelled:
            raise DraftCancelledError(f"draft for {draft.topic} was cancelled")
        if draft.state in (DraftState.SENDING, DraftState.CONFIRMED):
            raise ValueError(f"draft is already {draft.state}")

        entry = self._ensure_entry(draft)
        if self._codec.has_attachments(draft.content) and "attachments" not in draft.head:
            draft.head["attachments"] = self._codec.attachment_refs(draft.content)

        entry.sending = True
        entry.failed = False
        draft.state = DraftState.SENDING
        try:
            ctrl = check_ctrl(await self._session.publish(self._topic, draft.to_wire()))
            if ctrl.seq is None:
                raise RemoteRejectedError("publish acknowledged without a seq")
            confirmed = Confirmed(ctrl.seq)
        except Exception as e:
            logger.warning("Message rejected by the server: %s", e)
            entry.sending = False
            entry.failed = True
            draft.state = DraftState.FAILED
            draft.error = e
            self._events.data.emit(None)
            if isinstance(e, RemoteRejectedError):
                raise
            raise RemoteRejectedError(str(e)) from e

        entry.sending = False
        if ctrl.ts is not None:
            entry.created_at = ctrl.ts
        draft.entry = self._on_confirmed(entry, confirmed)
        draft.state = DraftState.CONFIRMED
        return ctrl
