from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from topic_sync.errors import RemoteRejectedError
from topic_sync.models import BoundedRange, WatermarkKind
from topic_sync.schemas import CtrlResult, GetQuery, MetaReply, SetParams


@runtime_checkable
class Session(Protocol):
    """Backend connection a topic talks through.

    Coroutine methods either return a ``CtrlResult`` (``code >= 400`` counts as a
    rejection) or raise ``RemoteRejectedError``. Request timeouts are the
    session's business.
    """

    current_user_id: str

    async def subscribe(self, topic: str, query: GetQuery | None) -> MetaReply: ...

    async def publish(self, topic: str, message: dict[str, Any]) -> CtrlResult: ...

    async def get_meta(self, topic: str, query: GetQuery) -> MetaReply: ...

    async def set_meta(self, topic: str, params: SetParams) -> CtrlResult: ...

    async def delete_messages(
        self, topic: str, ranges: list[BoundedRange], hard: bool
    ) -> CtrlResult: ...

    async def delete_subscription(self, topic: str, user_id: str) -> CtrlResult: ...

    async def leave(self, topic: str, unsubscribe: bool) -> CtrlResult: ...

    async def delete_topic(self, topic: str, hard: bool) -> CtrlResult: ...

    def send_watermark(self, topic: str, kind: WatermarkKind, seq: int) -> None: ...

    def note_key_press(self, topic: str) -> None: ...


class ContentCodec(Protocol):
    def has_attachments(self, content: Any) -> bool: ...

    def attachment_refs(self, content: Any) -> list[str]: ...


class PlainTextCodec:
    """Codec for plain string content, which never carries attachments."""

    def has_attachments(self, content: Any) -> bool:
        return False

    def attachment_refs(self, content: Any) -> list[str]:
        return []


class DocumentCodec:
    """Codec for structured content with an ``ent`` list of entities.

    Entities of type ``EX`` are attachments; their ``data.ref`` is the
    out-of-band upload reference.
    """

    def _attachments(self, content: Any) -> list[dict[str, Any]]:
        if not isinstance(content, dict):
            return []
        entities = content.get("ent") or []
        return [e for e in entities if isinstance(e, dict) and e.get("tp") == "EX"]

    def has_attachments(self, content: Any) -> bool:
        return bool(self._attachments(content))

    def attachment_refs(self, content: Any) -> list[str]:
        refs: list[str] = []
        for ent in self._attachments(content):
            ref = (ent.get("data") or {}).get("ref")
            if ref:
                refs.append(ref)
        return refs


def check_ctrl(ctrl: CtrlResult) -> CtrlResult:
    """Raise ``RemoteRejectedError`` for an error status, pass anything else through."""
    if ctrl.code >= 400:
        raise RemoteRejectedError(ctrl.text, status=ctrl.code)
    return ctrl
