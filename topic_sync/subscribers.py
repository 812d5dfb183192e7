from __future__ import annotations

from collections.abc import Iterator

from topic_sync.errors import NotFoundError
from topic_sync.models import SubscriberRecord, WatermarkKind


class SubscriberRegistry:
    """Subscription records keyed by user id, iterated in insertion order."""

    def __init__(self) -> None:
        self._records: dict[str, SubscriberRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SubscriberRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._records

    def user_ids(self) -> list[str]:
        return list(self._records)

    def get(self, user_id: str) -> SubscriberRecord | None:
        return self._records.get(user_id)

    def upsert(self, record: SubscriberRecord) -> SubscriberRecord:
        """Insert or replace; a replaced record keeps its position."""
        self._records[record.user_id] = record
        return record

    def remove(self, user_id: str) -> SubscriberRecord | None:
        return self._records.pop(user_id, None)

    def clear(self) -> None:
        self._records.clear()

    def note_watermark(self, user_id: str, kind: WatermarkKind, seq: int) -> bool:
        """Raise the ``recv`` or ``read`` watermark of a user.

        Returns True only when ``seq`` moved the watermark forward.
        """
        record = self._records.get(user_id)
        if record is None:
            raise NotFoundError(f"subscriber not found: {user_id}")
        if kind == "recv":
            if seq <= record.received:
                return False
            record.received = seq
        elif kind == "read":
            if seq <= record.read:
                return False
            record.read = seq
        else:
            raise ValueError(f"unknown watermark kind: {kind}")
        return True
