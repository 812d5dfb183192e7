from __future__ import annotations

import bisect
from collections.abc import Iterator

from topic_sync.models import (
    Confirmed,
    MessageEntry,
    Provisional,
    SeqId,
    TopicCounters,
    seq_id,
    seq_value,
)


class OrderedMessageCache:
    """Message entries kept sorted ascending by seq, at most one per seq value.

    Provisional ids are negative, so pending messages sort before confirmed ones.
    """

    def __init__(self) -> None:
        self._entries: list[MessageEntry] = []
        self._keys: list[int] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[MessageEntry]:
        return iter(list(self._entries))

    def __contains__(self, seq: object) -> bool:
        if not isinstance(seq, (int, Provisional, Confirmed)):
            return False
        return self.find_by_seq(seq) is not None

    def entries(self) -> list[MessageEntry]:
        return list(self._entries)

    def seqs(self) -> list[int]:
        return list(self._keys)

    def find_by_seq(self, seq: int | SeqId) -> int | None:
        key = seq_value(seq)
        idx = bisect.bisect_left(self._keys, key)
        if idx < len(self._keys) and self._keys[idx] == key:
            return idx
        return None

    def get(self, seq: int | SeqId) -> MessageEntry | None:
        idx = self.find_by_seq(seq)
        return None if idx is None else self._entries[idx]

    def get_at(self, index: int) -> MessageEntry:
        return self._entries[index]

    def insert(self, entry: MessageEntry) -> bool:
        """Insert preserving order. Returns False if the seq is already cached."""
        key = entry.seq.value
        idx = bisect.bisect_left(self._keys, key)
        if idx < len(self._keys) and self._keys[idx] == key:
            return False
        self._keys.insert(idx, key)
        self._entries.insert(idx, entry)
        return True

    def delete_at(self, index: int) -> MessageEntry:
        del self._keys[index]
        return self._entries.pop(index)

    def delete_range(self, low: int, hi: int) -> list[MessageEntry]:
        """Remove every entry with ``low <= seq < hi``."""
        start = bisect.bisect_left(self._keys, low)
        end = bisect.bisect_left(self._keys, hi)
        if start >= end:
            return []
        removed = self._entries[start:end]
        del self._entries[start:end]
        del self._keys[start:end]
        return removed

    def reposition(self, old_seq: int | SeqId, new_seq: int | SeqId) -> bool:
        """Move the entry at ``old_seq`` to ``new_seq`` keeping the sort order.

        Returns False when ``old_seq`` is not cached, or when ``new_seq`` already
        is; in the latter case the moved entry is dropped in favour of the cached one.
        """
        new_id = seq_id(new_seq)
        idx = self.find_by_seq(old_seq)
        if idx is None:
            return False
        entry = self.delete_at(idx)
        entry.seq = new_id
        return self.insert(entry)

    def clear(self) -> None:
        self._entries.clear()
        self._keys.clear()


class ProvisionalIdAllocator:
    """Issues provisional ids by counting down from the topic's counter."""

    def __init__(self, counters: TopicCounters) -> None:
        self._counters = counters

    def next(self) -> Provisional:
        value = self._counters.next_provisional_id
        self._counters.next_provisional_id = value - 1
        return Provisional(value)
