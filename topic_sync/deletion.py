from __future__ import annotations

from collections.abc import Iterable

from topic_sync.models import BoundedRange, DeletionPlan, DeletionRange, TopicCounters


class DeletionRangeCoalescer:
    """Turns a batch of deletion ranges into the minimal remote request.

    Ranges are resolved against ``max_seq``, sorted by ``low`` (widest first on
    ties), merged when they overlap or touch, then split at the boundary
    between provisional (negative) and confirmed (positive) ids. The server is
    only told about the confirmed part, clipped to ``max_seq + 1``.
    """

    def __init__(self, counters: TopicCounters) -> None:
        self._counters = counters

    def plan(self, ranges: Iterable[DeletionRange]) -> DeletionPlan:
        max_seq = self._counters.max_seq
        resolved = [(*r.resolve(max_seq), r.covers_all) for r in ranges]
        resolved.sort(key=lambda r: (r[0], -r[1]))

        merged: list[list[int | bool]] = []
        for low, hi, covers_all in resolved:
            if merged and low <= merged[-1][1]:
                last = merged[-1]
                last[1] = max(last[1], hi)
                last[2] = last[2] or covers_all
            else:
                merged.append([low, hi, covers_all])

        remote: list[BoundedRange] = []
        local: list[BoundedRange] = []
        for low, hi, covers_all in merged:
            if low < 0:
                local.append(BoundedRange(low, min(hi, 0)))
            confirmed_low = max(low, 1)
            confirmed_hi = min(hi, max_seq + 1)
            if confirmed_low < confirmed_hi:
                remote.append(BoundedRange(confirmed_low, confirmed_hi, covers_all=bool(covers_all)))
        return DeletionPlan(to_send_remotely=remote, to_flush_locally=local)


def ranges_from_ids(seq_ids: Iterable[int]) -> list[BoundedRange]:
    """Collapse a list of message ids into ascending runs of consecutive ids."""
    ranges: list[BoundedRange] = []
    low: int | None = None
    hi = 0
    for seq in sorted({s for s in seq_ids if s != 0}):
        if low is not None and seq == hi:
            hi = seq + 1
            continue
        if low is not None:
            ranges.append(BoundedRange(low, hi))
        low, hi = seq, seq + 1
    if low is not None:
        ranges.append(BoundedRange(low, hi))
    return ranges
