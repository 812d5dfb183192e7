from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

WatermarkKind = Literal["recv", "read"]


@dataclass(frozen=True, slots=True, order=True)
class Provisional:
    """Client-assigned id of a message the server has not acknowledged yet."""

    value: int

    def __post_init__(self) -> None:
        if self.value >= 0:
            raise ValueError(f"provisional id must be negative, got {self.value}")

    @property
    def confirmed(self) -> bool:
        return False


@dataclass(frozen=True, slots=True, order=True)
class Confirmed:
    """Server-assigned message sequence number."""

    value: int

    def __post_init__(self) -> None:
        if self.value < 1:
            raise ValueError(f"confirmed id must be >= 1, got {self.value}")

    @property
    def confirmed(self) -> bool:
        return True


SeqId = Provisional | Confirmed


def seq_id(value: int | SeqId) -> SeqId:
    if isinstance(value, (Provisional, Confirmed)):
        return value
    if value > 0:
        return Confirmed(value)
    if value < 0:
        return Provisional(value)
    raise ValueError("0 is not a valid message id")


def seq_value(value: int | SeqId) -> int:
    if isinstance(value, (Provisional, Confirmed)):
        return value.value
    return value


@dataclass(slots=True)
class MessageEntry:
    seq: SeqId
    content: Any
    created_at: datetime
    sender: str | None = None
    head: dict[str, Any] = field(default_factory=dict)
    sending: bool = False
    failed: bool = False
    cancelled: bool = False
    locally_originated: bool = False

    @property
    def pending(self) -> bool:
        return not self.seq.confirmed


@dataclass(frozen=True, slots=True)
class BoundedRange:
    """Half-open range ``[low, hi)`` of message ids."""

    low: int
    hi: int
    covers_all: bool = False

    def __post_init__(self) -> None:
        if self.low == 0:
            raise ValueError("range low must not be 0")
        if self.hi <= self.low:
            raise ValueError(f"range hi ({self.hi}) must be > low ({self.low})")

    def resolve(self, max_seq: int) -> tuple[int, int]:
        return self.low, self.hi


@dataclass(frozen=True, slots=True)
class OpenRange:
    """Range from ``low`` to the end of the known messages."""

    low: int
    covers_all: bool = False

    def __post_init__(self) -> None:
        if self.low == 0:
            raise ValueError("range low must not be 0")

    def resolve(self, max_seq: int) -> tuple[int, int]:
        return self.low, max(self.low + 1, max_seq + 1)


DeletionRange = BoundedRange | OpenRange


@dataclass(frozen=True, slots=True)
class DeletionPlan:
    to_send_remotely: list[BoundedRange]
    to_flush_locally: list[BoundedRange]

    @property
    def remote(self) -> bool:
        return bool(self.to_send_remotely)


@dataclass(slots=True)
class SubscriberRecord:
    user_id: str
    access_mode: Any = None
    received: int = 0
    read: int = 0
    updated: datetime | None = None
    public: Any = None

    def watermark(self, kind: WatermarkKind) -> int:
        return self.received if kind == "recv" else self.read


@dataclass(slots=True)
class TopicCounters:
    max_seq: int = 0
    min_seq: int = 0
    max_deletion_id: int = 0
    next_provisional_id: int = -1

    def reset(self) -> None:
        self.max_seq = 0
        self.min_seq = 0
        self.max_deletion_id = 0
        # next_provisional_id keeps counting: drafts issued before the reset may
        # still be in flight.

    def note_seq(self, seq: int) -> None:
        if seq > self.max_seq:
            self.max_seq = seq
        if seq < self.min_seq or self.min_seq == 0:
            self.min_seq = seq


class DraftState(StrEnum):
    DRAFT = "draft"
    QUEUED = "queued"
    SENDING = "sending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({DraftState.CONFIRMED, DraftState.FAILED, DraftState.CANCELLED})
