from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from topic_sync.models import TopicCounters


class WireModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class CtrlResult(WireModel):
    code: int = 200
    text: str = "ok"
    ts: datetime | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code < 300

    @property
    def seq(self) -> int | None:
        return self.params.get("seq")

    @property
    def del_id(self) -> int:
        return int(self.params.get("del") or 0)

    @property
    def count(self) -> int | None:
        return self.params.get("count")

    @property
    def acs(self) -> Any:
        return self.params.get("acs")


class DataMessage(WireModel):
    topic: str | None = None
    seq: int = Field(ge=1)
    ts: datetime
    sender: str | None = Field(default=None, alias="from")
    head: dict[str, Any] = Field(default_factory=dict)
    content: Any = None


class TopicDescription(WireModel):
    created: datetime | None = None
    updated: datetime | None = None
    touched: datetime | None = None
    acs: Any = None
    public: Any = None
    private: Any = None
    seq: int | None = None
    read: int | None = None
    recv: int | None = None


class SubscriptionInfo(WireModel):
    user: str | None = None
    topic: str | None = None
    acs: Any = None
    mode: str | None = None
    read: int = 0
    recv: int = 0
    updated: datetime | None = None
    deleted: datetime | None = None
    public: Any = None


class Credential(WireModel):
    meth: str
    val: str
    done: bool = False


class MetaReply(WireModel):
    ctrl: CtrlResult = Field(default_factory=CtrlResult)
    desc: TopicDescription | None = None
    sub: list[SubscriptionInfo] | None = None
    tags: list[str] | None = None
    cred: list[Credential] | None = None
    data: list[DataMessage] = Field(default_factory=list)


class SetParams(WireModel):
    desc: TopicDescription | None = None
    sub: SubscriptionInfo | None = None
    tags: list[str] | None = None
    cred: Credential | None = None

    @model_validator(mode="after")
    def _validate_not_empty(self) -> SetParams:
        if self.desc is None and self.sub is None and self.tags is None and self.cred is None:
            raise ValueError("SetParams needs at least one of desc, sub, tags, cred")
        return self


class Presence(WireModel):
    what: str
    src: str | None = None
    seq: int | None = None
    clear: int | None = None


class InfoNote(WireModel):
    what: Literal["recv", "read", "kp"]
    sender: str = Field(alias="from")
    seq: int | None = None


class DataQuery(WireModel):
    since: int | None = None
    before: int | None = None
    limit: int | None = None


class GetQuery(WireModel):
    what: str
    desc: dict[str, Any] | None = None
    sub: dict[str, Any] | None = None
    data: DataQuery | None = None


class MetaQuery:
    """Builder for ``GetQuery`` that knows the topic's cached seq range."""

    def __init__(self, counters: TopicCounters) -> None:
        self._counters = counters
        self._what: list[str] = []
        self._desc: dict[str, Any] | None = None
        self._sub: dict[str, Any] | None = None
        self._data: DataQuery | None = None

    def _add(self, what: str) -> None:
        if what not in self._what:
            self._what.append(what)

    def with_desc(self, ims: datetime | None = None) -> MetaQuery:
        self._add("desc")
        self._desc = {"ims": ims} if ims else None
        return self

    def with_sub(self, ims: datetime | None = None, limit: int | None = None) -> MetaQuery:
        self._add("sub")
        opts = {k: v for k, v in (("ims", ims), ("limit", limit)) if v}
        self._sub = opts or None
        return self

    def with_tags(self) -> MetaQuery:
        self._add("tags")
        return self

    def with_cred(self) -> MetaQuery:
        self._add("cred")
        return self

    def with_data(
        self, since: int | None = None, before: int | None = None, limit: int | None = None
    ) -> MetaQuery:
        self._add("data")
        self._data = DataQuery(since=since, before=before, limit=limit)
        return self

    def with_later_data(self, limit: int | None = None) -> MetaQuery:
        max_seq = self._counters.max_seq
        return self.with_data(since=max_seq + 1 if max_seq > 0 else None, limit=limit)

    def with_earlier_data(self, limit: int | None = None) -> MetaQuery:
        min_seq = self._counters.min_seq
        return self.with_data(before=min_seq if min_seq > 0 else None, limit=limit)

    def build(self) -> GetQuery:
        return GetQuery(what=" ".join(self._what), desc=self._desc, sub=self._sub, data=self._data)
