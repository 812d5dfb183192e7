from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Marker the server treats as "delete this value".
DEL_CHAR = "␡"

DEFAULT_USER_ID = "usr-local"


def now() -> datetime:
    return datetime.now(UTC)


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def default_db_path() -> str:
    return env_str(
        "TOPIC_SYNC_DB", default=str(Path("~/.topic_sync/topic_sync.sqlite").expanduser())
    )


def default_user_id() -> str:
    return env_str("TOPIC_SYNC_USER", default=DEFAULT_USER_ID)


def default_page_size() -> int:
    return env_int("TOPIC_SYNC_PAGE_SIZE", default=24, min_value=1)


def configure_logging(level: str | None = None) -> None:
    name = (level or env_str("TOPIC_SYNC_LOG_LEVEL", default="WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=True, separators=(",", ":"), sort_keys=True, default=str)


def json_loads(data: str) -> Any:
    return json.loads(data)


def normalize_tags(tags: list[str]) -> list[str]:
    """Trim, lowercase, sort and dedupe tags.

    An empty result is sent as ``[DEL_CHAR]`` so the server clears the tags.
    """
    cleaned = sorted({t.strip().lower() for t in tags if isinstance(t, str) and t.strip()})
    if not cleaned:
        return [DEL_CHAR]
    return cleaned


def merge_obj(current: Any, update: Any) -> Any:
    """Apply a partial update where ``DEL_CHAR`` removes a key."""
    if update == DEL_CHAR:
        return None
    if not isinstance(current, dict) or not isinstance(update, dict):
        return update
    merged = dict(current)
    for key, value in update.items():
        if value == DEL_CHAR:
            merged.pop(key, None)
        else:
            merged[key] = merge_obj(merged.get(key), value)
    return merged
