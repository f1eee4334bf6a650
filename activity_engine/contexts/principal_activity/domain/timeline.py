"""Ordering, merging and cursor encoding of principal timeline events.

Events are totally ordered by ``(occurred_at, source_priority, source_id, event_id)``.
Every part of that key can be recovered from ``(occurred_at, event_id)`` because
event ids are formatted as ``<source>:<source_id>[:<suffix>]``; pagination
cursors therefore only carry those two values.
"""

from __future__ import annotations

import heapq
from bisect import bisect_left, bisect_right
from datetime import datetime
from itertools import islice
from typing import Iterable, Iterator, Sequence

from activity_engine.contexts.principal_activity.domain.models import (
    SOURCE_INTERACTION,
    SOURCE_OPPORTUNITY,
    SOURCE_PRODUCT,
    TimelineEvent,
    parse_timestamp,
    to_iso,
)
from activity_engine.errors import ValidationError


SOURCE_PRIORITY = {
    SOURCE_INTERACTION: 0,
    SOURCE_OPPORTUNITY: 1,
    SOURCE_PRODUCT: 2,
}
_UNKNOWN_SOURCE_PRIORITY = len(SOURCE_PRIORITY)
_CURSOR_SEPARATOR = "|"

SortKey = tuple


def make_event_id(source: str, source_id: str, suffix: str | None = None) -> str:
    event_id = f"{source}:{source_id}"
    if suffix:
        event_id = f"{event_id}:{suffix}"
    return event_id


def source_id_key(source_id: str) -> tuple[int, int, str]:
    # Numeric ids compare numerically and sort before textual ids.
    raw = str(source_id or "")
    if raw.isdigit():
        return (0, int(raw), "")
    return (1, 0, raw)


def sort_key(occurred_at: datetime, event_id: str) -> SortKey:
    source, _, remainder = str(event_id).partition(":")
    source_id = remainder.split(":", 1)[0]
    priority = SOURCE_PRIORITY.get(source, _UNKNOWN_SOURCE_PRIORITY)
    return (occurred_at, priority, source_id_key(source_id), str(event_id))


def event_sort_key(event: TimelineEvent) -> SortKey:
    return sort_key(event.occurred_at, event.event_id)


def sort_source_events(events: Iterable[TimelineEvent]) -> list[TimelineEvent]:
    return sorted(events, key=event_sort_key)


def merge_timeline(sources: Iterable[Sequence[TimelineEvent]]) -> Iterator[TimelineEvent]:
    """Streaming k-way merge of per-source lists, each sorted ascending."""
    return heapq.merge(*sources, key=event_sort_key)


def most_recent(sources: Iterable[Sequence[TimelineEvent]], limit: int) -> list[TimelineEvent]:
    """Newest ``limit`` events, newest first, stopping the merge early."""
    if limit <= 0:
        return []
    descending = [reversed(source) for source in sources]
    merged = heapq.merge(*descending, key=event_sort_key, reverse=True)
    return list(islice(merged, limit))


def retain_recent(sources: Iterable[Sequence[TimelineEvent]], limit: int) -> tuple[TimelineEvent, ...]:
    """Ascending tuple of the newest ``limit`` events across all sources."""
    newest_first = most_recent(sources, limit)
    newest_first.reverse()
    return tuple(newest_first)


def encode_cursor(event: TimelineEvent) -> str:
    return f"{to_iso(event.occurred_at)}{_CURSOR_SEPARATOR}{event.event_id}"


def decode_cursor(cursor: str) -> SortKey:
    raw = str(cursor or "").strip()
    timestamp_raw, separator, event_id = raw.partition(_CURSOR_SEPARATOR)
    occurred_at = parse_timestamp(timestamp_raw) if separator else None
    if occurred_at is None or not event_id.strip():
        raise ValidationError(
            code="invalid_cursor",
            details=f"invalid timeline cursor: {raw!r}",
        )
    return sort_key(occurred_at, event_id.strip())


def iter_descending(
    timeline: Sequence[TimelineEvent],
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    event_types: Iterable[str] | None = None,
    after: SortKey | None = None,
) -> Iterator[TimelineEvent]:
    """Walk an ascending timeline newest first within ``[start, end]``.

    ``after`` is a decoded cursor: only events strictly older than it are yielded.
    """
    upper = len(timeline)
    if end is not None:
        upper = bisect_right(timeline, end, key=lambda event: event.occurred_at)
    if after is not None:
        upper = min(upper, bisect_left(timeline, after, key=event_sort_key))
    wanted = frozenset(event_types) if event_types else None

    for index in range(upper - 1, -1, -1):
        event = timeline[index]
        if start is not None and event.occurred_at < start:
            return
        if wanted is not None and event.event_type not in wanted:
            continue
        yield event
