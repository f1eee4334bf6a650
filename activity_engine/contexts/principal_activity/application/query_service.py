from __future__ import annotations

import heapq
from datetime import date, datetime, time, timezone
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List

from activity_engine.contexts.principal_activity.domain.models import (
    ACTIVITY_ACTIVE,
    ACTIVITY_MODERATE,
    ACTIVITY_STATUSES,
    EVENT_TYPES,
    DistributorRelationship,
    PrincipalSnapshot,
    ProductPerformance,
    TimelineEvent,
    TimelinePage,
    parse_timestamp,
    to_iso,
    utc_now,
)
from activity_engine.contexts.principal_activity.domain.scoring import (
    ENGAGEMENT_TIERS,
    FOLLOW_UP_ENGAGEMENT_SCORE,
    engagement_tier,
)
from activity_engine.contexts.principal_activity.domain.timeline import decode_cursor, encode_cursor, iter_descending
from activity_engine.contexts.principal_activity.infrastructure.snapshot_store import SnapshotStore
from activity_engine.errors import ValidationError


_NO_FOLLOW_UP = datetime.max.replace(tzinfo=timezone.utc)


def _coerce_range_datetime(value: Any, *, is_end: bool) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        day_time = time.max if is_end else time.min
        return datetime.combine(value, day_time).replace(tzinfo=timezone.utc)
    raw = value if isinstance(value, datetime) else str(value).strip()
    if isinstance(raw, str) and len(raw) == 10:
        try:
            day = date.fromisoformat(raw)
        except ValueError:
            day = None
        if day is not None:
            day_time = time.max if is_end else time.min
            return datetime.combine(day, day_time).replace(tzinfo=timezone.utc)
    resolved = parse_timestamp(raw)
    if resolved is None:
        raise ValidationError(code="invalid_date_range", details=f"invalid timestamp: {value!r}")
    return resolved


def _normalize_list(values: Iterable[str] | str | None) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    return list(dict.fromkeys(str(item).strip() for item in values if str(item or "").strip()))


class PrincipalActivityQueryService:
    """Read side: answers every query from committed snapshots only."""

    def __init__(
        self,
        store: SnapshotStore,
        *,
        default_page_size: int = 50,
        max_page_size: int = 200,
        dashboard_top_n: int = 5,
    ) -> None:
        self.store = store
        self.max_page_size = max(1, int(max_page_size))
        self.default_page_size = max(1, min(int(default_page_size), self.max_page_size))
        self.dashboard_top_n = max(1, int(dashboard_top_n))

    def get_summary(self, principal_id: str) -> PrincipalSnapshot:
        return self.store.get_current(principal_id)

    def _timeline_window(self, start: Any, end: Any) -> tuple[datetime | None, datetime | None]:
        resolved_start = _coerce_range_datetime(start, is_end=False)
        resolved_end = _coerce_range_datetime(end, is_end=True)
        if resolved_start and resolved_end and resolved_start > resolved_end:
            resolved_start, resolved_end = resolved_end, resolved_start
        return resolved_start, resolved_end

    @staticmethod
    def _event_types(event_types: Iterable[str] | str | None) -> List[str] | None:
        requested = _normalize_list(event_types)
        if not requested:
            return None
        unknown = [item for item in requested if item not in EVENT_TYPES]
        if unknown:
            raise ValidationError(
                code="invalid_event_type",
                details=f"unknown event types: {', '.join(unknown)}",
                payload={"allowed_event_types": list(EVENT_TYPES)},
            )
        return requested

    def iter_timeline(
        self,
        principal_id: str,
        start: Any = None,
        end: Any = None,
        event_types: Iterable[str] | str | None = None,
        cursor: str | None = None,
    ) -> Iterator[TimelineEvent]:
        """Newest-first events of the current snapshot.

        The snapshot is resolved once, so a sequence keeps reading the same
        immutable version even if a rebuild commits while it is consumed.
        """
        snapshot = self.store.get_current(principal_id)
        resolved_start, resolved_end = self._timeline_window(start, end)
        after = decode_cursor(cursor) if cursor else None
        return iter_descending(
            snapshot.timeline,
            start=resolved_start,
            end=resolved_end,
            event_types=self._event_types(event_types),
            after=after,
        )

    def get_timeline(
        self,
        principal_id: str,
        start: Any = None,
        end: Any = None,
        limit: int | None = None,
        event_types: Iterable[str] | str | None = None,
        cursor: str | None = None,
    ) -> TimelinePage:
        page_size = self.default_page_size if limit is None else max(1, min(int(limit), self.max_page_size))
        events = list(
            islice(
                self.iter_timeline(principal_id, start=start, end=end, event_types=event_types, cursor=cursor),
                page_size + 1,
            )
        )
        has_more = len(events) > page_size
        events = events[:page_size]
        next_cursor = encode_cursor(events[-1]) if has_more and events else None
        return TimelinePage(events=tuple(events), next_cursor=next_cursor)

    def get_product_performance(self, principal_id: str) -> List[ProductPerformance]:
        return list(self.store.get_current(principal_id).products)

    def get_distributor_relationships(self, principal_id: str) -> List[DistributorRelationship]:
        return list(self.store.get_current(principal_id).relationships)

    def get_dashboard_kpis(self, filters: Dict[str, Any] | None = None) -> Dict[str, Any]:
        source = dict(filters or {})
        activity_status = str(source.get("activity_status") or "").strip().upper() or None
        if activity_status and activity_status not in ACTIVITY_STATUSES:
            raise ValidationError(
                code="invalid_activity_status",
                details=f"unknown activity status: {activity_status}",
                payload={"allowed_activity_statuses": list(ACTIVITY_STATUSES)},
            )
        min_score = source.get("min_engagement_score")
        try:
            min_score = None if min_score in (None, "") else float(min_score)
        except (TypeError, ValueError):
            raise ValidationError(code="invalid_engagement_score", details=f"invalid score: {min_score!r}")
        top_n_raw = source.get("top_n")
        try:
            top_n = self.dashboard_top_n if top_n_raw in (None, "") else max(1, min(int(top_n_raw), 50))
        except (TypeError, ValueError):
            raise ValidationError(code="invalid_top_n", details=f"invalid top_n: {top_n_raw!r}")
        principal_ids = set(_normalize_list(source.get("principal_ids")))

        snapshots: List[PrincipalSnapshot] = []
        for snapshot in self.store.list_current():
            if principal_ids and snapshot.principal_id not in principal_ids:
                continue
            if activity_status and snapshot.activity_status != activity_status:
                continue
            if min_score is not None and snapshot.engagement_score < min_score:
                continue
            snapshots.append(snapshot)

        total = len(snapshots)
        top_performers = heapq.nsmallest(
            top_n,
            snapshots,
            key=lambda item: (-item.engagement_score, -item.total_opportunities, item.principal_id),
        )
        return {
            "total_principals": total,
            "active_principals": sum(1 for item in snapshots if item.activity_status == ACTIVITY_ACTIVE),
            "principals_with_products": sum(1 for item in snapshots if item.product_count > 0),
            "principals_with_opportunities": sum(1 for item in snapshots if item.total_opportunities > 0),
            "average_products_per_principal": (
                round(sum(item.product_count for item in snapshots) / total, 2) if total else None
            ),
            "average_engagement_score": (
                round(sum(item.engagement_score for item in snapshots) / total, 2) if total else None
            ),
            "top_performers": [
                {
                    "principal_id": item.principal_id,
                    "principal_name": item.principal_name,
                    "engagement_score": item.engagement_score,
                    "total_opportunities": item.total_opportunities,
                    "won_opportunities": item.won_opportunities,
                }
                for item in top_performers
            ],
            "generated_at": to_iso(utc_now()),
        }

    def get_engagement_breakdown(self) -> Dict[str, int]:
        breakdown = {tier: 0 for tier in ENGAGEMENT_TIERS}
        for snapshot in self.store.list_current():
            breakdown[engagement_tier(snapshot.engagement_score, snapshot.activity_status)] += 1
        return breakdown

    def get_follow_up_principals(self) -> List[PrincipalSnapshot]:
        """Principals with upcoming follow-ups or high engagement, soonest follow-up first."""
        selected = [
            snapshot
            for snapshot in self.store.list_current()
            if snapshot.follow_ups_required > 0 or snapshot.engagement_score >= FOLLOW_UP_ENGAGEMENT_SCORE
        ]
        selected.sort(
            key=lambda item: (
                item.next_follow_up_at or _NO_FOLLOW_UP,
                -item.engagement_score,
                item.principal_id,
            )
        )
        return selected

    def search_principals(
        self,
        term: str | None,
        *,
        active_only: bool = True,
        limit: int | None = None,
    ) -> List[PrincipalSnapshot]:
        needle = str(term or "").strip().casefold()
        page_size = self.max_page_size if limit is None else max(1, min(int(limit), self.max_page_size))
        matches = [
            snapshot
            for snapshot in self.store.list_current()
            if needle in snapshot.principal_name.casefold()
            and (not active_only or snapshot.activity_status in (ACTIVITY_ACTIVE, ACTIVITY_MODERATE))
        ]
        return heapq.nsmallest(
            page_size,
            matches,
            key=lambda item: (-item.engagement_score, item.principal_name.casefold(), item.principal_id),
        )
