from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Type

from activity_engine.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_ids(values) -> tuple[str, ...]:
    normalized: list[str] = []
    for value in values or ():
        item = str(value or "").strip()
        if item and item not in normalized:
            normalized.append(item)
    return tuple(normalized)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        normalized_occurred_at = normalized_occurred_at.astimezone(timezone.utc)

        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at)


@dataclass(frozen=True, kw_only=True)
class SourceRecordChanged(DomainEvent):
    """Generic change notification: (entity_type, entity_id, affected_principal_ids)."""

    entity_type: str
    entity_id: str
    affected_principal_ids: tuple[str, ...] = ()
    operation: str = "update"

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(self, "affected_principal_ids", _normalize_ids(self.affected_principal_ids))


@dataclass(frozen=True, kw_only=True)
class InteractionChanged(DomainEvent):
    interaction_id: str
    principal_id: str | None = None
    operation: str = "update"


@dataclass(frozen=True, kw_only=True)
class OpportunityChanged(DomainEvent):
    opportunity_id: str
    principal_id: str | None = None
    previous_principal_id: str | None = None
    operation: str = "update"


@dataclass(frozen=True, kw_only=True)
class ProductAssociationChanged(DomainEvent):
    product_id: str
    principal_id: str
    operation: str = "update"


@dataclass(frozen=True, kw_only=True)
class DistributorRelationshipChanged(DomainEvent):
    principal_id: str
    distributor_id: str
    operation: str = "update"


@dataclass(frozen=True, kw_only=True)
class ContactChanged(DomainEvent):
    contact_id: str
    organization_id: str | None = None
    previous_organization_id: str | None = None
    operation: str = "update"


@dataclass(frozen=True, kw_only=True)
class OrganizationChanged(DomainEvent):
    organization_id: str
    is_principal: bool = False
    was_principal: bool = False
    related_principal_ids: tuple[str, ...] = ()
    operation: str = "update"

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(self, "related_principal_ids", _normalize_ids(self.related_principal_ids))


@dataclass(frozen=True, kw_only=True)
class RefreshRequested(DomainEvent):
    principal_id: str
    source_entity_type: str = ""
    source_entity_id: str = ""


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("activity_engine")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            handlers.append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(type(event).__name__)
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("event_handler_failed", extra={"event_type": type(event).__name__})

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()
