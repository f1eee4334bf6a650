from __future__ import annotations

import logging
from typing import Callable, Iterable, List

from activity_engine.core import (
    ContactChanged,
    DistributorRelationshipChanged,
    DomainEvent,
    EventBus,
    InteractionChanged,
    OpportunityChanged,
    OrganizationChanged,
    ProductAssociationChanged,
    RefreshRequested,
    SourceRecordChanged,
)


logger = logging.getLogger("activity_engine")

RefreshSink = Callable[[str], None]


def _distinct_ids(values: Iterable[str | None]) -> List[str]:
    resolved: List[str] = []
    for value in values:
        item = str(value or "").strip()
        if item and item not in resolved:
            resolved.append(item)
    return resolved


class ChangeObserver:
    """Translates source change notifications into per-principal refresh signals."""

    def __init__(self, event_bus: EventBus, refresh_sink: RefreshSink | None = None) -> None:
        self.event_bus = event_bus
        self.refresh_sink = refresh_sink
        self._registered = False

    def register(self) -> None:
        if self._registered:
            return
        self.event_bus.subscribe(InteractionChanged, self.handle)
        self.event_bus.subscribe(OpportunityChanged, self.handle)
        self.event_bus.subscribe(ProductAssociationChanged, self.handle)
        self.event_bus.subscribe(DistributorRelationshipChanged, self.handle)
        self.event_bus.subscribe(OrganizationChanged, self.handle)
        self.event_bus.subscribe(ContactChanged, self.handle)
        self.event_bus.subscribe(SourceRecordChanged, self.handle)
        self._registered = True

    def unregister(self) -> None:
        if not self._registered:
            return
        for event_type in (
            InteractionChanged,
            OpportunityChanged,
            ProductAssociationChanged,
            DistributorRelationshipChanged,
            OrganizationChanged,
            ContactChanged,
            SourceRecordChanged,
        ):
            self.event_bus.unsubscribe(event_type, self.handle)
        self._registered = False

    @staticmethod
    def affected_principals(event: DomainEvent) -> tuple[str, str, List[str]]:
        if isinstance(event, InteractionChanged):
            return "interaction", event.interaction_id, _distinct_ids([event.principal_id])
        if isinstance(event, OpportunityChanged):
            # A reassigned opportunity affects both the old and the new principal.
            return (
                "opportunity",
                event.opportunity_id,
                _distinct_ids([event.principal_id, event.previous_principal_id]),
            )
        if isinstance(event, ProductAssociationChanged):
            return "product_association", event.product_id, _distinct_ids([event.principal_id])
        if isinstance(event, DistributorRelationshipChanged):
            return "distributor_relationship", event.distributor_id, _distinct_ids([event.principal_id])
        if isinstance(event, OrganizationChanged):
            own = [event.organization_id] if (event.is_principal or event.was_principal) else []
            return "organization", event.organization_id, _distinct_ids([*own, *event.related_principal_ids])
        if isinstance(event, ContactChanged):
            return "contact", event.contact_id, _distinct_ids([event.organization_id, event.previous_organization_id])
        if isinstance(event, SourceRecordChanged):
            return event.entity_type, event.entity_id, _distinct_ids(event.affected_principal_ids)
        return type(event).__name__, "", []

    def handle(self, event: DomainEvent) -> None:
        entity_type, entity_id, principal_ids = self.affected_principals(event)
        self._forward(entity_type, entity_id, principal_ids)

    def notify(self, entity_type: str, entity_id: str, affected_principal_ids: Iterable[str | None]) -> None:
        self._forward(str(entity_type or "").strip(), str(entity_id or "").strip(), _distinct_ids(affected_principal_ids))

    def _forward(self, entity_type: str, entity_id: str, principal_ids: List[str]) -> None:
        for principal_id in principal_ids:
            try:
                self.event_bus.publish(
                    RefreshRequested(
                        principal_id=principal_id,
                        source_entity_type=entity_type,
                        source_entity_id=entity_id,
                    )
                )
                if self.refresh_sink is not None:
                    self.refresh_sink(principal_id)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "principal_refresh_forward_failed",
                    extra={"principal_id": principal_id, "entity_type": entity_type, "entity_id": entity_id},
                )
