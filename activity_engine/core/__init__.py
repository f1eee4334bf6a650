from activity_engine.core.event_bus import (
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
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "SourceRecordChanged",
    "InteractionChanged",
    "OpportunityChanged",
    "ProductAssociationChanged",
    "DistributorRelationshipChanged",
    "OrganizationChanged",
    "ContactChanged",
    "RefreshRequested",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
