from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Tuple


EVENT_TYPE_INTERACTION = "interaction"
EVENT_TYPE_OPPORTUNITY = "opportunity_event"
EVENT_TYPE_PRODUCT = "product_event"
EVENT_TYPES = (EVENT_TYPE_INTERACTION, EVENT_TYPE_OPPORTUNITY, EVENT_TYPE_PRODUCT)

SOURCE_INTERACTION = "interaction"
SOURCE_OPPORTUNITY = "opportunity"
SOURCE_PRODUCT = "product"

TERMINAL_STAGES = frozenset({"Closed - Won", "Closed - Lost"})

ACTIVITY_NO_ACTIVITY = "NO_ACTIVITY"
ACTIVITY_STALE = "STALE"
ACTIVITY_MODERATE = "MODERATE"
ACTIVITY_ACTIVE = "ACTIVE"
ACTIVITY_STATUSES = (ACTIVITY_ACTIVE, ACTIVITY_MODERATE, ACTIVITY_STALE, ACTIVITY_NO_ACTIVITY)

CONTRACT_ACTIVE = "ACTIVE"
CONTRACT_PENDING = "PENDING"
CONTRACT_EXPIRING_SOON = "EXPIRING_SOON"
CONTRACT_EXPIRED = "EXPIRED"
CONTRACT_INACTIVE = "INACTIVE"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        resolved = value
    elif isinstance(value, date):
        resolved = datetime.combine(value, time.min)
    else:
        raw = str(value).strip()
        if not raw:
            return None
        normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            resolved = datetime.fromisoformat(normalized)
        except ValueError:
            try:
                resolved = datetime.combine(date.fromisoformat(raw[:10]), time.min)
            except ValueError:
                return None

    if resolved.tzinfo is None:
        resolved = resolved.replace(tzinfo=timezone.utc)
    return resolved.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    resolved = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return resolved.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def is_active_stage(stage: str | None, is_won: bool = False) -> bool:
    if is_won:
        return False
    return str(stage or "").strip() not in TERMINAL_STAGES


# Source records, as read from the collaborator tables.


@dataclass(frozen=True, kw_only=True)
class OrganizationRecord:
    id: str
    name: str
    is_principal: bool = False
    is_distributor: bool = False
    city: str | None = None
    state_province: str | None = None
    country: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_valid_principal(self) -> bool:
        return self.is_principal and not self.is_distributor and not self.is_deleted

    @property
    def is_valid_distributor(self) -> bool:
        return self.is_distributor and not self.is_principal and not self.is_deleted


@dataclass(frozen=True, kw_only=True)
class InteractionRecord:
    id: str
    principal_id: str
    occurred_at: datetime
    type: str = "EMAIL"
    subject: str | None = None
    organization_id: str | None = None
    opportunity_id: str | None = None
    follow_up_required: bool = False
    follow_up_date: datetime | None = None

    def has_follow_up_after(self, moment: datetime) -> bool:
        return self.follow_up_required and self.follow_up_date is not None and self.follow_up_date > moment


@dataclass(frozen=True, kw_only=True)
class ContactRecord:
    id: str
    organization_id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    updated_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()


@dataclass(frozen=True, kw_only=True)
class OpportunityRecord:
    id: str
    principal_id: str
    stage: str
    name: str | None = None
    organization_id: str | None = None
    product_id: str | None = None
    probability: float | None = None
    is_won: bool = False
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return is_active_stage(self.stage, self.is_won)


@dataclass(frozen=True, kw_only=True)
class StageChangeRecord:
    id: str
    opportunity_id: str
    to_stage: str
    changed_at: datetime
    from_stage: str | None = None


@dataclass(frozen=True, kw_only=True)
class ProductAssociationRecord:
    id: str
    product_id: str
    principal_id: str
    added_at: datetime
    removed_at: datetime | None = None
    product_name: str | None = None
    category: str | None = None
    product_exists: bool = True
    product_is_active: bool = True
    product_deleted_at: datetime | None = None
    is_primary_principal: bool = False
    exclusive_rights: bool = False
    contract_start_date: datetime | None = None
    contract_end_date: datetime | None = None

    @property
    def is_current(self) -> bool:
        return self.removed_at is None and self.product_exists and self.product_deleted_at is None


@dataclass(frozen=True, kw_only=True)
class DistributorRelationshipRecord:
    id: str
    principal_id: str
    distributor_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


# Derived artifacts, produced only by the aggregation builder.


@dataclass(frozen=True, kw_only=True)
class TimelineEvent:
    principal_id: str
    event_type: str
    occurred_at: datetime
    source: str
    source_id: str
    event_id: str
    title: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "principal_id": self.principal_id,
            "event_type": self.event_type,
            "occurred_at": to_iso(self.occurred_at),
            "source": self.source,
            "source_id": self.source_id,
            "title": self.title,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TimelineEvent":
        return cls(
            principal_id=str(payload["principal_id"]),
            event_type=str(payload["event_type"]),
            occurred_at=parse_timestamp(payload["occurred_at"]),
            source=str(payload["source"]),
            source_id=str(payload["source_id"]),
            event_id=str(payload["event_id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
        )


@dataclass(frozen=True, kw_only=True)
class ProductPerformance:
    principal_id: str
    product_id: str
    product_name: str
    category: str | None
    contract_status: str
    exclusive_rights: bool
    is_primary_principal: bool
    opportunity_count: int
    active_opportunity_count: int
    won_opportunity_count: int
    average_probability: float | None
    performance_score: float
    associated_at: datetime | None = None
    contract_end_date: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "category": self.category,
            "contract_status": self.contract_status,
            "exclusive_rights": self.exclusive_rights,
            "is_primary_principal": self.is_primary_principal,
            "opportunity_count": self.opportunity_count,
            "active_opportunity_count": self.active_opportunity_count,
            "won_opportunity_count": self.won_opportunity_count,
            "average_probability": self.average_probability,
            "performance_score": self.performance_score,
            "associated_at": to_iso(self.associated_at),
            "contract_end_date": to_iso(self.contract_end_date),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ProductPerformance":
        return cls(
            principal_id=str(payload["principal_id"]),
            product_id=str(payload["product_id"]),
            product_name=str(payload.get("product_name") or ""),
            category=payload.get("category"),
            contract_status=str(payload["contract_status"]),
            exclusive_rights=bool(payload.get("exclusive_rights")),
            is_primary_principal=bool(payload.get("is_primary_principal")),
            opportunity_count=int(payload.get("opportunity_count") or 0),
            active_opportunity_count=int(payload.get("active_opportunity_count") or 0),
            won_opportunity_count=int(payload.get("won_opportunity_count") or 0),
            average_probability=payload.get("average_probability"),
            performance_score=float(payload.get("performance_score") or 0.0),
            associated_at=parse_timestamp(payload.get("associated_at")),
            contract_end_date=parse_timestamp(payload.get("contract_end_date")),
        )


@dataclass(frozen=True, kw_only=True)
class DistributorRelationship:
    principal_id: str
    distributor_id: str
    distributor_name: str
    city: str | None = None
    state_province: str | None = None
    country: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "distributor_id": self.distributor_id,
            "distributor_name": self.distributor_name,
            "city": self.city,
            "state_province": self.state_province,
            "country": self.country,
            "metadata": dict(self.metadata),
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DistributorRelationship":
        return cls(
            principal_id=str(payload["principal_id"]),
            distributor_id=str(payload["distributor_id"]),
            distributor_name=str(payload.get("distributor_name") or ""),
            city=payload.get("city"),
            state_province=payload.get("state_province"),
            country=payload.get("country"),
            metadata=dict(payload.get("metadata") or {}),
            created_at=parse_timestamp(payload.get("created_at")),
        )


@dataclass(frozen=True, kw_only=True)
class PrincipalSnapshot:
    """Immutable, versioned summary of one principal. Replaced wholesale on rebuild."""

    principal_id: str
    principal_name: str
    version: int
    built_at: datetime
    total_opportunities: int = 0
    active_opportunities: int = 0
    won_opportunities: int = 0
    average_probability: float | None = None
    total_interactions: int = 0
    recent_interactions: int = 0
    interactions_last_90_days: int = 0
    last_interaction_at: datetime | None = None
    follow_ups_required: int = 0
    next_follow_up_at: datetime | None = None
    contact_count: int = 0
    primary_contact_name: str | None = None
    last_activity_at: datetime | None = None
    distinct_organizations: int = 0
    product_count: int = 0
    engagement_score: float = 0.0
    activity_status: str = ACTIVITY_NO_ACTIVITY
    inconsistent_references: int = 0
    timeline: Tuple[TimelineEvent, ...] = ()
    products: Tuple[ProductPerformance, ...] = ()
    relationships: Tuple[DistributorRelationship, ...] = ()

    def summary_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "principal_name": self.principal_name,
            "version": self.version,
            "built_at": to_iso(self.built_at),
            "total_opportunities": self.total_opportunities,
            "active_opportunities": self.active_opportunities,
            "won_opportunities": self.won_opportunities,
            "average_probability": self.average_probability,
            "total_interactions": self.total_interactions,
            "recent_interactions": self.recent_interactions,
            "interactions_last_90_days": self.interactions_last_90_days,
            "last_interaction_at": to_iso(self.last_interaction_at),
            "follow_ups_required": self.follow_ups_required,
            "next_follow_up_at": to_iso(self.next_follow_up_at),
            "contact_count": self.contact_count,
            "primary_contact_name": self.primary_contact_name,
            "last_activity_at": to_iso(self.last_activity_at),
            "distinct_organizations": self.distinct_organizations,
            "product_count": self.product_count,
            "engagement_score": self.engagement_score,
            "activity_status": self.activity_status,
            "inconsistent_references": self.inconsistent_references,
            "distributor_count": len(self.relationships),
            "timeline_event_count": len(self.timeline),
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.summary_dict()
        payload["timeline"] = [event.to_dict() for event in self.timeline]
        payload["products"] = [record.to_dict() for record in self.products]
        payload["relationships"] = [record.to_dict() for record in self.relationships]
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PrincipalSnapshot":
        return cls(
            principal_id=str(payload["principal_id"]),
            principal_name=str(payload.get("principal_name") or ""),
            version=int(payload["version"]),
            built_at=parse_timestamp(payload.get("built_at")) or utc_now(),
            total_opportunities=int(payload.get("total_opportunities") or 0),
            active_opportunities=int(payload.get("active_opportunities") or 0),
            won_opportunities=int(payload.get("won_opportunities") or 0),
            average_probability=payload.get("average_probability"),
            total_interactions=int(payload.get("total_interactions") or 0),
            recent_interactions=int(payload.get("recent_interactions") or 0),
            interactions_last_90_days=int(payload.get("interactions_last_90_days") or 0),
            last_interaction_at=parse_timestamp(payload.get("last_interaction_at")),
            follow_ups_required=int(payload.get("follow_ups_required") or 0),
            next_follow_up_at=parse_timestamp(payload.get("next_follow_up_at")),
            contact_count=int(payload.get("contact_count") or 0),
            primary_contact_name=payload.get("primary_contact_name"),
            last_activity_at=parse_timestamp(payload.get("last_activity_at")),
            distinct_organizations=int(payload.get("distinct_organizations") or 0),
            product_count=int(payload.get("product_count") or 0),
            engagement_score=float(payload.get("engagement_score") or 0.0),
            activity_status=str(payload.get("activity_status") or ACTIVITY_NO_ACTIVITY),
            inconsistent_references=int(payload.get("inconsistent_references") or 0),
            timeline=tuple(TimelineEvent.from_dict(item) for item in payload.get("timeline") or ()),
            products=tuple(ProductPerformance.from_dict(item) for item in payload.get("products") or ()),
            relationships=tuple(
                DistributorRelationship.from_dict(item) for item in payload.get("relationships") or ()
            ),
        )


@dataclass(frozen=True)
class TimelinePage:
    events: Tuple[TimelineEvent, ...]
    next_cursor: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "next_cursor": self.next_cursor,
        }
