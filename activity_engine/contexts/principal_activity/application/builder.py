from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List

from activity_engine.contexts.principal_activity.domain.models import (
    EVENT_TYPE_INTERACTION,
    EVENT_TYPE_OPPORTUNITY,
    EVENT_TYPE_PRODUCT,
    SOURCE_INTERACTION,
    SOURCE_OPPORTUNITY,
    SOURCE_PRODUCT,
    ContactRecord,
    DistributorRelationship,
    InteractionRecord,
    OpportunityRecord,
    OrganizationRecord,
    PrincipalSnapshot,
    ProductAssociationRecord,
    ProductPerformance,
    StageChangeRecord,
    TimelineEvent,
    utc_now,
)
from activity_engine.contexts.principal_activity.domain.scoring import (
    EngagementPolicy,
    activity_status,
    contract_status,
    product_performance_score,
)
from activity_engine.contexts.principal_activity.domain.timeline import (
    make_event_id,
    retain_recent,
    sort_source_events,
)
from activity_engine.contexts.principal_activity.infrastructure.source_repository import SourceReader
from activity_engine.errors import AppError, BuildTimeoutError, SourceUnavailableError
from activity_engine.observability import observe_inconsistent_reference


logger = logging.getLogger("activity_engine")

RECENT_INTERACTION_WINDOW = timedelta(days=30)
EXTENDED_INTERACTION_WINDOW = timedelta(days=90)
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _average_probability(opportunities: List[OpportunityRecord]) -> float | None:
    probabilities = [opp.probability for opp in opportunities if opp.is_active and opp.probability is not None]
    if not probabilities:
        return None
    return round(sum(probabilities) / len(probabilities), 2)


def _primary_contact(contacts: List[ContactRecord]) -> ContactRecord | None:
    # Most recently updated contact of the principal organization.
    return max(contacts, key=lambda contact: (contact.updated_at or _OLDEST, contact.id), default=None)


class _BuildContext:
    def __init__(self, principal_id: str, started_at: float, deadline: float | None, monotonic) -> None:
        self.principal_id = principal_id
        self.started_at = started_at
        self.deadline = deadline
        self._monotonic = monotonic
        self.dropped: Counter[str] = Counter()

    def checkpoint(self, stage: str) -> None:
        if self.deadline is None:
            return
        now = self._monotonic()
        if now > self.deadline:
            raise BuildTimeoutError(
                details=f"build for {self.principal_id} exceeded its deadline at {stage}",
                payload={"principal_id": self.principal_id, "stage": stage},
            )

    def drop(self, entity: str, entity_id: str, reason: str) -> None:
        self.dropped[entity] += 1
        logger.warning(
            "principal_inconsistent_reference_dropped",
            extra={
                "principal_id": self.principal_id,
                "entity": entity,
                "entity_id": entity_id,
                "reason": reason,
            },
        )


class AggregationBuilder:
    """Computes a complete new snapshot for one principal from the source reader.

    Nothing is written anywhere: the caller commits the returned snapshot.
    """

    def __init__(
        self,
        reader: SourceReader,
        *,
        policy: EngagementPolicy | None = None,
        timeline_max_events: int = 500,
        build_timeout_seconds: float | None = 30.0,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reader = reader
        self.policy = policy or EngagementPolicy()
        self.timeline_max_events = max(1, int(timeline_max_events))
        self.build_timeout_seconds = build_timeout_seconds if build_timeout_seconds and build_timeout_seconds > 0 else None
        self._clock = clock
        self._monotonic = monotonic

    def _read(self, context: _BuildContext, source: str, fn, *args):
        context.checkpoint(source)
        try:
            return fn(*args)
        except AppError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SourceUnavailableError(
                details=f"reading {source} for {context.principal_id} failed: {exc}",
                payload={"principal_id": context.principal_id, "source": source},
            ) from exc

    def build(
        self,
        principal_id: str,
        previous: PrincipalSnapshot | None = None,
        *,
        version: int | None = None,
    ) -> PrincipalSnapshot | None:
        started_at = self._monotonic()
        deadline = started_at + self.build_timeout_seconds if self.build_timeout_seconds else None
        context = _BuildContext(principal_id, started_at, deadline, self._monotonic)
        now = self._clock()

        principal = self._read(context, "organizations", self.reader.get_organization, principal_id)
        if principal is None or not principal.is_valid_principal:
            logger.info(
                "principal_not_aggregatable",
                extra={
                    "principal_id": principal_id,
                    "reason": "missing" if principal is None else "deleted_or_unflagged",
                },
            )
            return None

        opportunities = self._read(context, "opportunities", self.reader.list_opportunities, principal_id)
        interactions = self._read(context, "interactions", self.reader.list_interactions, principal_id)
        associations = self._read(
            context, "product_principals", self.reader.list_product_associations, principal_id
        )
        relationship_rows = self._read(
            context, "distributor_relationships", self.reader.list_distributor_relationships, principal_id
        )
        contacts = self._read(context, "contacts", self.reader.list_contacts, principal_id)

        referenced_ids = {opp.organization_id for opp in opportunities if opp.organization_id}
        referenced_ids.update(item.organization_id for item in interactions if item.organization_id)
        referenced_ids.update(row.distributor_id for row in relationship_rows)
        organizations = self._read(context, "organizations", self.reader.get_organizations, referenced_ids)

        opportunities = self._valid_opportunities(context, opportunities, organizations)
        opportunity_ids = {opp.id for opp in opportunities}
        stage_changes = self._read(
            context, "opportunity_stage_changes", self.reader.list_stage_changes, sorted(opportunity_ids)
        )
        interactions = self._valid_interactions(context, interactions, organizations, opportunity_ids)
        associations = self._valid_associations(context, associations)
        relationships = self._relationships(context, principal_id, relationship_rows, organizations)

        context.checkpoint("statistics")
        total = len(opportunities)
        active = sum(1 for opp in opportunities if opp.is_active)
        won = sum(1 for opp in opportunities if opp.is_won)
        last_interaction_at = max((item.occurred_at for item in interactions), default=None)
        recent_cutoff = now - RECENT_INTERACTION_WINDOW
        recent_interactions = sum(1 for item in interactions if item.occurred_at >= recent_cutoff)
        extended_cutoff = now - EXTENDED_INTERACTION_WINDOW
        interactions_last_90_days = sum(1 for item in interactions if item.occurred_at >= extended_cutoff)
        upcoming_follow_ups = [item.follow_up_date for item in interactions if item.has_follow_up_after(now)]
        primary_contact = _primary_contact(contacts)
        distinct_organizations = len(
            {opp.organization_id for opp in opportunities if opp.organization_id}
            | {item.organization_id for item in interactions if item.organization_id}
        )
        current_associations = [assoc for assoc in associations if assoc.is_current]
        active_products = {assoc.product_id for assoc in current_associations if assoc.product_is_active}

        engagement_score = self.policy.score(
            last_interaction_at=last_interaction_at,
            interaction_count=len(interactions),
            won_opportunities=won,
            total_opportunities=total,
            active_product_count=len(active_products),
            now=now,
        )

        context.checkpoint("timeline")
        sources = [
            sort_source_events(self._interaction_events(principal_id, interactions)),
            sort_source_events(self._opportunity_events(principal_id, opportunities, stage_changes)),
            sort_source_events(self._product_events(principal_id, associations)),
        ]
        timeline = retain_recent(sources, self.timeline_max_events)
        last_activity_at = max(
            (events[-1].occurred_at for events in sources if events),
            default=None,
        )

        context.checkpoint("products")
        products = self._product_performance(principal_id, current_associations, opportunities, now)

        for entity, count in context.dropped.items():
            observe_inconsistent_reference(entity, count)

        if version is None:
            version = previous.version + 1 if previous is not None else 1

        snapshot = PrincipalSnapshot(
            principal_id=principal_id,
            principal_name=principal.name,
            version=version,
            built_at=now,
            total_opportunities=total,
            active_opportunities=active,
            won_opportunities=won,
            average_probability=_average_probability(opportunities),
            total_interactions=len(interactions),
            recent_interactions=recent_interactions,
            interactions_last_90_days=interactions_last_90_days,
            last_interaction_at=last_interaction_at,
            follow_ups_required=len(upcoming_follow_ups),
            next_follow_up_at=min(upcoming_follow_ups, default=None),
            contact_count=len(contacts),
            primary_contact_name=(primary_contact.full_name or None) if primary_contact is not None else None,
            last_activity_at=last_activity_at,
            distinct_organizations=distinct_organizations,
            product_count=len(active_products),
            engagement_score=engagement_score,
            activity_status=activity_status(last_interaction_at, now),
            inconsistent_references=sum(context.dropped.values()),
            timeline=timeline,
            products=products,
            relationships=relationships,
        )
        context.checkpoint("complete")
        return snapshot

    def _valid_opportunities(
        self,
        context: _BuildContext,
        opportunities: List[OpportunityRecord],
        organizations: Dict[str, OrganizationRecord],
    ) -> List[OpportunityRecord]:
        valid: List[OpportunityRecord] = []
        for opp in opportunities:
            if opp.organization_id:
                organization = organizations.get(opp.organization_id)
                if organization is None or organization.is_deleted:
                    context.drop("opportunity", opp.id, "organization_missing")
                    continue
            valid.append(opp)
        return valid

    def _valid_interactions(
        self,
        context: _BuildContext,
        interactions: List[InteractionRecord],
        organizations: Dict[str, OrganizationRecord],
        opportunity_ids: set[str],
    ) -> List[InteractionRecord]:
        valid: List[InteractionRecord] = []
        for item in interactions:
            if item.organization_id:
                organization = organizations.get(item.organization_id)
                if organization is None or organization.is_deleted:
                    context.drop("interaction", item.id, "organization_missing")
                    continue
            if item.opportunity_id and item.opportunity_id not in opportunity_ids:
                context.drop("interaction", item.id, "opportunity_missing")
                continue
            valid.append(item)
        return valid

    def _valid_associations(
        self,
        context: _BuildContext,
        associations: List[ProductAssociationRecord],
    ) -> List[ProductAssociationRecord]:
        valid: List[ProductAssociationRecord] = []
        for assoc in associations:
            if not assoc.product_exists:
                context.drop("product_association", assoc.id, "product_missing")
                continue
            valid.append(assoc)
        return valid

    def _relationships(
        self,
        context: _BuildContext,
        principal_id: str,
        rows,
        organizations: Dict[str, OrganizationRecord],
    ) -> tuple[DistributorRelationship, ...]:
        relationships: List[DistributorRelationship] = []
        for row in rows:
            distributor = organizations.get(row.distributor_id)
            if distributor is None or not distributor.is_valid_distributor:
                context.drop("distributor_relationship", row.id, "distributor_invalid")
                continue
            relationships.append(
                DistributorRelationship(
                    principal_id=principal_id,
                    distributor_id=distributor.id,
                    distributor_name=distributor.name,
                    city=distributor.city,
                    state_province=distributor.state_province,
                    country=distributor.country,
                    metadata=dict(row.metadata),
                    created_at=row.created_at,
                )
            )
        relationships.sort(key=lambda item: (item.distributor_name.lower(), item.distributor_id))
        return tuple(relationships)

    @staticmethod
    def _interaction_events(principal_id: str, interactions: List[InteractionRecord]) -> List[TimelineEvent]:
        return [
            TimelineEvent(
                principal_id=principal_id,
                event_type=EVENT_TYPE_INTERACTION,
                occurred_at=item.occurred_at,
                source=SOURCE_INTERACTION,
                source_id=item.id,
                event_id=make_event_id(SOURCE_INTERACTION, item.id),
                title=f"{item.type.title()} logged",
                description=item.subject or "",
            )
            for item in interactions
        ]

    @staticmethod
    def _opportunity_events(
        principal_id: str,
        opportunities: List[OpportunityRecord],
        stage_changes: List[StageChangeRecord],
    ) -> List[TimelineEvent]:
        names = {opp.id: opp.name or opp.id for opp in opportunities}
        events: List[TimelineEvent] = []
        for opp in opportunities:
            if opp.created_at is None:
                continue
            events.append(
                TimelineEvent(
                    principal_id=principal_id,
                    event_type=EVENT_TYPE_OPPORTUNITY,
                    occurred_at=opp.created_at,
                    source=SOURCE_OPPORTUNITY,
                    source_id=opp.id,
                    event_id=make_event_id(SOURCE_OPPORTUNITY, opp.id, "created"),
                    title="Opportunity created",
                    description=names[opp.id],
                )
            )
        for change in stage_changes:
            if change.opportunity_id not in names:
                continue
            transition = f"{change.from_stage or 'None'} -> {change.to_stage}"
            events.append(
                TimelineEvent(
                    principal_id=principal_id,
                    event_type=EVENT_TYPE_OPPORTUNITY,
                    occurred_at=change.changed_at,
                    source=SOURCE_OPPORTUNITY,
                    source_id=change.opportunity_id,
                    event_id=make_event_id(SOURCE_OPPORTUNITY, change.opportunity_id, f"stage-{change.id}"),
                    title="Opportunity stage changed",
                    description=f"{names[change.opportunity_id]}: {transition}",
                )
            )
        return events

    @staticmethod
    def _product_events(principal_id: str, associations: List[ProductAssociationRecord]) -> List[TimelineEvent]:
        events: List[TimelineEvent] = []
        for assoc in associations:
            label = assoc.product_name or assoc.product_id
            events.append(
                TimelineEvent(
                    principal_id=principal_id,
                    event_type=EVENT_TYPE_PRODUCT,
                    occurred_at=assoc.added_at,
                    source=SOURCE_PRODUCT,
                    source_id=assoc.id,
                    event_id=make_event_id(SOURCE_PRODUCT, assoc.id, "added"),
                    title="Product associated",
                    description=label,
                )
            )
            if assoc.removed_at is not None:
                events.append(
                    TimelineEvent(
                        principal_id=principal_id,
                        event_type=EVENT_TYPE_PRODUCT,
                        occurred_at=assoc.removed_at,
                        source=SOURCE_PRODUCT,
                        source_id=assoc.id,
                        event_id=make_event_id(SOURCE_PRODUCT, assoc.id, "removed"),
                        title="Product association removed",
                        description=label,
                    )
                )
        return events

    @staticmethod
    def _product_performance(
        principal_id: str,
        associations: List[ProductAssociationRecord],
        opportunities: List[OpportunityRecord],
        now: datetime,
    ) -> tuple[ProductPerformance, ...]:
        by_product: Dict[str, List[OpportunityRecord]] = {}
        for opp in opportunities:
            if opp.product_id:
                by_product.setdefault(opp.product_id, []).append(opp)

        # One record per product even if the pair was re-added; the newest edge wins.
        latest: Dict[str, ProductAssociationRecord] = {}
        for assoc in associations:
            existing = latest.get(assoc.product_id)
            if existing is None or assoc.added_at >= existing.added_at:
                latest[assoc.product_id] = assoc

        records: List[ProductPerformance] = []
        for product_id, assoc in latest.items():
            related = by_product.get(product_id, [])
            total = len(related)
            active = sum(1 for opp in related if opp.is_active)
            won = sum(1 for opp in related if opp.is_won)
            records.append(
                ProductPerformance(
                    principal_id=principal_id,
                    product_id=product_id,
                    product_name=assoc.product_name or product_id,
                    category=assoc.category,
                    contract_status=contract_status(assoc, now),
                    exclusive_rights=assoc.exclusive_rights,
                    is_primary_principal=assoc.is_primary_principal,
                    opportunity_count=total,
                    active_opportunity_count=active,
                    won_opportunity_count=won,
                    average_probability=_average_probability(related),
                    performance_score=product_performance_score(
                        won_opportunities=won,
                        total_opportunities=total,
                        active_opportunities=active,
                        exclusive_rights=assoc.exclusive_rights,
                    ),
                    associated_at=assoc.added_at,
                    contract_end_date=assoc.contract_end_date,
                )
            )
        records.sort(key=lambda item: (-item.performance_score, item.product_name.lower(), item.product_id))
        return tuple(records)
