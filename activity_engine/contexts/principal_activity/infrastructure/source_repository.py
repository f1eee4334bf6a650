from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Protocol

from activity_engine.contexts.principal_activity.domain.models import (
    ContactRecord,
    DistributorRelationshipRecord,
    InteractionRecord,
    OpportunityRecord,
    OrganizationRecord,
    ProductAssociationRecord,
    StageChangeRecord,
    parse_timestamp,
)


class SourceReader(Protocol):
    def get_organization(self, organization_id: str) -> OrganizationRecord | None: ...

    def get_organizations(self, organization_ids: Iterable[str]) -> Dict[str, OrganizationRecord]: ...

    def list_principal_ids(self) -> List[str]: ...

    def list_opportunities(self, principal_id: str) -> List[OpportunityRecord]: ...

    def list_stage_changes(self, opportunity_ids: Iterable[str]) -> List[StageChangeRecord]: ...

    def list_interactions(self, principal_id: str) -> List[InteractionRecord]: ...

    def list_contacts(self, organization_id: str) -> List[ContactRecord]: ...

    def list_product_associations(self, principal_id: str) -> List[ProductAssociationRecord]: ...

    def list_distributor_relationships(self, principal_id: str) -> List[DistributorRelationshipRecord]: ...


def _row_to_dict(row: Any) -> Dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    keys = getattr(row, "keys", None)
    if callable(keys):
        return {key: row[key] for key in row.keys()}
    return {}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes"}
    return bool(value)


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _load_metadata(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    raw = str(value or "").strip()
    if not raw:
        return {}
    try:
        loaded = json.loads(raw)
    except ValueError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _placeholders(values: List[Any]) -> str:
    return ", ".join("?" for _ in values)


def _organization_from_row(row: Dict[str, Any]) -> OrganizationRecord:
    return OrganizationRecord(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        is_principal=_as_bool(row.get("is_principal")),
        is_distributor=_as_bool(row.get("is_distributor")),
        city=_as_str(row.get("city")),
        state_province=_as_str(row.get("state_province")),
        country=_as_str(row.get("country")),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
        deleted_at=parse_timestamp(row.get("deleted_at")),
    )


class SqlSourceReader:
    """Reads collaborator tables through the ``Database`` wrapper.

    ``db_provider`` is called on every read so a reader can be shared across
    app contexts; inside a rebuild it resolves to the context's connection.
    """

    def __init__(self, db_provider: Callable[[], Any]) -> None:
        self._db_provider = db_provider

    def _fetch_all(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        rows = self._db_provider().execute(sql, tuple(params)).fetchall()
        return [_row_to_dict(row) for row in rows]

    def get_organization(self, organization_id: str) -> OrganizationRecord | None:
        rows = self._fetch_all(
            """
            SELECT id, name, is_principal, is_distributor, city, state_province, country,
                   created_at, updated_at, deleted_at
            FROM organizations
            WHERE id = ?
            """,
            (organization_id,),
        )
        return _organization_from_row(rows[0]) if rows else None

    def get_organizations(self, organization_ids: Iterable[str]) -> Dict[str, OrganizationRecord]:
        ids = sorted({str(item) for item in organization_ids if item})
        if not ids:
            return {}
        rows = self._fetch_all(
            f"""
            SELECT id, name, is_principal, is_distributor, city, state_province, country,
                   created_at, updated_at, deleted_at
            FROM organizations
            WHERE id IN ({_placeholders(ids)})
            """,
            ids,
        )
        return {str(row["id"]): _organization_from_row(row) for row in rows}

    def list_principal_ids(self) -> List[str]:
        rows = self._fetch_all(
            """
            SELECT id
            FROM organizations
            WHERE is_principal = 1 AND is_distributor = 0 AND deleted_at IS NULL
            ORDER BY id
            """
        )
        return [str(row["id"]) for row in rows]

    def list_opportunities(self, principal_id: str) -> List[OpportunityRecord]:
        rows = self._fetch_all(
            """
            SELECT id, name, principal_id, organization_id, product_id, stage,
                   probability_percent, is_won, created_at
            FROM opportunities
            WHERE principal_id = ? AND deleted_at IS NULL
            ORDER BY created_at, id
            """,
            (principal_id,),
        )
        return [
            OpportunityRecord(
                id=str(row["id"]),
                name=_as_str(row.get("name")),
                principal_id=str(row["principal_id"]),
                organization_id=_as_str(row.get("organization_id")),
                product_id=_as_str(row.get("product_id")),
                stage=str(row.get("stage") or ""),
                probability=_as_float(row.get("probability_percent")),
                is_won=_as_bool(row.get("is_won")),
                created_at=parse_timestamp(row.get("created_at")),
            )
            for row in rows
        ]

    def list_stage_changes(self, opportunity_ids: Iterable[str]) -> List[StageChangeRecord]:
        ids = sorted({str(item) for item in opportunity_ids if item})
        if not ids:
            return []
        rows = self._fetch_all(
            f"""
            SELECT id, opportunity_id, from_stage, to_stage, changed_at
            FROM opportunity_stage_changes
            WHERE opportunity_id IN ({_placeholders(ids)})
            ORDER BY changed_at, id
            """,
            ids,
        )
        changes: List[StageChangeRecord] = []
        for row in rows:
            changed_at = parse_timestamp(row.get("changed_at"))
            if changed_at is None:
                continue
            changes.append(
                StageChangeRecord(
                    id=str(row["id"]),
                    opportunity_id=str(row["opportunity_id"]),
                    from_stage=_as_str(row.get("from_stage")),
                    to_stage=str(row.get("to_stage") or ""),
                    changed_at=changed_at,
                )
            )
        return changes

    def list_interactions(self, principal_id: str) -> List[InteractionRecord]:
        rows = self._fetch_all(
            """
            SELECT id, principal_id, organization_id, opportunity_id, type, subject, interaction_date,
                   follow_up_required, follow_up_date
            FROM interactions
            WHERE principal_id = ? AND deleted_at IS NULL
            ORDER BY interaction_date, id
            """,
            (principal_id,),
        )
        interactions: List[InteractionRecord] = []
        for row in rows:
            occurred_at = parse_timestamp(row.get("interaction_date"))
            if occurred_at is None:
                continue
            interactions.append(
                InteractionRecord(
                    id=str(row["id"]),
                    principal_id=str(row["principal_id"]),
                    organization_id=_as_str(row.get("organization_id")),
                    opportunity_id=_as_str(row.get("opportunity_id")),
                    type=str(row.get("type") or "EMAIL"),
                    subject=_as_str(row.get("subject")),
                    occurred_at=occurred_at,
                    follow_up_required=_as_bool(row.get("follow_up_required")),
                    follow_up_date=parse_timestamp(row.get("follow_up_date")),
                )
            )
        return interactions

    def list_contacts(self, organization_id: str) -> List[ContactRecord]:
        rows = self._fetch_all(
            """
            SELECT id, organization_id, first_name, last_name, email, updated_at
            FROM contacts
            WHERE organization_id = ? AND deleted_at IS NULL
            ORDER BY updated_at DESC, id
            """,
            (organization_id,),
        )
        return [
            ContactRecord(
                id=str(row["id"]),
                organization_id=str(row["organization_id"]),
                first_name=str(row.get("first_name") or ""),
                last_name=str(row.get("last_name") or ""),
                email=_as_str(row.get("email")),
                updated_at=parse_timestamp(row.get("updated_at")),
            )
            for row in rows
        ]

    def list_product_associations(self, principal_id: str) -> List[ProductAssociationRecord]:
        rows = self._fetch_all(
            """
            SELECT pp.id, pp.product_id, pp.principal_id, pp.is_primary_principal, pp.exclusive_rights,
                   pp.contract_start_date, pp.contract_end_date, pp.added_at, pp.removed_at,
                   p.id AS joined_product_id, p.name AS product_name, p.category,
                   p.is_active AS product_is_active, p.deleted_at AS product_deleted_at
            FROM product_principals pp
            LEFT JOIN products p ON p.id = pp.product_id
            WHERE pp.principal_id = ?
            ORDER BY pp.added_at, pp.id
            """,
            (principal_id,),
        )
        associations: List[ProductAssociationRecord] = []
        for row in rows:
            added_at = parse_timestamp(row.get("added_at"))
            if added_at is None:
                continue
            associations.append(
                ProductAssociationRecord(
                    id=str(row["id"]),
                    product_id=str(row["product_id"]),
                    principal_id=str(row["principal_id"]),
                    added_at=added_at,
                    removed_at=parse_timestamp(row.get("removed_at")),
                    product_name=_as_str(row.get("product_name")),
                    category=_as_str(row.get("category")),
                    product_exists=row.get("joined_product_id") is not None,
                    product_is_active=_as_bool(
                        1 if row.get("product_is_active") is None else row.get("product_is_active")
                    ),
                    product_deleted_at=parse_timestamp(row.get("product_deleted_at")),
                    is_primary_principal=_as_bool(row.get("is_primary_principal")),
                    exclusive_rights=_as_bool(row.get("exclusive_rights")),
                    contract_start_date=parse_timestamp(row.get("contract_start_date")),
                    contract_end_date=parse_timestamp(row.get("contract_end_date")),
                )
            )
        return associations

    def list_distributor_relationships(self, principal_id: str) -> List[DistributorRelationshipRecord]:
        rows = self._fetch_all(
            """
            SELECT id, principal_id, distributor_id, metadata_json, created_at
            FROM distributor_relationships
            WHERE principal_id = ? AND deleted_at IS NULL
            ORDER BY created_at, id
            """,
            (principal_id,),
        )
        return [
            DistributorRelationshipRecord(
                id=str(row["id"]),
                principal_id=str(row["principal_id"]),
                distributor_id=str(row["distributor_id"]),
                metadata=_load_metadata(row.get("metadata_json")),
                created_at=parse_timestamp(row.get("created_at")),
            )
            for row in rows
        ]
