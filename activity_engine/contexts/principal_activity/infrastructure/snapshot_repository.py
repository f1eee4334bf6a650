from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any, Callable, Dict, Iterable, List

from activity_engine.contexts.principal_activity.domain.models import PrincipalSnapshot, to_iso
from activity_engine.db import is_integrity_error
from activity_engine.errors import SnapshotStoreCorruptedError


logger = logging.getLogger("activity_engine")

MAX_VERSION_CONFLICTS = 5


class SnapshotRepository:
    """Durable copy of committed snapshots, shared by every process on the database.

    ``pa_snapshot_versions`` is appended to first, then the ``pa_current_snapshot``
    pointer is upserted, both in one transaction. Versions are allocated against
    the persisted maximum, so a web process and a refresh worker writing the same
    principal keep a single increasing sequence.
    """

    def __init__(self, db_provider: Callable[[], Any], *, retention: int = 2) -> None:
        self._db_provider = db_provider
        self.retention = max(1, int(retention))

    def persisted_version(self, principal_id: str) -> int:
        row = self._db_provider().execute(
            """
            SELECT MAX(version) AS max_version
            FROM (
                SELECT version FROM pa_snapshot_versions WHERE principal_id = ?
                UNION ALL
                SELECT version FROM pa_current_snapshot WHERE principal_id = ?
            ) persisted
            """,
            (principal_id, principal_id),
        ).fetchone()
        return int(row["max_version"] or 0) if row is not None else 0

    def save(self, snapshot: PrincipalSnapshot) -> PrincipalSnapshot:
        """Persist ``snapshot`` and return it as stored.

        The returned version is raised past anything another process already
        persisted for the principal.
        """
        db = self._db_provider()
        candidate = snapshot
        for conflict in range(MAX_VERSION_CONFLICTS):
            persisted = self.persisted_version(snapshot.principal_id)
            if candidate.version <= persisted:
                candidate = dataclasses.replace(candidate, version=persisted + 1)
            try:
                self._write(db, candidate)
                db.commit()
            except Exception as exc:
                db.rollback()
                if not is_integrity_error(exc) or conflict == MAX_VERSION_CONFLICTS - 1:
                    raise
                logger.warning(
                    "principal_snapshot_version_conflict",
                    extra={"principal_id": snapshot.principal_id, "version": candidate.version},
                )
                continue
            break

        if candidate.version != snapshot.version:
            logger.info(
                "principal_snapshot_version_advanced",
                extra={
                    "principal_id": snapshot.principal_id,
                    "requested_version": snapshot.version,
                    "version": candidate.version,
                },
            )
        return candidate

    def _write(self, db, snapshot: PrincipalSnapshot) -> None:
        payload_json = json.dumps(snapshot.to_dict(), ensure_ascii=True, separators=(",", ":"), sort_keys=True)
        db.execute(
            """
            INSERT INTO pa_snapshot_versions (principal_id, version, built_at, payload_json, created_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (snapshot.principal_id, snapshot.version, to_iso(snapshot.built_at), payload_json),
        )
        db.execute(
            """
            INSERT INTO pa_current_snapshot (principal_id, version, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(principal_id) DO UPDATE SET
                version = excluded.version,
                updated_at = CURRENT_TIMESTAMP
            WHERE pa_current_snapshot.version < excluded.version
            """,
            (snapshot.principal_id, snapshot.version),
        )
        db.execute(
            "DELETE FROM pa_snapshot_versions WHERE principal_id = ? AND version <= ?",
            (snapshot.principal_id, snapshot.version - self.retention),
        )

    def delete(self, principal_id: str) -> None:
        db = self._db_provider()
        try:
            db.execute("DELETE FROM pa_current_snapshot WHERE principal_id = ?", (principal_id,))
            db.execute("DELETE FROM pa_snapshot_versions WHERE principal_id = ?", (principal_id,))
            db.commit()
        except Exception:
            db.rollback()
            raise

    def current_versions(self) -> Dict[str, int]:
        rows = self._db_provider().execute("SELECT principal_id, version FROM pa_current_snapshot").fetchall()
        return {str(row["principal_id"]): int(row["version"]) for row in rows}

    def load_current(self, principal_ids: Iterable[str] | None = None) -> List[PrincipalSnapshot]:
        sql = """
            SELECT c.principal_id, c.version, v.payload_json
            FROM pa_current_snapshot c
            LEFT JOIN pa_snapshot_versions v
              ON v.principal_id = c.principal_id AND v.version = c.version
        """
        params: List[str] = []
        if principal_ids is not None:
            params = sorted({str(item) for item in principal_ids if item})
            if not params:
                return []
            sql += f" WHERE c.principal_id IN ({', '.join('?' for _ in params)})"
        rows = self._db_provider().execute(sql + " ORDER BY c.principal_id", params).fetchall()

        snapshots: List[PrincipalSnapshot] = []
        for row in rows:
            payload_json = row["payload_json"]
            if payload_json is None:
                raise SnapshotStoreCorruptedError(
                    details=f"current pointer for {row['principal_id']} references missing version {row['version']}",
                )
            snapshots.append(PrincipalSnapshot.from_dict(json.loads(payload_json)))
        logger.info("principal_snapshots_loaded", extra={"snapshot_count": len(snapshots)})
        return snapshots
