from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List

from activity_engine.contexts.principal_activity.domain.models import PrincipalSnapshot
from activity_engine.contexts.principal_activity.infrastructure.snapshot_repository import SnapshotRepository
from activity_engine.errors import NotFoundError, SnapshotStoreCorruptedError, StaleSnapshotError
from activity_engine.observability import observe_snapshot_commit, observe_snapshot_discard


logger = logging.getLogger("activity_engine")


class SnapshotStore:
    """Per-principal arena of immutable snapshots plus a "current" version pointer.

    Builders only ever append new snapshot objects; the pointer swap is the single
    mutation readers can observe, and it happens under ``_lock``. Writers
    (commit, discard, warm, sync) are serialized by ``_commit_lock`` so the
    version check, the durable write and the swap cannot interleave, while
    readers never wait on database I/O.
    """

    def __init__(self, *, retention: int = 2, repository: SnapshotRepository | None = None) -> None:
        self.retention = max(1, int(retention))
        self._repository = repository
        self._lock = threading.Lock()
        self._commit_lock = threading.RLock()
        self._arena: Dict[str, Dict[int, PrincipalSnapshot]] = {}
        self._current: Dict[str, int] = {}
        self._high_water: Dict[str, int] = {}

    def _resolve_current(self, principal_id: str) -> PrincipalSnapshot | None:
        version = self._current.get(principal_id)
        if version is None:
            return None
        snapshot = self._arena.get(principal_id, {}).get(version)
        if snapshot is None or snapshot.version != version:
            raise SnapshotStoreCorruptedError(
                details=f"current pointer for {principal_id} references missing version {version}",
            )
        return snapshot

    def find_current(self, principal_id: str) -> PrincipalSnapshot | None:
        with self._lock:
            return self._resolve_current(principal_id)

    def get_current(self, principal_id: str) -> PrincipalSnapshot:
        snapshot = self.find_current(principal_id)
        if snapshot is None:
            raise NotFoundError(
                details=f"no snapshot for principal {principal_id}",
                payload={"principal_id": principal_id},
            )
        return snapshot

    def get_previous(self, principal_id: str) -> PrincipalSnapshot | None:
        with self._lock:
            current = self._resolve_current(principal_id)
            if current is None:
                return None
            older = [version for version in self._arena.get(principal_id, {}) if version < current.version]
            if not older:
                return None
            return self._arena[principal_id][max(older)]

    def next_version(self, principal_id: str) -> int:
        with self._lock:
            return self._high_water.get(principal_id, 0) + 1

    def _check_version(self, snapshot: PrincipalSnapshot) -> None:
        high_water = self._high_water.get(snapshot.principal_id, 0)
        if snapshot.version <= high_water:
            raise StaleSnapshotError(
                details=(
                    f"snapshot version {snapshot.version} for {snapshot.principal_id} "
                    f"is not newer than {high_water}"
                ),
                payload={"principal_id": snapshot.principal_id, "version": snapshot.version},
            )

    def _install(self, snapshot: PrincipalSnapshot) -> None:
        versions = self._arena.setdefault(snapshot.principal_id, {})
        versions[snapshot.version] = snapshot
        self._current[snapshot.principal_id] = snapshot.version
        self._high_water[snapshot.principal_id] = snapshot.version
        for version in sorted(versions)[: -self.retention]:
            del versions[version]

    def commit(self, snapshot: PrincipalSnapshot) -> PrincipalSnapshot:
        """Make ``snapshot`` current and return it as committed.

        With a repository the committed version may be higher than requested
        when another process already persisted that version.
        """
        with self._commit_lock:
            with self._lock:
                self._check_version(snapshot)

            if self._repository is not None:
                snapshot = self._repository.save(snapshot)

            with self._lock:
                self._install(snapshot)

        observe_snapshot_commit()
        logger.info(
            "principal_snapshot_committed",
            extra={"principal_id": snapshot.principal_id, "version": snapshot.version},
        )
        return snapshot

    def discard(self, principal_id: str) -> bool:
        with self._commit_lock:
            with self._lock:
                removed = self._current.pop(principal_id, None) is not None
                self._arena.pop(principal_id, None)

            if self._repository is not None:
                self._repository.delete(principal_id)
        if removed:
            observe_snapshot_discard()
            logger.info("principal_snapshot_discarded", extra={"principal_id": principal_id})
        return removed

    def warm(self, snapshots: Iterable[PrincipalSnapshot]) -> int:
        loaded = 0
        with self._commit_lock, self._lock:
            for snapshot in snapshots:
                if snapshot.version <= self._high_water.get(snapshot.principal_id, 0):
                    continue
                self._install(snapshot)
                loaded += 1
        return loaded

    def sync_from_repository(self) -> Dict[str, int]:
        """Adopt snapshots committed or discarded by other processes."""
        if self._repository is None:
            return {"loaded": 0, "removed": 0}
        with self._commit_lock:
            persisted = self._repository.current_versions()
            with self._lock:
                newer = [
                    principal_id
                    for principal_id, version in persisted.items()
                    if version > self._high_water.get(principal_id, 0)
                ]
                gone = [principal_id for principal_id in self._current if principal_id not in persisted]
            loaded = self.warm(self._repository.load_current(newer)) if newer else 0
            with self._lock:
                for principal_id in gone:
                    self._current.pop(principal_id, None)
                    self._arena.pop(principal_id, None)

        if loaded or gone:
            logger.info(
                "principal_snapshots_synced",
                extra={"snapshots_loaded": loaded, "snapshots_removed": len(gone)},
            )
        return {"loaded": loaded, "removed": len(gone)}

    def list_current(self) -> List[PrincipalSnapshot]:
        with self._lock:
            snapshots = [self._resolve_current(principal_id) for principal_id in sorted(self._current)]
        return [snapshot for snapshot in snapshots if snapshot is not None]

    def count(self) -> int:
        with self._lock:
            return len(self._current)
