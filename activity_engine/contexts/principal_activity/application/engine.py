from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List

from flask import Flask, current_app

from activity_engine.contexts.principal_activity.application.builder import AggregationBuilder
from activity_engine.contexts.principal_activity.application.observer import ChangeObserver
from activity_engine.contexts.principal_activity.application.query_service import PrincipalActivityQueryService
from activity_engine.contexts.principal_activity.application.scheduler import (
    RefreshScheduler,
    build_refresh_scheduler,
    should_start_scheduler,
)
from activity_engine.contexts.principal_activity.domain.scoring import EngagementPolicy
from activity_engine.contexts.principal_activity.infrastructure.snapshot_repository import SnapshotRepository
from activity_engine.contexts.principal_activity.infrastructure.snapshot_store import SnapshotStore
from activity_engine.contexts.principal_activity.infrastructure.source_repository import SourceReader, SqlSourceReader
from activity_engine.core import EventBus, get_event_bus
from activity_engine.db import close_db, get_db, table_exists
from activity_engine.errors import EngineUnavailableError, SnapshotStoreCorruptedError


EXTENSION_KEY = "activity_engine"

logger = logging.getLogger("activity_engine")


class PrincipalActivityEngine:
    """Wires observer, scheduler, builder, store and queries for one Flask app."""

    def __init__(
        self,
        app: Flask,
        *,
        event_bus: EventBus | None = None,
        reader: SourceReader | None = None,
        store: SnapshotStore | None = None,
    ) -> None:
        self.app = app
        self.event_bus = event_bus or get_event_bus()
        retention = int(app.config.get("SNAPSHOT_RETENTION", 2) or 2)
        self.repository = (
            SnapshotRepository(get_db, retention=retention)
            if app.config.get("SNAPSHOT_PERSIST_ENABLED", True)
            else None
        )
        self.store = store or SnapshotStore(retention=retention, repository=self.repository)
        self.reader = reader or SqlSourceReader(get_db)
        self.builder = AggregationBuilder(
            self.reader,
            policy=EngagementPolicy.from_config(app.config),
            timeline_max_events=int(app.config.get("TIMELINE_MAX_EVENTS", 500) or 500),
            build_timeout_seconds=float(app.config.get("BUILD_TIMEOUT_SECONDS", 30.0) or 0.0),
        )
        self.scheduler: RefreshScheduler = build_refresh_scheduler(app, self.rebuild_in_context)
        self.observer = ChangeObserver(self.event_bus, refresh_sink=self.scheduler.request_refresh)
        self.queries = PrincipalActivityQueryService(
            self.store,
            default_page_size=int(app.config.get("TIMELINE_DEFAULT_PAGE_SIZE", 50) or 50),
            max_page_size=int(app.config.get("TIMELINE_MAX_PAGE_SIZE", 200) or 200),
            dashboard_top_n=int(app.config.get("DASHBOARD_TOP_N", 5) or 5),
        )
        self.sync_interval_seconds = max(0.0, float(app.config.get("SNAPSHOT_SYNC_INTERVAL_SECONDS", 15.0) or 0.0))
        self._sync_stop = threading.Event()
        self._sync_thread: threading.Thread | None = None

    def rebuild(self, principal_id: str) -> int | None:
        """Build and commit one principal. Needs an app context."""
        previous = self.store.find_current(principal_id)
        snapshot = self.builder.build(principal_id, previous, version=self.store.next_version(principal_id))
        if snapshot is None:
            self.store.discard(principal_id)
            return None
        return self.store.commit(snapshot).version

    def rebuild_in_context(self, principal_id: str) -> int | None:
        with self.app.app_context():
            try:
                return self.rebuild(principal_id)
            finally:
                close_db()

    def notify(self, entity_type: str, entity_id: str, affected_principal_ids: Iterable[str]) -> None:
        self.observer.notify(entity_type, entity_id, affected_principal_ids)

    def warm_from_repository(self) -> int:
        if self.repository is None:
            return 0
        with self.app.app_context():
            try:
                if not table_exists(get_db(), "pa_current_snapshot"):
                    logger.warning("principal_snapshot_tables_missing")
                    return 0
                return self.store.warm(self.repository.load_current())
            finally:
                close_db()

    def sync_from_repository(self) -> Dict[str, int]:
        """Pick up snapshots that other processes (the refresh worker) committed."""
        if self.repository is None:
            return {"loaded": 0, "removed": 0}
        with self.app.app_context():
            try:
                return self.store.sync_from_repository()
            finally:
                close_db()

    def _sync_loop(self) -> None:
        while not self._sync_stop.wait(self.sync_interval_seconds):
            try:
                self.sync_from_repository()
            except SnapshotStoreCorruptedError as exc:
                logger.critical("snapshot_store_corrupted", extra={"details": exc.details})
                return
            except Exception:  # noqa: BLE001
                logger.exception("principal_snapshot_sync_failed")

    def _start_sync_thread(self) -> None:
        if self.repository is None or self.sync_interval_seconds <= 0:
            return
        self._sync_stop.clear()
        self._sync_thread = threading.Thread(target=self._sync_loop, name="principal-snapshot-sync", daemon=True)
        self._sync_thread.start()

    def active_principal_ids(self) -> List[str]:
        with self.app.app_context():
            try:
                return self.reader.list_principal_ids()
            finally:
                close_db()

    def refresh_all(self) -> Dict[str, int]:
        principal_ids = self.active_principal_ids()
        active = set(principal_ids)
        stale = [snapshot.principal_id for snapshot in self.store.list_current() if snapshot.principal_id not in active]
        for principal_id in principal_ids:
            self.scheduler.request_refresh(principal_id)
        for principal_id in stale:
            self.scheduler.request_refresh(principal_id)
        return {"requested": len(principal_ids) + len(stale), "stale": len(stale)}

    def start(self) -> None:
        loaded = self.warm_from_repository()
        self.observer.register()
        if should_start_scheduler(self.app):
            self.scheduler.start()
            self._start_sync_thread()
        logger.info(
            "principal_activity_engine_started",
            extra={
                "snapshots_loaded": loaded,
                "scheduler_started": self.scheduler.started,
                "coalesce_seconds": self.scheduler.coalesce_seconds,
                "max_attempts": self.scheduler.max_attempts,
                "sync_interval_seconds": self.sync_interval_seconds,
            },
        )
        if self.app.config.get("REFRESH_ON_STARTUP") and self.scheduler.started:
            self.refresh_all()

    def shutdown(self, wait: bool = True) -> None:
        self.observer.unregister()
        self._sync_stop.set()
        thread = self._sync_thread
        self._sync_thread = None
        if thread is not None and wait:
            thread.join(timeout=5.0)
        self.scheduler.stop(wait=wait)


def init_principal_activity(app: Flask) -> PrincipalActivityEngine | None:
    if not app.config.get("ACTIVITY_ENGINE_ENABLED", True):
        return None
    engine = PrincipalActivityEngine(app)
    app.extensions[EXTENSION_KEY] = engine
    engine.start()
    return engine


def get_engine(app: Flask | None = None) -> PrincipalActivityEngine:
    target = app or current_app
    engine = target.extensions.get(EXTENSION_KEY)
    if engine is None:
        raise EngineUnavailableError(details="principal activity engine is not initialized")
    return engine
