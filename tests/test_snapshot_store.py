import threading
import unittest
from datetime import timedelta

from activity_engine import create_app
from activity_engine.config import Config
from activity_engine.contexts.principal_activity.domain.models import PrincipalSnapshot
from activity_engine.contexts.principal_activity.infrastructure.snapshot_repository import SnapshotRepository
from activity_engine.contexts.principal_activity.infrastructure.snapshot_store import SnapshotStore
from activity_engine.db import get_db
from activity_engine.errors import NotFoundError, SnapshotStoreCorruptedError, StaleSnapshotError
from activity_engine.observability import metrics_snapshot, reset_metrics_for_tests
from tests.helpers.fake_sources import NOW
from tests.helpers.temp_db import TempDbSandbox


def _snapshot(principal_id: str, version: int, **kwargs) -> PrincipalSnapshot:
    kwargs.setdefault("principal_name", principal_id)
    kwargs.setdefault("built_at", NOW + timedelta(seconds=version))
    return PrincipalSnapshot(principal_id=principal_id, version=version, **kwargs)


class SnapshotStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self.store = SnapshotStore(retention=2)

    def test_get_current_before_first_commit_is_not_found(self) -> None:
        self.assertIsNone(self.store.find_current("P1"))
        with self.assertRaises(NotFoundError):
            self.store.get_current("P1")

    def test_commit_swaps_current_and_keeps_previous(self) -> None:
        self.store.commit(_snapshot("P1", 1, total_interactions=1))
        self.store.commit(_snapshot("P1", 2, total_interactions=2))

        self.assertEqual(self.store.get_current("P1").version, 2)
        self.assertEqual(self.store.get_previous("P1").version, 1)
        self.assertEqual(metrics_snapshot()["snapshot_commit_total"], 2)

    def test_stale_version_is_rejected(self) -> None:
        self.store.commit(_snapshot("P1", 3))

        with self.assertRaises(StaleSnapshotError):
            self.store.commit(_snapshot("P1", 3))
        with self.assertRaises(StaleSnapshotError):
            self.store.commit(_snapshot("P1", 2))
        self.assertEqual(self.store.get_current("P1").version, 3)

    def test_retention_prunes_old_versions(self) -> None:
        for version in range(1, 6):
            self.store.commit(_snapshot("P1", version))

        self.assertEqual(self.store.get_previous("P1").version, 4)
        self.assertEqual(sorted(self.store._arena["P1"]), [4, 5])

    def test_discard_keeps_versions_monotonic(self) -> None:
        self.store.commit(_snapshot("P1", 1))
        self.store.commit(_snapshot("P1", 2))

        self.assertTrue(self.store.discard("P1"))
        self.assertFalse(self.store.discard("P1"))
        self.assertIsNone(self.store.find_current("P1"))
        self.assertEqual(self.store.next_version("P1"), 3)
        self.assertEqual(metrics_snapshot()["snapshot_discard_total"], 1)

    def test_dangling_pointer_is_corruption(self) -> None:
        self.store.commit(_snapshot("P1", 1))
        self.store._arena["P1"].clear()

        with self.assertRaises(SnapshotStoreCorruptedError):
            self.store.find_current("P1")

    def test_list_current_and_count(self) -> None:
        self.store.commit(_snapshot("P2", 1))
        self.store.commit(_snapshot("P1", 1))

        self.assertEqual(self.store.count(), 2)
        self.assertEqual([item.principal_id for item in self.store.list_current()], ["P1", "P2"])

    def test_reader_never_sees_version_go_backwards(self) -> None:
        seen: list[int] = []
        stop = threading.Event()

        def _reader() -> None:
            while not stop.is_set():
                snapshot = self.store.find_current("P1")
                if snapshot is not None:
                    seen.append(snapshot.version)

        thread = threading.Thread(target=_reader)
        thread.start()
        try:
            for version in range(1, 200):
                self.store.commit(_snapshot("P1", version))
        finally:
            stop.set()
            thread.join(timeout=5)

        self.assertEqual(seen, sorted(seen))


class SnapshotRepositoryPersistenceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.sandbox = TempDbSandbox(prefix="snapshot_repository")
        self.app = create_app(self.sandbox.make_config(Config, TESTING=True, ACTIVITY_ENGINE_ENABLED=False))

    def tearDown(self) -> None:
        self.sandbox.cleanup()

    def test_committed_snapshots_survive_a_new_store(self) -> None:
        with self.app.app_context():
            repository = SnapshotRepository(get_db, retention=2)
            store = SnapshotStore(retention=2, repository=repository)
            store.commit(_snapshot("P1", 1, total_opportunities=1))
            store.commit(_snapshot("P1", 2, total_opportunities=3))
            store.commit(_snapshot("P2", 1))
            store.commit(_snapshot("P2", 2))
            store.discard("P2")

            reloaded = SnapshotStore(retention=2)
            self.assertEqual(reloaded.warm(repository.load_current()), 1)
            current = reloaded.get_current("P1")
            self.assertEqual(current.version, 2)
            self.assertEqual(current.total_opportunities, 3)
            self.assertIsNone(reloaded.find_current("P2"))

            rows = get_db().execute(
                "SELECT version FROM pa_snapshot_versions WHERE principal_id = ? ORDER BY version",
                ("P1",),
            ).fetchall()
            self.assertEqual([row["version"] for row in rows], [1, 2])

    def test_pointer_without_version_row_is_corruption(self) -> None:
        with self.app.app_context():
            db = get_db()
            db.execute("INSERT INTO pa_current_snapshot (principal_id, version) VALUES (?, ?)", ("P1", 7))
            db.commit()

            with self.assertRaises(SnapshotStoreCorruptedError):
                SnapshotRepository(get_db).load_current()

    def test_stale_commit_leaves_persisted_rows_untouched(self) -> None:
        with self.app.app_context():
            store = SnapshotStore(retention=2, repository=SnapshotRepository(get_db, retention=2))
            store.commit(_snapshot("P1", 1))
            store.commit(_snapshot("P1", 2, total_interactions=2))

            with self.assertRaises(StaleSnapshotError):
                store.commit(_snapshot("P1", 2, total_interactions=9))

            db = get_db()
            pointer = db.execute("SELECT version FROM pa_current_snapshot WHERE principal_id = ?", ("P1",)).fetchone()
            rows = db.execute(
                "SELECT version FROM pa_snapshot_versions WHERE principal_id = ? ORDER BY version",
                ("P1",),
            ).fetchall()
            self.assertEqual(pointer["version"], 2)
            self.assertEqual([row["version"] for row in rows], [1, 2])
            self.assertEqual(store.get_current("P1").total_interactions, 2)

    def test_save_allocates_past_versions_persisted_elsewhere(self) -> None:
        with self.app.app_context():
            repository = SnapshotRepository(get_db, retention=3)
            self.assertEqual(repository.save(_snapshot("P1", 1)).version, 1)

            saved = repository.save(_snapshot("P1", 1, total_interactions=4))

            self.assertEqual(saved.version, 2)
            self.assertEqual(repository.persisted_version("P1"), 2)
            self.assertEqual(repository.current_versions(), {"P1": 2})
            self.assertEqual(repository.load_current(["P1"])[0].total_interactions, 4)

    def test_save_retries_when_a_concurrent_writer_takes_the_version(self) -> None:
        with self.app.app_context():
            repository = SnapshotRepository(get_db, retention=3)
            original = repository.persisted_version
            seen = []

            def _racing_persisted_version(principal_id: str) -> int:
                version = original(principal_id)
                if not seen:
                    # Another process commits version 1 between the read and the insert.
                    other = SnapshotRepository(get_db, retention=3)
                    other._write(get_db(), _snapshot(principal_id, 1))
                    get_db().commit()
                seen.append(version)
                return version

            repository.persisted_version = _racing_persisted_version
            saved = repository.save(_snapshot("P1", 1))

            self.assertEqual(seen, [0, 1])
            self.assertEqual(saved.version, 2)
            self.assertEqual(SnapshotRepository(get_db).current_versions(), {"P1": 2})


if __name__ == "__main__":
    unittest.main()
