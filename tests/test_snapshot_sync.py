import unittest

from activity_engine import create_app
from activity_engine.config import Config
from activity_engine.contexts.principal_activity.application.engine import get_engine
from activity_engine.core import reset_event_bus_for_tests
from activity_engine.db import get_db
from activity_engine.observability import reset_metrics_for_tests
from tests.helpers.fake_sources import insert_rows
from tests.helpers.temp_db import TempDbSandbox


class SharedDatabaseSnapshotTest(unittest.TestCase):
    """A web process and a refresh worker writing snapshots to one database."""

    def setUp(self) -> None:
        reset_event_bus_for_tests()
        reset_metrics_for_tests()
        self.sandbox = TempDbSandbox(prefix="snapshot_sync")
        config = self.sandbox.make_config(Config, TESTING=True, SNAPSHOT_SYNC_INTERVAL_SECONDS=0)
        self.web = create_app(config)
        self.worker = create_app(config)
        with self.web.app_context():
            db = get_db()
            insert_rows(
                db,
                "organizations",
                [
                    {"id": "P1", "name": "Acme Foods", "is_principal": 1},
                    {"id": "P2", "name": "Bella Pasta", "is_principal": 1},
                ],
            )

    def tearDown(self) -> None:
        get_engine(self.web).shutdown()
        get_engine(self.worker).shutdown()
        reset_event_bus_for_tests()
        self.sandbox.cleanup()

    def _pointer_version(self, principal_id: str) -> int:
        with self.web.app_context():
            row = get_db().execute(
                "SELECT version FROM pa_current_snapshot WHERE principal_id = ?",
                (principal_id,),
            ).fetchone()
            return row["version"]

    def test_interleaved_rebuilds_share_one_version_sequence(self) -> None:
        web = get_engine(self.web)
        worker = get_engine(self.worker)

        self.assertEqual(web.rebuild_in_context("P1"), 1)
        self.assertEqual(worker.rebuild_in_context("P1"), 2)
        self.assertEqual(web.rebuild_in_context("P1"), 3)
        self.assertEqual(worker.rebuild_in_context("P1"), 4)

        self.assertEqual(self._pointer_version("P1"), 4)
        self.assertEqual(web.store.get_current("P1").version, 3)
        self.assertEqual(worker.store.get_current("P1").version, 4)

    def test_sync_serves_snapshots_committed_by_the_other_process(self) -> None:
        web = get_engine(self.web)
        worker = get_engine(self.worker)
        client = self.web.test_client()

        worker.rebuild_in_context("P1")
        worker.rebuild_in_context("P2")
        self.assertEqual(client.get("/api/principals/P1/summary").status_code, 404)

        self.assertEqual(web.sync_from_repository(), {"loaded": 2, "removed": 0})

        response = client.get("/api/principals/P1/summary")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["version"], 1)
        self.assertEqual(web.store.next_version("P1"), 2)
        self.assertEqual(web.sync_from_repository(), {"loaded": 0, "removed": 0})

    def test_sync_drops_snapshots_discarded_by_the_other_process(self) -> None:
        web = get_engine(self.web)
        worker = get_engine(self.worker)
        web.rebuild_in_context("P2")
        worker.sync_from_repository()

        with self.worker.app_context():
            get_db().execute("UPDATE organizations SET is_principal = 0 WHERE id = ?", ("P2",))
            get_db().commit()
        self.assertIsNone(worker.rebuild_in_context("P2"))

        self.assertEqual(web.sync_from_repository(), {"loaded": 0, "removed": 1})
        self.assertIsNone(web.store.find_current("P2"))


if __name__ == "__main__":
    unittest.main()
