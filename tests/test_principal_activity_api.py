import unittest
from datetime import datetime, timedelta, timezone

from activity_engine import create_app
from activity_engine.config import Config
from activity_engine.contexts.principal_activity.application.engine import get_engine
from activity_engine.core import InteractionChanged, get_event_bus, reset_event_bus_for_tests
from activity_engine.db import get_db
from activity_engine.observability import reset_metrics_for_tests
from tests.helpers.fake_sources import insert_rows, iso
from tests.helpers.temp_db import TempDbSandbox


class PrincipalActivityApiTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_event_bus_for_tests()
        reset_metrics_for_tests()
        self.sandbox = TempDbSandbox(prefix="principal_activity_api")
        self.app = create_app(self.sandbox.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.now = datetime.now(timezone.utc).replace(microsecond=0)
        self._seed()

    def tearDown(self) -> None:
        get_engine(self.app).shutdown()
        reset_event_bus_for_tests()
        self.sandbox.cleanup()

    def _ago(self, days: float) -> str:
        return iso(self.now - timedelta(days=days))

    def _seed(self) -> None:
        with self.app.app_context():
            db = get_db()
            insert_rows(
                db,
                "organizations",
                [
                    {"id": "P1", "name": "Acme Foods", "is_principal": 1},
                    {"id": "P2", "name": "Bella Pasta", "is_principal": 1},
                    {"id": "ORG-1", "name": "Bistro One"},
                    {"id": "D1", "name": "Metro Distribution", "is_distributor": 1, "city": "Chicago"},
                ],
            )
            insert_rows(db, "products", [{"id": "prod-1", "name": "Olive Oil", "category": "Oils"}])
            insert_rows(
                db,
                "product_principals",
                [{"id": "pp-1", "product_id": "prod-1", "principal_id": "P1", "added_at": self._ago(40)}],
            )
            insert_rows(
                db,
                "distributor_relationships",
                [{"id": "rel-1", "principal_id": "P1", "distributor_id": "D1", "metadata_json": '{"territory": "Midwest"}'}],
            )

    def _seed_p1_activity(self) -> None:
        with self.app.app_context():
            db = get_db()
            insert_rows(
                db,
                "opportunities",
                [
                    {"id": "1", "principal_id": "P1", "organization_id": "ORG-1", "stage": "New Lead",
                     "product_id": "prod-1", "probability_percent": 25, "created_at": self._ago(20)},
                    {"id": "2", "principal_id": "P1", "organization_id": "ORG-1", "stage": "Demo Scheduled",
                     "probability_percent": 55, "created_at": self._ago(15)},
                    {"id": "3", "principal_id": "P1", "organization_id": "ORG-1", "stage": "Closed - Won",
                     "is_won": 1, "product_id": "prod-1", "created_at": self._ago(10)},
                ],
            )
            insert_rows(
                db,
                "interactions",
                [
                    {"id": str(index), "principal_id": "P1", "organization_id": "ORG-1", "type": "CALL",
                     "interaction_date": self._ago(index)}
                    for index in range(1, 6)
                ],
            )

    def _refresh(self, principal_id: str, **payload):
        return self.client.post(f"/api/principals/{principal_id}/refresh", json=payload or {"wait": True})

    def test_summary_is_not_found_until_first_refresh(self) -> None:
        response = self.client.get("/api/principals/P1/summary")
        self.assertEqual(response.status_code, 404)
        body = response.get_json()
        self.assertEqual(body["error"], "principal_not_found")
        self.assertTrue(body["request_id"])
        self.assertEqual(response.headers["X-Request-Id"], body["request_id"])

    def test_refresh_reflects_inserted_activity(self) -> None:
        first = self._refresh("P1")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.get_json()["summary"]["total_opportunities"], 0)

        self._seed_p1_activity()
        response = self._refresh("P1")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["status"], "refreshed")
        self.assertEqual(body["version"], 2)

        summary = self.client.get("/api/principals/P1/summary").get_json()
        self.assertEqual(summary["total_opportunities"], 3)
        self.assertEqual(summary["active_opportunities"], 2)
        self.assertEqual(summary["won_opportunities"], 1)
        self.assertEqual(summary["total_interactions"], 5)
        self.assertEqual(summary["activity_status"], "ACTIVE")
        self.assertEqual(summary["distributor_count"], 1)

    def test_change_notification_is_picked_up_by_the_next_refresh(self) -> None:
        self._refresh("P1")
        self._seed_p1_activity()
        get_event_bus().publish(InteractionChanged(interaction_id="5", principal_id="P1", operation="insert"))

        engine = get_engine(self.app)
        self.assertTrue(engine.scheduler.state("P1")["pending"])
        self.assertEqual(self._refresh("P1").get_json()["version"], 2)
        self.assertEqual(self.client.get("/api/principals/P1/summary").get_json()["total_interactions"], 5)

    def test_timeline_with_equal_timestamps_is_stable(self) -> None:
        shared = self._ago(2)
        with self.app.app_context():
            db = get_db()
            insert_rows(
                db,
                "opportunities",
                [{"id": "7", "principal_id": "P2", "stage": "Demo Scheduled", "created_at": self._ago(9)}],
            )
            insert_rows(
                db,
                "opportunity_stage_changes",
                [{"id": "31", "opportunity_id": "7", "from_stage": "New Lead", "to_stage": "Demo Scheduled",
                  "changed_at": shared}],
            )
            insert_rows(
                db,
                "interactions",
                [
                    {"id": "20", "principal_id": "P2", "interaction_date": shared},
                    {"id": "4", "principal_id": "P2", "interaction_date": shared},
                ],
            )
        self._refresh("P2")

        orders = []
        for _ in range(3):
            response = self.client.get("/api/principals/P2/timeline?limit=3")
            self.assertEqual(response.status_code, 200)
            orders.append([event["event_id"] for event in response.get_json()["events"]])
        self.assertEqual(orders[0], ["opportunity:7:stage-31", "interaction:20", "interaction:4"])
        self.assertTrue(all(order == orders[0] for order in orders))

        page = self.client.get("/api/principals/P2/timeline?limit=3").get_json()
        rest = self.client.get("/api/principals/P2/timeline", query_string={"cursor": page["next_cursor"]}).get_json()
        self.assertEqual([event["event_id"] for event in rest["events"]], ["opportunity:7:created"])
        self.assertIsNone(rest["next_cursor"])

    def test_products_relationships_and_kpis(self) -> None:
        self._seed_p1_activity()
        self._refresh("P1")
        self._refresh("P2")

        products = self.client.get("/api/principals/P1/products").get_json()["items"]
        self.assertEqual(len(products), 1)
        self.assertEqual(products[0]["product_name"], "Olive Oil")
        self.assertEqual(products[0]["opportunity_count"], 2)
        self.assertEqual(products[0]["won_opportunity_count"], 1)

        relationships = self.client.get("/api/principals/P1/relationships").get_json()["items"]
        self.assertEqual(relationships[0]["distributor_name"], "Metro Distribution")
        self.assertEqual(relationships[0]["metadata"], {"territory": "Midwest"})

        kpis = self.client.get("/api/principals/kpis").get_json()
        self.assertEqual(kpis["total_principals"], 2)
        self.assertEqual(kpis["top_performers"][0]["principal_id"], "P1")

    def test_engagement_follow_ups_and_search_routes(self) -> None:
        self._seed_p1_activity()
        with self.app.app_context():
            db = get_db()
            insert_rows(
                db,
                "interactions",
                [{"id": "90", "principal_id": "P1", "organization_id": "ORG-1", "type": "MEETING",
                  "interaction_date": self._ago(30), "follow_up_required": 1,
                  "follow_up_date": iso(self.now + timedelta(days=3))}],
            )
            insert_rows(
                db,
                "contacts",
                [
                    {"id": "c-1", "organization_id": "P1", "first_name": "Ana", "last_name": "Reyes",
                     "updated_at": self._ago(5)},
                    {"id": "c-2", "organization_id": "P1", "first_name": "Bo", "last_name": "Lind",
                     "updated_at": self._ago(1)},
                ],
            )
        self._refresh("P1")
        self._refresh("P2")

        summary = self.client.get("/api/principals/P1/summary").get_json()
        self.assertEqual(summary["contact_count"], 2)
        self.assertEqual(summary["primary_contact_name"], "Bo Lind")
        self.assertEqual(summary["interactions_last_90_days"], 6)
        self.assertEqual(summary["follow_ups_required"], 1)

        breakdown = self.client.get("/api/principals/engagement-breakdown").get_json()
        self.assertEqual(sum(breakdown.values()), 2)
        self.assertEqual(breakdown["inactive"], 1)

        follow_ups = self.client.get("/api/principals/follow-ups").get_json()["items"]
        self.assertEqual([item["principal_id"] for item in follow_ups], ["P1"])

        active = self.client.get("/api/principals/search?q=a").get_json()["items"]
        self.assertEqual([item["principal_id"] for item in active], ["P1"])
        everyone = self.client.get("/api/principals/search", query_string={"q": "A", "active_only": "false"})
        self.assertEqual([item["principal_id"] for item in everyone.get_json()["items"]], ["P1", "P2"])
        limited = self.client.get("/api/principals/search?q=a&active_only=0&limit=1").get_json()["items"]
        self.assertEqual(len(limited), 1)
        self.assertEqual(self.client.get("/api/principals/search?q=bella").get_json()["items"], [])
        self.assertEqual(self.client.get("/api/principals/search?limit=x").status_code, 400)

    def test_refresh_of_unknown_principal_is_discarded(self) -> None:
        response = self._refresh("ORG-1")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "discarded")
        self.assertEqual(self.client.get("/api/principals/ORG-1/summary").status_code, 404)

    def test_refresh_without_waiting_is_accepted(self) -> None:
        response = self._refresh("P1", wait=False)
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.get_json()["status"], "accepted")

    def test_invalid_query_parameters_return_400(self) -> None:
        self._refresh("P1")
        for path in (
            "/api/principals/P1/timeline?limit=abc",
            "/api/principals/P1/timeline?event_types=meeting",
            "/api/principals/P1/timeline?cursor=bad",
            "/api/principals/P1/timeline?start=yesterday",
            "/api/principals/kpis?activity_status=sleepy",
        ):
            response = self.client.get(path)
            self.assertEqual(response.status_code, 400, path)
            self.assertIn("error", response.get_json())

    def test_request_id_header_is_echoed(self) -> None:
        response = self.client.get("/health", headers={"X-Request-Id": "req-123"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["X-Request-Id"], "req-123")
        self.assertTrue(response.get_json()["engine"]["enabled"])


class BackgroundRefreshApiTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_event_bus_for_tests()
        reset_metrics_for_tests()
        self.sandbox = TempDbSandbox(prefix="principal_activity_background")
        self.app = create_app(self.sandbox.make_config(Config, TESTING=True, REFRESH_COALESCE_SECONDS=0))
        self.client = self.app.test_client()
        self.engine = get_engine(self.app)
        self.engine.scheduler.start()
        now = datetime.now(timezone.utc).replace(microsecond=0)
        with self.app.app_context():
            db = get_db()
            insert_rows(db, "organizations", [{"id": "P1", "name": "Acme Foods", "is_principal": 1}])
            insert_rows(
                db,
                "interactions",
                [
                    {"id": str(index), "principal_id": "P1", "type": "CALL",
                     "interaction_date": iso(now - timedelta(days=index))}
                    for index in range(1, 6)
                ],
            )

    def tearDown(self) -> None:
        self.engine.shutdown()
        reset_event_bus_for_tests()
        self.sandbox.cleanup()

    def test_change_event_rebuilds_without_explicit_refresh(self) -> None:
        self.assertEqual(self.client.get("/api/principals/P1/summary").status_code, 404)

        get_event_bus().publish(InteractionChanged(interaction_id="5", principal_id="P1", operation="insert"))

        self.assertTrue(self.engine.scheduler.wait_idle(timeout=5))
        response = self.client.get("/api/principals/P1/summary")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["total_interactions"], 5)
        self.assertEqual(response.get_json()["version"], 1)


class DisabledEngineApiTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_event_bus_for_tests()
        self.sandbox = TempDbSandbox(prefix="principal_activity_disabled")
        self.app = create_app(self.sandbox.make_config(Config, TESTING=True, ACTIVITY_ENGINE_ENABLED=False))
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        self.sandbox.cleanup()

    def test_routes_answer_service_unavailable(self) -> None:
        for method, path in (
            ("get", "/api/principals/P1/summary"),
            ("get", "/api/principals/kpis"),
            ("post", "/api/principals/P1/refresh"),
        ):
            response = getattr(self.client, method)(path)
            self.assertEqual(response.status_code, 503, path)
            body = response.get_json()
            self.assertEqual(body["error"], "engine_unavailable")
            self.assertEqual(response.headers["X-Request-Id"], body["request_id"])


if __name__ == "__main__":
    unittest.main()
