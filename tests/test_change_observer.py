import unittest

from activity_engine.contexts.principal_activity.application.observer import ChangeObserver
from activity_engine.core import (
    DistributorRelationshipChanged,
    EventBus,
    ContactChanged,
    InteractionChanged,
    OpportunityChanged,
    OrganizationChanged,
    ProductAssociationChanged,
    RefreshRequested,
    SourceRecordChanged,
)


class ChangeObserverTest(unittest.TestCase):
    def setUp(self) -> None:
        self.bus = EventBus()
        self.refreshed: list[str] = []
        self.signals: list[RefreshRequested] = []
        self.bus.subscribe(RefreshRequested, self.signals.append)
        self.observer = ChangeObserver(self.bus, refresh_sink=self.refreshed.append)
        self.observer.register()

    def test_interaction_change_refreshes_its_principal(self) -> None:
        self.bus.publish(InteractionChanged(interaction_id="12", principal_id="P1", operation="insert"))

        self.assertEqual(self.refreshed, ["P1"])
        self.assertEqual(len(self.signals), 1)
        self.assertEqual(self.signals[0].source_entity_type, "interaction")
        self.assertEqual(self.signals[0].source_entity_id, "12")

    def test_reassigned_opportunity_refreshes_both_principals(self) -> None:
        self.bus.publish(OpportunityChanged(opportunity_id="5", principal_id="P2", previous_principal_id="P1"))
        self.assertEqual(self.refreshed, ["P2", "P1"])

    def test_product_and_distributor_changes(self) -> None:
        self.bus.publish(ProductAssociationChanged(product_id="prod-1", principal_id="P1"))
        self.bus.publish(DistributorRelationshipChanged(principal_id="P3", distributor_id="D1"))
        self.assertEqual(self.refreshed, ["P1", "P3"])

    def test_contact_change_refreshes_current_and_previous_organization(self) -> None:
        self.bus.publish(ContactChanged(contact_id="c-1", organization_id="P2", previous_organization_id="P1"))
        self.bus.publish(ContactChanged(contact_id="c-2", organization_id="P2", operation="delete"))

        self.assertEqual(self.refreshed, ["P2", "P1", "P2"])
        self.assertEqual(self.signals[0].source_entity_type, "contact")
        self.assertEqual(self.signals[0].source_entity_id, "c-1")

    def test_organization_change_covers_own_and_related_principals(self) -> None:
        self.bus.publish(OrganizationChanged(organization_id="P4", was_principal=True, related_principal_ids=("P1",)))
        self.bus.publish(OrganizationChanged(organization_id="ORG-9", related_principal_ids=("P2", "P2")))
        self.assertEqual(self.refreshed, ["P4", "P1", "P2"])

    def test_generic_source_change_and_direct_notify(self) -> None:
        self.bus.publish(
            SourceRecordChanged(entity_type="opportunity_stage_change", entity_id="s1", affected_principal_ids=("P1", "P2"))
        )
        self.observer.notify("interaction", "44", ["P3", None, "P3", " "])
        self.assertEqual(self.refreshed, ["P1", "P2", "P3"])

    def test_change_without_principals_is_ignored(self) -> None:
        self.bus.publish(InteractionChanged(interaction_id="12"))
        self.assertEqual(self.refreshed, [])
        self.assertEqual(self.signals, [])

    def test_failing_sink_is_logged_and_does_not_stop_other_principals(self) -> None:
        calls = []

        def flaky_sink(principal_id: str) -> None:
            calls.append(principal_id)
            if principal_id == "P1":
                raise RuntimeError("queue unavailable")

        observer = ChangeObserver(EventBus(), refresh_sink=flaky_sink)
        with self.assertLogs("activity_engine", level="ERROR"):
            observer.notify("opportunity", "5", ["P1", "P2"])
        self.assertEqual(calls, ["P1", "P2"])

    def test_unregister_stops_forwarding(self) -> None:
        self.observer.unregister()
        self.bus.publish(InteractionChanged(interaction_id="12", principal_id="P1"))
        self.assertEqual(self.refreshed, [])


if __name__ == "__main__":
    unittest.main()
