import unittest

from egressipam import config
from egressipam.errors import AggregateReconcileError
from egressipam.namespace import AssociationTracker, NamespaceCleaner, association_removed

from fakes import FakeStore

ASSOCIATED = {config.NAMESPACE_ANNOTATION: "egress"}


class TestAssociationRemoved(unittest.TestCase):
    def test_only_present_to_absent_triggers(self) -> None:
        self.assertTrue(association_removed(ASSOCIATED, {}))
        self.assertTrue(association_removed(ASSOCIATED, None))
        self.assertFalse(association_removed(ASSOCIATED, ASSOCIATED))
        self.assertFalse(association_removed({}, ASSOCIATED))
        self.assertFalse(association_removed(None, {}))


class TestAssociationTracker(unittest.TestCase):
    def test_tracks_transitions_from_a_watch_stream(self) -> None:
        tracker = AssociationTracker()
        self.assertFalse(tracker.observe("ADDED", "team-a", ASSOCIATED))
        self.assertFalse(tracker.observe("MODIFIED", "team-a", dict(ASSOCIATED, other="x")))
        self.assertTrue(tracker.observe("MODIFIED", "team-a", {"other": "x"}))
        self.assertFalse(tracker.observe("MODIFIED", "team-a", {}))

    def test_create_and_delete_never_trigger(self) -> None:
        tracker = AssociationTracker()
        self.assertFalse(tracker.observe("ADDED", "team-a", {}))
        self.assertFalse(tracker.observe("ADDED", "team-b", ASSOCIATED))
        self.assertFalse(tracker.observe("DELETED", "team-b", {}))
        self.assertNotIn("team-b", tracker.annotations)

    def test_unknown_namespace_does_not_trigger(self) -> None:
        self.assertFalse(AssociationTracker().observe("MODIFIED", "team-a", {}))

    def test_removal_seen_on_relist_triggers(self) -> None:
        # After a reconnect the watch replays current state as ADDED events
        tracker = AssociationTracker()
        self.assertFalse(tracker.observe("ADDED", "team-a", ASSOCIATED))
        self.assertTrue(tracker.observe("ADDED", "team-a", {}))
        self.assertFalse(tracker.observe("ADDED", "team-a", {}))


class TestNamespaceCleaner(unittest.IsolatedAsyncioTestCase):
    async def test_clears_egress_ips_and_association_annotation(self) -> None:
        store = FakeStore()
        store.add_namespace("team-a", {config.NAMESPACE_ASSOCIATION_ANNOTATION: "10.1.0.1", "keep": "me"}, ["10.1.0.1"])

        await NamespaceCleaner(store).cleanup("team-a")

        self.assertEqual(store.net_namespaces["team-a"].egress_ips, ())
        self.assertEqual(store.namespaces["team-a"].annotations, {"keep": "me"})
        self.assertEqual(store.writes, [("netnamespace", "team-a"), ("namespace", "team-a")])

    async def test_nothing_to_do(self) -> None:
        store = FakeStore()
        store.add_namespace("team-a")

        await NamespaceCleaner(store).cleanup("team-a")

        self.assertEqual(store.writes, [])

    async def test_only_one_write_when_only_one_is_stale(self) -> None:
        store = FakeStore()
        store.add_namespace("team-a", egress_ips=["10.1.0.1"])

        await NamespaceCleaner(store).cleanup("team-a")

        self.assertEqual(store.writes, [("netnamespace", "team-a")])

    async def test_missing_namespace_is_already_converged(self) -> None:
        store = FakeStore()

        await NamespaceCleaner(store).cleanup("gone")

        self.assertEqual(store.writes, [])

    async def test_missing_net_namespace_still_removes_annotation(self) -> None:
        store = FakeStore()
        store.add_namespace("team-a", {config.NAMESPACE_ASSOCIATION_ANNOTATION: "10.1.0.1"})
        del store.net_namespaces["team-a"]

        await NamespaceCleaner(store).cleanup("team-a")

        self.assertEqual(store.writes, [("namespace", "team-a")])
        self.assertEqual(store.namespaces["team-a"].annotations, {})

    async def test_failed_write_does_not_prevent_the_other(self) -> None:
        store = FakeStore()
        store.add_namespace("team-a", {config.NAMESPACE_ASSOCIATION_ANNOTATION: "10.1.0.1"}, ["10.1.0.1"])
        store.fail_updates.add("team-a")

        with self.assertRaises(AggregateReconcileError) as caught:
            await NamespaceCleaner(store).cleanup("team-a")

        self.assertEqual([e.kind for e in caught.exception.errors], ["netnamespace"])
        self.assertEqual(store.writes, [("namespace", "team-a")])
        self.assertEqual(store.namespaces["team-a"].annotations, {})


if __name__ == "__main__":
    unittest.main()
