import asyncio
import unittest

from egressipam.context import ReconcileContext
from egressipam.hostsubnet import HostSubnetConverger, same_cidrs, same_ips, sorted_ips
from egressipam.models import EgressIPAMPolicy

from fakes import FakeStore


def context_for(store: FakeStore, selected_nodes_by_cidr=None, final_ips_by_node=None, unselected=()) -> ReconcileContext:
    all_subnets = dict(store.host_subnets)
    ctx = ReconcileContext(policy=EgressIPAMPolicy(name="egress", cidr_assignments=()), all_subnets=all_subnets)
    ctx.unselected_subnets = {name: all_subnets[name] for name in unselected}
    ctx.selected_subnets = {name: s for name, s in all_subnets.items() if name not in ctx.unselected_subnets}
    ctx.selected_nodes_by_cidr = selected_nodes_by_cidr or {}
    ctx.final_ips_by_node = final_ips_by_node or {}
    return ctx


class TestSetEquality(unittest.TestCase):
    def test_ips_ignore_order(self) -> None:
        self.assertTrue(same_ips(["10.1.0.2", "10.1.0.1"], ["10.1.0.1", "10.1.0.2"]))
        self.assertFalse(same_ips(["10.1.0.1"], ["10.1.0.1", "10.1.0.2"]))
        self.assertTrue(same_ips([], []))

    def test_ips_compare_canonical_form(self) -> None:
        self.assertTrue(same_ips(["fd00:0:0:0::1"], ["fd00::1"]))

    def test_cidrs_ignore_order_and_duplicates(self) -> None:
        self.assertTrue(same_cidrs(["10.1.0.0/24", "10.1.0.0/24"], ["10.1.0.0/24"]))
        self.assertTrue(same_cidrs(["10.2.0.0/24", "10.1.0.0/24"], ["10.1.0.0/24", "10.2.0.0/24"]))
        self.assertFalse(same_cidrs([], ["10.1.0.0/24"]))

    def test_sorted_ips_is_numeric(self) -> None:
        self.assertEqual(sorted_ips(["10.1.0.10", "10.1.0.9", "fd00::1", "10.1.0.1"]), ["10.1.0.1", "10.1.0.9", "10.1.0.10", "fd00::1"])


class TestHostSubnetConverger(unittest.IsolatedAsyncioTestCase):
    async def test_writes_only_records_that_differ(self) -> None:
        store = FakeStore()
        store.add_host_subnet("a", "10.1.0.5", egress_cidrs=["10.1.0.0/24"], egress_ips=["10.1.0.2", "10.1.0.1"])
        store.add_host_subnet("b", "10.1.0.9")
        ctx = context_for(
            store,
            selected_nodes_by_cidr={"10.1.0.0/24": ["a", "b"]},
            final_ips_by_node={"a": ["10.1.0.1", "10.1.0.2"], "b": ["10.1.0.3"]},
        )
        converger = HostSubnetConverger(store)

        self.assertEqual(await converger.assign_cidrs(ctx), [])
        self.assertEqual(await converger.assign_ips(ctx), [])

        self.assertEqual(store.writes_of("hostsubnet"), ["b", "b"])
        self.assertEqual(store.host_subnets["b"].egress_cidrs, ("10.1.0.0/24",))
        self.assertEqual(store.host_subnets["b"].egress_ips, ("10.1.0.3",))
        self.assertEqual(store.host_subnets["a"].egress_ips, ("10.1.0.2", "10.1.0.1"))

    async def test_ip_sweep_writes_against_refreshed_records(self) -> None:
        store = FakeStore()
        store.add_host_subnet("a", "10.1.0.5")
        ctx = context_for(store, selected_nodes_by_cidr={"10.1.0.0/24": ["a"]}, final_ips_by_node={"a": ["10.1.0.1"]})
        converger = HostSubnetConverger(store)

        self.assertEqual(await converger.assign_cidrs(ctx), [])
        self.assertEqual(await converger.assign_ips(ctx), [])
        self.assertEqual(ctx.selected_subnets["a"], store.host_subnets["a"])

    async def test_failure_does_not_stop_other_records(self) -> None:
        store = FakeStore()
        for name, ip in (("a", "10.1.0.5"), ("b", "10.1.0.6"), ("c", "10.1.0.7")):
            store.add_host_subnet(name, ip)
        store.fail_updates.add("b")
        ctx = context_for(store, selected_nodes_by_cidr={"10.1.0.0/24": ["a", "b", "c"]})

        errors = await HostSubnetConverger(store).assign_cidrs(ctx)

        self.assertEqual([e.name for e in errors], ["b"])
        self.assertIn("connection reset by peer", str(errors[0]))
        self.assertEqual(sorted(store.writes_of("hostsubnet")), ["a", "c"])

    async def test_stale_record_is_reported_as_conflict(self) -> None:
        store = FakeStore()
        store.add_host_subnet("a", "10.1.0.5")
        ctx = context_for(store, selected_nodes_by_cidr={"10.1.0.0/24": ["a"]})
        # Somebody else writes in between the read and our write
        await store.update_host_subnet(store.host_subnets["a"], egress_ips=["10.1.0.99"])

        errors = await HostSubnetConverger(store).assign_cidrs(ctx)

        self.assertEqual(len(errors), 1)
        self.assertIn("has been modified", str(errors[0]))

    async def test_clears_only_stale_unselected_records(self) -> None:
        store = FakeStore()
        store.add_host_subnet("a", "10.1.0.5", egress_cidrs=["10.1.0.0/24"], egress_ips=["10.1.0.1"])
        store.add_host_subnet("b", "10.1.0.9", egress_ips=["10.1.0.2"])
        store.add_host_subnet("c", "192.168.1.2")
        ctx = context_for(store, unselected=("a", "b", "c"))

        self.assertEqual(await HostSubnetConverger(store).clear_unselected(ctx), [])

        self.assertEqual(sorted(store.writes_of("hostsubnet")), ["a", "b"])
        for name in ("a", "b", "c"):
            self.assertEqual(store.host_subnets[name].egress_cidrs, ())
            self.assertEqual(store.host_subnets[name].egress_ips, ())

    async def test_units_run_concurrently(self) -> None:
        store = FakeStore()
        names = [f"node-{i}" for i in range(5)]
        for i, name in enumerate(names):
            store.add_host_subnet(name, f"10.1.0.{i + 10}")
        all_started = asyncio.Event()
        started = []
        update = store.update_host_subnet

        async def gated_update(record, **fields):
            started.append(record.name)
            if len(started) == len(names):
                all_started.set()
            await all_started.wait()
            return await update(record, **fields)

        store.update_host_subnet = gated_update
        ctx = context_for(store, selected_nodes_by_cidr={"10.1.0.0/24": names})

        errors = await asyncio.wait_for(HostSubnetConverger(store).assign_cidrs(ctx), timeout=5)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(store.writes_of("hostsubnet")), names)

    async def test_bounded_concurrency(self) -> None:
        store = FakeStore()
        names = [f"node-{i}" for i in range(6)]
        for i, name in enumerate(names):
            store.add_host_subnet(name, f"10.1.0.{i + 10}")
        in_flight = 0
        peak = 0
        update = store.update_host_subnet

        async def slow_update(record, **fields):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await update(record, **fields)

        store.update_host_subnet = slow_update
        ctx = context_for(store, selected_nodes_by_cidr={"10.1.0.0/24": names})

        errors = await HostSubnetConverger(store, max_concurrent_writes=2).assign_cidrs(ctx)

        self.assertEqual(errors, [])
        self.assertEqual(peak, 2)
        self.assertEqual(len(store.writes_of("hostsubnet")), 6)


if __name__ == "__main__":
    unittest.main()
