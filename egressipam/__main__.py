import asyncio
import functools
import logging
from typing import Dict, Iterable, List, Set
from urllib.parse import urlparse

import kr8s
import yaml
from kr8s.asyncio.objects import ConfigMap

from . import config
from .hostsubnet import same_cidrs
from .ipam import match
from .models import EgressIPAMPolicy, HostSubnetRecord
from .namespace import AssociationTracker, NamespaceCleaner
from .reconcile import EgressIPAMReconciler
from .store import ClusterStore

logger = logging.getLogger(__name__)


async def get_cluster_hostname() -> str:
    """
    Retrieves the API server hostname from the cluster-info ConfigMap.

    Returns:
        The cluster hostname, or an empty string if cluster-info is not published.
    """
    try:
        cluster_info = await ConfigMap.get("cluster-info", "kube-public")
    except kr8s.NotFoundError:
        return ""
    kubeconfig_data = yaml.safe_load(cluster_info.data["kubeconfig"])
    server_url = kubeconfig_data["clusters"][0]["cluster"]["server"]
    return urlparse(server_url).hostname or ""


class PendingPolicies:
    """Names of EgressIPAMs waiting for a pass, plus the event that wakes the worker."""

    def __init__(self):
        self.names: Set[str] = set()
        self.event = asyncio.Event()

    def add(self, name: str) -> None:
        self.names.add(name)
        self.event.set()

    def take(self) -> Set[str]:
        names, self.names = self.names, set()
        self.event.clear()
        return names


async def reconciliation_worker(pending: PendingPolicies, reconciler: EgressIPAMReconciler) -> None:
    """
    Waits for pending EgressIPAMs, then reconciles each of them in turn.

    Being the only worker, it never runs two passes of the same EgressIPAM
    at once. A failed pass is put back after the requeue delay.

    Args:
        pending: The queue of EgressIPAM names to reconcile.
        reconciler: The reconciler running the passes.
    """
    loop = asyncio.get_running_loop()
    while True:
        await pending.event.wait()
        logger.info(f"Change detected, waiting {config.DEBOUNCE_DELAY_SECONDS}s for debounce period...")
        await asyncio.sleep(config.DEBOUNCE_DELAY_SECONDS)

        for name in sorted(pending.take()):
            try:
                await reconciler.reconcile(name)
            except Exception as e:
                logger.error(f"Error during reconciliation of EgressIPAM '{name}': {e}")
                logger.info(f"Requeueing EgressIPAM '{name}' in {config.REQUEUE_DELAY_SECONDS}s")
                loop.call_later(config.REQUEUE_DELAY_SECONDS, pending.add, name)
        logger.info("--- Reconciliation round complete. Awaiting next change. ---")


async def policy_watcher(pending: PendingPolicies) -> None:
    """Watches EgressIPAMs and queues every one that changes."""
    while True:
        try:
            async for evt, egressipam in kr8s.asyncio.watch("egressipams"):
                if evt == "DELETED":
                    continue
                logger.info(f"EgressIPAM '{egressipam.name}' event: '{evt}'. Triggering reconciliation.")
                pending.add(egressipam.name)
        except Exception as e:
            logger.error(f"Error in EgressIPAM watch loop: {e}. Reconnecting in {config.WATCH_RETRY_SECONDS} seconds.")
            await asyncio.sleep(config.WATCH_RETRY_SECONDS)


def policies_for_subnet(policies: Iterable[EgressIPAMPolicy], subnet: HostSubnetRecord) -> List[str]:
    """
    Names the EgressIPAMs a HostSubnet event concerns.

    That is every EgressIPAM whose CIDRs contain the node's address, and every
    EgressIPAM whose CIDR the HostSubnet still carries, so that a node moving
    out of scope gets cleaned up.
    """
    names = []
    for policy in policies:
        matched, _ = match(policy, subnet.host_ip)
        holds_cidr = any(same_cidrs([a.cidr], [cidr]) for a in policy.cidr_assignments for cidr in subnet.egress_cidrs)
        if matched or holds_cidr:
            names.append(policy.name)
    return names


async def hostsubnet_watcher(pending: PendingPolicies, store: ClusterStore) -> None:
    """Watches HostSubnets and queues the EgressIPAMs they concern."""
    while True:
        try:
            async for evt, obj in kr8s.asyncio.watch("hostsubnets"):
                subnet = HostSubnetRecord.from_object(obj)
                for name in policies_for_subnet(await store.list_policies(), subnet):
                    logger.info(f"HostSubnet '{subnet.name}' event: '{evt}'. Triggering reconciliation of '{name}'.")
                    pending.add(name)
        except Exception as e:
            logger.error(f"Error in HostSubnet watch loop: {e}. Reconnecting in {config.WATCH_RETRY_SECONDS} seconds.")
            await asyncio.sleep(config.WATCH_RETRY_SECONDS)


async def cleanup_with_retry(cleaner: NamespaceCleaner, name: str) -> None:
    """Runs the namespace cleanup until it succeeds, pausing the requeue delay between attempts."""
    while True:
        try:
            await cleaner.cleanup(name)
            return
        except Exception as e:
            logger.error(f"Error cleaning up namespace '{name}': {e}. Retrying in {config.REQUEUE_DELAY_SECONDS}s.")
            await asyncio.sleep(config.REQUEUE_DELAY_SECONDS)


class CleanupScheduler:
    """Runs at most one cleanup task per namespace."""

    def __init__(self, cleaner: NamespaceCleaner):
        self.cleaner = cleaner
        self.running: Dict[str, asyncio.Task] = {}

    def schedule(self, name: str) -> bool:
        """Starts a cleanup of the namespace unless one is already running. Returns whether it started one."""
        task = self.running.get(name)
        if task is not None and not task.done():
            logger.info(f"Cleanup of namespace '{name}' already in progress.")
            return False
        task = asyncio.create_task(cleanup_with_retry(self.cleaner, name))
        self.running[name] = task
        task.add_done_callback(functools.partial(self._forget, name))
        return True

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self.running.get(name) is task:
            del self.running[name]


async def namespace_watcher(cleaner: NamespaceCleaner) -> None:
    """Watches Namespaces and cleans up those whose EgressIPAM association annotation was removed."""
    tracker = AssociationTracker()
    scheduler = CleanupScheduler(cleaner)
    while True:
        try:
            async for evt, namespace in kr8s.asyncio.watch("namespaces"):
                annotations = namespace.raw.get("metadata", {}).get("annotations")
                if tracker.observe(evt, namespace.name, annotations):
                    logger.info(f"Namespace '{namespace.name}' lost its EgressIPAM association. Cleaning up.")
                    scheduler.schedule(namespace.name)
        except Exception as e:
            logger.error(f"Error in Namespace watch loop: {e}. Reconnecting in {config.WATCH_RETRY_SECONDS} seconds.")
            await asyncio.sleep(config.WATCH_RETRY_SECONDS)


class EgressIPAMApp:
    """Main application class for the egressipam controller."""

    def __init__(self):
        self.cluster_hostname: str = ""
        self.store = ClusterStore()
        self.reconciler = EgressIPAMReconciler(self.store)
        self.cleaner = NamespaceCleaner(self.store)

    async def setup(self) -> None:
        """Sets up the application, including fetching cluster hostname."""
        self.cluster_hostname = await get_cluster_hostname()
        if self.cluster_hostname:
            logger.info(f"Operating on cluster: {self.cluster_hostname}")

    async def run(self) -> None:
        """Runs the main application loop."""
        await self.setup()

        pending = PendingPolicies()
        tasks = [
            asyncio.create_task(policy_watcher(pending)),
            asyncio.create_task(hostsubnet_watcher(pending, self.store)),
            asyncio.create_task(namespace_watcher(self.cleaner)),
            asyncio.create_task(reconciliation_worker(pending, self.reconciler)),
        ]

        # No initial reconciliation trigger needed since EgressIPAMs appear as
        # ADDED when the watch is started
        await asyncio.gather(*tasks)


def cli():
    """Main command-line entrypoint."""
    app = EgressIPAMApp()
    try:
        asyncio.run(app.run())
    except (KeyboardInterrupt, SystemExit) as e:
        if isinstance(e, SystemExit) and e.code == 0:
            logger.info("Exiting normally.")
        elif isinstance(e, SystemExit):
            logger.error(f"Exiting due to fatal error (code {e.code}).")
        else:
            logger.info("Exiting.")


if __name__ == "__main__":
    cli()
