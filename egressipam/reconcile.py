import logging
from typing import Iterable, List, Optional

from . import config
from . import ipam
from .context import ReconcileContext
from .errors import combine_errors
from .hostsubnet import HostSubnetConverger
from .models import EgressIPAMPolicy
from .store import ClusterStore

logger = logging.getLogger(__name__)


class EgressIPAMReconciler:
    """Handles a convergence pass of an EgressIPAM: selection, planning, apply and cleanup."""

    store: ClusterStore
    converger: HostSubnetConverger
    ips_per_node: int
    extra_reserved_ips: List[str]

    def __init__(
        self,
        store: ClusterStore,
        ips_per_node: int = config.IPS_PER_NODE,
        extra_reserved_ips: Optional[Iterable[str]] = None,
        max_concurrent_writes: int = config.MAX_CONCURRENT_WRITES,
    ):
        self.store = store
        self.converger = HostSubnetConverger(store, max_concurrent_writes)
        self.ips_per_node = ips_per_node
        self.extra_reserved_ips = list(config.EXTRA_RESERVED_IPS if extra_reserved_ips is None else extra_reserved_ips)

    async def _load_context(self, policy: EgressIPAMPolicy) -> ReconcileContext:
        """Reads every HostSubnet and EgressIPAM. A failure here aborts the pass before any write."""
        all_subnets = await self.store.list_host_subnets()
        other_policies = [other for other in await self.store.list_policies() if other.name != policy.name]
        logger.debug(f"Loaded {len(all_subnets)} HostSubnets and {len(other_policies)} other EgressIPAMs")
        return ReconcileContext(policy=policy, other_policies=other_policies, all_subnets=all_subnets)

    def _select(self, ctx: ReconcileContext) -> None:
        ctx.selected_subnets, ctx.unselected_subnets, errors = ipam.select_subnets(
            ctx.policy, ctx.all_subnets, ctx.other_policies
        )
        ctx.errors.extend(errors)
        logger.info(
            f"EgressIPAM '{ctx.policy.name}' selects {len(ctx.selected_subnets)} of {len(ctx.all_subnets)} HostSubnets"
        )

    def _plan(self, ctx: ReconcileContext) -> None:
        ctx.reserved = ipam.reserved_addresses(
            ctx.policy, ctx.all_subnets, self.extra_reserved_ips, selected=ctx.selected_subnets
        )
        ctx.selected_nodes_by_cidr, ctx.final_ips_by_node, errors = ipam.plan_assignments(
            ctx.policy, ctx.selected_subnets, ctx.reserved, self.ips_per_node
        )
        ctx.errors.extend(errors)

    async def reconcile_policy(self, policy: EgressIPAMPolicy) -> ReconcileContext:
        """
        Runs one convergence pass for an already loaded policy.

        Every sweep runs even if an earlier one failed. Configuration errors
        and write failures are raised together at the end.

        Args:
            policy: The EgressIPAM to converge on.

        Returns:
            The pass's context, when nothing failed.

        Raises:
            RecordListError: HostSubnets or EgressIPAMs could not be listed.
            AggregateReconcileError: Anything else went wrong.
        """
        logger.info(f"--- Starting reconciliation of EgressIPAM '{policy.name}' ---")

        ctx = await self._load_context(policy)
        self._select(ctx)
        self._plan(ctx)

        ctx.errors.extend(await self.converger.assign_cidrs(ctx))
        ctx.errors.extend(await self.converger.assign_ips(ctx))
        ctx.errors.extend(await self.converger.clear_unselected(ctx))

        if ctx.errors:
            logger.warning(f"Reconciliation of EgressIPAM '{policy.name}' finished with {len(ctx.errors)} error(s)")
        combine_errors(ctx.errors)

        logger.info(f"--- Finished reconciliation of EgressIPAM '{policy.name}' ---")
        return ctx

    async def reconcile(self, name: str) -> Optional[ReconcileContext]:
        """
        Reconciles the named EgressIPAM.

        Args:
            name: The EgressIPAM's name.

        Returns:
            The pass's context, or None if the EgressIPAM no longer exists.
        """
        policy = await self.store.get_policy(name)
        if policy is None:
            logger.info(f"EgressIPAM '{name}' not found, nothing to reconcile.")
            return None
        return await self.reconcile_policy(policy)

