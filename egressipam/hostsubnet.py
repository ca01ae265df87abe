import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from . import config
from .context import ReconcileContext
from .errors import RecordUpdateError
from .ipam import parse_address, parse_network
from .models import HostSubnetRecord
from .store import ClusterStore

logger = logging.getLogger(__name__)

# A unit returns the record as written, or None when no write was needed
Unit = Callable[[], Awaitable[Optional[HostSubnetRecord]]]


def _normalize_ip(value: str) -> str:
    ip = parse_address(value)
    return str(ip) if ip is not None else value


def _normalize_cidr(value: str) -> str:
    network = parse_network(value)
    return str(network) if network is not None else value


def same_ips(current: Iterable[str], desired: Iterable[str]) -> bool:
    """Order insensitive comparison of two egress IP lists."""
    return {_normalize_ip(ip) for ip in current} == {_normalize_ip(ip) for ip in desired}


def same_cidrs(current: Iterable[str], desired: Iterable[str]) -> bool:
    """Order insensitive comparison of two egress CIDR lists."""
    return {_normalize_cidr(cidr) for cidr in current} == {_normalize_cidr(cidr) for cidr in desired}


def sorted_ips(ips: Iterable[str]) -> List[str]:
    """Sorts addresses numerically, IPv4 first, unparsable ones last."""

    def key(value: str) -> Tuple[int, int, str]:
        ip = parse_address(value)
        if ip is None:
            return (7, 0, value)
        return (ip.version, int(ip), value)

    return sorted(ips, key=key)


class HostSubnetConverger:
    """
    Brings HostSubnet egressCIDRs and egressIPs in line with a plan.

    Each sweep launches one task per record. Every task compares the record
    with its desired state and writes only on a mismatch. Outcomes go through
    a queue sized to the number of tasks and the sweep drains exactly that
    many before returning, so every record is attempted even when some fail.
    """

    store: ClusterStore
    max_concurrent_writes: int

    def __init__(self, store: ClusterStore, max_concurrent_writes: int = config.MAX_CONCURRENT_WRITES):
        self.store = store
        self.max_concurrent_writes = max_concurrent_writes

    async def _sweep(self, ctx: ReconcileContext, units: Dict[str, Unit]) -> List[RecordUpdateError]:
        if not units:
            return []

        results: asyncio.Queue = asyncio.Queue(maxsize=len(units))
        limit = asyncio.Semaphore(self.max_concurrent_writes) if self.max_concurrent_writes > 0 else None

        async def run(name: str, unit: Unit) -> None:
            try:
                if limit is None:
                    record = await unit()
                else:
                    async with limit:
                        record = await unit()
                await results.put((name, record, None))
            except Exception as e:
                await results.put((name, None, RecordUpdateError("hostsubnet", name, e)))

        tasks = [asyncio.create_task(run(name, unit)) for name, unit in units.items()]

        errors: List[RecordUpdateError] = []
        for _ in tasks:
            name, record, error = await results.get()
            if error is not None:
                logger.error(str(error))
                errors.append(error)
            elif record is not None:
                ctx.refresh(record)
        return errors

    async def assign_cidrs(self, ctx: ReconcileContext) -> List[RecordUpdateError]:
        """Makes every selected HostSubnet's egressCIDRs exactly its matching CIDR."""
        units: Dict[str, Unit] = {}
        for cidr, nodes in ctx.selected_nodes_by_cidr.items():
            for node in nodes:
                units[node] = self._cidr_unit(ctx.selected_subnets[node], cidr)
        return await self._sweep(ctx, units)

    def _cidr_unit(self, subnet: HostSubnetRecord, cidr: str) -> Unit:
        async def unit() -> Optional[HostSubnetRecord]:
            if same_cidrs(subnet.egress_cidrs, [cidr]):
                return None
            logger.info(f"Setting egressCIDRs of HostSubnet '{subnet.name}' to ['{cidr}']")
            return await self.store.update_host_subnet(subnet, egress_cidrs=[cidr])

        return unit

    async def assign_ips(self, ctx: ReconcileContext) -> List[RecordUpdateError]:
        """Makes every selected HostSubnet's egressIPs exactly its planned IPs."""
        units: Dict[str, Unit] = {
            name: self._ips_unit(subnet, ctx.final_ips_by_node.get(name, []))
            for name, subnet in ctx.selected_subnets.items()
        }
        return await self._sweep(ctx, units)

    def _ips_unit(self, subnet: HostSubnetRecord, ips: List[str]) -> Unit:
        async def unit() -> Optional[HostSubnetRecord]:
            if same_ips(subnet.egress_ips, ips):
                return None
            desired = sorted_ips(ips)
            logger.info(f"Setting egressIPs of HostSubnet '{subnet.name}' to {desired}")
            return await self.store.update_host_subnet(subnet, egress_ips=desired)

        return unit

    async def clear_unselected(self, ctx: ReconcileContext) -> List[RecordUpdateError]:
        """Empties egressCIDRs and egressIPs on every HostSubnet the policy no longer governs."""
        units: Dict[str, Unit] = {name: self._clear_unit(subnet) for name, subnet in ctx.unselected_subnets.items()}
        return await self._sweep(ctx, units)

    def _clear_unit(self, subnet: HostSubnetRecord) -> Unit:
        async def unit() -> Optional[HostSubnetRecord]:
            if not subnet.egress_cidrs and not subnet.egress_ips:
                return None
            logger.info(f"HostSubnet '{subnet.name}' is out of scope. Clearing its egressCIDRs and egressIPs.")
            return await self.store.update_host_subnet(subnet, egress_cidrs=[], egress_ips=[])

        return unit
