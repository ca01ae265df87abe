import ipaddress
import logging
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from . import config
from .errors import AllocationShortfallError, AmbiguousCIDRMatchError, ConfigurationError, InvalidCIDRError
from .models import EgressIPAMPolicy, HostSubnetRecord

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_network(cidr: str) -> Optional[IPNetwork]:
    """Parses a CIDR, tolerating host bits. Returns None when malformed."""
    try:
        return ipaddress.ip_network(cidr.strip(), strict=False)
    except (ValueError, AttributeError):
        return None


def parse_address(address: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(address.strip())
    except (ValueError, AttributeError):
        return None


def invalid_cidrs(policy: EgressIPAMPolicy) -> List[InvalidCIDRError]:
    """Returns one error per cidrAssignments entry that does not parse."""
    return [
        InvalidCIDRError(policy.name, assignment.cidr)
        for assignment in policy.cidr_assignments
        if parse_network(assignment.cidr) is None
    ]


def matching_cidrs(policy: EgressIPAMPolicy, address: str) -> List[str]:
    """All CIDRs of the policy containing the address, in declared order."""
    ip = parse_address(address)
    if ip is None:
        return []
    matches = []
    for assignment in policy.cidr_assignments:
        network = parse_network(assignment.cidr)
        # Malformed entries never match, but don't stop the valid ones after them
        if network is None or network.version != ip.version:
            continue
        if ip in network:
            matches.append(assignment.cidr)
    return matches


def match(policy: EgressIPAMPolicy, address: str) -> Tuple[bool, str]:
    """
    Decides whether an address falls under one of the policy's CIDRs.

    Args:
        policy: The EgressIPAM whose cidrAssignments are tried in order.
        address: A node address in text form.

    Returns:
        (True, cidr) for the first matching CIDR, (False, "") otherwise.
    """
    matches = matching_cidrs(policy, address)
    if matches:
        return True, matches[0]
    return False, ""


def select_subnets(
    policy: EgressIPAMPolicy,
    all_subnets: Dict[str, HostSubnetRecord],
    other_policies: Iterable[EgressIPAMPolicy] = (),
) -> Tuple[Dict[str, HostSubnetRecord], Dict[str, HostSubnetRecord], List[ConfigurationError]]:
    """
    Splits HostSubnets into those the policy governs and those to clean up.

    HostSubnets governed by one of the other policies belong to neither set,
    so that passes of different EgressIPAMs never undo each other.

    Returns:
        (selected, unselected, errors) where errors lists malformed CIDRs and
        nodes matching more than one CIDR.
    """
    other_policies = [other for other in other_policies if other.name != policy.name]
    errors: List[ConfigurationError] = list(invalid_cidrs(policy))
    for error in errors:
        logger.warning(str(error))

    selected: Dict[str, HostSubnetRecord] = {}
    unselected: Dict[str, HostSubnetRecord] = {}
    for name in sorted(all_subnets):
        subnet = all_subnets[name]
        if parse_address(subnet.host_ip) is None:
            logger.warning(f"HostSubnet '{name}' has unparsable hostIP '{subnet.host_ip}', treating it as out of scope.")
            unselected[name] = subnet
            continue
        matches = matching_cidrs(policy, subnet.host_ip)
        if not matches:
            owners = [other.name for other in other_policies if match(other, subnet.host_ip)[0]]
            if owners:
                logger.debug(f"HostSubnet '{name}' belongs to EgressIPAM '{owners[0]}', leaving it alone.")
            else:
                unselected[name] = subnet
            continue
        if len(matches) > 1:
            error = AmbiguousCIDRMatchError(name, matches)
            logger.warning(str(error))
            errors.append(error)
        selected[name] = subnet
    return selected, unselected, errors


def group_nodes_by_cidr(policy: EgressIPAMPolicy, selected: Dict[str, HostSubnetRecord]) -> Dict[str, List[str]]:
    """Maps each CIDR to the sorted names of the nodes it selects."""
    nodes_by_cidr: Dict[str, List[str]] = {}
    for name in sorted(selected):
        matched, cidr = match(policy, selected[name].host_ip)
        if matched:
            nodes_by_cidr.setdefault(cidr, []).append(name)
    return nodes_by_cidr


def reserved_addresses(
    policy: EgressIPAMPolicy,
    all_subnets: Dict[str, HostSubnetRecord],
    extra: Iterable[str] = (),
    selected: Optional[Dict[str, HostSubnetRecord]] = None,
) -> Set[IPAddress]:
    """
    Builds the set of addresses that must never be handed out.

    That is every node's own hostIP, the policy's reservedIPs, any operator
    configured extras and, when selected is given, the egress IPs still held
    by every HostSubnet outside it. Unparsable entries are ignored.
    """
    candidates: List[str] = [subnet.host_ip for subnet in all_subnets.values()]
    if selected is not None:
        for name, subnet in all_subnets.items():
            if name not in selected:
                candidates.extend(subnet.egress_ips)
    for assignment in policy.cidr_assignments:
        candidates.extend(assignment.reserved_ips)
    candidates.extend(extra)

    reserved: Set[IPAddress] = set()
    for candidate in candidates:
        ip = parse_address(candidate)
        if ip is None:
            logger.warning(f"Ignoring unparsable reserved address '{candidate}'")
            continue
        reserved.add(ip)
    return reserved


def _host_addresses(network: IPNetwork) -> Iterator[IPAddress]:
    # hosts() skips the network address, and the broadcast address on IPv4
    # networks larger than /31
    return iter(network.hosts())


def _allocate_for_cidr(
    cidr: str,
    nodes: List[str],
    selected: Dict[str, HostSubnetRecord],
    reserved: Set[IPAddress],
    ips_per_node: int,
) -> Tuple[Dict[str, List[str]], Optional[AllocationShortfallError]]:
    network = parse_network(cidr)
    assert network is not None
    handed_out: Set[IPAddress] = set()
    assigned: Dict[str, List[IPAddress]] = {}

    def usable(ip: Optional[IPAddress]) -> bool:
        return ip is not None and ip.version == network.version and ip in network and ip not in reserved and ip not in handed_out

    # Keep current addresses that are still valid so that nodes joining or
    # leaving the CIDR do not shuffle everybody else's egress IPs.
    for node in nodes:
        kept: List[IPAddress] = []
        current_ips = {ip for ip in map(parse_address, selected[node].egress_ips) if ip is not None}
        for current in sorted(ip for ip in current_ips if ip.version == network.version):
            if len(kept) >= ips_per_node:
                break
            if usable(current):
                kept.append(current)
                handed_out.add(current)
        assigned[node] = kept

    pool = _host_addresses(network)
    shortfall: List[str] = []
    for node in nodes:
        while len(assigned[node]) < ips_per_node:
            candidate = next(pool, None)
            if candidate is None:
                break
            if usable(candidate):
                assigned[node].append(candidate)
                handed_out.add(candidate)
        if len(assigned[node]) < ips_per_node:
            shortfall.append(node)

    result = {node: [str(ip) for ip in sorted(ips)] for node, ips in assigned.items()}
    error = AllocationShortfallError(cidr, shortfall) if shortfall else None
    return result, error


def plan_assignments(
    policy: EgressIPAMPolicy,
    selected: Dict[str, HostSubnetRecord],
    reserved: Set[IPAddress],
    ips_per_node: int = config.IPS_PER_NODE,
) -> Tuple[Dict[str, List[str]], Dict[str, List[str]], List[ConfigurationError]]:
    """
    Decides which CIDR and which egress IPs every selected node gets.

    Nodes are served in name order from each CIDR's host addresses, skipping
    the reserved set. A node keeps its current egress IPs when they are still
    valid. Nodes left without enough addresses are reported, never dropped.

    Args:
        policy: The EgressIPAM being reconciled.
        selected: The HostSubnets the policy governs, keyed by node name.
        reserved: Addresses that must not be allocated.
        ips_per_node: How many egress IPs each node receives.

    Returns:
        (selected_nodes_by_cidr, final_ips_by_node, errors)
    """
    nodes_by_cidr = group_nodes_by_cidr(policy, selected)
    final_ips: Dict[str, List[str]] = {}
    errors: List[ConfigurationError] = []

    for cidr in sorted(nodes_by_cidr):
        ips, error = _allocate_for_cidr(cidr, nodes_by_cidr[cidr], selected, reserved, ips_per_node)
        final_ips.update(ips)
        if error:
            logger.warning(str(error))
            errors.append(error)
        for node, node_ips in ips.items():
            logger.debug(f"Planned egress IPs {node_ips} for node '{node}' from CIDR '{cidr}'")

    return nodes_by_cidr, final_ips, errors
