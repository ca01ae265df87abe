from dataclasses import dataclass, field
from typing import Dict, List, Set

from .ipam import IPAddress
from .models import EgressIPAMPolicy, HostSubnetRecord


@dataclass
class ReconcileContext:
    """Working set of a single reconcile pass. Built fresh, never persisted."""

    policy: EgressIPAMPolicy
    other_policies: List[EgressIPAMPolicy] = field(default_factory=list)
    all_subnets: Dict[str, HostSubnetRecord] = field(default_factory=dict)
    selected_subnets: Dict[str, HostSubnetRecord] = field(default_factory=dict)
    unselected_subnets: Dict[str, HostSubnetRecord] = field(default_factory=dict)
    selected_nodes_by_cidr: Dict[str, List[str]] = field(default_factory=dict)
    final_ips_by_node: Dict[str, List[str]] = field(default_factory=dict)
    reserved: Set[IPAddress] = field(default_factory=set)
    errors: List[Exception] = field(default_factory=list)

    def refresh(self, record: HostSubnetRecord) -> None:
        """Replaces a record after a successful write so later sweeps see its new resourceVersion."""
        self.all_subnets[record.name] = record
        if record.name in self.selected_subnets:
            self.selected_subnets[record.name] = record
        if record.name in self.unselected_subnets:
            self.unselected_subnets[record.name] = record
