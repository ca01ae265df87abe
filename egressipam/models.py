from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidPolicyError


@dataclass(frozen=True)
class CIDRAssignment:
    """One entry of an EgressIPAM's spec.cidrAssignments."""

    cidr: str
    label_value: Optional[str] = None
    reserved_ips: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EgressIPAMPolicy:
    """Immutable view of an EgressIPAM, read once per pass."""

    name: str
    cidr_assignments: Tuple[CIDRAssignment, ...]
    topology_label: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "EgressIPAMPolicy":
        name = raw.get("metadata", {}).get("name", "")
        spec = raw.get("spec") or {}
        entries = spec.get("cidrAssignments") or []
        if not isinstance(entries, list):
            raise InvalidPolicyError("spec.cidrAssignments must be a list", name)

        assignments = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get("CIDR"):
                raise InvalidPolicyError(f"spec.cidrAssignments[{index}] has no CIDR", name)
            assignments.append(
                CIDRAssignment(
                    cidr=str(entry["CIDR"]),
                    label_value=entry.get("labelValue"),
                    reserved_ips=tuple(str(ip) for ip in entry.get("reservedIPs") or []),
                )
            )
        return cls(name=name, cidr_assignments=tuple(assignments), topology_label=spec.get("topologyLabel"))


@dataclass(frozen=True)
class HostSubnetRecord:
    """A node's HostSubnet. Only egress_cidrs and egress_ips are ever written."""

    name: str
    host_ip: str
    egress_cidrs: Tuple[str, ...] = ()
    egress_ips: Tuple[str, ...] = ()
    resource_version: Optional[str] = None
    obj: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_object(cls, obj: Any) -> "HostSubnetRecord":
        raw = obj.raw
        metadata = raw.get("metadata", {})
        return cls(
            name=metadata.get("name") or raw.get("host", ""),
            host_ip=raw.get("hostIP", ""),
            egress_cidrs=tuple(raw.get("egressCIDRs") or ()),
            egress_ips=tuple(raw.get("egressIPs") or ()),
            resource_version=metadata.get("resourceVersion"),
            obj=obj,
        )


@dataclass(frozen=True)
class NetNamespaceRecord:
    """A namespace's NetNamespace."""

    name: str
    egress_ips: Tuple[str, ...] = ()
    resource_version: Optional[str] = None
    obj: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_object(cls, obj: Any) -> "NetNamespaceRecord":
        raw = obj.raw
        metadata = raw.get("metadata", {})
        return cls(
            name=metadata.get("name") or raw.get("netname", ""),
            egress_ips=tuple(raw.get("egressIPs") or ()),
            resource_version=metadata.get("resourceVersion"),
            obj=obj,
        )


@dataclass(frozen=True)
class NamespaceRecord:
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None
    obj: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_object(cls, obj: Any) -> "NamespaceRecord":
        metadata = obj.raw.get("metadata", {})
        return cls(
            name=metadata.get("name", ""),
            annotations=dict(metadata.get("annotations") or {}),
            resource_version=metadata.get("resourceVersion"),
            obj=obj,
        )
