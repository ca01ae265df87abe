import logging
from typing import Dict, List, Optional, Sequence

import kr8s
from kr8s.asyncio.objects import Namespace

from .errors import InvalidPolicyError, RecordListError
from .kr8s_objects import EgressIPAM, HostSubnet, NetNamespace
from .models import EgressIPAMPolicy, HostSubnetRecord, NamespaceRecord, NetNamespaceRecord

logger = logging.getLogger(__name__)


class ClusterStore:
    """
    Reads and writes the cluster records the reconcilers work on.

    Every write is a merge patch carrying the resourceVersion the caller read,
    so the API server rejects it if the object changed in the meantime. Fields
    not named in a patch are left untouched.
    """

    async def get_policy(self, name: str) -> Optional[EgressIPAMPolicy]:
        """Returns the named EgressIPAM, or None if it no longer exists."""
        try:
            egressipam = await EgressIPAM.get(name)
        except kr8s.NotFoundError:
            return None
        return EgressIPAMPolicy.from_raw(egressipam.raw)

    async def list_policies(self) -> List[EgressIPAMPolicy]:
        """Lists every well-formed EgressIPAM. Malformed ones are logged and skipped."""
        try:
            objs = [obj async for obj in kr8s.asyncio.get("egressipams")]
        except Exception as e:
            raise RecordListError("egressipams", e) from e
        policies = []
        for obj in objs:
            try:
                policies.append(EgressIPAMPolicy.from_raw(obj.raw))
            except InvalidPolicyError as e:
                logger.warning(f"Skipping {e}")
        return policies

    async def list_host_subnets(self) -> Dict[str, HostSubnetRecord]:
        """Lists every HostSubnet, keyed by name."""
        try:
            objs = [obj async for obj in kr8s.asyncio.get("hostsubnets")]
        except Exception as e:
            raise RecordListError("hostsubnets", e) from e
        records = {}
        for obj in objs:
            record = HostSubnetRecord.from_object(obj)
            records[record.name] = record
        return records

    async def update_host_subnet(
        self,
        record: HostSubnetRecord,
        egress_cidrs: Optional[Sequence[str]] = None,
        egress_ips: Optional[Sequence[str]] = None,
    ) -> HostSubnetRecord:
        """Writes the given egress fields and returns the record as stored afterwards."""
        patch: dict = {"metadata": {"resourceVersion": record.resource_version}}
        if egress_cidrs is not None:
            patch["egressCIDRs"] = list(egress_cidrs)
        if egress_ips is not None:
            patch["egressIPs"] = list(egress_ips)
        obj = record.obj if record.obj is not None else await HostSubnet.get(record.name)
        await obj.patch(patch)
        return HostSubnetRecord.from_object(obj)

    async def get_namespace(self, name: str) -> Optional[NamespaceRecord]:
        try:
            namespace = await Namespace.get(name)
        except kr8s.NotFoundError:
            return None
        return NamespaceRecord.from_object(namespace)

    async def get_net_namespace(self, name: str) -> Optional[NetNamespaceRecord]:
        try:
            netnamespace = await NetNamespace.get(name)
        except kr8s.NotFoundError:
            return None
        return NetNamespaceRecord.from_object(netnamespace)

    async def clear_net_namespace_egress_ips(self, record: NetNamespaceRecord) -> NetNamespaceRecord:
        obj = record.obj if record.obj is not None else await NetNamespace.get(record.name)
        await obj.patch({"metadata": {"resourceVersion": record.resource_version}, "egressIPs": []})
        return NetNamespaceRecord.from_object(obj)

    async def remove_namespace_annotation(self, record: NamespaceRecord, key: str) -> NamespaceRecord:
        obj = record.obj if record.obj is not None else await Namespace.get(record.name)
        # A null value deletes the key under merge patch semantics
        await obj.patch({"metadata": {"resourceVersion": record.resource_version, "annotations": {key: None}}})
        return NamespaceRecord.from_object(obj)
