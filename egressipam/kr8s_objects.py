from kr8s.asyncio.objects import new_class

EgressIPAM = new_class(
    kind="EgressIPAM",
    version="redhatcop.redhat.io/v1alpha1",
    namespaced=False,
    plural="egressipams",
)

HostSubnet = new_class(
    kind="HostSubnet",
    version="network.openshift.io/v1",
    namespaced=False,
    plural="hostsubnets",
)

NetNamespace = new_class(
    kind="NetNamespace",
    version="network.openshift.io/v1",
    namespaced=False,
    plural="netnamespaces",
)
