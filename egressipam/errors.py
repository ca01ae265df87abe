from typing import Iterable, List


class EgressIPAMError(Exception):
    """Base exception for egressipam operations."""

    pass


class ConfigurationError(EgressIPAMError):
    """A policy cannot be fully honoured as written. Never aborts a pass."""

    pass


class InvalidPolicyError(ConfigurationError):
    """The EgressIPAM object does not have the expected shape."""

    def __init__(self, message: str, policy: str):
        self.policy = policy
        super().__init__(f"EgressIPAM '{policy}' is invalid: {message}")


class InvalidCIDRError(ConfigurationError):
    """A cidrAssignments entry could not be parsed."""

    def __init__(self, policy: str, cidr: str):
        self.policy = policy
        self.cidr = cidr
        super().__init__(f"EgressIPAM '{policy}' has malformed CIDR '{cidr}', nodes in it will never be selected")


class AmbiguousCIDRMatchError(ConfigurationError):
    """A node address lies in more than one CIDR of the same policy."""

    def __init__(self, node: str, cidrs: List[str]):
        self.node = node
        self.cidrs = list(cidrs)
        super().__init__(f"Node '{node}' matches multiple CIDRs {self.cidrs}, using '{self.cidrs[0]}'")


class AllocationShortfallError(ConfigurationError):
    """A CIDR ran out of addresses before every selected node was served."""

    def __init__(self, cidr: str, nodes: List[str]):
        self.cidr = cidr
        self.nodes = list(nodes)
        super().__init__(f"CIDR '{cidr}' has no free addresses left for nodes {self.nodes}")


class RecordListError(EgressIPAMError):
    """Listing records failed. Fatal to the pass."""

    def __init__(self, kind: str, cause: Exception):
        self.kind = kind
        self.cause = cause
        super().__init__(f"Unable to list {kind}: {cause}")


class RecordUpdateError(EgressIPAMError):
    """A single record write was rejected."""

    def __init__(self, kind: str, name: str, cause: Exception):
        self.kind = kind
        self.name = name
        self.cause = cause
        super().__init__(f"Unable to update {kind} '{name}': {cause}")


class AggregateReconcileError(EgressIPAMError):
    """Every failure of a pass, each keeping its own record and cause."""

    def __init__(self, errors: Iterable[Exception]):
        self.errors: List[Exception] = list(errors)
        lines = "\n".join(f"  * {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred:\n{lines}")


def combine_errors(errors: Iterable[Exception]) -> None:
    """Raises an AggregateReconcileError for the given errors, if there are any.

    Nested aggregates are flattened so every failure is listed once.
    """
    flat: List[Exception] = []
    for error in errors:
        if isinstance(error, AggregateReconcileError):
            flat.extend(error.errors)
        elif error is not None:
            flat.append(error)
    if flat:
        raise AggregateReconcileError(flat)
