import logging
from typing import Dict, List, Mapping, Optional

from . import config
from .errors import RecordUpdateError, combine_errors
from .store import ClusterStore

logger = logging.getLogger(__name__)


def association_removed(old_annotations: Optional[Mapping[str, str]], new_annotations: Optional[Mapping[str, str]]) -> bool:
    """True only when the EgressIPAM association annotation went from present to absent."""
    was_associated = config.NAMESPACE_ANNOTATION in (old_annotations or {})
    is_associated = config.NAMESPACE_ANNOTATION in (new_annotations or {})
    return was_associated and not is_associated


class AssociationTracker:
    """
    Remembers whether each namespace was associated with an EgressIPAM.

    A watch stream only hands out the new object, so the previous state is
    kept here to detect the present to absent transition.
    """

    annotations: Dict[str, Dict[str, str]]

    def __init__(self):
        self.annotations = {}

    def observe(self, event: str, name: str, annotations: Optional[Mapping[str, str]]) -> bool:
        """
        Records a watch event and tells whether it should trigger a cleanup.

        Args:
            event: The watch event type, ADDED, MODIFIED or DELETED.
            name: The namespace's name.
            annotations: The namespace's annotations after the event.

        Returns:
            True when the association annotation was there on the previous event
            and is gone now. A re-list after a watch reconnect reports changes
            made while disconnected as ADDED, so ADDED counts as well.
        """
        if event == "DELETED":
            self.annotations.pop(name, None)
            return False
        previous = self.annotations.get(name)
        self.annotations[name] = dict(annotations or {})
        return previous is not None and association_removed(previous, annotations)


class NamespaceCleaner:
    """Scrubs a namespace's egress state once it is no longer associated with an EgressIPAM."""

    store: ClusterStore

    def __init__(self, store: ClusterStore):
        self.store = store

    async def cleanup(self, name: str) -> None:
        """
        Clears the NetNamespace's egressIPs and drops the egressips annotation.

        The two writes are independent: each happens only if needed and a
        failure of one does not prevent the other.

        Args:
            name: The namespace's name.

        Raises:
            AggregateReconcileError: One or both writes failed.
        """
        namespace = await self.store.get_namespace(name)
        if namespace is None:
            logger.info(f"Namespace '{name}' not found, nothing to clean up.")
            return

        errors: List[Exception] = []

        netnamespace = await self.store.get_net_namespace(name)
        if netnamespace is None:
            logger.info(f"NetNamespace '{name}' not found, no egressIPs to clear.")
        elif netnamespace.egress_ips:
            logger.info(f"Clearing egressIPs {list(netnamespace.egress_ips)} of NetNamespace '{name}'")
            try:
                await self.store.clear_net_namespace_egress_ips(netnamespace)
            except Exception as e:
                error = RecordUpdateError("netnamespace", name, e)
                logger.error(str(error))
                errors.append(error)

        if config.NAMESPACE_ASSOCIATION_ANNOTATION in namespace.annotations:
            logger.info(f"Removing annotation '{config.NAMESPACE_ASSOCIATION_ANNOTATION}' from Namespace '{name}'")
            try:
                await self.store.remove_namespace_annotation(namespace, config.NAMESPACE_ASSOCIATION_ANNOTATION)
            except Exception as e:
                error = RecordUpdateError("namespace", name, e)
                logger.error(str(error))
                errors.append(error)

        combine_errors(errors)
