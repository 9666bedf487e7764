"""
The finalizer protocol: a Registry cannot go away while some Node still
has its certificate.
"""

import logging

from registries_operator.errors import LogicError
from registries_operator.models import Registry

logger = logging.getLogger("registries-operator.finalizer")

FINALIZER_NAME = "registry.finalizers.kubic.opensuse.org"


def finalizer_check(cluster, registry: Registry) -> bool:
    """
    Return True if the Registry is being deleted.

    Otherwise make sure it carries our finalizer, persisting it right away.
    """
    if registry.is_being_deleted():
        logger.info(f"'{registry.metadata.name}' is being deleted")
        return True

    if FINALIZER_NAME not in registry.metadata.finalizers:
        logger.info(f"'{registry.metadata.name}' does not have finalizer '{FINALIZER_NAME}': adding it")
        registry.metadata.finalizers.append(FINALIZER_NAME)
        updated = cluster.patch_registry_finalizers(registry)
        registry.metadata.resourceVersion = updated.get("metadata", {}).get(
            "resourceVersion", registry.metadata.resourceVersion)
    return False


def finalizer_done(registry: Registry) -> None:
    """
    Mark the Registry as "we are done with it, you can remove it now".

    Deletion is blocked until this runs. Only the in-memory object is
    changed: the caller persists it.
    """
    if not registry.is_being_deleted():
        raise LogicError(
            f"logic error: finalizer_done() called on '{registry.metadata.name}' "
            f"when it was not being destroyed")

    logger.info(f"we are done with '{registry.metadata.name}': it can be safely terminated now")
    registry.metadata.finalizers = [f for f in registry.metadata.finalizers if f != FINALIZER_NAME]
