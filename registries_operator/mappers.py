"""
Map changes in other objects (Nodes, Secrets, Jobs) to the Registries
that must be reconciled because of them.
"""

import logging
from typing import List, Optional

from kubernetes.client import ApiException

from registries_operator.config import settings
from registries_operator.models import Registry, RegistryKey

logger = logging.getLogger("registries-operator.mappers")


def _list_registries(cluster) -> List[Registry]:
    try:
        return [Registry.from_body(item) for item in cluster.list_registries()]
    except ApiException as e:
        logger.error(f"when getting the list of Registries in the cluster: {e}")
        return []


def all_registry_keys(cluster) -> List[RegistryKey]:
    """All the Registries: a new Node needs every certificate."""
    return [registry.key for registry in _list_registries(cluster)]


def secret_to_registry_keys(cluster, name: str, namespace: str) -> List[RegistryKey]:
    """The Registries using the Secret `namespace/name` as certificate."""
    keys = []
    for registry in _list_registries(cluster):
        ref = registry.spec.certificate
        if ref is None:
            continue
        if ref.name == name and (ref.namespace or settings.JOB_NAMESPACE) == namespace:
            keys.append(registry.key)
    return keys


def job_owner_key(owner_references: Optional[list]) -> Optional[RegistryKey]:
    """The Registry controlling a Job, if any."""
    for ref in owner_references or []:
        if not ref.get("controller"):
            continue
        if ref.get("kind") != settings.CRD_KIND:
            continue
        if ref.get("apiVersion", "").split("/")[0] != settings.CRD_GROUP:
            continue
        return RegistryKey(ref["name"])
    return None
