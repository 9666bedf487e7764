"""
Registry reconciliation: the entry point of every pass.

  Registry → Nodes snapshot → finalizer check → dispatch:
    - gone                          → nothing to do
    - being deleted, hash in status → remove certificate (then finalizer released)
    - being deleted, nothing there  → finalizer released
    - spec.certificate set          → install certificate
    - no certificate, hash in status→ remove certificate
  → persist status / finalizers, only when they changed

Passes for the same Registry must not overlap: the caller serializes them.
"""

import logging
from typing import List, Optional

from kubernetes.client import ApiException

from registries_operator import installer, remover
from registries_operator.errors import is_not_found
from registries_operator.events import Recorder
from registries_operator.finalizer import finalizer_check, finalizer_done
from registries_operator.models import Registry, RegistryKey, Result
from registries_operator.utils import get_all_nodes, get_certificate_payload

logger = logging.getLogger("registries-operator.controller")


class CertReconciler:
    """What the entry point dispatches to: installing or removing certificates."""

    def reconcile_cert_present(self, registry: Registry, nodes: List[str], payload: bytes) -> Result:
        raise NotImplementedError

    def reconcile_cert_missing(self, registry: Registry, nodes: List[str]) -> None:
        raise NotImplementedError


class ClusterCertReconciler(CertReconciler):
    """Runs Jobs in the cluster for installing/removing certificates."""

    def __init__(self, cluster, recorder: Recorder):
        self.cluster = cluster
        self.recorder = recorder

    def reconcile_cert_present(self, registry, nodes, payload):
        return installer.reconcile_cert_present(self.cluster, self.recorder, registry, nodes, payload)

    def reconcile_cert_missing(self, registry, nodes):
        remover.reconcile_cert_missing(self.cluster, self.recorder, registry, nodes)


class RegistryReconciler:
    def __init__(self, cluster, recorder: Recorder,
                 cert_reconciler: Optional[CertReconciler] = None):
        self.cluster = cluster
        self.recorder = recorder
        self.cert_reconciler = cert_reconciler or ClusterCertReconciler(cluster, recorder)

    def reconcile(self, key: RegistryKey) -> Result:
        """
        Reconcile the Registry `key` with the Nodes in the cluster.

        Raises on errors: the whole pass must be retried later.
        """
        logger.debug(f"trying to reconcile {key}")

        try:
            body = self.cluster.get_registry(key)
        except ApiException as e:
            if is_not_found(e):
                # deleted objects have already gone through the finalizer
                logger.info(f"{key} not found... ignoring")
                return Result()
            raise
        registry = Registry.from_body(body)

        try:
            nodes = get_all_nodes(self.cluster)
        except ApiException as e:
            logger.error(f"when getting the list of Nodes in the cluster: {e}")
            raise

        finalizing = finalizer_check(self.cluster, registry)
        observed = registry.model_copy(deep=True)
        result = Result()

        if finalizing:
            if registry.status.certificate.currentHash:
                self.cert_reconciler.reconcile_cert_missing(registry, nodes)
            else:
                logger.info(f"no certificate installed for '{registry}': nothing to clean up")
                finalizer_done(registry)

        elif registry.spec.certificate is not None:
            payload = get_certificate_payload(self.cluster, registry.spec.certificate)
            result = self.cert_reconciler.reconcile_cert_present(registry, nodes, payload)

        elif registry.status.certificate.currentHash:
            logger.info(f"certificate has disappeared for '{registry}': removing certificate")
            self.cert_reconciler.reconcile_cert_missing(registry, nodes)

        else:
            logger.debug(f"no certificate for '{registry}': no reconciliation needed")

        self._persist(registry, observed)
        return result

    def _persist(self, registry: Registry, observed: Registry) -> None:
        try:
            if registry.status != observed.status:
                updated = self.cluster.patch_registry_status(registry)
                registry.metadata.resourceVersion = updated.get("metadata", {}).get(
                    "resourceVersion", registry.metadata.resourceVersion)
            # releasing the finalizer can delete the object: it goes last
            if registry.metadata.finalizers != observed.metadata.finalizers:
                self.cluster.patch_registry_finalizers(registry)
        except ApiException as e:
            if is_not_found(e):
                logger.info(f"{registry.key} disappeared while updating it... ignoring")
                return
            raise
