"""
Kubernetes service layer: every API call made by the operator goes through here.

Design principles:
  - Plain dicts / small models out: the reconcilers never touch client models
  - No error translation: ApiException propagates, callers classify it
    with the helpers in ``registries_operator.errors``
"""

import base64
import logging
from typing import Dict, List, Optional

from kubernetes import client, config

from registries_operator.config import settings
from registries_operator.models import JobReport, Registry, RegistryKey

logger = logging.getLogger("registries-operator.kube")

_k8s_loaded = False


def _ensure_k8s():
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def core_api() -> client.CoreV1Api:
    _ensure_k8s()
    return client.CoreV1Api()


def batch_api() -> client.BatchV1Api:
    _ensure_k8s()
    return client.BatchV1Api()


def custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


def label_selector(labels: Dict[str, str]) -> str:
    """Render a `{k: v}` map as an equality-based label selector."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _job_report(job: client.V1Job) -> JobReport:
    status = job.status
    return JobReport(
        name=job.metadata.name,
        namespace=job.metadata.namespace,
        labels=job.metadata.labels or {},
        active=(status.active or 0) if status else 0,
        failed=(status.failed or 0) if status else 0,
        succeeded=(status.succeeded or 0) if status else 0,
    )


def _summarize_node(node: client.V1Node) -> dict:
    return {
        "name": node.metadata.name,
        "unschedulable": bool(node.spec and node.spec.unschedulable),
    }


class ClusterClient:
    """Access to Registries, Nodes, Secrets and Jobs in the cluster."""

    def __init__(self, core: Optional[client.CoreV1Api] = None,
                 batch: Optional[client.BatchV1Api] = None,
                 custom: Optional[client.CustomObjectsApi] = None):
        self._core = core
        self._batch = batch
        self._custom = custom

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = core_api()
        return self._core

    @property
    def batch(self) -> client.BatchV1Api:
        if self._batch is None:
            self._batch = batch_api()
        return self._batch

    @property
    def custom(self) -> client.CustomObjectsApi:
        if self._custom is None:
            self._custom = custom_api()
        return self._custom

    # --- Registries ---

    def get_registry(self, key: RegistryKey) -> dict:
        if key.namespace:
            return self.custom.get_namespaced_custom_object(
                settings.CRD_GROUP, settings.CRD_VERSION, key.namespace,
                settings.CRD_PLURAL, key.name)
        return self.custom.get_cluster_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL, key.name)

    def list_registries(self) -> List[dict]:
        result = self.custom.list_cluster_custom_object(
            settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL)
        return result.get("items", [])

    def _patch_registry(self, registry: Registry, body: dict, status: bool = False) -> dict:
        key = registry.key
        if key.namespace:
            fn = (self.custom.patch_namespaced_custom_object_status if status
                  else self.custom.patch_namespaced_custom_object)
            return fn(settings.CRD_GROUP, settings.CRD_VERSION, key.namespace,
                      settings.CRD_PLURAL, key.name, body)
        fn = (self.custom.patch_cluster_custom_object_status if status
              else self.custom.patch_cluster_custom_object)
        return fn(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL,
                  key.name, body)

    def patch_registry_finalizers(self, registry: Registry) -> dict:
        body = {
            "metadata": {
                "finalizers": list(registry.metadata.finalizers),
                "resourceVersion": registry.metadata.resourceVersion,
            },
        }
        return self._patch_registry(registry, body)

    def patch_registry_status(self, registry: Registry) -> dict:
        body = {
            "metadata": {"resourceVersion": registry.metadata.resourceVersion},
            "status": registry.status.model_dump(),
        }
        return self._patch_registry(registry, body, status=True)

    # --- Nodes & Secrets ---

    def list_nodes(self) -> List[dict]:
        nodes = self.core.list_node()
        return [_summarize_node(node) for node in nodes.items]

    def get_secret_data(self, name: str, namespace: str) -> Dict[str, bytes]:
        """Return the (decoded) data of a Secret."""
        secret = self.core.read_namespaced_secret(name=name, namespace=namespace)
        return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

    # --- Jobs ---

    def list_jobs(self, labels: Dict[str, str]) -> List[JobReport]:
        jobs = self.batch.list_job_for_all_namespaces(label_selector=label_selector(labels))
        return [_job_report(job) for job in jobs.items]

    def create_job(self, job: dict) -> None:
        namespace = job["metadata"]["namespace"]
        self.batch.create_namespaced_job(namespace=namespace, body=job)
        logger.info(f"Job {namespace}/{job['metadata']['name']} created")

    def delete_job(self, name: str, namespace: str) -> None:
        # the Pods must go away together with the Job
        self.batch.delete_namespaced_job(
            name=name, namespace=namespace,
            body=client.V1DeleteOptions(propagation_policy="Background"))
        logger.info(f"Job {namespace}/{name} deletion initiated")
