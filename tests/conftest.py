from __future__ import annotations

import copy
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes.client import ApiException

from registries_operator.models import JobReport, Registry, RegistryKey, new_registry

FOO_CERT = b"-----BEGIN CERTIFICATE-----\nfoo\n-----END CERTIFICATE-----\n"
BAR_CERT = b"-----BEGIN CERTIFICATE-----\nbar\n-----END CERTIFICATE-----\n"


def _not_found(what: str) -> ApiException:
    return ApiException(status=404, reason=f"{what} not found")


class FakeCluster:
    """In-memory cluster with the same interface as ClusterClient."""

    def __init__(self):
        self.registries: Dict[str, dict] = {}
        self.nodes: List[dict] = []
        self.secrets: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.jobs: Dict[Tuple[str, str], dict] = {}
        self.job_status: Dict[Tuple[str, str], dict] = {}
        self.created_jobs: List[dict] = []
        self.deleted_jobs: List[Tuple[str, str]] = []
        self.status_patches = 0
        self.fail_create_with: Optional[ApiException] = None
        self._rv = 0

    # --- helpers for the tests ---

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def add_nodes(self, *names: str, unschedulable: bool = False) -> None:
        for name in names:
            self.nodes.append({"name": name, "unschedulable": unschedulable})

    def cordon(self, name: str) -> None:
        for node in self.nodes:
            if node["name"] == name:
                node["unschedulable"] = True

    def add_secret(self, name: str, namespace: str, data: Dict[str, bytes]) -> None:
        self.secrets[(namespace, name)] = dict(data)

    def add_registry(self, registry: Registry) -> None:
        body = registry.model_dump()
        body["metadata"]["resourceVersion"] = self._next_rv()
        self.registries[registry.metadata.name] = body

    def registry(self, name: str) -> Registry:
        return Registry.from_body(self.registries[name])

    def set_job_status(self, name: str, namespace: str, active=0, failed=0, succeeded=0) -> None:
        self.job_status[(namespace, name)] = {
            "active": active, "failed": failed, "succeeded": succeeded,
        }

    def only_job(self) -> dict:
        assert len(self.jobs) == 1, f"expected one Job, found {list(self.jobs)}"
        return next(iter(self.jobs.values()))

    # --- Registries ---

    def get_registry(self, key: RegistryKey) -> dict:
        if key.name not in self.registries:
            raise _not_found(f"registry {key}")
        return copy.deepcopy(self.registries[key.name])

    def list_registries(self) -> List[dict]:
        return [copy.deepcopy(body) for body in self.registries.values()]

    def _stored(self, registry: Registry) -> dict:
        body = self.registries.get(registry.metadata.name)
        if body is None:
            raise _not_found(f"registry {registry.key}")
        rv = registry.metadata.resourceVersion
        if rv is not None and rv != body["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        return body

    def patch_registry_finalizers(self, registry: Registry) -> dict:
        body = self._stored(registry)
        body["metadata"]["finalizers"] = list(registry.metadata.finalizers)
        body["metadata"]["resourceVersion"] = self._next_rv()
        if body["metadata"].get("deletionTimestamp") and not body["metadata"]["finalizers"]:
            del self.registries[registry.metadata.name]
        return copy.deepcopy(body)

    def patch_registry_status(self, registry: Registry) -> dict:
        body = self._stored(registry)
        body["status"] = registry.status.model_dump()
        body["metadata"]["resourceVersion"] = self._next_rv()
        self.status_patches += 1
        return copy.deepcopy(body)

    # --- Nodes & Secrets ---

    def list_nodes(self) -> List[dict]:
        return [dict(n) for n in self.nodes]

    def get_secret_data(self, name: str, namespace: str) -> Dict[str, bytes]:
        if (namespace, name) not in self.secrets:
            raise _not_found(f"secret {namespace}/{name}")
        return dict(self.secrets[(namespace, name)])

    # --- Jobs ---

    def list_jobs(self, labels: Dict[str, str]) -> List[JobReport]:
        res = []
        for (namespace, name), job in self.jobs.items():
            job_labels = job["metadata"].get("labels", {})
            if all(job_labels.get(k) == v for k, v in labels.items()):
                res.append(JobReport(name=name, namespace=namespace, labels=job_labels,
                                     **self.job_status.get((namespace, name), {})))
        return res

    def create_job(self, job: dict) -> None:
        if self.fail_create_with is not None:
            raise self.fail_create_with
        key = (job["metadata"]["namespace"], job["metadata"]["name"])
        if key in self.jobs:
            raise ApiException(status=409, reason="AlreadyExists")
        self.jobs[key] = copy.deepcopy(job)
        self.created_jobs.append(copy.deepcopy(job))

    def delete_job(self, name: str, namespace: str) -> None:
        if (namespace, name) not in self.jobs:
            raise _not_found(f"job {namespace}/{name}")
        del self.jobs[(namespace, name)]
        self.job_status.pop((namespace, name), None)
        self.deleted_jobs.append((namespace, name))


class FakeRecorder:
    def __init__(self):
        self.events: List[Tuple[str, str, str, str]] = []

    def event(self, registry, event_type, reason, message):
        self.events.append((registry.metadata.name, event_type, reason, message))

    @property
    def reasons(self) -> List[str]:
        return [e[2] for e in self.events]


def foo_registry(**kwargs) -> Registry:
    return new_registry("foo", "foo.com:5000", cert_name="foo-ca-crt",
                        cert_namespace="kube-system", uid="uid-foo", **kwargs)


def bar_registry(**kwargs) -> Registry:
    return new_registry("bar", "bar.com:5000", cert_name="bar-ca-crt",
                        cert_namespace="kube-system", uid="uid-bar", **kwargs)


@pytest.fixture
def cluster() -> FakeCluster:
    cluster = FakeCluster()
    cluster.add_nodes("node-1", "node-2", "node-3")
    cluster.add_secret("foo-ca-crt", "kube-system", {"ca.crt": FOO_CERT})
    cluster.add_secret("bar-ca-crt", "kube-system", {"ca.crt": BAR_CERT})
    return cluster


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def nodes() -> List[str]:
    return ["node-1", "node-2", "node-3"]
