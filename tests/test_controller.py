import pytest
from kubernetes.client import ApiException

from conftest import FOO_CERT, foo_registry
from registries_operator.controller import CertReconciler, RegistryReconciler
from registries_operator.errors import LogicError, MissingCertificateError
from registries_operator.finalizer import FINALIZER_NAME, finalizer_done
from registries_operator.models import RegistryKey, Result
from registries_operator.utils import certificate_hash

FOO_HASH = certificate_hash(FOO_CERT)
FOO_KEY = RegistryKey("foo")
INSTALL_JOB = ("kube-system", "kubic-registry-installer-foo-com-5000")
REMOVE_JOB = ("kube-system", "kubic-registry-remover-foo-com-5000")
DELETED_AT = "2026-10-17T10:00:00Z"


class FakeCertReconciler(CertReconciler):
    def __init__(self):
        self.present = []
        self.missing = []

    def reconcile_cert_present(self, registry, nodes, payload):
        self.present.append((registry.metadata.name, list(nodes), payload))
        return Result()

    def reconcile_cert_missing(self, registry, nodes):
        self.missing.append((registry.metadata.name, list(nodes)))

    def not_called(self):
        return not self.present and not self.missing


@pytest.fixture
def fake_certs():
    return FakeCertReconciler()


@pytest.fixture
def reconciler(cluster, recorder, fake_certs):
    return RegistryReconciler(cluster, recorder, fake_certs)


@pytest.fixture
def real_reconciler(cluster, recorder):
    return RegistryReconciler(cluster, recorder)


# --- dispatching ---

def test_registry_not_found(reconciler, fake_certs):
    assert reconciler.reconcile(RegistryKey("missing")) == Result()
    assert fake_certs.not_called()


def test_registry_found(cluster, reconciler, fake_certs):
    cluster.add_registry(foo_registry())

    assert reconciler.reconcile(FOO_KEY) == Result()

    assert fake_certs.present == [("foo", ["node-1", "node-2", "node-3"], FOO_CERT)]
    assert not fake_certs.missing
    # the finalizer has been persisted
    assert cluster.registry("foo").metadata.finalizers == [FINALIZER_NAME]


def test_registry_finalizing(cluster, reconciler, fake_certs):
    registry = foo_registry()
    registry.metadata.deletionTimestamp = DELETED_AT
    registry.metadata.finalizers = [FINALIZER_NAME]
    registry.status.certificate.currentHash = FOO_HASH
    registry.status.certificate.numNodes = 3
    cluster.add_registry(registry)

    reconciler.reconcile(FOO_KEY)

    assert fake_certs.missing == [("foo", ["node-1", "node-2", "node-3"])]
    assert not fake_certs.present
    # the removal has not reported anything yet
    assert cluster.registry("foo").metadata.finalizers == [FINALIZER_NAME]


def test_registry_finalizing_without_certificate(cluster, reconciler, fake_certs):
    registry = foo_registry()
    registry.metadata.deletionTimestamp = DELETED_AT
    registry.metadata.finalizers = [FINALIZER_NAME]
    cluster.add_registry(registry)

    reconciler.reconcile(FOO_KEY)

    assert fake_certs.not_called()
    # nothing to clean up: the Registry can go away
    assert "foo" not in cluster.registries


def test_certificate_removed_from_spec(cluster, reconciler, fake_certs):
    registry = foo_registry()
    registry.spec.certificate = None
    registry.status.certificate.currentHash = FOO_HASH
    cluster.add_registry(registry)

    reconciler.reconcile(FOO_KEY)

    assert fake_certs.missing == [("foo", ["node-1", "node-2", "node-3"])]
    assert not fake_certs.present


def test_registry_without_certificate(cluster, reconciler, fake_certs):
    registry = foo_registry()
    registry.spec.certificate = None
    cluster.add_registry(registry)

    reconciler.reconcile(FOO_KEY)

    assert fake_certs.not_called()
    assert cluster.status_patches == 0


def test_missing_secret(cluster, reconciler, fake_certs):
    del cluster.secrets[("kube-system", "foo-ca-crt")]
    cluster.add_registry(foo_registry())

    with pytest.raises(ApiException) as exc:
        reconciler.reconcile(FOO_KEY)
    assert exc.value.status == 404
    assert fake_certs.not_called()


def test_secret_without_certificate(cluster, reconciler):
    cluster.add_secret("foo-ca-crt", "kube-system", {"tls.key": b"..."})
    cluster.add_registry(foo_registry())

    with pytest.raises(MissingCertificateError):
        reconciler.reconcile(FOO_KEY)


def test_finalizer_done_requires_deletion():
    with pytest.raises(LogicError):
        finalizer_done(foo_registry())


def test_registry_disappears_while_persisting(cluster, recorder):
    class DeletingCertReconciler(FakeCertReconciler):
        def reconcile_cert_present(self, registry, nodes, payload):
            registry.status.certificate.currentHash = "something"
            registry.status.certificate.numNodes = 1
            del cluster.registries["foo"]
            return Result()

    cluster.add_registry(foo_registry())
    reconciler = RegistryReconciler(cluster, recorder, DeletingCertReconciler())

    assert reconciler.reconcile(FOO_KEY) == Result()


def test_conflict_while_persisting(cluster, recorder):
    class ConflictingCertReconciler(FakeCertReconciler):
        def reconcile_cert_present(self, registry, nodes, payload):
            registry.status.certificate.numNodes = 1
            registry.status.certificate.currentHash = "something"
            registry.metadata.resourceVersion = "stale"
            return Result()

    cluster.add_registry(foo_registry())
    reconciler = RegistryReconciler(cluster, recorder, ConflictingCertReconciler())

    with pytest.raises(ApiException) as exc:
        reconciler.reconcile(FOO_KEY)
    assert exc.value.status == 409


# --- full cycles, with Jobs ---

def test_install_cycle(cluster, recorder, real_reconciler):
    cluster.add_registry(foo_registry())

    real_reconciler.reconcile(FOO_KEY)
    assert INSTALL_JOB in cluster.jobs
    assert cluster.jobs[INSTALL_JOB]["spec"]["completions"] == 3

    cluster.set_job_status(*reversed(INSTALL_JOB), succeeded=3)
    real_reconciler.reconcile(FOO_KEY)

    status = cluster.registry("foo").status.certificate
    assert (status.currentHash, status.numNodes) == (FOO_HASH, 3)
    assert cluster.jobs == {}

    # converged: nothing else happens
    patches = cluster.status_patches
    real_reconciler.reconcile(FOO_KEY)
    assert cluster.status_patches == patches
    assert len(cluster.created_jobs) == 1
    assert recorder.reasons == ["Starting", "Installed"]


def test_removal_cycle(cluster, recorder, real_reconciler):
    registry = foo_registry()
    registry.spec.certificate = None
    registry.status.certificate.currentHash = FOO_HASH
    registry.status.certificate.numNodes = 3
    cluster.add_registry(registry)

    real_reconciler.reconcile(FOO_KEY)
    assert cluster.jobs[REMOVE_JOB]["spec"]["completions"] == 3

    cluster.set_job_status(*reversed(REMOVE_JOB), succeeded=3)
    real_reconciler.reconcile(FOO_KEY)

    stored = cluster.registry("foo")
    assert (stored.status.certificate.currentHash, stored.status.certificate.numNodes) == ("", 0)
    assert stored.metadata.finalizers == [FINALIZER_NAME]
    assert cluster.jobs == {}
    assert recorder.reasons == ["Removing", "Removed"]


def test_deletion_is_gated_by_the_removal(cluster, recorder, real_reconciler):
    cluster.add_registry(foo_registry())
    real_reconciler.reconcile(FOO_KEY)
    cluster.set_job_status(*reversed(INSTALL_JOB), succeeded=3)
    real_reconciler.reconcile(FOO_KEY)

    # the user deletes the Registry
    cluster.registries["foo"]["metadata"]["deletionTimestamp"] = DELETED_AT

    real_reconciler.reconcile(FOO_KEY)
    assert REMOVE_JOB in cluster.jobs
    assert cluster.registry("foo").metadata.finalizers == [FINALIZER_NAME]

    cluster.set_job_status(*reversed(REMOVE_JOB), active=3)
    real_reconciler.reconcile(FOO_KEY)
    assert cluster.registry("foo").metadata.finalizers == [FINALIZER_NAME]

    cluster.set_job_status(*reversed(REMOVE_JOB), succeeded=3)
    real_reconciler.reconcile(FOO_KEY)
    assert "foo" not in cluster.registries
    assert recorder.reasons == ["Starting", "Installed", "Removing", "Removed"]

    # once gone, there is nothing else to do
    assert real_reconciler.reconcile(FOO_KEY) == Result()


def test_status_invariant_holds_on_every_pass(cluster, real_reconciler):
    cluster.add_registry(foo_registry())
    steps = [
        None,
        {"active": 2},
        {"failed": 1, "succeeded": 2},
        None,
        {"succeeded": 3},
        None,
    ]
    for job_status in steps:
        if job_status is not None:
            cluster.set_job_status(*reversed(INSTALL_JOB), **job_status)
        real_reconciler.reconcile(FOO_KEY)
        status = cluster.registry("foo").status.certificate
        assert status.numNodes == 0 or status.currentHash != ""

    assert cluster.registry("foo").status.certificate.numNodes == 3


def test_deletion_waits_for_cordoned_nodes(cluster, recorder, real_reconciler):
    cluster.cordon("node-3")
    registry = foo_registry()
    registry.metadata.deletionTimestamp = DELETED_AT
    registry.metadata.finalizers = [FINALIZER_NAME]
    registry.status.certificate.currentHash = FOO_HASH
    registry.status.certificate.numNodes = 3
    cluster.add_registry(registry)

    real_reconciler.reconcile(FOO_KEY)
    assert cluster.jobs[REMOVE_JOB]["spec"]["completions"] == 3

    cluster.set_job_status(*reversed(REMOVE_JOB), active=1, succeeded=2)
    real_reconciler.reconcile(FOO_KEY)
    assert "foo" in cluster.registries
    assert cluster.registry("foo").status.certificate.numNodes == 3

    cluster.set_job_status(*reversed(REMOVE_JOB), succeeded=3)
    real_reconciler.reconcile(FOO_KEY)
    assert "foo" not in cluster.registries
