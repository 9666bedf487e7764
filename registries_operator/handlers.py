"""
Registries Operator: kopf wiring for the Registry reconciler.

Watches:
  Registry  → reconcile it
  Node      → created: reconcile all Registries (updates/deletions ignored)
  Secret    → reconcile the Registries using it as certificate
  Job       → reconcile the Registry controlling it
  Timer     → periodic resync of every Registry, retrying failed passes

Passes for the same Registry are serialized with a per-key lock: kopf runs
the event handlers and the timers of an object concurrently.
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Dict

import kopf
from kubernetes.client import ApiException

from registries_operator.config import settings as operator_settings
from registries_operator.controller import RegistryReconciler
from registries_operator.errors import InvalidAddressError, LogicError, MissingCertificateError
from registries_operator.events import KopfEventRecorder
from registries_operator.kube import ClusterClient
from registries_operator.mappers import all_registry_keys, job_owner_key, secret_to_registry_keys
from registries_operator.models import RegistryKey
from registries_operator.runner import MANAGED_BY, MANAGED_BY_LABEL

logger = logging.getLogger("registries-operator")

CRD_GROUP = operator_settings.CRD_GROUP
CRD_VERSION = operator_settings.CRD_VERSION
CRD_PLURAL = operator_settings.CRD_PLURAL

# exit code when a broken invariant is detected
EXIT_LOGIC_ERROR = 70


class _KeyedLocks:
    """One lock per Registry key, dropped as soon as nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of passes holding or waiting for it]
        self._locks: Dict[RegistryKey, list] = {}

    @contextmanager
    def hold(self, key: RegistryKey):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_locks = _KeyedLocks()
_reconciler = None
_cluster = None


def _get_cluster() -> ClusterClient:
    global _cluster
    if _cluster is None:
        _cluster = ClusterClient()
    return _cluster


def _get_reconciler() -> RegistryReconciler:
    """Lazy-init the reconciler (and its API clients)."""
    global _reconciler
    if _reconciler is None:
        _reconciler = RegistryReconciler(_get_cluster(), KopfEventRecorder())
    return _reconciler


def reconcile_key(key: RegistryKey) -> None:
    """Run one reconciliation pass, translating errors for kopf."""
    with _locks.hold(key):
        try:
            result = _get_reconciler().reconcile(key)
        except LogicError as e:
            logger.critical(f"{e}: aborting")
            logging.shutdown()
            os._exit(EXIT_LOGIC_ERROR)
        except (ApiException, MissingCertificateError) as e:
            raise kopf.TemporaryError(f"reconciliation of {key} failed: {e}",
                                      delay=operator_settings.RETRY_DELAY)
        except InvalidAddressError as e:
            raise kopf.PermanentError(f"reconciliation of {key} failed: {e}")

    if result.requeue_after:
        raise kopf.TemporaryError(f"{key} not converged yet", delay=result.requeue_after)


def _reconcile_logged(key: RegistryKey) -> None:
    # fan-out: one failing Registry must not starve the others, the resync retries it
    try:
        reconcile_key(key)
    except (kopf.TemporaryError, kopf.PermanentError) as e:
        logger.warning(f"{e}")


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    settings.posting.enabled = True
    settings.execution.max_workers = operator_settings.MAX_WORKERS
    logger.info(
        f"Registries Operator started (max_workers={operator_settings.MAX_WORKERS}, "
        f"jobs namespace={operator_settings.JOB_NAMESPACE}, "
        f"resync={operator_settings.RESYNC_INTERVAL}s)"
    )


# ---------------------------------------------------------------------------
# Watches
# ---------------------------------------------------------------------------

@kopf.on.event(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
def registry_event(event, name, namespace, **kwargs):
    reconcile_key(RegistryKey(name, namespace))


@kopf.on.event("v1", "nodes")
def node_event(event, name, **kwargs):
    # the only important thing: a new node appears
    if event.get("type") != "ADDED":
        return
    keys = all_registry_keys(_get_cluster())
    logger.info(f"Node {name} added: reconciling {len(keys)} Registries")
    for key in keys:
        _reconcile_logged(key)


@kopf.on.event("v1", "secrets")
def secret_event(event, name, namespace, **kwargs):
    # the initial listing is covered by the Registries' own listing
    if event.get("type") is None:
        return
    for key in secret_to_registry_keys(_get_cluster(), name, namespace):
        logger.info(f"Secret {namespace}/{name} changed: reconciling {key}")
        _reconcile_logged(key)


@kopf.on.event("batch", "v1", "jobs", labels={MANAGED_BY_LABEL: MANAGED_BY})
def job_event(event, meta, **kwargs):
    key = job_owner_key(meta.get("ownerReferences"))
    if key is not None:
        reconcile_key(key)


@kopf.timer(CRD_GROUP, CRD_VERSION, CRD_PLURAL, interval=operator_settings.RESYNC_INTERVAL)
def registry_resync(name, namespace, **kwargs):
    reconcile_key(RegistryKey(name, namespace))
