"""
Removal of the certificate of a Registry from all the Nodes.

Safe to invoke multiple times for the same Registry: the decision is
taken from the status and the removal Job, if any.
"""

import logging
import os
import shlex
from typing import List

from kubernetes.client import ApiException

from registries_operator import events
from registries_operator.config import settings
from registries_operator.errors import InvalidAddressError, is_already_exists
from registries_operator.finalizer import finalizer_done
from registries_operator.installer import HOST_PATHS
from registries_operator.models import Registry
from registries_operator.runner import RunnerConfig, adopt_job, build_runner_job, create_job
from registries_operator.utils import (
    check_job_name, delete_job, delete_stale_jobs, find_job, safe_id,
)

logger = logging.getLogger("registries-operator.remover")

# a prefix for all the jobs created for removing certificates
JOB_REMOVE_NAME_PREFIX = "kubic-registry-remover"

# labels in jobs that remove certificates: the registry address
JOB_REMOVE_LABEL_HOST_PORT = "kubic-registry-remover-host-port"

# labels in jobs that remove certificates: the hash of the ca.crt being removed
JOB_REMOVE_LABEL_HASH = "kubic-registry-remover-hash"


def remove_job_name(host_port: str) -> str:
    return f"{safe_id(JOB_REMOVE_NAME_PREFIX)}-{safe_id(host_port)}"


def remove_commands(host_port: str) -> List[str]:
    commands = []
    for certs_dir in (settings.DOCKER_CERTS_DIR, settings.PODMAN_CERTS_DIR):
        dst = shlex.quote(os.path.join(certs_dir, host_port))
        commands += [f"echo Removing {dst}", f"rm -rf {dst}"]
    return commands


def _release(registry: Registry) -> None:
    # the same path is taken when the certificate reference is removed
    # from a live Registry: only a deleted one has a finalizer to release
    if registry.is_being_deleted():
        finalizer_done(registry)


def reconcile_cert_missing(cluster, recorder: events.Recorder, registry: Registry,
                           nodes: List[str]) -> None:
    """
    Remove the certificate recorded in the status of `registry` from all the Nodes.

    The registry is updated in memory only: the caller persists it.
    """
    cert_status = registry.status.certificate
    secret_hash = cert_status.currentHash
    must_remove = False

    address = safe_id(registry.spec.hostPort)
    job = find_job(cluster, {
        JOB_REMOVE_LABEL_HOST_PORT: address,
        JOB_REMOVE_LABEL_HASH: secret_hash,
    })

    if job is None:
        if secret_hash and cert_status.numNodes != 0:
            logger.info(f"will start a removal Job for '{registry}'")
            must_remove = True
        else:
            # a hash without Nodes: nothing to remove anywhere
            cert_status.currentHash = ""
            _release(registry)

    elif job.active > 0:
        logger.info(f"Job '{job.name}' is still active... will let it finish")

    else:
        logger.info(f"Job '{job.name}' has finished: active={job.active}, "
                    f"failed={job.failed}, succeeded={job.succeeded}")
        if secret_hash or cert_status.numNodes:
            recorder.event(registry, events.NORMAL, "Removed",
                           f"Certificate '{secret_hash}' successfully removed")
            cert_status.currentHash = ""
            cert_status.numNodes = 0

        logger.info(f"Job '{job.name}' has completed its mission: removing it")
        delete_job(cluster, job)
        _release(registry)

    if must_remove and not nodes:
        # the status is only cleared when a Job reports the removal
        logger.warning(f"no nodes in the cluster: cannot remove ca.crt for '{registry}' yet")
        must_remove = False

    if must_remove:
        try:
            check_job_name(remove_job_name(registry.spec.hostPort))
        except InvalidAddressError as e:
            recorder.event(registry, events.WARNING, "InvalidAddress", f"{e}")
            raise
        remove_cert_for_registry(cluster, registry, secret_hash, len(nodes))
        recorder.event(registry, events.NORMAL, "Removing",
                       f"Removing certificate for '{registry}'...")


def remove_cert_for_registry(cluster, registry: Registry, secret_hash: str, num_nodes: int) -> None:
    """Create the Job removing the certificate of `registry` from all the Nodes."""
    address = safe_id(registry.spec.hostPort)
    job_name = remove_job_name(registry.spec.hostPort)

    delete_stale_jobs(cluster, JOB_REMOVE_LABEL_HOST_PORT, address,
                      JOB_REMOVE_LABEL_HASH, secret_hash)

    logger.info(f"generating Job '{job_name}'")
    job = build_runner_job(RunnerConfig(
        commands=[" ; ".join(remove_commands(registry.spec.hostPort))],
        job_name=job_name,
        job_namespace=settings.JOB_NAMESPACE,
        num_nodes=num_nodes,
        labels={
            JOB_REMOVE_LABEL_HOST_PORT: address,
            JOB_REMOVE_LABEL_HASH: secret_hash,
        },
        host_paths=HOST_PATHS,
        anti_affinity={JOB_REMOVE_LABEL_HOST_PORT: address},
    ))
    adopt_job(job, registry.owner_body())

    logger.info(f"creating Job '{job_name}' for removing certificates")
    try:
        create_job(cluster, job)
    except ApiException as e:
        if is_already_exists(e):
            logger.info(f"the Job '{job_name}' already exists")
        else:
            logger.error(f"when creating Job '{job_name}': {e}")
        raise
