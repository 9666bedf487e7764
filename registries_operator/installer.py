"""
Installation of the certificate of a Registry in all the Nodes.

Every pass re-derives what must be done from the observed state (the
Registry status and the installation Job, if any), so it can be replayed
any number of times:

  - certificate changed    -> invalidate the status, (re)install
  - Nodes count changed    -> (re)install
  - Job active             -> wait for it
  - Job failed             -> remove it, install again
  - Job succeeded          -> record hash/Nodes in the status, remove it

Known gap: on a certificate rotation the status is flushed before the new
Job runs, while the old ca.crt stays in the Nodes until it is overwritten.
"""

import logging
import os
import shlex
from typing import List

from kubernetes.client import ApiException

from registries_operator import events
from registries_operator.config import settings
from registries_operator.errors import InvalidAddressError, is_already_exists
from registries_operator.models import Registry, Result
from registries_operator.runner import (
    JOB_SECRETS_DIR, RunnerConfig, adopt_job, build_runner_job, create_job,
)
from registries_operator.utils import (
    CA_CRT, certificate_hash, check_job_name, delete_job, delete_stale_jobs, find_job, safe_id,
)

logger = logging.getLogger("registries-operator.installer")

# a prefix for all the jobs created for installing certificates
JOB_INSTALL_NAME_PREFIX = "kubic-registry-installer"

# labels in jobs that install certificates: the registry address
JOB_INSTALL_LABEL_HOST_PORT = "kubic-registry-installer-host-port"

# labels in jobs that install certificates: the hash of the ca.crt being installed
JOB_INSTALL_LABEL_HASH = "kubic-registry-installer-hash"

# docker cannot mount directories with colons (like "registry.suse.de:5000")
# so the certificate is mounted at "/secrets/this-registry/ca.crt"
REGISTRY_MOUNT = "this-registry"

# host directories containing the docker and podman certificates dirs
HOST_PATHS = ["/etc/docker", "/etc/containers"]


def install_job_name(host_port: str) -> str:
    return f"{safe_id(JOB_INSTALL_NAME_PREFIX)}-{safe_id(host_port)}"


def install_commands(host_port: str) -> List[str]:
    """Shell commands copying the mounted ca.crt to the docker and podman dirs."""
    src = shlex.quote(os.path.join(JOB_SECRETS_DIR, REGISTRY_MOUNT, CA_CRT))
    commands = []
    for certs_dir in (settings.DOCKER_CERTS_DIR, settings.PODMAN_CERTS_DIR):
        dst = os.path.join(certs_dir, host_port)
        qdst = shlex.quote(dst)
        commands += [
            f"echo Removing {qdst}",
            f"rm -rf {qdst}",
            f"mkdir -p {qdst}",
            f"echo Copying {src} to {qdst}/ ...",
            f"cp {src} {qdst}/",
        ]
    commands.append("echo Done")
    return commands


def reconcile_cert_present(cluster, recorder: events.Recorder, registry: Registry,
                           nodes: List[str], payload: bytes) -> Result:
    """Make sure the certificate `payload` is installed in all the `nodes`."""
    cert_status = registry.status.certificate
    spec_hash = certificate_hash(payload)
    must_install = False
    result = Result()

    # 1. check if the certificate in this Registry has changed
    if cert_status.currentHash and cert_status.currentHash != spec_hash:
        logger.info(f"ca.crt for '{registry}' has changed: (re)deploying")
        must_install = True
        cert_status.currentHash = ""
        cert_status.numNodes = 0

    # 2. check if maybe we have not installed it in some new Nodes
    if cert_status.numNodes != len(nodes) and not must_install:
        logger.info(f"some nodes do not have current ca.crt for '{registry}' yet: (re)deploying")
        must_install = True

    # 3. process the Job launched for this certificate, if any
    address = safe_id(registry.spec.hostPort)
    job = find_job(cluster, {
        JOB_INSTALL_LABEL_HOST_PORT: address,
        JOB_INSTALL_LABEL_HASH: spec_hash,
    })
    if job:
        logger.info(f"Job '{job.name}': active={job.active}, failed={job.failed}, succeeded={job.succeeded}")
        if job.active > 0:
            logger.debug(f"Job '{job.name}' is still active... will let it finish")
            must_install = False

        elif job.failed > 0:
            logger.info(f"Job '{job.name}' has failed to install ca.crt for '{registry}'")
            recorder.event(registry, events.WARNING, "Failed",
                           f"Certificate installation of '{spec_hash}' failed... retrying")
            delete_job(cluster, job)
            must_install = True

        elif job.succeeded > 0:
            logger.info(f"Job '{job.name}' has finished")
            if cert_status.currentHash != spec_hash or cert_status.numNodes != job.succeeded:
                recorder.event(registry, events.NORMAL, "Installed",
                               f"Certificate '{spec_hash}' successfully installed")
                cert_status.currentHash = spec_hash
                cert_status.numNodes = job.succeeded

            logger.info(f"Job '{job.name}' has completed its mission: removing it")
            delete_job(cluster, job)
            must_install = False

        else:
            logger.debug(f"Job '{job.name}' has an unknown state")
            must_install = False
            result = Result(requeue_after=settings.RETRY_DELAY)

    if must_install and not nodes:
        logger.info(f"no nodes in the cluster: not installing ca.crt for '{registry}'")
        must_install = False

    if must_install:
        try:
            check_job_name(install_job_name(registry.spec.hostPort))
        except InvalidAddressError as e:
            recorder.event(registry, events.WARNING, "InvalidAddress", f"{e}")
            raise
        install_cert_for_registry(cluster, registry, spec_hash, len(nodes))
        recorder.event(registry, events.NORMAL, "Starting",
                       f"Starting certificate installation for '{spec_hash}'")

    return result


def install_cert_for_registry(cluster, registry: Registry, spec_hash: str, num_nodes: int) -> None:
    """Create the Job copying the certificate of `registry` to all the Nodes."""
    address = safe_id(registry.spec.hostPort)
    job_name = install_job_name(registry.spec.hostPort)
    ref = registry.spec.certificate
    # a Secret volume can only be mounted from the Pod namespace
    namespace = ref.namespace or settings.JOB_NAMESPACE

    delete_stale_jobs(cluster, JOB_INSTALL_LABEL_HOST_PORT, address,
                      JOB_INSTALL_LABEL_HASH, spec_hash)

    logger.info(f"generating Job '{job_name}'")
    job = build_runner_job(RunnerConfig(
        commands=[" ; ".join(install_commands(registry.spec.hostPort))],
        job_name=job_name,
        job_namespace=namespace,
        num_nodes=num_nodes,
        secrets={REGISTRY_MOUNT: ref.name},
        labels={
            JOB_INSTALL_LABEL_HOST_PORT: address,
            JOB_INSTALL_LABEL_HASH: spec_hash,
        },
        host_paths=HOST_PATHS,
        anti_affinity={JOB_INSTALL_LABEL_HOST_PORT: address},
    ))
    adopt_job(job, registry.owner_body())

    logger.info(f"creating Job '{job_name}' for installing certificates")
    try:
        create_job(cluster, job)
    except ApiException as e:
        if is_already_exists(e):
            logger.info(f"the Job '{job_name}' already exists")
        else:
            logger.error(f"when creating Job '{job_name}': {e}")
        raise
