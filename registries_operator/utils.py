"""
Helpers shared by the installer and the remover: ids, hashes and lookups.
"""

import hashlib
import logging
import re
from typing import Dict, List, Optional

from kubernetes.client import ApiException

from registries_operator.config import settings
from registries_operator.errors import (
    InvalidAddressError, MissingCertificateError, is_gone, is_not_found,
)
from registries_operator.models import JobReport, SecretReference

logger = logging.getLogger("registries-operator.utils")

# key in the Secret (and file name in the nodes) for the certificate
CA_CRT = "ca.crt"

# label values are limited to 63 chars
_HASH_LEN = 40

# Job names end up as a label value in their Pods
MAX_NAME_LEN = 63

_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9-]")


def safe_id(s: str) -> str:
    """
    Turn `s` into something usable in resource names and label values
    (ie, "registry.suse.de:5000" -> "registry-suse-de-5000").
    """
    return _UNSAFE_ID_CHARS.sub("-", s.lower())


def certificate_hash(payload: Optional[bytes]) -> str:
    """
    Fingerprint of a certificate.

    Returns "" when there is no certificate: no real payload hashes to that.
    """
    if payload is None:
        return ""
    return hashlib.sha256(payload).hexdigest()[:_HASH_LEN]


def check_job_name(name: str) -> None:
    """Raise InvalidAddressError if `name` cannot be used for a Job (and its Pods labels)."""
    if len(name) > MAX_NAME_LEN:
        raise InvalidAddressError(
            f"Job name '{name}' is longer than {MAX_NAME_LEN} characters: "
            f"the registry address is too long")


def get_all_nodes(cluster) -> List[str]:
    """
    Names of all the Nodes in the cluster.

    Cordoned Nodes are included: they can hold a certificate too, and the
    Job replicas tolerate the cordon.
    """
    nodes = cluster.list_nodes()
    names = [n["name"] for n in nodes]
    cordoned = sum(1 for n in nodes if n.get("unschedulable"))
    logger.debug(f"{len(names)} nodes in the cluster ({cordoned} cordoned)")
    return names


def find_job(cluster, labels: Dict[str, str]) -> Optional[JobReport]:
    """Return the Job with all these `labels`: there should not be more than one."""
    jobs = cluster.list_jobs(labels)
    if not jobs:
        return None
    if len(jobs) > 1:
        logger.warning(f"{len(jobs)} Jobs found with labels {labels}: using the first one")
    return sorted(jobs, key=lambda j: (j.namespace, j.name))[0]


def delete_job(cluster, job: JobReport) -> None:
    """Delete a Job, ignoring it if it is already gone."""
    try:
        cluster.delete_job(job.name, job.namespace)
    except ApiException as e:
        if is_not_found(e) or is_gone(e):
            logger.info(f"Job {job.namespace}/{job.name} already gone")
            return
        raise


def delete_stale_jobs(cluster, address_label: str, address: str,
                      hash_label: str, current_hash: str) -> int:
    """
    Delete Jobs for `address` that were launched for some other certificate.

    Job names only depend on the registry address, so an old Job nobody
    consumes would block the creation of the new one forever.
    """
    deleted = 0
    for job in cluster.list_jobs({address_label: address}):
        if job.labels.get(hash_label) == current_hash:
            continue
        logger.info(f"Job {job.namespace}/{job.name} was launched for another certificate: removing it")
        delete_job(cluster, job)
        deleted += 1
    return deleted


def get_certificate_payload(cluster, ref: SecretReference) -> bytes:
    """Read the CA certificate stored in the Secret `ref`."""
    namespace = ref.namespace or settings.JOB_NAMESPACE
    data = cluster.get_secret_data(ref.name, namespace)
    if CA_CRT not in data:
        raise MissingCertificateError(f"no {CA_CRT} in Secret {namespace}/{ref.name}")
    return data[CA_CRT]
