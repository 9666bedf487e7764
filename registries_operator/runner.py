"""
Jobs that run some shell commands once in every Node of the cluster.

The Job runs `numNodes` replicas in parallel, and a required Pod
anti-affinity (on the hostname) keeps two replicas out of the same Node.
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import kopf
import yaml

from registries_operator.config import settings
from registries_operator.utils import CA_CRT, safe_id

logger = logging.getLogger("registries-operator.runner")

# directory in the Job where secrets will be mounted
JOB_SECRETS_DIR = "/secrets"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "registries-operator"

# a container name is a DNS label: it cannot be derived from the (long) Job name
RUNNER_CONTAINER = "runner"

_JOB_TEMPLATE = {
    "apiVersion": "batch/v1",
    "kind": "Job",
    "metadata": {
        "name": "unset",
        "labels": {},
    },
    "spec": {
        "template": {
            "metadata": {"labels": {}},
            "spec": {
                "restartPolicy": "Never",
                "tolerations": [
                    {
                        "key": "node-role.kubernetes.io/master",
                        "operator": "Exists",
                        "effect": "NoSchedule",
                    },
                    {
                        "key": "node-role.kubernetes.io/control-plane",
                        "operator": "Exists",
                        "effect": "NoSchedule",
                    },
                    {
                        "key": "CriticalAddonsOnly",
                        "operator": "Exists",
                    },
                    # cordoned Nodes must be visited too
                    {
                        "key": "node.kubernetes.io/unschedulable",
                        "operator": "Exists",
                        "effect": "NoSchedule",
                    },
                ],
                "containers": [
                    {
                        "name": "unset",
                        "imagePullPolicy": "IfNotPresent",
                        "command": ["/bin/sh", "-c"],
                        "args": [],
                    },
                ],
                "affinity": {
                    "podAntiAffinity": {
                        "requiredDuringSchedulingIgnoredDuringExecution": [
                            {
                                "topologyKey": "kubernetes.io/hostname",
                                "labelSelector": {"matchLabels": {}},
                            },
                        ],
                    },
                },
            },
        },
    },
}


@dataclass
class RunnerConfig:
    commands: List[str]
    job_name: str
    job_namespace: str
    num_nodes: int
    # mount name -> Secret name, mounted at JOB_SECRETS_DIR/<mount name>
    secrets: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    anti_affinity: Dict[str, str] = field(default_factory=dict)
    # mounted read-write at the same path in the container
    host_paths: List[str] = field(default_factory=list)
    image: Optional[str] = None


def build_runner_job(cfg: RunnerConfig) -> dict:
    """Build (but do not create) the Job manifest described by `cfg`."""
    job = copy.deepcopy(_JOB_TEMPLATE)

    job["metadata"]["name"] = cfg.job_name
    job["metadata"]["namespace"] = cfg.job_namespace
    job["spec"]["parallelism"] = cfg.num_nodes
    job["spec"]["completions"] = cfg.num_nodes

    labels = {MANAGED_BY_LABEL: MANAGED_BY, **cfg.labels}
    job["metadata"]["labels"].update(labels)

    pod_template = job["spec"]["template"]
    # the anti-affinity selects sibling Pods, so they must carry its labels
    pod_template["metadata"]["labels"].update(labels)
    pod_template["metadata"]["labels"].update(cfg.anti_affinity)

    pod_spec = pod_template["spec"]
    container = pod_spec["containers"][0]
    container["name"] = RUNNER_CONTAINER
    container["image"] = cfg.image or settings.JOB_IMAGE
    container["args"] = list(cfg.commands)

    volumes = []
    mounts = []
    for mount_name, secret_name in sorted(cfg.secrets.items()):
        name = safe_id(mount_name)
        volumes.append({
            "name": name,
            "secret": {
                "secretName": secret_name,
                "items": [{"key": CA_CRT, "path": CA_CRT}],
            },
        })
        mounts.append({
            "name": name,
            "mountPath": os.path.join(JOB_SECRETS_DIR, mount_name),
            "readOnly": True,
        })

    for num, host_path in enumerate(cfg.host_paths):
        name = f"host-path-{num}"
        volumes.append({"name": name, "hostPath": {"path": host_path}})
        mounts.append({"name": name, "mountPath": host_path})

    pod_spec["volumes"] = volumes
    container["volumeMounts"] = mounts

    term = pod_spec["affinity"]["podAntiAffinity"]["requiredDuringSchedulingIgnoredDuringExecution"][0]
    term["labelSelector"]["matchLabels"] = dict(cfg.anti_affinity)

    return job


def adopt_job(job: dict, owner: dict) -> dict:
    """Make `owner` the controller of `job`, so the Job is garbage-collected with it."""
    kopf.append_owner_reference(job, owner=owner)
    return job


def create_job(cluster, job: dict) -> None:
    """Create the Job, logging the full manifest in debug mode."""
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"final Job produced:\n{yaml.safe_dump(job)}")
    cluster.create_job(job)
