"""
Configuration module: all settings from env vars with sensible defaults.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # CRD
    CRD_GROUP: str = "kubic.opensuse.org"
    CRD_VERSION: str = "v1beta1"
    CRD_PLURAL: str = "registries"
    CRD_KIND: str = "Registry"

    # Jobs
    JOB_NAMESPACE: str = os.environ.get("JOB_NAMESPACE", "kube-system")
    JOB_IMAGE: str = os.environ.get("JOB_IMAGE", "busybox:latest")

    # Certificates directories on the nodes
    DOCKER_CERTS_DIR: str = os.environ.get("DOCKER_CERTS_DIR", "/etc/docker/certs.d")
    PODMAN_CERTS_DIR: str = os.environ.get("PODMAN_CERTS_DIR", "/etc/containers/certs.d")

    # Notifications mirror (empty = disabled)
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # Operator
    MAX_WORKERS: int = int(os.environ.get("MAX_WORKERS", "4"))
    RETRY_DELAY: int = int(os.environ.get("RETRY_DELAY", "30"))
    RESYNC_INTERVAL: int = int(os.environ.get("RESYNC_INTERVAL", "300"))
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


settings = Settings()
