"""
Pydantic models for the Registry custom resource and the Jobs it owns.
"""
from typing import List, NamedTuple, Optional, Dict

from pydantic import BaseModel, ConfigDict, Field

from registries_operator.config import settings


class RegistryKey(NamedTuple):
    """Key of a Registry: an empty namespace means a cluster-scoped object."""
    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


class SecretReference(BaseModel):
    name: str
    namespace: str = ""


class RegistrySpec(BaseModel):
    """Desired state of a Registry."""
    hostPort: str = ""
    certificate: Optional[SecretReference] = None


class CertificateStatus(BaseModel):
    """
    The certificate installed in the Nodes.

    When ``currentHash`` changes all the Nodes must be invalidated.
    ``numNodes > 0`` implies a non-empty ``currentHash``.
    """
    currentHash: str = ""
    numNodes: int = 0


class RegistryStatus(BaseModel):
    certificate: CertificateStatus = Field(default_factory=CertificateStatus)


class RegistryMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    namespace: Optional[str] = None
    uid: str = ""
    resourceVersion: Optional[str] = None
    finalizers: List[str] = []
    deletionTimestamp: Optional[str] = None


class Registry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    apiVersion: str = f"{settings.CRD_GROUP}/{settings.CRD_VERSION}"
    kind: str = settings.CRD_KIND
    metadata: RegistryMetadata
    spec: RegistrySpec = Field(default_factory=RegistrySpec)
    status: RegistryStatus = Field(default_factory=RegistryStatus)

    @classmethod
    def from_body(cls, body: dict) -> "Registry":
        """Parse a raw CRD dict (as returned by the API server)."""
        data = dict(body)
        # a status that was never written comes back as null or is missing
        data["status"] = body.get("status") or {}
        data["spec"] = body.get("spec") or {}
        return cls.model_validate(data)

    @property
    def key(self) -> RegistryKey:
        return RegistryKey(self.metadata.name, self.metadata.namespace)

    def is_being_deleted(self) -> bool:
        return bool(self.metadata.deletionTimestamp)

    def owner_body(self) -> dict:
        """Minimal body usable as an owner for ownerReferences and Events."""
        metadata = {"name": self.metadata.name, "uid": self.metadata.uid}
        if self.metadata.namespace:
            metadata["namespace"] = self.metadata.namespace
        return {"apiVersion": self.apiVersion, "kind": self.kind, "metadata": metadata}

    def __str__(self) -> str:
        return self.spec.hostPort


class JobReport(BaseModel):
    """The outcome of a distributed Job, as reported by the cluster."""
    name: str
    namespace: str
    labels: Dict[str, str] = {}
    active: int = 0
    failed: int = 0
    succeeded: int = 0


def new_registry(name: str, host_port: str,
                 cert_name: Optional[str] = None,
                 cert_namespace: str = "",
                 namespace: Optional[str] = None,
                 uid: str = "") -> Registry:
    """Build a Registry for `host_port`, optionally referencing a certificate Secret."""
    certificate = None
    if cert_name:
        certificate = SecretReference(name=cert_name, namespace=cert_namespace)
    return Registry(
        metadata=RegistryMetadata(name=name, namespace=namespace, uid=uid),
        spec=RegistrySpec(hostPort=host_port, certificate=certificate),
    )


class Result(NamedTuple):
    """Outcome of a reconciliation pass: ask for another pass after some seconds."""
    requeue_after: Optional[float] = None
