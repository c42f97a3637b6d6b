"""
ahura/models/cluster.py

Pydantic models for a provisioning job: the declarative cluster specification
accepted at the queue boundary, the ordered address list, and the result the
pipeline hands back on success.
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ahura.errors import ClusterValidationError
from ahura.models.ssh import AuthCredential, PasswordAuth

NodeRole = Literal["control-plane", "worker"]

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?"
    r"(\.[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?)*$"
)
_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?$")


def parse_version(version: str) -> Tuple[int, int, Optional[int]]:
    """
    Split "1.31", "v1.31" or "v1.31.2" into (major, minor, patch-or-None).

    Raises:
        ValueError: If the string is not a Kubernetes version.
    """
    match = _VERSION_RE.match(version.strip())
    if match is None:
        raise ValueError(f"Not a Kubernetes version: {version!r}")
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch) if patch is not None else None


def k8s_series(version: str) -> str:
    """Package repository series for a version, e.g. "v1.31"."""
    major, minor, _ = parse_version(version)
    return f"v{major}.{minor}"


def kubeadm_version(version: str) -> str:
    """
    Value for `kubeadm init --kubernetes-version`. A pinned patch release is
    passed through; a bare minor resolves to the latest stable of that series.
    """
    major, minor, patch = parse_version(version)
    if patch is not None:
        return f"v{major}.{minor}.{patch}"
    return f"stable-{major}.{minor}"


class NodeSpec(BaseModel):
    """
    One machine in the cluster.

    Attributes:
        host: Address used for SSH and for the API reachability check.
        role: "control-plane" or "worker".
        hostname: Optional hostname to set on the machine before bootstrap.
        cpu: Expected vCPUs. A shortfall is logged, never fatal.
        memory_mb: Expected RAM in MiB. A shortfall is logged, never fatal.
    """

    host: str
    role: NodeRole
    hostname: Optional[str] = None
    cpu: Optional[int] = Field(default=None, ge=1)
    memory_mb: Optional[int] = Field(
        default=None, ge=1, validation_alias=AliasChoices("memory_mb", "memoryMb")
    )

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator("host")
    @classmethod
    def validate_host(cls, val: str) -> str:
        val = val.strip()
        if not val or "@" in val or any(ch.isspace() for ch in val):
            raise ValueError("host must be a bare address without user or spaces")
        return val

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, val: Optional[str]) -> Optional[str]:
        if val is None:
            return val
        val = val.strip().lower()
        if not _HOSTNAME_RE.match(val):
            raise ValueError(f"Invalid hostname {val!r}")
        return val


class ClusterInfo(BaseModel):
    """
    Cluster-wide settings. Missing values fall back to ProvisionerSettings.
    """

    name: str
    location: str
    pod_cidr: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("pod_cidr", "podCidr")
    )
    version: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("version", "k8s_minor", "k8sMinor", "k8s_version"),
    )

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator("name", "location")
    @classmethod
    def validate_non_empty(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("must be a non-empty string")
        return val.strip()

    @field_validator("pod_cidr")
    @classmethod
    def validate_pod_cidr(cls, val: Optional[str]) -> Optional[str]:
        if val is None:
            return val
        return str(ipaddress.ip_network(val.strip(), strict=False))

    @field_validator("version")
    @classmethod
    def validate_version(cls, val: Optional[str]) -> Optional[str]:
        if val is None:
            return val
        parse_version(val)
        return val.strip()

    def series(self, default_series: str) -> str:
        return k8s_series(self.version or default_series)

    def kubeadm_version(self, default_series: str) -> str:
        return kubeadm_version(self.version or default_series)


class ClusterSpec(BaseModel):
    """
    The declarative description of a cluster on existing machines.

    Only the "existing" provider is accepted; hypervisor and cloud providers
    are rejected here. Node hosts must be unique. The single-control-plane rule
    is checked by `control_plane()` so the pipeline can refuse a bad topology
    before touching any host.
    """

    cluster_id: str = Field(validation_alias=AliasChoices("cluster_id", "clusterId"))
    provider: Literal["existing"] = "existing"
    cluster: ClusterInfo
    auth: AuthCredential
    nodes: Dict[str, NodeSpec]

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator("cluster_id")
    @classmethod
    def validate_cluster_id(cls, val: str) -> str:
        val = val.strip()
        if not val or "/" in val or val.startswith("."):
            raise ValueError("cluster_id must be a non-empty name without '/'")
        return val

    @model_validator(mode="after")
    def check_nodes(self) -> ClusterSpec:
        if not self.nodes:
            raise ValueError("At least one node is required.")
        hosts = [node.host for node in self.nodes.values()]
        if len(hosts) != len(set(hosts)):
            raise ValueError("Duplicate host(s) detected in nodes.")
        return self

    def control_plane(self) -> Tuple[str, NodeSpec]:
        """
        Return the (name, node) of the only control-plane node.

        Raises:
            ClusterValidationError: If there is not exactly one control-plane node.
        """
        cps = [
            (name, node)
            for name, node in self.nodes.items()
            if node.role == "control-plane"
        ]
        if len(cps) != 1:
            raise ClusterValidationError(
                f"Cluster {self.cluster_id} needs exactly one control-plane node, "
                f"found {len(cps)}."
            )
        return cps[0]

    def workers(self) -> List[Tuple[str, NodeSpec]]:
        """Workers in node-map order, which is also the join order."""
        return [
            (name, node) for name, node in self.nodes.items() if node.role == "worker"
        ]


class ProvisioningJob(BaseModel):
    """
    A unit of work consumed by the pipeline. `addresses[0]` is the
    control-plane target; when omitted the list is derived from the node map.
    """

    spec: ClusterSpec
    addresses: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_addresses(self) -> ProvisioningJob:
        if not self.addresses:
            ordered = sorted(
                self.spec.nodes.values(), key=lambda n: n.role != "control-plane"
            )
            self.addresses = [node.host for node in ordered]
            return self

        if len(self.addresses) != len(set(self.addresses)):
            raise ValueError("Duplicate address(es) in addresses.")
        missing = [
            node.host
            for node in self.spec.nodes.values()
            if node.host not in self.addresses
        ]
        if missing:
            raise ValueError(f"Node host(s) not in addresses: {missing}")
        cp_hosts = [
            node.host
            for node in self.spec.nodes.values()
            if node.role == "control-plane"
        ]
        if len(cp_hosts) == 1 and cp_hosts[0] != self.addresses[0]:
            raise ValueError("addresses[0] must be the control-plane host.")
        return self

    def validate_topology(self) -> str:
        """Return the control-plane host or raise ClusterValidationError."""
        _, cp = self.spec.control_plane()
        return cp.host

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> ProvisioningJob:
        """
        Build a job from a flat queue payload:
        {clusterId, provider, cluster, auth, nodes, addresses?}.

        Raises:
            ClusterValidationError: If the payload is malformed or the topology
                does not have exactly one control-plane node.
        """
        if not isinstance(raw, Mapping):
            raise ClusterValidationError("Job payload must be a mapping.")
        body = {k: v for k, v in raw.items() if k != "addresses"}
        try:
            job = cls(
                spec=ClusterSpec.model_validate(body),
                addresses=list(raw.get("addresses") or []),
            )
        except ValidationError as exc:
            raise ClusterValidationError(f"Invalid job payload: {exc}") from exc
        job.validate_topology()
        return job

    def to_payload(self) -> Dict[str, Any]:
        """Inverse of from_payload, secrets included; never log the result."""
        data = self.spec.model_dump(mode="json", by_alias=False)
        auth = self.spec.auth
        if isinstance(auth, PasswordAuth):
            data["auth"]["password"] = auth.password.get_secret_value()
        data["clusterId"] = data.pop("cluster_id")
        data["addresses"] = list(self.addresses)
        return data


class PipelinePhase(str, Enum):
    VALIDATE = "validate"
    IDENTIFY = "identify"
    BOOTSTRAP = "bootstrap"
    INIT = "init"
    API_READY = "api-ready"
    NETWORK = "network"
    JOIN = "join"
    REPAIR = "repair"
    KUBECONFIG = "kubeconfig"
    INVENTORY = "inventory"
    COMPLETE = "complete"


class ResolvedNode(BaseModel):
    """
    A node as observed on the host during the identify phase.

    Attributes:
        name: Key in the node map.
        host: Address.
        role: Declared role.
        hostname: Hostname reported by the machine.
        cpu: vCPUs reported by `nproc`.
        memory_mb: RAM reported by /proc/meminfo, in MiB.
    """

    name: str
    host: str
    role: NodeRole
    hostname: str
    cpu: int
    memory_mb: int


class ProvisionResult(BaseModel):
    cluster_id: str
    kubeconfig_path: str
    control_plane: str
    nodes: Dict[str, ResolvedNode]
    phases: List[PipelinePhase] = Field(default_factory=list)


def make_node_keys(workers: int) -> List[str]:
    """Node-map keys for a plan with one control plane and `workers` workers."""
    if workers < 0:
        raise ValueError("workers must not be negative")
    return ["cp-1"] + [f"wp-{i}" for i in range(1, workers + 1)]
