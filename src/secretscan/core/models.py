"""
Domain models for secret duplicate detection.

Plain dataclasses describing where secrets live (locations), what the engine
produces (findings and consumers), and the cluster resources it reads
(jobs, secret stores and targets).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

STORE_KIND = "SecretStore"
STORE_API_VERSION = "secretscan.io/v1"
TARGET_API_VERSION = "targets.secretscan.io/v1alpha1"

VIRTUAL_MACHINE_KIND = "VirtualMachine"
GITHUB_REPOSITORY_KIND = "GithubRepository"
KUBERNETES_CLUSTER_KIND = "KubernetesCluster"


@dataclass(frozen=True)
class SecretLocation:
    """
    Where a secret value lives: a key (and optional property) in a store or target.

    Equality and hashing are structural over all fields.
    """

    name: str
    kind: str
    api_version: str
    key: str
    property: str = ""

    def sort_key(self) -> tuple[str, str, str, str, str]:
        """Ordering by key then property; remaining fields only break ties."""
        return (self.key, self.property, self.kind, self.name, self.api_version)

    def index_key(self) -> str:
        """Return ``key`` or ``key.property`` as used by push and observed indexes."""
        if self.property:
            return f"{self.key}.{self.property}"
        return self.key

    def to_dict(self) -> dict:
        remote_ref = {"key": self.key}
        if self.property:
            remote_ref["property"] = self.property
        return {
            "name": self.name,
            "kind": self.kind,
            "apiVersion": self.api_version,
            "remoteRef": remote_ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SecretLocation":
        remote_ref = data.get("remoteRef", {})
        return cls(
            name=data.get("name", ""),
            kind=data.get("kind", ""),
            api_version=data.get("apiVersion", ""),
            key=remote_ref.get("key", ""),
            property=remote_ref.get("property", "") or "",
        )


def store_location(store_name: str, key: str, property: str = "") -> SecretLocation:
    """Build the location of a key held by a Secret Store."""
    return SecretLocation(
        name=store_name,
        kind=STORE_KIND,
        api_version=STORE_API_VERSION,
        key=key,
        property=property,
    )


@dataclass
class Finding:
    """A duplicate group: one content hash observed at two or more locations."""

    hash: str
    stable_label: str
    locations: list[SecretLocation] = field(default_factory=list)
    name: str = ""
    namespace: str = ""

    def to_dict(self) -> dict:
        return {
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {"hash": self.hash, "label": self.stable_label},
            "status": {"locations": [loc.to_dict() for loc in self.locations]},
        }


@dataclass
class SecretUpdateRecord:
    """When a consumer (or a push) last observed a secret version."""

    timestamp: Optional[datetime] = None
    secret_hash: str = ""


@dataclass(frozen=True)
class PodItem:
    name: str
    uid: str
    phase: str = ""


@dataclass(frozen=True)
class TargetReference:
    name: str
    namespace: str


@dataclass(frozen=True)
class ConsumerKey:
    """Identity of one logical consumer across repeated observations."""

    target_namespace: str
    target_name: str
    consumer_type: str
    consumer_id: str

    def as_id(self) -> str:
        return "/".join(
            (self.target_namespace, self.target_name, self.consumer_type, self.consumer_id)
        )


@dataclass
class ConsumerFinding:
    """A single consumer observation reported by a target adapter."""

    location: SecretLocation
    type: str
    id: str
    display_name: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    observed_index: Optional[SecretUpdateRecord] = None
    pods: list[PodItem] = field(default_factory=list)


@dataclass
class VMProcess:
    hostname: str = ""
    pid: int = 0
    executable: str = ""
    user: str = ""


@dataclass
class GitHubActor:
    repository: str = ""
    actor_type: str = ""
    actor_login: str = ""
    actor_id: str = ""
    event: str = ""
    workflow_run_id: str = ""


@dataclass
class K8sWorkload:
    namespace: str = ""
    workload_kind: str = ""
    workload_name: str = ""
    workload_group: str = ""
    workload_version: str = ""
    workload_uid: str = ""
    controller: str = ""
    cluster_name: str = ""


@dataclass
class ConsumerAttributes:
    """Typed consumer payload; at most one member is set, according to the consumer type."""

    vm_process: Optional[VMProcess] = None
    github_actor: Optional[GitHubActor] = None
    k8s_workload: Optional[K8sWorkload] = None


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[datetime] = None

    def same_state(self, other: "Condition") -> bool:
        """Compare everything except the transition timestamp."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )


def set_condition(conditions: list[Condition], condition: Condition) -> bool:
    """
    Insert or update the condition of the same type in place.

    The transition time only moves when the status changes.

    Returns:
        True if anything other than the timestamp changed
    """
    for i, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue
        if existing.same_state(condition):
            return False
        if existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        conditions[i] = condition
        return True
    conditions.append(condition)
    return True


@dataclass
class Consumer:
    """A per-run aggregate of every location one consumer was seen referencing."""

    target: TargetReference
    type: str
    id: str
    display_name: str = ""
    attributes: ConsumerAttributes = field(default_factory=ConsumerAttributes)
    locations: list[SecretLocation] = field(default_factory=list)
    pods: list[PodItem] = field(default_factory=list)
    observed_index: dict[str, SecretUpdateRecord] = field(default_factory=dict)
    conditions: list[Condition] = field(default_factory=list)
    name: str = ""
    namespace: str = ""

    def key(self) -> ConsumerKey:
        return ConsumerKey(
            target_namespace=self.target.namespace,
            target_name=self.target.name,
            consumer_type=self.type,
            consumer_id=self.id,
        )

    def to_dict(self) -> dict:
        return {
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {
                "target": {"name": self.target.name, "namespace": self.target.namespace},
                "type": self.type,
                "id": self.id,
                "displayName": self.display_name,
            },
            "status": {
                "locations": [loc.to_dict() for loc in self.locations],
                "pods": [{"name": p.name, "uid": p.uid, "phase": p.phase} for p in self.pods],
                "conditions": [
                    {"type": c.type, "status": c.status, "reason": c.reason, "message": c.message}
                    for c in self.conditions
                ],
            },
        }


class JobRunPolicy(str, Enum):
    POLL = "Poll"
    ON_CHANGE = "OnChange"
    ONCE = "Once"


class JobRunStatus(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass
class SecretStoreConstraint:
    match_labels: dict[str, str] = field(default_factory=dict)


@dataclass
class TargetConstraint:
    kind: str = ""
    api_version: str = ""
    match_labels: dict[str, str] = field(default_factory=dict)


@dataclass
class JobConstraints:
    """Restricts a job to a subset of the namespace's stores and targets."""

    secret_store_constraints: list[SecretStoreConstraint] = field(default_factory=list)
    target_constraints: list[TargetConstraint] = field(default_factory=list)


@dataclass
class JobSpec:
    run_policy: JobRunPolicy = JobRunPolicy.POLL
    interval: timedelta = field(default_factory=lambda: timedelta(hours=1))
    job_timeout: timedelta = field(default_factory=timedelta)
    constraints: Optional[JobConstraints] = None


@dataclass
class JobStatus:
    run_status: Optional[JobRunStatus] = None
    last_run_time: Optional[datetime] = None
    observed_secret_stores_digest: str = ""
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class Job:
    namespace: str
    name: str
    spec: JobSpec = field(default_factory=JobSpec)
    status: JobStatus = field(default_factory=JobStatus)
    deletion_timestamp: Optional[datetime] = None


@dataclass
class SecretStoreObject:
    """Cluster description of a Secret Store."""

    namespace: str
    name: str
    kind: str = STORE_KIND
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass
class TargetObject:
    """Cluster description of a scan target (VM agent, repository, cluster)."""

    namespace: str
    name: str
    kind: str
    api_version: str = TARGET_API_VERSION
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""
    spec: dict[str, Any] = field(default_factory=dict)
    push_index: dict[str, list[SecretUpdateRecord]] = field(default_factory=dict)
