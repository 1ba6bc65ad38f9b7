"""
Consumer attribution index.

Merges the consumer reports of every target into one Consumer per logical
consumer (target + type + id), deduplicating locations and pods.
"""

import threading
from dataclasses import dataclass, field

from secretscan.core.locations import consumer_name, sort_locations
from secretscan.core.models import (
    GITHUB_REPOSITORY_KIND,
    KUBERNETES_CLUSTER_KIND,
    VIRTUAL_MACHINE_KIND,
    Consumer,
    ConsumerAttributes,
    ConsumerFinding,
    ConsumerKey,
    GitHubActor,
    K8sWorkload,
    PodItem,
    SecretLocation,
    SecretUpdateRecord,
    TargetReference,
    VMProcess,
)


def fill_attributes(consumer_type: str, attributes: dict[str, str]) -> ConsumerAttributes:
    """Convert adapter string attributes into the typed payload for a consumer type."""
    if consumer_type == VIRTUAL_MACHINE_KIND:
        pid = 0
        try:
            pid = int(attributes.get("pid", "0"))
        except ValueError:
            pid = 0
        return ConsumerAttributes(
            vm_process=VMProcess(
                hostname=attributes.get("hostname", ""),
                pid=pid,
                executable=attributes.get("executable", ""),
                user=attributes.get("user", ""),
            )
        )
    if consumer_type == GITHUB_REPOSITORY_KIND:
        return ConsumerAttributes(
            github_actor=GitHubActor(
                repository=attributes.get("repository", ""),
                actor_type=attributes.get("actorType", ""),
                actor_login=attributes.get("actorLogin", ""),
                actor_id=attributes.get("actorID", ""),
                event=attributes.get("event", ""),
                workflow_run_id=attributes.get("workflowRunID", ""),
            )
        )
    if consumer_type == KUBERNETES_CLUSTER_KIND:
        return ConsumerAttributes(
            k8s_workload=K8sWorkload(
                namespace=attributes.get("namespace", ""),
                workload_kind=attributes.get("workloadKind", ""),
                workload_name=attributes.get("workloadName", ""),
                workload_group=attributes.get("workloadGroup", ""),
                workload_version=attributes.get("workloadVersion", ""),
                workload_uid=attributes.get("workloadUID", ""),
                controller=attributes.get("controller", ""),
                cluster_name=attributes.get("clusterName", ""),
            )
        )
    return ConsumerAttributes()


@dataclass
class _ConsumerAccumulator:
    target: TargetReference
    type: str
    id: str
    display_name: str
    attributes: ConsumerAttributes
    locations: list[SecretLocation] = field(default_factory=list)
    pods: dict[tuple[str, str], PodItem] = field(default_factory=dict)
    observed_index: dict[str, SecretUpdateRecord] = field(default_factory=dict)


class ConsumerIndex:
    """Per-run accumulator of consumer observations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accumulators: dict[ConsumerKey, _ConsumerAccumulator] = {}

    def add(self, target: TargetReference, finding: ConsumerFinding) -> None:
        """
        Merge one consumer observation.

        Args:
            target: Target the observation came from
            finding: Adapter report for a single location
        """
        key = ConsumerKey(
            target_namespace=target.namespace,
            target_name=target.name,
            consumer_type=finding.type,
            consumer_id=finding.id,
        )
        with self._lock:
            acc = self._accumulators.get(key)
            if acc is None:
                acc = _ConsumerAccumulator(
                    target=target,
                    type=finding.type,
                    id=finding.id,
                    display_name=finding.display_name,
                    attributes=fill_attributes(finding.type, finding.attributes),
                )
                self._accumulators[key] = acc

            if finding.location not in acc.locations:
                acc.locations.append(finding.location)

            for pod in finding.pods:
                acc.pods[(pod.uid, pod.name)] = pod

            if finding.observed_index is not None:
                index_key = finding.location.index_key()
                current = acc.observed_index.get(index_key)
                if current is None or _is_newer(finding.observed_index, current):
                    acc.observed_index[index_key] = finding.observed_index

    def __len__(self) -> int:
        with self._lock:
            return len(self._accumulators)

    def list(self) -> list[Consumer]:
        """Flatten accumulators into consumers with sorted locations and pods."""
        with self._lock:
            items = sorted(self._accumulators.items(), key=lambda item: item[0].as_id())
            consumers = []
            for key, acc in items:
                consumers.append(
                    Consumer(
                        target=acc.target,
                        type=acc.type,
                        id=acc.id,
                        display_name=acc.display_name,
                        attributes=acc.attributes,
                        locations=sort_locations(acc.locations),
                        pods=[acc.pods[k] for k in sorted(acc.pods)],
                        observed_index=dict(sorted(acc.observed_index.items())),
                        name=consumer_name(key),
                    )
                )
        return consumers


def _is_newer(candidate: SecretUpdateRecord, current: SecretUpdateRecord) -> bool:
    if candidate.timestamp is None:
        return False
    if current.timestamp is None:
        return True
    return candidate.timestamp > current.timestamp
