"""
Consumer freshness check.

Compares what each consumer last observed against the push history of its
target and records whether it runs the latest version of every secret.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from secretscan.core.models import Condition, Consumer, SecretUpdateRecord, set_condition
from secretscan.infrastructure.interfaces import ClusterClient
from secretscan.services.models import ReconcileResult

logger = logging.getLogger(__name__)

CONDITION_LATEST_VERSION = "UsingLatestVersion"
REASON_UP_TO_DATE = "LocationsUpToDate"
REASON_OUT_OF_DATE = "LocationsOutOfDate"
REASON_WORKLOAD_NOT_READY = "WorkloadNotReady"

POD_RUNNING = "Running"

REQUEUE_WHEN_STALE = 60.0
REQUEUE_WHEN_CURRENT = 300.0


def _format_time(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else "unknown"


def evaluate_consumer(
    consumer: Consumer,
    push_index: dict[str, list[SecretUpdateRecord]],
    now: Optional[datetime] = None,
) -> tuple[Condition, bool]:
    """
    Compute the UsingLatestVersion condition and apply it to the consumer.

    A location is out of date when the newest push record for its key has a
    different hash than the one the consumer observed. Locations without
    push history are ignored. Any pod not Running overrides the result.

    Returns:
        (condition, changed) where changed tells whether the stored
        conditions need to be written back
    """
    stale = []
    for index_key, observed in sorted(consumer.observed_index.items()):
        history = push_index.get(index_key)
        if not history:
            continue
        latest = history[-1]
        if latest.secret_hash != observed.secret_hash:
            stale.append(
                f"Location {index_key} last updated at {_format_time(observed.timestamp)}. "
                f"Current version updated at {_format_time(latest.timestamp)}"
            )

    status, reason = "True", REASON_UP_TO_DATE
    message = "All observed locations are up to date"
    if stale:
        status, reason = "False", REASON_OUT_OF_DATE
        message = "Observed locations out of date: " + "; ".join(stale)

    if any(pod.phase != POD_RUNNING for pod in consumer.pods):
        status, reason = "False", REASON_WORKLOAD_NOT_READY
        message = "Not all pods related to this consumer are 'Running'"

    condition = Condition(
        type=CONDITION_LATEST_VERSION,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=now or datetime.now(timezone.utc),
    )
    changed = set_condition(consumer.conditions, condition)
    return condition, changed


class ConsumerStatusChecker:
    """Reconciles the freshness condition of stored consumers."""

    def __init__(
        self,
        cluster: ClusterClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._cluster = cluster
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def check(self, consumer: Consumer) -> ReconcileResult:
        """
        Evaluate one consumer against its target's push index.

        Returns:
            ReconcileResult requeueing after one minute when stale, five when current
        """
        target = await self._cluster.get_target(consumer.target.namespace, consumer.target.name)
        if target is None:
            logger.debug(
                "Target for consumer not found",
                extra={"consumer": consumer.name, "target": consumer.target.name},
            )
            return ReconcileResult()

        condition, changed = evaluate_consumer(consumer, target.push_index, self._clock())
        if changed:
            await self._cluster.update_consumer(consumer)
            logger.info(
                "Consumer status changed",
                extra={"consumer": consumer.name, "status": condition.status, "reason": condition.reason},
            )

        if condition.status == "False":
            return ReconcileResult(requeue_after=REQUEUE_WHEN_STALE)
        return ReconcileResult(requeue_after=REQUEUE_WHEN_CURRENT)

    async def check_namespace(self, namespace: str) -> dict[str, ReconcileResult]:
        """Check every consumer in a namespace, keyed by consumer name."""
        results = {}
        for consumer in await self._cluster.list_consumers(namespace):
            results[consumer.name] = await self.check(consumer)
        return results
