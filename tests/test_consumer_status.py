"""Tests for the consumer freshness check."""

from datetime import datetime, timedelta, timezone

import pytest

from secretscan.core.models import (
    Condition,
    Consumer,
    PodItem,
    SecretUpdateRecord,
    TargetObject,
    TargetReference,
)
from secretscan.infrastructure.fakes import RecordingClusterClient
from secretscan.services.consumer_status import (
    REQUEUE_WHEN_CURRENT,
    REQUEUE_WHEN_STALE,
    ConsumerStatusChecker,
    evaluate_consumer,
)

NS = "default"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _consumer(observed: dict[str, str], pods=()) -> Consumer:
    return Consumer(
        target=TargetReference(name="build-vm", namespace=NS),
        type="VirtualMachine",
        id="proc-1",
        observed_index={
            key: SecretUpdateRecord(timestamp=T0, secret_hash=digest)
            for key, digest in observed.items()
        },
        pods=list(pods),
        name="build-vm-proc-1",
        namespace=NS,
    )


def _push(*hashes: str) -> list[SecretUpdateRecord]:
    return [
        SecretUpdateRecord(timestamp=T0 + timedelta(hours=i), secret_hash=h)
        for i, h in enumerate(hashes)
    ]


class TestEvaluateConsumer:
    def test_up_to_date(self):
        consumer = _consumer({"/etc/app.env": "h2"})

        condition, changed = evaluate_consumer(consumer, {"/etc/app.env": _push("h1", "h2")}, T0)

        assert changed
        assert (condition.type, condition.status, condition.reason) == (
            "UsingLatestVersion",
            "True",
            "LocationsUpToDate",
        )
        assert consumer.conditions == [condition]

    def test_out_of_date(self):
        consumer = _consumer({"/etc/app.env": "h1"})

        condition, _ = evaluate_consumer(consumer, {"/etc/app.env": _push("h1", "h2")}, T0)

        assert condition.status == "False"
        assert condition.reason == "LocationsOutOfDate"
        assert "/etc/app.env" in condition.message

    def test_locations_without_push_history_are_ignored(self):
        consumer = _consumer({"/etc/unknown.env": "h1"})

        condition, _ = evaluate_consumer(consumer, {}, T0)

        assert condition.status == "True"

    def test_pod_not_running_overrides(self):
        consumer = _consumer(
            {"/etc/app.env": "h2"},
            pods=[PodItem(name="web-1", uid="u1", phase="Running"), PodItem("web-2", "u2", "Pending")],
        )

        condition, _ = evaluate_consumer(consumer, {"/etc/app.env": _push("h2")}, T0)

        assert condition.status == "False"
        assert condition.reason == "WorkloadNotReady"

    def test_unchanged_condition_keeps_transition_time(self):
        consumer = _consumer({"/etc/app.env": "h2"})
        evaluate_consumer(consumer, {"/etc/app.env": _push("h2")}, T0)

        _, changed = evaluate_consumer(
            consumer, {"/etc/app.env": _push("h2")}, T0 + timedelta(hours=1)
        )

        assert not changed
        assert consumer.conditions[0].last_transition_time == T0

    def test_status_flip_moves_transition_time(self):
        consumer = _consumer({"/etc/app.env": "h1"})
        consumer.conditions.append(
            Condition(
                type="UsingLatestVersion",
                status="True",
                reason="LocationsUpToDate",
                message="All observed locations are up to date",
                last_transition_time=T0,
            )
        )
        later = T0 + timedelta(hours=2)

        _, changed = evaluate_consumer(consumer, {"/etc/app.env": _push("h1", "h2")}, later)

        assert changed
        assert len(consumer.conditions) == 1
        assert consumer.conditions[0].last_transition_time == later


class TestConsumerStatusChecker:
    @pytest.mark.asyncio
    async def test_stale_consumer_is_written_and_requeued_sooner(self):
        cluster = RecordingClusterClient()
        cluster.add_target(
            TargetObject(
                namespace=NS,
                name="build-vm",
                kind="VirtualMachine",
                push_index={"/etc/app.env": _push("h1", "h2")},
            )
        )
        await cluster.create_consumer(_consumer({"/etc/app.env": "h1"}))
        checker = ConsumerStatusChecker(cluster, clock=lambda: T0)

        results = await checker.check_namespace(NS)

        assert results["build-vm-proc-1"].requeue_after == REQUEUE_WHEN_STALE
        stored = (await cluster.list_consumers(NS))[0]
        assert stored.conditions[0].reason == "LocationsOutOfDate"

    @pytest.mark.asyncio
    async def test_current_consumer_is_written_once(self):
        cluster = RecordingClusterClient()
        cluster.add_target(
            TargetObject(
                namespace=NS,
                name="build-vm",
                kind="VirtualMachine",
                push_index={"/etc/app.env": _push("h1")},
            )
        )
        await cluster.create_consumer(_consumer({"/etc/app.env": "h1"}))
        checker = ConsumerStatusChecker(cluster, clock=lambda: T0)

        first = await checker.check((await cluster.list_consumers(NS))[0])
        second = await checker.check((await cluster.list_consumers(NS))[0])

        assert first.requeue_after == REQUEUE_WHEN_CURRENT
        assert second.requeue_after == REQUEUE_WHEN_CURRENT
        assert cluster.calls["update_consumer"] == 1

    @pytest.mark.asyncio
    async def test_missing_target_is_not_requeued(self):
        cluster = RecordingClusterClient()
        checker = ConsumerStatusChecker(cluster)

        result = await checker.check(_consumer({"/etc/app.env": "h1"}))

        assert result.requeue_after is None
        assert cluster.calls["update_consumer"] == 0
