"""
Job Controller for scheduled scans.

Decides when a Job runs according to its policy, starts the run as a
background task, enforces the job timeout and reconciles the run's Findings
and Consumers against what is stored in the cluster.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from secretscan.core.config import SecretScanConfig
from secretscan.core.models import (
    Condition,
    Consumer,
    Finding,
    Job,
    JobRunPolicy,
    JobRunStatus,
    JobStatus,
    SecretStoreObject,
)
from secretscan.core.obfuscator import RegexObfuscator
from secretscan.infrastructure.errors import EnumerationError, PersistenceError
from secretscan.infrastructure.interfaces import ClusterClient
from secretscan.infrastructure.registry import ProviderRegistry
from secretscan.services.job_runner import JobRunner
from secretscan.services.models import ReconcileResult, RunHandle

logger = logging.getLogger(__name__)

CONDITION_FAILED = "Failed"
REASON_TIMED_OUT = "TimedOut"
REASON_RUN_FAILED = "RunFailed"

# Shortest requeue while a run is in flight
_MIN_REQUEUE_SECONDS = 1.0


def calculate_digest(stores: list[SecretStoreObject]) -> str:
    """
    Digest of the resource versions of a set of secret stores.

    Stores are ordered by name first; an empty set yields an empty string.
    """
    if not stores:
        return ""
    digest = hashlib.sha256()
    for store in sorted(stores, key=lambda s: s.name):
        digest.update(store.resource_version.encode("utf-8"))
    return digest.hexdigest()


def _finding_changed(current: Finding, new: Finding) -> bool:
    return current.locations != new.locations or current.stable_label != new.stable_label


def _observed_hashes(consumer: Consumer) -> dict[str, str]:
    # Timestamps can differ between identical observations
    return {key: record.secret_hash for key, record in consumer.observed_index.items()}


def _consumer_changed(current: Consumer, new: Consumer) -> bool:
    return (
        current.locations != new.locations
        or current.pods != new.pods
        or _observed_hashes(current) != _observed_hashes(new)
        or current.display_name != new.display_name
        or current.attributes != new.attributes
    )


class JobController:
    """
    Reconciles Jobs.

    ``reconcile`` never waits for a run: runs are spawned as asyncio tasks
    and tracked in RunHandles keyed by ``namespace/name``.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        registry: ProviderRegistry,
        config: Optional[SecretScanConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        runner_factory: Optional[Callable[[Job], JobRunner]] = None,
    ):
        """
        Initialize the job controller.

        Args:
            cluster: Cluster client for jobs, stores and produced records
            registry: Providers handed to every runner
            config: Configuration (default: SecretScanConfig())
            clock: Returns the current time (default: UTC now)
            runner_factory: Builds the runner for a job (default: JobRunner from config)
        """
        self._cluster = cluster
        self._registry = registry
        self._config = config or SecretScanConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._runner_factory = runner_factory or self._create_runner
        self._runs: dict[str, RunHandle] = {}

    def _create_runner(self, job: Job) -> JobRunner:
        return JobRunner(
            self._cluster,
            self._registry,
            job.namespace,
            constraints=job.spec.constraints,
            obfuscator=RegexObfuscator.from_config(self._config.obfuscation),
            max_concurrent_targets=self._config.runner.max_concurrent_targets,
        )

    def is_running(self, namespace: str, name: str) -> bool:
        handle = self._runs.get(f"{namespace}/{name}")
        return handle is not None and not handle.done()

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Bring one job closer to its desired state.

        Returns:
            ReconcileResult telling the caller when to reconcile again
        """
        job = await self._cluster.get_job(namespace, name)
        if job is None or job.deletion_timestamp is not None:
            return ReconcileResult()

        key = f"{namespace}/{name}"
        now = self._clock()
        status = job.status

        if status.run_status == JobRunStatus.RUNNING:
            return await self._check_running(job, key, now)

        digest = await self._store_digest(namespace)
        if not self._should_run(job, digest, now):
            return self._idle_requeue(job, now)

        await self._start_run(job, key, digest, now)
        if job.spec.run_policy == JobRunPolicy.POLL:
            return ReconcileResult(requeue_after=job.spec.interval.total_seconds())
        return ReconcileResult()

    def _should_run(self, job: Job, digest: str, now: datetime) -> bool:
        status = job.status
        policy = job.spec.run_policy

        if policy == JobRunPolicy.ONCE:
            return status.run_status is None

        never_ran = status.last_run_time is None
        changed = digest != status.observed_secret_stores_digest
        if policy == JobRunPolicy.ON_CHANGE:
            return never_ran or changed

        if never_ran or changed:
            if changed and not never_ran:
                logger.debug("Secret store digest changed, running job", extra={"job": job.name})
            return True
        return now - status.last_run_time >= job.spec.interval

    def _idle_requeue(self, job: Job, now: datetime) -> ReconcileResult:
        if job.spec.run_policy != JobRunPolicy.POLL or job.status.last_run_time is None:
            return ReconcileResult()
        remaining = job.spec.interval - (now - job.status.last_run_time)
        return ReconcileResult(requeue_after=max(remaining.total_seconds(), _MIN_REQUEUE_SECONDS))

    async def _check_running(self, job: Job, key: str, now: datetime) -> ReconcileResult:
        timeout = job.spec.job_timeout.total_seconds()
        started = job.status.last_run_time or now
        elapsed = (now - started).total_seconds()

        if timeout > 0 and elapsed >= timeout:
            self._stop(key)
            job.status.run_status = JobRunStatus.FAILED
            job.status.conditions.append(
                Condition(
                    type=CONDITION_FAILED,
                    status="False",
                    reason=REASON_TIMED_OUT,
                    message=f"timed out after {job.spec.job_timeout}",
                    last_transition_time=now,
                )
            )
            await self._cluster.update_job_status(job)
            logger.warning(
                "Job timed out",
                extra={"job": key, "timeout_seconds": timeout, "elapsed_seconds": elapsed},
            )
            return ReconcileResult(requeue_after=self._config.controller.timeout_requeue_seconds)

        if self._config.controller.restart_orphaned_runs and not self.is_running(
            job.namespace, job.name
        ):
            logger.warning("Job marked Running without a live run, restarting", extra={"job": key})
            digest = await self._store_digest(job.namespace)
            await self._start_run(job, key, digest, now)
            if timeout > 0:
                return ReconcileResult(requeue_after=timeout)
            return ReconcileResult()

        if timeout > 0:
            return ReconcileResult(requeue_after=max(timeout - elapsed, _MIN_REQUEUE_SECONDS))
        return ReconcileResult()

    async def _store_digest(self, namespace: str) -> str:
        try:
            stores = await self._cluster.list_secret_stores(namespace)
        except Exception as e:
            raise EnumerationError(f"Failed to list secret stores in {namespace}: {e}") from e
        return calculate_digest(stores)

    async def _start_run(self, job: Job, key: str, digest: str, now: datetime) -> None:
        job.status = JobStatus(
            run_status=JobRunStatus.RUNNING,
            last_run_time=now,
            observed_secret_stores_digest=job.status.observed_secret_stores_digest,
        )
        await self._cluster.update_job_status(job)

        self._stop(key)
        task = asyncio.create_task(self._run_job(job, digest, now), name=f"scan-{key}")
        handle = RunHandle(task=task, started_at=now)
        self._runs[key] = handle

        def _forget(_task: asyncio.Task) -> None:
            if self._runs.get(key) is handle:
                del self._runs[key]

        task.add_done_callback(_forget)
        logger.info("Started job run", extra={"job": key, "policy": job.spec.run_policy.value})

    def _stop(self, key: str) -> None:
        handle = self._runs.pop(key, None)
        if handle is not None and not handle.done():
            handle.task.cancel()
            logger.info("Cancelled job run", extra={"job": key})

    async def _run_job(self, job: Job, digest: str, started_at: datetime) -> None:
        key = f"{job.namespace}/{job.name}"
        runner = self._runner_factory(job)
        error: Optional[Exception] = None
        try:
            result = await runner.run()
            await self.update_findings(job.namespace, result.findings)
            await self.update_consumers(job.namespace, result.consumers)
        except Exception as e:
            logger.error(f"Job run failed: {e}", extra={"job": key, "error_type": type(e).__name__})
            error = e
        finally:
            try:
                await runner.close()
            except Exception as e:
                logger.error(f"Failed to close job runner: {e}", extra={"job": key})

        current = await self._cluster.get_job(job.namespace, job.name)
        if current is None:
            return
        if (
            current.status.run_status != JobRunStatus.RUNNING
            or current.status.last_run_time != started_at
        ):
            logger.info("Run superseded, not recording its outcome", extra={"job": key})
            return

        now = self._clock()
        current.status.last_run_time = now
        if error is None:
            current.status.run_status = JobRunStatus.SUCCEEDED
            current.status.observed_secret_stores_digest = digest
        else:
            current.status.run_status = JobRunStatus.FAILED
            current.status.conditions.append(
                Condition(
                    type=CONDITION_FAILED,
                    status="False",
                    reason=REASON_RUN_FAILED,
                    message=str(error),
                    last_transition_time=now,
                )
            )
        try:
            await self._cluster.update_job_status(current)
        except Exception as e:
            logger.error(f"Failed to update job status: {e}", extra={"job": key})
            return
        logger.info(
            "Job run finished",
            extra={"job": key, "run_status": current.status.run_status.value},
        )

    async def update_findings(self, namespace: str, findings: list[Finding]) -> None:
        """
        Diff findings against the cluster, keyed by content hash.

        Unseen hashes are created, changed ones updated, renamed ones deleted
        and recreated, and hashes not produced by this run deleted.

        Raises:
            PersistenceError: On the first failed write
        """
        existing = await self._cluster.list_findings(namespace)
        by_hash: dict[str, Finding] = {}
        for finding in existing:
            by_hash.setdefault(finding.hash, finding)

        seen = set()
        created = updated = deleted = 0
        for finding in findings:
            finding.namespace = namespace
            seen.add(finding.hash)
            current = by_hash.get(finding.hash)
            if current is None:
                await self._write(self._cluster.create_finding(finding), "create finding")
                created += 1
            elif current.name != finding.name:
                await self._write(
                    self._cluster.delete_finding(namespace, current.name), "delete finding"
                )
                await self._write(self._cluster.create_finding(finding), "create finding")
                deleted += 1
                created += 1
            elif _finding_changed(current, finding):
                await self._write(self._cluster.update_finding(finding), "update finding")
                updated += 1

        for finding in existing:
            if finding.hash not in seen or by_hash[finding.hash] is not finding:
                await self._write(
                    self._cluster.delete_finding(namespace, finding.name), "delete finding"
                )
                deleted += 1

        logger.debug(
            "Reconciled findings",
            extra={
                "namespace": namespace,
                "created": created,
                "updated": updated,
                "deleted": deleted,
            },
        )

    async def update_consumers(self, namespace: str, consumers: list[Consumer]) -> None:
        """
        Diff consumers against the cluster, keyed by consumer key.

        Stored conditions are carried over to updated consumers.

        Raises:
            PersistenceError: On the first failed write
        """
        existing = await self._cluster.list_consumers(namespace)
        by_id: dict[str, Consumer] = {}
        for consumer in existing:
            by_id.setdefault(consumer.key().as_id(), consumer)

        seen = set()
        for consumer in consumers:
            consumer.namespace = namespace
            consumer_id = consumer.key().as_id()
            seen.add(consumer_id)
            current = by_id.get(consumer_id)
            if current is None:
                await self._write(self._cluster.create_consumer(consumer), "create consumer")
            elif current.name != consumer.name:
                await self._write(
                    self._cluster.delete_consumer(namespace, current.name), "delete consumer"
                )
                await self._write(self._cluster.create_consumer(consumer), "create consumer")
            elif _consumer_changed(current, consumer):
                consumer.conditions = current.conditions
                await self._write(self._cluster.update_consumer(consumer), "update consumer")

        for consumer in existing:
            consumer_id = consumer.key().as_id()
            if consumer_id not in seen or by_id[consumer_id] is not consumer:
                await self._write(
                    self._cluster.delete_consumer(namespace, consumer.name), "delete consumer"
                )

    @staticmethod
    async def _write(operation, description: str) -> None:
        try:
            await operation
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to {description}: {e}") from e

    async def wait_for(
        self, namespace: str, name: str, timeout: Optional[float] = None
    ) -> None:
        """Wait until the in-flight run of a job, if any, has finished."""
        handle = self._runs.get(f"{namespace}/{name}")
        if handle is None:
            return
        await asyncio.wait({handle.task}, timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to unwind."""
        handles, self._runs = list(self._runs.values()), {}
        for handle in handles:
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        logger.info("Job controller stopped", extra={"cancelled_runs": len(handles)})
