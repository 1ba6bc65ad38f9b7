"""
In-memory cluster client.

Holds jobs, secret stores, targets, credential secrets and the Finding and
Consumer records a run writes. Can be populated from a YAML manifest so the
CLI runs jobs without a real cluster.
"""

from __future__ import annotations

import copy
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from secretscan.core.models import (
    STORE_KIND,
    TARGET_API_VERSION,
    Consumer,
    Finding,
    Job,
    JobConstraints,
    JobRunPolicy,
    JobSpec,
    SecretStoreConstraint,
    SecretStoreObject,
    SecretUpdateRecord,
    TargetConstraint,
    TargetObject,
)
from secretscan.infrastructure.errors import ConfigError, PersistenceError
from secretscan.infrastructure.interfaces import ClusterClient
from secretscan.infrastructure.targets.virtual_machine import parse_start_timestamp

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> timedelta:
    """
    Parse a duration such as ``90``, ``"1h30m"`` or ``"45s"``.

    Bare numbers are seconds.

    Example:
        >>> parse_duration("1h30m")
        datetime.timedelta(seconds=5400)
    """
    if value is None or value == "":
        return timedelta()
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    text = str(value).strip()
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass
    pos = 0
    seconds = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"Invalid duration: {value!r}")
    return timedelta(seconds=seconds)


def _parse_constraints(data: Optional[dict]) -> Optional[JobConstraints]:
    if not data:
        return None
    return JobConstraints(
        secret_store_constraints=[
            SecretStoreConstraint(match_labels=dict(c.get("matchLabels") or {}))
            for c in data.get("secretStoreConstraints") or []
        ],
        target_constraints=[
            TargetConstraint(
                kind=c.get("kind", ""),
                api_version=c.get("apiVersion", ""),
                match_labels=dict(c.get("matchLabels") or {}),
            )
            for c in data.get("targetConstraints") or []
        ],
    )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Normalize a manifest timestamp to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time())
    else:
        parsed = parse_start_timestamp(str(value))
        if parsed is None:
            raise ConfigError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_push_index(data: Optional[dict]) -> dict[str, list[SecretUpdateRecord]]:
    index: dict[str, list[SecretUpdateRecord]] = {}
    for key, records in (data or {}).items():
        index[key] = [
            SecretUpdateRecord(
                timestamp=_parse_timestamp(record.get("timestamp")),
                secret_hash=record.get("secretHash", ""),
            )
            for record in records or []
        ]
    return index


class InMemoryClusterClient(ClusterClient):
    """
    ClusterClient keeping every object in dictionaries.

    Objects are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self):
        self._stores: dict[tuple[str, str], SecretStoreObject] = {}
        self._targets: dict[tuple[str, str, str], TargetObject] = {}
        self._secrets: dict[tuple[str, str], dict[str, bytes]] = {}
        self._jobs: dict[tuple[str, str], Job] = {}
        self._findings: dict[tuple[str, str], Finding] = {}
        self._consumers: dict[tuple[str, str], Consumer] = {}

    @classmethod
    def from_manifest(cls, path: Path | str) -> InMemoryClusterClient:
        """
        Load a cluster from a YAML manifest.

        Expected format::

            namespace: default
            secrets:
              - name: vm-credentials
                data: {token: "..."}
            secretStores:
              - name: prod
                labels: {env: prod}
                spec:
                  data: {db-password: s3cr3t}
            targets:
              - name: build-vm
                kind: VirtualMachine
                spec: {url: "https://10.0.0.5:8443", paths: [/etc]}
            jobs:
              - name: nightly
                spec: {runPolicy: Poll, interval: 1h, jobTimeout: 10m}

        Raises:
            FileNotFoundError: If the manifest doesn't exist
            ConfigError: If the manifest is malformed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Manifest not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Manifest root must be a mapping: {path}")

        client = cls()
        client.load(data)
        return client

    def load(self, data: dict) -> None:
        """Populate the cluster from an already parsed manifest."""
        default_ns = data.get("namespace", "default")
        try:
            for item in data.get("secrets") or []:
                self.add_secret(
                    item.get("namespace", default_ns),
                    item["name"],
                    {k: str(v).encode("utf-8") for k, v in (item.get("data") or {}).items()},
                )
            for item in data.get("secretStores") or []:
                self.add_store(
                    SecretStoreObject(
                        namespace=item.get("namespace", default_ns),
                        name=item["name"],
                        kind=item.get("kind", STORE_KIND),
                        labels=dict(item.get("labels") or {}),
                        resource_version=str(item.get("resourceVersion", "1")),
                        spec=dict(item.get("spec") or {}),
                    )
                )
            for item in data.get("targets") or []:
                self.add_target(
                    TargetObject(
                        namespace=item.get("namespace", default_ns),
                        name=item["name"],
                        kind=item["kind"],
                        api_version=item.get("apiVersion", TARGET_API_VERSION),
                        labels=dict(item.get("labels") or {}),
                        resource_version=str(item.get("resourceVersion", "1")),
                        spec=dict(item.get("spec") or {}),
                        push_index=_parse_push_index(item.get("pushIndex")),
                    )
                )
            for item in data.get("jobs") or []:
                spec = item.get("spec") or {}
                self.add_job(
                    Job(
                        namespace=item.get("namespace", default_ns),
                        name=item["name"],
                        spec=JobSpec(
                            run_policy=JobRunPolicy(spec.get("runPolicy", "Poll")),
                            interval=parse_duration(spec.get("interval", "1h")),
                            job_timeout=parse_duration(spec.get("jobTimeout")),
                            constraints=_parse_constraints(spec.get("constraints")),
                        ),
                    )
                )
        except (KeyError, ValueError) as e:
            raise ConfigError(f"Invalid manifest entry: {e}") from e

        logger.info(
            "Loaded cluster manifest",
            extra={
                "stores": len(self._stores),
                "targets": len(self._targets),
                "jobs": len(self._jobs),
            },
        )

    # Seeding helpers

    def add_store(self, store: SecretStoreObject) -> None:
        self._stores[(store.namespace, store.name)] = copy.deepcopy(store)

    def add_target(self, target: TargetObject) -> None:
        self._targets[(target.namespace, target.name, target.kind)] = copy.deepcopy(target)

    def add_secret(self, namespace: str, name: str, data: dict[str, bytes]) -> None:
        self._secrets[(namespace, name)] = dict(data)

    def add_job(self, job: Job) -> None:
        self._jobs[(job.namespace, job.name)] = copy.deepcopy(job)

    def delete_job(self, namespace: str, name: str) -> None:
        self._jobs.pop((namespace, name), None)

    # Inputs

    async def list_secret_stores(self, namespace: str) -> list[SecretStoreObject]:
        return [
            copy.deepcopy(store)
            for (ns, _), store in sorted(self._stores.items())
            if ns == namespace
        ]

    async def list_targets(self, namespace: str) -> list[TargetObject]:
        return [
            copy.deepcopy(target)
            for (ns, _, _), target in sorted(self._targets.items())
            if ns == namespace
        ]

    async def get_target(
        self, namespace: str, name: str, kind: Optional[str] = None
    ) -> Optional[TargetObject]:
        for (ns, target_name, target_kind), target in sorted(self._targets.items()):
            if ns == namespace and target_name == name and kind in (None, target_kind):
                return copy.deepcopy(target)
        return None

    async def read_secret_key(self, namespace: str, name: str, key: str) -> bytes:
        secret = self._secrets.get((namespace, name))
        if secret is None or key not in secret:
            raise KeyError(f"Secret key not found: {namespace}/{name}[{key}]")
        return secret[key]

    # Jobs

    async def get_job(self, namespace: str, name: str) -> Optional[Job]:
        job = self._jobs.get((namespace, name))
        return copy.deepcopy(job) if job is not None else None

    async def list_jobs(self, namespace: Optional[str] = None) -> list[Job]:
        return [
            copy.deepcopy(job)
            for (ns, _), job in sorted(self._jobs.items())
            if namespace is None or ns == namespace
        ]

    async def update_job_status(self, job: Job) -> None:
        stored = self._jobs.get((job.namespace, job.name))
        if stored is None:
            raise PersistenceError(f"Job not found: {job.namespace}/{job.name}")
        stored.status = copy.deepcopy(job.status)

    # Findings

    async def list_findings(self, namespace: str) -> list[Finding]:
        return [
            copy.deepcopy(finding)
            for (ns, _), finding in sorted(self._findings.items())
            if ns == namespace
        ]

    async def create_finding(self, finding: Finding) -> None:
        key = (finding.namespace, finding.name)
        if key in self._findings:
            raise PersistenceError(f"Finding already exists: {finding.namespace}/{finding.name}")
        self._findings[key] = copy.deepcopy(finding)

    async def update_finding(self, finding: Finding) -> None:
        key = (finding.namespace, finding.name)
        if key not in self._findings:
            raise PersistenceError(f"Finding not found: {finding.namespace}/{finding.name}")
        self._findings[key] = copy.deepcopy(finding)

    async def delete_finding(self, namespace: str, name: str) -> None:
        self._findings.pop((namespace, name), None)

    # Consumers

    async def list_consumers(self, namespace: str) -> list[Consumer]:
        return [
            copy.deepcopy(consumer)
            for (ns, _), consumer in sorted(self._consumers.items())
            if ns == namespace
        ]

    async def create_consumer(self, consumer: Consumer) -> None:
        key = (consumer.namespace, consumer.name)
        if key in self._consumers:
            raise PersistenceError(
                f"Consumer already exists: {consumer.namespace}/{consumer.name}"
            )
        self._consumers[key] = copy.deepcopy(consumer)

    async def update_consumer(self, consumer: Consumer) -> None:
        key = (consumer.namespace, consumer.name)
        if key not in self._consumers:
            raise PersistenceError(f"Consumer not found: {consumer.namespace}/{consumer.name}")
        self._consumers[key] = copy.deepcopy(consumer)

    async def delete_consumer(self, namespace: str, name: str) -> None:
        self._consumers.pop((namespace, name), None)
