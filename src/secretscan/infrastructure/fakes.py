"""
Fake implementations for testing.

Provides in-memory implementations of infrastructure interfaces
for use in unit and integration tests without external dependencies.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Optional

from secretscan.core.models import (
    TARGET_API_VERSION,
    VIRTUAL_MACHINE_KIND,
    Consumer,
    ConsumerFinding,
    Finding,
    Job,
    SecretLocation,
    SecretStoreObject,
    TargetObject,
)
from secretscan.infrastructure.errors import PersistenceError, SecretStoreError, TargetError
from secretscan.infrastructure.interfaces import (
    ClusterClient,
    Disclosure,
    FindQuery,
    ScanTarget,
    SecretStoreProvider,
    SecretStoreReader,
    TargetProvider,
)
from secretscan.infrastructure.memory_cluster import InMemoryClusterClient


class FakeSecretStore(SecretStoreReader):
    """Secret store returning a fixed mapping."""

    def __init__(self, data: dict[str, bytes], fail: bool = False):
        self._data = data
        self._fail = fail
        self.closed = False

    async def get_all_secrets(self, find: FindQuery) -> dict[str, bytes]:
        if self._fail:
            raise SecretStoreError("store unavailable")
        return dict(self._data)

    async def close(self) -> None:
        self.closed = True


class FakeSecretStoreProvider(SecretStoreProvider):
    """
    Serves FakeSecretStore readers by store name.

    Stores named in ``failing`` raise on read; stores not in ``data`` fail
    to open.
    """

    def __init__(
        self,
        data: Optional[dict[str, dict[str, bytes]]] = None,
        failing: Optional[set[str]] = None,
    ):
        self._data = data or {}
        self._failing = failing or set()
        self.opened: list[FakeSecretStore] = []

    async def new_client(
        self, cluster: ClusterClient, store: SecretStoreObject
    ) -> SecretStoreReader:
        if store.name not in self._data and store.name not in self._failing:
            raise SecretStoreError(f"unknown store {store.name}")
        reader = FakeSecretStore(
            self._data.get(store.name, {}), fail=store.name in self._failing
        )
        self.opened.append(reader)
        return reader


class FakeObliviousTarget(ScanTarget):
    """
    Untrusted target holding text files.

    Evaluates every received pattern against every file and reports the
    files where at least ``threshold`` patterns match, the way a real agent
    would. Keeps every pattern it received for inspection.
    """

    disclosure = Disclosure.OBLIVIOUS

    def __init__(
        self,
        name: str,
        files: dict[str, str],
        kind: str = VIRTUAL_MACHINE_KIND,
        consumers: Optional[dict[str, list[ConsumerFinding]]] = None,
        error: Optional[Exception] = None,
    ):
        self.name = name
        self.kind = kind
        self.files = files
        self.consumers = consumers or {}
        self.supports_consumers = consumers is not None
        self.error = error
        self.received: list[list[str]] = []
        self.consumer_requests: list[tuple[SecretLocation, str]] = []
        self.closed = False

    def location(self, key: str) -> SecretLocation:
        return SecretLocation(
            name=self.name, kind=self.kind, api_version=TARGET_API_VERSION, key=key
        )

    async def scan_for_secrets(
        self, patterns: list[str], threshold: int
    ) -> list[SecretLocation]:
        if self.error is not None:
            raise self.error
        self.received.append(list(patterns))
        found = []
        for key, content in sorted(self.files.items()):
            count = sum(1 for p in patterns if re.search(p, content))
            if count >= threshold:
                found.append(self.location(key))
        return found

    async def scan_for_consumers(
        self, location: SecretLocation, content_hash: str
    ) -> list[ConsumerFinding]:
        self.consumer_requests.append((location, content_hash))
        return list(self.consumers.get(location.key, []))

    async def close(self) -> None:
        self.closed = True


class FakeLiteralTarget(ScanTarget):
    """Trusted target that searches its files for literal values."""

    disclosure = Disclosure.LITERAL

    def __init__(self, name: str, files: dict[str, str], kind: str = "GithubRepository"):
        self.name = name
        self.kind = kind
        self.files = files
        self.received: list[str] = []
        self.closed = False

    async def scan_for_secrets(
        self, patterns: list[str], threshold: int
    ) -> list[SecretLocation]:
        self.received.extend(patterns)
        return [
            SecretLocation(
                name=self.name, kind=self.kind, api_version=TARGET_API_VERSION, key=key
            )
            for key, content in sorted(self.files.items())
            if any(value and value in content for value in patterns)
        ]

    async def close(self) -> None:
        self.closed = True


class FakeTargetProvider(TargetProvider):
    """Hands out pre-built targets by name."""

    def __init__(self, targets: dict[str, ScanTarget]):
        self._targets = targets

    async def new_client(self, cluster: ClusterClient, target: TargetObject) -> ScanTarget:
        client = self._targets.get(target.name)
        if client is None:
            raise TargetError(f"no fake target named {target.name}")
        return client


class RecordingClusterClient(InMemoryClusterClient):
    """
    InMemoryClusterClient that counts calls and can be told to fail.

    Attributes:
        calls: Call counts keyed by method name
        fail_writes: Raise PersistenceError from every Finding/Consumer write
        fail_enumeration: Raise ConnectionError when listing stores or targets
    """

    def __init__(self):
        super().__init__()
        self.calls: Counter[str] = Counter()
        self.fail_writes = False
        self.fail_enumeration = False

    def write_calls(self) -> int:
        return sum(
            count
            for method, count in self.calls.items()
            if method.startswith(("create_", "update_finding", "update_consumer", "delete_"))
        )

    def _write(self, method: str) -> None:
        self.calls[method] += 1
        if self.fail_writes:
            raise PersistenceError(f"{method} rejected")

    async def list_secret_stores(self, namespace: str) -> list[SecretStoreObject]:
        self.calls["list_secret_stores"] += 1
        if self.fail_enumeration:
            raise ConnectionError("api server unavailable")
        return await super().list_secret_stores(namespace)

    async def list_targets(self, namespace: str) -> list[TargetObject]:
        self.calls["list_targets"] += 1
        if self.fail_enumeration:
            raise ConnectionError("api server unavailable")
        return await super().list_targets(namespace)

    async def update_job_status(self, job: Job) -> None:
        self.calls["update_job_status"] += 1
        await super().update_job_status(job)

    async def create_finding(self, finding: Finding) -> None:
        self._write("create_finding")
        await super().create_finding(finding)

    async def update_finding(self, finding: Finding) -> None:
        self._write("update_finding")
        await super().update_finding(finding)

    async def delete_finding(self, namespace: str, name: str) -> None:
        self._write("delete_finding")
        await super().delete_finding(namespace, name)

    async def create_consumer(self, consumer: Consumer) -> None:
        self._write("create_consumer")
        await super().create_consumer(consumer)

    async def update_consumer(self, consumer: Consumer) -> None:
        self._write("update_consumer")
        await super().update_consumer(consumer)

    async def delete_consumer(self, namespace: str, name: str) -> None:
        self._write("delete_consumer")
        await super().delete_consumer(namespace, name)
