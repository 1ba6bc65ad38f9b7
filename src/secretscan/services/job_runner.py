"""
Job Runner for secretscan.

Coordinates one scan run: reading secret stores, scanning targets through
the oblivious (regex) and literal protocols, computing duplicate findings
and attributing consumers.

Phases run in order. Within a phase every target is scanned in its own
task, bounded by ``max_concurrent_targets``.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

from secretscan.core.consumer_index import ConsumerIndex
from secretscan.core.location_index import LocationIndex
from secretscan.core.models import (
    JobConstraints,
    SecretLocation,
    SecretStoreObject,
    TargetObject,
    TargetReference,
    store_location,
)
from secretscan.core.obfuscator import RegexBundle, RegexObfuscator, value_to_text
from secretscan.infrastructure.errors import (
    EnumerationError,
    TargetTimeoutError,
)
from secretscan.infrastructure.interfaces import (
    ClusterClient,
    Disclosure,
    FindQuery,
    ScanTarget,
    SecretStoreReader,
)
from secretscan.infrastructure.registry import ProviderRegistry
from secretscan.services.models import RunResult

logger = logging.getLogger(__name__)

_ScanFn = Callable[[TargetObject, ScanTarget], Awaitable[None]]


def _labels_match(labels: dict[str, str], match_labels: dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in match_labels.items())


def store_selected(store: SecretStoreObject, constraints: Optional[JobConstraints]) -> bool:
    """Whether a job's constraints select a store. No constraints select everything."""
    if constraints is None or not constraints.secret_store_constraints:
        return True
    return any(
        _labels_match(store.labels, c.match_labels) for c in constraints.secret_store_constraints
    )


def target_selected(target: TargetObject, constraints: Optional[JobConstraints]) -> bool:
    """Whether a job's constraints select a target. No constraints select everything."""
    if constraints is None or not constraints.target_constraints:
        return True
    return any(
        (not c.kind or c.kind == target.kind)
        and (not c.api_version or c.api_version == target.api_version)
        and _labels_match(target.labels, c.match_labels)
        for c in constraints.target_constraints
    )


def flatten_secret(store_name: str, key: str, value: bytes) -> list[tuple[SecretLocation, bytes]]:
    """
    Split a stored secret into indexable leaves.

    A JSON object becomes one location per top-level property; string leaves
    are indexed as their text, other leaves as compact JSON. Anything else
    is indexed as a single raw value.
    """
    try:
        decoded = json.loads(value)
    except ValueError:
        decoded = None

    if not isinstance(decoded, dict):
        return [(store_location(store_name, key), value)]

    leaves = []
    for prop, leaf in decoded.items():
        if isinstance(leaf, str):
            leaf_bytes = leaf.encode("utf-8")
        else:
            leaf_bytes = json.dumps(leaf, separators=(",", ":")).encode("utf-8")
        leaves.append((store_location(store_name, key, str(prop)), leaf_bytes))
    return leaves


class SecretStoreManager:
    """Opens store readers on demand for one run and closes them all at the end."""

    def __init__(self, cluster: ClusterClient, registry: ProviderRegistry):
        self._cluster = cluster
        self._registry = registry
        self._readers: dict[str, SecretStoreReader] = {}

    async def get(self, store: SecretStoreObject) -> SecretStoreReader:
        reader = self._readers.get(store.name)
        if reader is None:
            provider = self._registry.get_store(store.kind)
            reader = await provider.new_client(self._cluster, store)
            self._readers[store.name] = reader
        return reader

    async def close(self) -> None:
        readers, self._readers = list(self._readers.values()), {}
        for reader in readers:
            try:
                await reader.close()
            except Exception as e:
                logger.warning(f"Failed to close secret store reader: {e}")


class JobRunner:
    """
    Runs one scan for a namespace.

    A runner holds the per-run indexes and clients; build a new one for
    every run and call ``close()`` when done.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        registry: ProviderRegistry,
        namespace: str,
        constraints: Optional[JobConstraints] = None,
        obfuscator: Optional[RegexObfuscator] = None,
        max_concurrent_targets: int = 8,
    ):
        """
        Initialize the job runner.

        Args:
            cluster: Source of stores and targets
            registry: Providers for store and target kinds
            namespace: Namespace the run is scoped to
            constraints: Optional store/target selection
            obfuscator: Regex bundle generator (default: RegexObfuscator())
            max_concurrent_targets: Upper bound on targets scanned at once
        """
        if max_concurrent_targets < 1:
            raise ValueError("max_concurrent_targets must be at least 1")
        self._cluster = cluster
        self._registry = registry
        self._namespace = namespace
        self._constraints = constraints
        self._max_concurrent_targets = max_concurrent_targets
        self._locations = LocationIndex(obfuscator)
        self._consumers = ConsumerIndex()
        self._stores = SecretStoreManager(cluster, registry)
        self._targets: list[tuple[TargetObject, ScanTarget]] = []

    async def run(self) -> RunResult:
        """
        Execute every phase of a scan.

        Returns:
            RunResult with findings, consumers and per-store/target outcomes

        Raises:
            EnumerationError: If stores or targets cannot be listed
        """
        start_time = time.time()
        result = RunResult()

        logger.info("Starting scan run", extra={"namespace": self._namespace})

        stores = await self._list_stores()
        await self._ingest_stores(stores, result)

        targets = await self._list_targets()
        opened = await self._open_targets(targets, result)

        oblivious = [(t, c) for t, c in opened if c.disclosure == Disclosure.OBLIVIOUS]
        literal = [(t, c) for t, c in opened if c.disclosure == Disclosure.LITERAL]

        bundles = self._locations.regexes()
        await self._for_each_target(
            oblivious, lambda t, c: self._scan_oblivious(t, c, bundles, result)
        )

        values = self._locations.values()
        await self._for_each_target(
            literal, lambda t, c: self._scan_literal(t, c, values, result)
        )

        findings = self._locations.get_duplicates()
        for finding in findings:
            finding.namespace = self._namespace

        by_target: dict[tuple[str, str], list[tuple[SecretLocation, str]]] = {}
        for finding in findings:
            for location in finding.locations:
                by_target.setdefault((location.kind, location.name), []).append(
                    (location, finding.hash)
                )
        attributing = [(t, c) for t, c in opened if c.supports_consumers]
        await self._for_each_target(
            attributing,
            lambda t, c: self._attribute_consumers(t, c, by_target.get((t.kind, t.name), [])),
        )

        consumers = self._consumers.list()
        for consumer in consumers:
            consumer.namespace = self._namespace

        result.findings = findings
        result.consumers = consumers
        result.duration_seconds = time.time() - start_time

        logger.info(
            "Scan run complete",
            extra={
                "namespace": self._namespace,
                "findings": len(findings),
                "consumers": len(consumers),
                "failed_stores": len(result.failed_stores),
                "failed_targets": len(result.failed_targets),
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result

    async def close(self) -> None:
        """Close every store reader and target client acquired during the run."""
        await self._stores.close()
        targets, self._targets = self._targets, []
        for target, client in targets:
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Failed to close target client {target.kind}/{target.name}: {e}")

    async def _list_stores(self) -> list[SecretStoreObject]:
        try:
            stores = await self._cluster.list_secret_stores(self._namespace)
        except Exception as e:
            raise EnumerationError(f"Failed to list secret stores in {self._namespace}: {e}") from e
        return [s for s in stores if store_selected(s, self._constraints)]

    async def _list_targets(self) -> list[TargetObject]:
        try:
            targets = await self._cluster.list_targets(self._namespace)
        except Exception as e:
            raise EnumerationError(f"Failed to list targets in {self._namespace}: {e}") from e
        return [t for t in targets if target_selected(t, self._constraints)]

    async def _ingest_stores(self, stores: list[SecretStoreObject], result: RunResult) -> None:
        for store in stores:
            try:
                reader = await self._stores.get(store)
                secrets = await reader.get_all_secrets(FindQuery())
            except Exception as e:
                logger.error(
                    f"Failed to read secret store {store.name}: {e}",
                    extra={"store": store.name, "error_type": type(e).__name__},
                )
                result.failed_stores.append(store.name)
                continue

            added = 0
            for key, value in sorted(secrets.items()):
                for location, leaf in flatten_secret(store.name, key, value):
                    self._locations.add(location, leaf)
                    added += 1
            result.used_stores.append(store.name)
            logger.debug("Ingested secret store", extra={"store": store.name, "locations": added})

    async def _open_targets(
        self, targets: list[TargetObject], result: RunResult
    ) -> list[tuple[TargetObject, ScanTarget]]:
        opened = []
        for target in targets:
            try:
                provider = self._registry.get_target(target.kind)
                client = await provider.new_client(self._cluster, target)
            except Exception as e:
                logger.error(
                    f"Failed to create client for target {target.name}: {e}",
                    extra={"target": target.name, "kind": target.kind},
                )
                result.failed_targets.append(target.name)
                continue
            self._targets.append((target, client))
            opened.append((target, client))
        return opened

    async def _for_each_target(
        self, clients: list[tuple[TargetObject, ScanTarget]], scan: _ScanFn
    ) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrent_targets)

        async def bounded(target: TargetObject, client: ScanTarget) -> None:
            async with semaphore:
                await scan(target, client)

        await asyncio.gather(*(bounded(t, c) for t, c in clients))

    async def _scan_oblivious(
        self,
        target: TargetObject,
        client: ScanTarget,
        bundles: dict[str, RegexBundle],
        result: RunResult,
    ) -> None:
        found: list[tuple[str, SecretLocation]] = []
        for digest, bundle in sorted(bundles.items()):
            if not any(bundle.patterns):
                # Empty values produce empty patterns, which match anything
                continue
            try:
                locations = await client.scan_for_secrets(list(bundle.patterns), bundle.threshold)
            except TargetTimeoutError as e:
                logger.error(f"Target {target.name} timed out, discarding its matches: {e}")
                if target.name not in result.failed_targets:
                    result.failed_targets.append(target.name)
                return
            except Exception as e:
                logger.error(
                    f"Failed to scan target {target.name}: {e}",
                    extra={"target": target.name, "hash_prefix": digest[:10]},
                )
                continue
            found.extend((digest, location) for location in locations)

        for digest, location in found:
            self._locations.add_by_regex(digest, location)
        logger.debug("Scanned oblivious target", extra={"target": target.name, "matches": len(found)})

    async def _scan_literal(
        self,
        target: TargetObject,
        client: ScanTarget,
        values: dict[str, bytes],
        result: RunResult,
    ) -> None:
        found: list[tuple[SecretLocation, bytes]] = []
        for digest, value in sorted(values.items()):
            if not value:
                continue
            try:
                locations = await client.scan_for_secrets([value_to_text(value)], 0)
            except TargetTimeoutError as e:
                logger.error(f"Target {target.name} timed out, discarding its matches: {e}")
                if target.name not in result.failed_targets:
                    result.failed_targets.append(target.name)
                return
            except Exception as e:
                logger.error(
                    f"Failed to scan target {target.name}: {e}",
                    extra={"target": target.name, "hash_prefix": digest[:10]},
                )
                continue
            found.extend((location, value) for location in locations)

        for location, value in found:
            self._locations.add(location, value)
        logger.debug("Scanned literal target", extra={"target": target.name, "matches": len(found)})

    async def _attribute_consumers(
        self,
        target: TargetObject,
        client: ScanTarget,
        locations: list[tuple[SecretLocation, str]],
    ) -> None:
        ref = TargetReference(name=target.name, namespace=self._namespace)
        found = []
        for location, digest in locations:
            try:
                reports = await client.scan_for_consumers(location, digest)
            except TargetTimeoutError as e:
                logger.error(f"Consumer scan on {target.name} timed out: {e}")
                return
            except Exception as e:
                logger.error(
                    f"Failed to attribute consumers on {target.name}: {e}",
                    extra={"target": target.name, "key": location.key},
                )
                continue
            found.extend(reports)

        for report in found:
            self._consumers.add(ref, report)
