"""
Abstract interfaces for the collaborators of a scan run.

Secret stores and scan targets are reached through providers registered by
kind; the cluster itself (jobs, stores, targets and the records a run
produces) is reached through a ClusterClient.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from secretscan.core.models import (
    Consumer,
    ConsumerFinding,
    Finding,
    Job,
    SecretLocation,
    SecretStoreObject,
    TargetObject,
)
from secretscan.infrastructure.errors import UnsupportedTargetError


class Disclosure(str, Enum):
    """How much of a secret a target may be shown."""

    OBLIVIOUS = "oblivious"
    LITERAL = "literal"


@dataclass
class FindQuery:
    """Selects keys from a secret store. The default matches every key."""

    name_regexp: str = ".*"
    tags: dict[str, str] = field(default_factory=dict)
    path: Optional[str] = None


class SecretStoreReader(ABC):
    """Read access to a single secret store."""

    @abstractmethod
    async def get_all_secrets(self, find: FindQuery) -> dict[str, bytes]:
        """
        Return every secret matching the query.

        Args:
            find: Key selection

        Returns:
            Mapping of key to raw value bytes
        """
        pass

    async def close(self) -> None:
        """Release the underlying client."""
        return None


class SecretStoreProvider(ABC):
    """Builds readers for one secret store kind."""

    @abstractmethod
    async def new_client(
        self, cluster: "ClusterClient", store: SecretStoreObject
    ) -> SecretStoreReader:
        pass


class ScanTarget(ABC):
    """
    A place secrets may have leaked to.

    ``disclosure`` decides which scan protocol the runner uses:
    OBLIVIOUS targets receive regex bundles, LITERAL targets receive the
    values themselves. ``supports_consumers`` marks targets that can report
    which processes or workloads use a secret.
    """

    disclosure: Disclosure = Disclosure.OBLIVIOUS
    supports_consumers: bool = False

    @abstractmethod
    async def scan_for_secrets(
        self, patterns: list[str], threshold: int
    ) -> list[SecretLocation]:
        """
        Search the target.

        Args:
            patterns: Regex patterns (OBLIVIOUS) or literal values (LITERAL)
            threshold: Matches needed to accept a location; unused for LITERAL

        Returns:
            Locations on this target holding the secret
        """
        pass

    async def scan_for_consumers(
        self, location: SecretLocation, content_hash: str
    ) -> list[ConsumerFinding]:
        """Report consumers of a secret at a location on this target."""
        raise UnsupportedTargetError(f"{type(self).__name__} does not report consumers")

    async def close(self) -> None:
        return None


class TargetProvider(ABC):
    """Builds scan targets for one target kind."""

    @abstractmethod
    async def new_client(self, cluster: "ClusterClient", target: TargetObject) -> ScanTarget:
        pass


class ClusterClient(ABC):
    """Namespaced access to jobs, stores, targets and the records a run produces."""

    # Inputs

    @abstractmethod
    async def list_secret_stores(self, namespace: str) -> list[SecretStoreObject]:
        pass

    @abstractmethod
    async def list_targets(self, namespace: str) -> list[TargetObject]:
        pass

    @abstractmethod
    async def get_target(
        self, namespace: str, name: str, kind: Optional[str] = None
    ) -> Optional[TargetObject]:
        """Look up a target by name; targets of different kinds may share a name."""
        pass

    @abstractmethod
    async def read_secret_key(self, namespace: str, name: str, key: str) -> bytes:
        """Read one key of a cluster secret, used to resolve adapter credentials."""
        pass

    # Jobs

    @abstractmethod
    async def get_job(self, namespace: str, name: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def list_jobs(self, namespace: Optional[str] = None) -> list[Job]:
        pass

    @abstractmethod
    async def update_job_status(self, job: Job) -> None:
        pass

    # Findings

    @abstractmethod
    async def list_findings(self, namespace: str) -> list[Finding]:
        pass

    @abstractmethod
    async def create_finding(self, finding: Finding) -> None:
        pass

    @abstractmethod
    async def update_finding(self, finding: Finding) -> None:
        pass

    @abstractmethod
    async def delete_finding(self, namespace: str, name: str) -> None:
        pass

    # Consumers

    @abstractmethod
    async def list_consumers(self, namespace: str) -> list[Consumer]:
        pass

    @abstractmethod
    async def create_consumer(self, consumer: Consumer) -> None:
        pass

    @abstractmethod
    async def update_consumer(self, consumer: Consumer) -> None:
        pass

    @abstractmethod
    async def delete_consumer(self, namespace: str, name: str) -> None:
        pass
