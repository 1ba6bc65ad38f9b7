"""
Content-addressed index of secret locations.

Maps every observed location to the hash of its value and every hash to
the locations holding it. A hash seen at two or more locations is a
duplicate and becomes a Finding.
"""

import logging
import threading
from typing import Optional

from secretscan.core.hashing import content_hash
from secretscan.core.locations import finding_name, sanitize_label, sort_locations
from secretscan.core.models import Finding, SecretLocation
from secretscan.core.obfuscator import RegexBundle, RegexObfuscator

logger = logging.getLogger(__name__)


class LocationIndex:
    """
    In-memory dedup index for a single run.

    Regex bundles are generated lazily the first time a hash is seen and are
    never regenerated while the index lives, so every target in a run
    receives the same bundle for the same value. A new index (and therefore
    new bundles) is created for every run.
    """

    def __init__(self, obfuscator: Optional[RegexObfuscator] = None):
        self._obfuscator = obfuscator or RegexObfuscator()
        self._lock = threading.Lock()
        self._entries: dict[SecretLocation, str] = {}
        self._hash_to_locations: dict[str, list[SecretLocation]] = {}
        self._bundles: dict[str, RegexBundle] = {}
        self._values: dict[str, bytes] = {}

    def add(self, location: SecretLocation, value: bytes) -> str:
        """
        Record a location holding a known value.

        Args:
            location: Where the value was read or found
            value: Exact value bytes

        Returns:
            The content hash of the value
        """
        digest = content_hash(value)
        with self._lock:
            if digest not in self._bundles:
                self._bundles[digest] = self._obfuscator.generate(value)
                self._values[digest] = value
            self._record(location, digest)
        return digest

    def add_by_regex(self, digest: str, location: SecretLocation) -> None:
        """Record a location discovered through the regex protocol for a known hash."""
        with self._lock:
            self._record(location, digest)

    def _record(self, location: SecretLocation, digest: str) -> None:
        previous = self._entries.get(location)
        if previous == digest:
            return
        if previous is not None:
            remaining = self._hash_to_locations[previous]
            remaining.remove(location)
            if not remaining:
                del self._hash_to_locations[previous]
                self._bundles.pop(previous, None)
                self._values.pop(previous, None)
        self._entries[location] = digest
        self._hash_to_locations.setdefault(digest, []).append(location)

    def regexes(self) -> dict[str, RegexBundle]:
        """Snapshot of hash -> regex bundle."""
        with self._lock:
            return dict(self._bundles)

    def values(self) -> dict[str, bytes]:
        """Snapshot of hash -> value for every locally ingested secret."""
        with self._lock:
            return dict(self._values)

    @property
    def threshold(self) -> int:
        return self._obfuscator.threshold

    def hash_for(self, location: SecretLocation) -> Optional[str]:
        with self._lock:
            return self._entries.get(location)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_duplicates(self) -> list[Finding]:
        """
        Build one Finding per hash seen at two or more locations.

        Locations are sorted, the label comes from the first one, and the
        findings themselves are ordered by label then hash.
        """
        with self._lock:
            groups = [
                (digest, list(locations))
                for digest, locations in self._hash_to_locations.items()
                if len(locations) > 1
            ]

        findings = []
        for digest, locations in groups:
            ordered = sort_locations(locations)
            label = sanitize_label(ordered[0])
            findings.append(
                Finding(
                    hash=digest,
                    stable_label=label,
                    locations=ordered,
                    name=finding_name(label, digest),
                )
            )
        findings.sort(key=lambda f: (f.stable_label, f.hash))
        logger.debug(
            "Computed duplicate groups",
            extra={"findings": len(findings), "hashes": len(self._bundles)},
        )
        return findings
