"""
Location helpers: deterministic ordering, labels and resource names.
"""

import hashlib
import re
from collections.abc import Iterable

from secretscan.core.models import ConsumerKey, SecretLocation

# Kubernetes object names (DNS-1123 subdomain)
MAX_NAME_LENGTH = 253
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9.-]+")
_HASH_SUFFIX_LENGTH = 10


def sort_locations(locations: Iterable[SecretLocation]) -> list[SecretLocation]:
    """Return locations ordered by key, then property."""
    return sorted(locations, key=SecretLocation.sort_key)


def sanitize_label(location: SecretLocation) -> str:
    """
    Derive a stable, human readable label from a location.

    Produces ``kind.name.key[.property]`` in lower case, with ``_``, ``/``
    and ``:`` replaced by ``-`` and surrounding slashes removed from the
    key and property.

    Example:
        >>> loc = SecretLocation("Prod_Store", "SecretStore", "v1", "/api/token/")
        >>> sanitize_label(loc)
        'secretstore.prod-store.api-token'
    """
    parts = [
        location.kind.strip().lower(),
        location.name.strip().lower(),
        location.key.strip("/"),
    ]
    if location.property:
        parts.append(location.property.strip("/"))
    label = ".".join(parts)
    for char in ("_", "/", ":"):
        label = label.replace(char, "-")
    return label.lower()


def _to_dns_name(text: str, suffix: str) -> str:
    name = _INVALID_NAME_CHARS.sub("-", text.lower())
    name = re.sub(r"-{2,}", "-", name).strip("-.")
    max_prefix = MAX_NAME_LENGTH - len(suffix) - 1
    name = name[:max_prefix].rstrip("-.")
    if not name:
        return suffix
    return f"{name}-{suffix}"


def finding_name(stable_label: str, content_hash: str) -> str:
    """Resource name for a finding: DNS-safe label plus a short hash suffix."""
    return _to_dns_name(stable_label, content_hash[:_HASH_SUFFIX_LENGTH])


def consumer_name(key: ConsumerKey) -> str:
    """Resource name for a consumer, stable for a given consumer key."""
    digest = hashlib.sha256(key.as_id().encode("utf-8")).hexdigest()
    label = f"{key.target_name}.{key.consumer_type}.{key.consumer_id}"
    return _to_dns_name(label, digest[:_HASH_SUFFIX_LENGTH])
