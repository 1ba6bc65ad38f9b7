"""
Static secret store: values declared inline in the store's spec.

Stands in for cloud secret managers when running from a manifest. Values
that are mappings are stored as JSON so the runner flattens them into
per-property locations, as it does for structured secrets from any store.
"""

import json
import logging
import re

from secretscan.core.models import SecretStoreObject
from secretscan.infrastructure.errors import SecretStoreError
from secretscan.infrastructure.interfaces import (
    ClusterClient,
    FindQuery,
    SecretStoreProvider,
    SecretStoreReader,
)

logger = logging.getLogger(__name__)


def _encode(value) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":")).encode("utf-8")
    return str(value).encode("utf-8")


class StaticSecretStore(SecretStoreReader):
    def __init__(self, name: str, data: dict[str, bytes]):
        self._name = name
        self._data = data
        self.closed = False

    async def get_all_secrets(self, find: FindQuery) -> dict[str, bytes]:
        try:
            pattern = re.compile(find.name_regexp)
        except re.error as e:
            raise SecretStoreError(f"Invalid find expression {find.name_regexp!r}: {e}") from e
        prefix = (find.path or "").strip("/")
        return {
            key: value
            for key, value in self._data.items()
            if pattern.search(key) and key.strip("/").startswith(prefix)
        }

    async def close(self) -> None:
        self.closed = True


class StaticSecretStoreProvider(SecretStoreProvider):
    """Builds StaticSecretStore readers from ``spec.data``."""

    async def new_client(
        self, cluster: ClusterClient, store: SecretStoreObject
    ) -> SecretStoreReader:
        data = store.spec.get("data")
        if data is None:
            raise SecretStoreError(f"Secret store {store.namespace}/{store.name} has no spec.data")
        if not isinstance(data, dict):
            raise SecretStoreError(
                f"Secret store {store.namespace}/{store.name}: spec.data must be a mapping"
            )
        logger.debug(
            "Opened static secret store",
            extra={"store": store.name, "keys": len(data)},
        )
        return StaticSecretStore(store.name, {str(k): _encode(v) for k, v in data.items()})
