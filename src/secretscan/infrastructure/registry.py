"""
Provider registry for mapping store and target kinds to their providers.
"""

import logging

from secretscan.infrastructure.errors import SecretStoreError, UnsupportedTargetError
from secretscan.infrastructure.interfaces import SecretStoreProvider, TargetProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Explicit registry of secret store and target providers, keyed by kind.

    Built once at process start and passed to the runner by reference.

    Example:
        >>> registry = ProviderRegistry()
        >>> registry.register_target("VirtualMachine", VirtualMachineProvider())
        >>> registry.target_kinds()
        ['VirtualMachine']
    """

    def __init__(self):
        self._targets: dict[str, TargetProvider] = {}
        self._stores: dict[str, SecretStoreProvider] = {}

    def register_target(self, kind: str, provider: TargetProvider) -> "ProviderRegistry":
        """
        Register the provider for a target kind.

        Args:
            kind: Target kind, e.g. 'VirtualMachine'
            provider: Provider building clients for that kind

        Returns:
            Self for method chaining
        """
        if kind in self._targets:
            logger.info(f"Replacing target provider for kind '{kind}'")
        self._targets[kind] = provider
        return self

    def register_store(self, kind: str, provider: SecretStoreProvider) -> "ProviderRegistry":
        """Register the provider for a secret store kind. Returns self for chaining."""
        if kind in self._stores:
            logger.info(f"Replacing secret store provider for kind '{kind}'")
        self._stores[kind] = provider
        return self

    def get_target(self, kind: str) -> TargetProvider:
        provider = self._targets.get(kind)
        if provider is None:
            raise UnsupportedTargetError(f"No target provider registered for kind '{kind}'")
        return provider

    def get_store(self, kind: str) -> SecretStoreProvider:
        provider = self._stores.get(kind)
        if provider is None:
            raise SecretStoreError(f"No secret store provider registered for kind '{kind}'")
        return provider

    def target_kinds(self) -> list[str]:
        return sorted(self._targets)

    def store_kinds(self) -> list[str]:
        return sorted(self._stores)
