"""
Infrastructure Layer - Cluster access, secret stores, scan targets and their registry.
"""

from secretscan.infrastructure.errors import (
    ConfigError,
    EnumerationError,
    NonRetryableError,
    PersistenceError,
    RetryableError,
    SecretScanError,
    SecretStoreError,
    TargetError,
    TargetTimeoutError,
    UnsupportedTargetError,
)
from secretscan.infrastructure.interfaces import (
    ClusterClient,
    Disclosure,
    FindQuery,
    ScanTarget,
    SecretStoreProvider,
    SecretStoreReader,
    TargetProvider,
)
from secretscan.infrastructure.retry import RetryConfig, with_retry

__all__ = [
    # Errors
    "SecretScanError",
    "EnumerationError",
    "TargetError",
    "RetryableError",
    "NonRetryableError",
    "TargetTimeoutError",
    "UnsupportedTargetError",
    "SecretStoreError",
    "PersistenceError",
    "ConfigError",
    # Interfaces
    "ClusterClient",
    "Disclosure",
    "FindQuery",
    "ScanTarget",
    "SecretStoreProvider",
    "SecretStoreReader",
    "TargetProvider",
    # Retry
    "RetryConfig",
    "with_retry",
]
