"""
Services container for secretscan.

Builds every long-lived object the CLI needs from configuration and a
cluster manifest: the provider registry, the cluster client and the
job controller.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from secretscan.core.config import SecretScanConfig, load_config
from secretscan.core.models import STORE_KIND, VIRTUAL_MACHINE_KIND
from secretscan.infrastructure.memory_cluster import InMemoryClusterClient
from secretscan.infrastructure.registry import ProviderRegistry
from secretscan.infrastructure.stores import StaticSecretStoreProvider
from secretscan.infrastructure.targets import VirtualMachineProvider
from secretscan.services.consumer_status import ConsumerStatusChecker
from secretscan.services.job_controller import JobController


@dataclass
class ServicesContainer:
    """
    Container holding all shared service instances.

    Attributes:
        config: Application configuration
        registry: Store and target providers by kind
        cluster: Cluster client loaded from the manifest
        controller: Job controller driving scans
        consumer_status: Freshness checker for stored consumers
    """

    config: SecretScanConfig
    registry: ProviderRegistry
    cluster: InMemoryClusterClient
    controller: JobController
    consumer_status: ConsumerStatusChecker


def create_registry(config: SecretScanConfig) -> ProviderRegistry:
    """Registry with every provider shipped in the package."""
    registry = ProviderRegistry()
    registry.register_store(STORE_KIND, StaticSecretStoreProvider())
    registry.register_target(VIRTUAL_MACHINE_KIND, VirtualMachineProvider(config.virtual_machine))
    return registry


def create_services(
    config_path: Optional[Path] = None,
    manifest_path: Optional[Path] = None,
) -> ServicesContainer:
    """
    Create and initialize all services.

    Args:
        config_path: Optional path to configuration file. If None, uses
                    environment variables and defaults.
        manifest_path: Optional cluster manifest. If None, the cluster starts empty.

    Returns:
        ServicesContainer with all initialized services.

    Raises:
        ConfigError: If the configuration or manifest is invalid.
        FileNotFoundError: If a given path does not exist.
    """
    config = load_config(config_path)
    registry = create_registry(config)

    if manifest_path is not None:
        cluster = InMemoryClusterClient.from_manifest(manifest_path)
    else:
        cluster = InMemoryClusterClient()

    return ServicesContainer(
        config=config,
        registry=registry,
        cluster=cluster,
        controller=JobController(cluster, registry, config),
        consumer_status=ConsumerStatusChecker(cluster),
    )
