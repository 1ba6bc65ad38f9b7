"""
Core Layer - Hashing, regex obfuscation, location and consumer indexes, configuration.
"""

from secretscan.core.config import (
    ControllerConfig,
    LoggingConfig,
    ObfuscationConfig,
    RunnerConfig,
    SecretScanConfig,
    VirtualMachineConfig,
    load_config,
)
from secretscan.core.consumer_index import ConsumerIndex
from secretscan.core.hashing import content_hash
from secretscan.core.location_index import LocationIndex
from secretscan.core.locations import consumer_name, finding_name, sanitize_label, sort_locations
from secretscan.core.obfuscator import RegexBundle, RegexObfuscator

__all__ = [
    # Config
    "SecretScanConfig",
    "ObfuscationConfig",
    "VirtualMachineConfig",
    "RunnerConfig",
    "ControllerConfig",
    "LoggingConfig",
    "load_config",
    # Hashing and obfuscation
    "content_hash",
    "RegexBundle",
    "RegexObfuscator",
    # Indexes
    "LocationIndex",
    "ConsumerIndex",
    "sort_locations",
    "sanitize_label",
    "finding_name",
    "consumer_name",
]
