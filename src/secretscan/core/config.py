"""
Configuration module for secretscan.

Supports loading from YAML/JSON files with environment variable overrides.
Default values are loaded from defaults.yaml for maintainability.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from secretscan.infrastructure.errors import ConfigError

logger = logging.getLogger(__name__)

# Path to the default configuration file
_DEFAULTS_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

_defaults_cache: dict[str, Any] | None = None


def _load_defaults() -> dict[str, Any]:
    """Load default configuration values from defaults.yaml."""
    global _defaults_cache

    if _defaults_cache is not None:
        return _defaults_cache

    if not _DEFAULTS_CONFIG_PATH.exists():
        logger.warning("Defaults config not found", extra={"path": str(_DEFAULTS_CONFIG_PATH)})
        _defaults_cache = {}
        return _defaults_cache

    try:
        content = _DEFAULTS_CONFIG_PATH.read_text(encoding="utf-8")
        _defaults_cache = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse defaults config: {e}")
        _defaults_cache = {}

    return _defaults_cache


def _get_default(section: str, key: str, fallback: Any = None) -> Any:
    """Get a default value from the defaults config."""
    section_defaults = _load_defaults().get(section, {})
    return section_defaults.get(key, fallback)


@dataclass
class ObfuscationConfig:
    """Regex obfuscation policy used for untrusted targets."""

    alphabet: str = field(
        default_factory=lambda: _get_default("obfuscation", "alphabet", "alphanumeric")
    )
    good_patterns: int = field(
        default_factory=lambda: _get_default("obfuscation", "good_patterns", 10)
    )
    bad_patterns: int = field(
        default_factory=lambda: _get_default("obfuscation", "bad_patterns", 5)
    )
    chars_per_position: int = field(
        default_factory=lambda: _get_default("obfuscation", "chars_per_position", 7)
    )
    threshold: int = field(default_factory=lambda: _get_default("obfuscation", "threshold", 9))


@dataclass
class VirtualMachineConfig:
    """HTTP behaviour of the VM agent target."""

    poll_interval: float = field(
        default_factory=lambda: _get_default("virtual_machine", "poll_interval", 5.0)
    )
    scan_timeout: float = field(
        default_factory=lambda: _get_default("virtual_machine", "scan_timeout", 600.0)
    )
    request_timeout: float = field(
        default_factory=lambda: _get_default("virtual_machine", "request_timeout", 30.0)
    )
    max_retries: int = field(
        default_factory=lambda: _get_default("virtual_machine", "max_retries", 3)
    )


@dataclass
class RunnerConfig:
    max_concurrent_targets: int = field(
        default_factory=lambda: _get_default("runner", "max_concurrent_targets", 8)
    )


@dataclass
class ControllerConfig:
    timeout_requeue_seconds: float = field(
        default_factory=lambda: _get_default("controller", "timeout_requeue_seconds", 1.0)
    )
    restart_orphaned_runs: bool = field(
        default_factory=lambda: _get_default("controller", "restart_orphaned_runs", False)
    )


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = field(default_factory=lambda: _get_default("logging", "level", "INFO"))
    format: str = field(
        default_factory=lambda: _get_default(
            "logging", "format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    )


@dataclass
class SecretScanConfig:
    """Main configuration class for secretscan."""

    obfuscation: ObfuscationConfig = field(default_factory=ObfuscationConfig)
    virtual_machine: VirtualMachineConfig = field(default_factory=VirtualMachineConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "SecretScanConfig":
        """
        Load configuration from a YAML or JSON file.

        Args:
            path: Path to the configuration file (.yaml, .yml, or .json)

        Returns:
            SecretScanConfig instance with loaded values

        Raises:
            FileNotFoundError: If the config file doesn't exist
            ConfigError: If the file format is unsupported or the content is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        content = path.read_text(encoding="utf-8")

        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content) if content.strip() else {}
            else:
                raise ConfigError(f"Unsupported config file format: {path.suffix}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Invalid configuration file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict) -> "SecretScanConfig":
        """Create SecretScanConfig from a dictionary."""
        config = cls()
        section_types = {
            "obfuscation": ObfuscationConfig,
            "virtual_machine": VirtualMachineConfig,
            "runner": RunnerConfig,
            "controller": ControllerConfig,
            "logging": LoggingConfig,
        }
        for section, section_type in section_types.items():
            if section in data:
                try:
                    setattr(config, section, section_type(**(data[section] or {})))
                except TypeError as e:
                    raise ConfigError(f"Invalid '{section}' section: {e}") from e
        return config

    def apply_env_overrides(self) -> "SecretScanConfig":
        """
        Apply environment variable overrides to the configuration.

        Environment variables follow the pattern: SECRETSCAN_<SECTION>_<KEY>
        Examples:
            - SECRETSCAN_OBFUSCATION_THRESHOLD
            - SECRETSCAN_VIRTUAL_MACHINE_POLL_INTERVAL
            - SECRETSCAN_RUNNER_MAX_CONCURRENT_TARGETS
            - SECRETSCAN_LOGGING_LEVEL

        Returns:
            Self with environment overrides applied
        """
        env_mappings = {
            # Obfuscation config
            "SECRETSCAN_OBFUSCATION_ALPHABET": ("obfuscation", "alphabet", str),
            "SECRETSCAN_OBFUSCATION_GOOD_PATTERNS": ("obfuscation", "good_patterns", int),
            "SECRETSCAN_OBFUSCATION_BAD_PATTERNS": ("obfuscation", "bad_patterns", int),
            "SECRETSCAN_OBFUSCATION_CHARS_PER_POSITION": (
                "obfuscation",
                "chars_per_position",
                int,
            ),
            "SECRETSCAN_OBFUSCATION_THRESHOLD": ("obfuscation", "threshold", int),
            # Virtual machine config
            "SECRETSCAN_VIRTUAL_MACHINE_POLL_INTERVAL": ("virtual_machine", "poll_interval", float),
            "SECRETSCAN_VIRTUAL_MACHINE_SCAN_TIMEOUT": ("virtual_machine", "scan_timeout", float),
            "SECRETSCAN_VIRTUAL_MACHINE_REQUEST_TIMEOUT": (
                "virtual_machine",
                "request_timeout",
                float,
            ),
            "SECRETSCAN_VIRTUAL_MACHINE_MAX_RETRIES": ("virtual_machine", "max_retries", int),
            # Runner config
            "SECRETSCAN_RUNNER_MAX_CONCURRENT_TARGETS": ("runner", "max_concurrent_targets", int),
            # Controller config
            "SECRETSCAN_CONTROLLER_TIMEOUT_REQUEUE_SECONDS": (
                "controller",
                "timeout_requeue_seconds",
                float,
            ),
            "SECRETSCAN_CONTROLLER_RESTART_ORPHANED_RUNS": (
                "controller",
                "restart_orphaned_runs",
                _parse_bool,
            ),
            # Logging config
            "SECRETSCAN_LOGGING_LEVEL": ("logging", "level", str),
        }

        for env_var, (section, key, converter) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                try:
                    converted = converter(value)
                except ValueError as e:
                    raise ConfigError(f"Invalid value for {env_var}: {value!r}") from e
                setattr(getattr(self, section), key, converted)

        return self

    def to_dict(self) -> dict:
        """Convert configuration to a dictionary."""
        return asdict(self)

    def to_yaml(self) -> str:
        """Serialize configuration to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def to_json(self) -> str:
        """Serialize configuration to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def save(self, path: Path | str) -> None:
        """
        Save configuration to a file.

        Args:
            path: Path to save the configuration (.yaml, .yml, or .json)

        Raises:
            ConfigError: If the file format is unsupported
        """
        path = Path(path)

        if path.suffix in (".yaml", ".yml"):
            content = self.to_yaml()
        elif path.suffix == ".json":
            content = self.to_json()
        else:
            raise ConfigError(f"Unsupported config file format: {path.suffix}")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def _parse_bool(value: str) -> bool:
    """Parse a string to boolean."""
    return value.lower() in ("true", "1", "yes", "on")


def load_config(
    config_path: Optional[Path | str] = None, apply_env: bool = True
) -> SecretScanConfig:
    """
    Load configuration with optional environment variable overrides.

    Args:
        config_path: Optional path to config file. If None, uses defaults.
        apply_env: Whether to apply environment variable overrides.

    Returns:
        SecretScanConfig instance
    """
    if config_path:
        config = SecretScanConfig.from_file(config_path)
    else:
        config = SecretScanConfig()

    if apply_env:
        config.apply_env_overrides()

    return config
