"""
Property-based tests for SecretScanConfig round-trip serialization.

**Feature: secret-dedup, Property 5: Configuration Round-Trip**
"""

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from secretscan.core.config import (
    ControllerConfig,
    LoggingConfig,
    ObfuscationConfig,
    RunnerConfig,
    SecretScanConfig,
    VirtualMachineConfig,
    load_config,
)
from secretscan.infrastructure.errors import ConfigError

safe_text = st.text(
    alphabet=st.characters(
        whitelist_categories=("L", "N", "P", "S"),
        blacklist_characters="\x00\n\r\t",
    ),
    min_size=1,
    max_size=50,
).filter(lambda s: s.strip() != "")

log_level = st.sampled_from(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
positive_float = st.floats(min_value=0.0, max_value=3600.0, allow_nan=False, allow_infinity=False)


@st.composite
def obfuscation_config_strategy(draw):
    """Generate valid ObfuscationConfig instances."""
    return ObfuscationConfig(
        alphabet=draw(st.sampled_from(["alphanumeric", "alphanumeric_symbols"])),
        good_patterns=draw(st.integers(min_value=1, max_value=50)),
        bad_patterns=draw(st.integers(min_value=0, max_value=50)),
        chars_per_position=draw(st.integers(min_value=1, max_value=20)),
        threshold=draw(st.integers(min_value=1, max_value=50)),
    )


@st.composite
def virtual_machine_config_strategy(draw):
    """Generate valid VirtualMachineConfig instances."""
    return VirtualMachineConfig(
        poll_interval=draw(positive_float),
        scan_timeout=draw(positive_float),
        request_timeout=draw(positive_float),
        max_retries=draw(st.integers(min_value=0, max_value=10)),
    )


@st.composite
def secretscan_config_strategy(draw):
    """Generate valid SecretScanConfig instances."""
    return SecretScanConfig(
        obfuscation=draw(obfuscation_config_strategy()),
        virtual_machine=draw(virtual_machine_config_strategy()),
        runner=RunnerConfig(max_concurrent_targets=draw(st.integers(min_value=1, max_value=64))),
        controller=ControllerConfig(
            timeout_requeue_seconds=draw(positive_float),
            restart_orphaned_runs=draw(st.booleans()),
        ),
        logging=LoggingConfig(level=draw(log_level), format=draw(safe_text)),
    )


@given(config=secretscan_config_strategy())
@settings(max_examples=100, deadline=None)
def test_config_yaml_round_trip(config: SecretScanConfig):
    """Saving to YAML and loading back yields an equal configuration."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.yaml"
        config.save(path)
        loaded = SecretScanConfig.from_file(path)

    assert loaded == config


@given(config=secretscan_config_strategy())
@settings(max_examples=100, deadline=None)
def test_config_json_round_trip(config: SecretScanConfig):
    """Saving to JSON and loading back yields an equal configuration."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.json"
        config.save(path)
        loaded = SecretScanConfig.from_file(path)

    assert loaded == config


def test_defaults_come_from_defaults_file():
    config = SecretScanConfig()

    assert config.obfuscation.good_patterns == 10
    assert config.obfuscation.bad_patterns == 5
    assert config.obfuscation.chars_per_position == 7
    assert config.obfuscation.threshold == 9
    assert config.runner.max_concurrent_targets == 8
    assert config.controller.restart_orphaned_runs is False


def test_partial_file_keeps_other_defaults(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("obfuscation:\n  threshold: 12\n", encoding="utf-8")

    config = SecretScanConfig.from_file(path)

    assert config.obfuscation.threshold == 12
    assert config.obfuscation.good_patterns == 10
    assert config.virtual_machine == VirtualMachineConfig()


def test_unknown_key_is_rejected(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("runner:\n  workers: 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="runner"):
        SecretScanConfig.from_file(path)


@pytest.mark.parametrize(
    "name,content",
    [("config.toml", "a = 1"), ("config.yaml", "- a\n- b\n"), ("config.json", "{not json")],
)
def test_invalid_files_are_rejected(tmp_path: Path, name: str, content: str):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        SecretScanConfig.from_file(path)


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        SecretScanConfig.from_file(tmp_path / "absent.yaml")


def test_env_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SECRETSCAN_OBFUSCATION_THRESHOLD", "7")
    monkeypatch.setenv("SECRETSCAN_VIRTUAL_MACHINE_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("SECRETSCAN_CONTROLLER_RESTART_ORPHANED_RUNS", "yes")
    monkeypatch.setenv("SECRETSCAN_LOGGING_LEVEL", "DEBUG")

    config = load_config()

    assert config.obfuscation.threshold == 7
    assert config.virtual_machine.poll_interval == 0.5
    assert config.controller.restart_orphaned_runs is True
    assert config.logging.level == "DEBUG"


def test_invalid_env_override(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SECRETSCAN_RUNNER_MAX_CONCURRENT_TARGETS", "many")

    with pytest.raises(ConfigError, match="SECRETSCAN_RUNNER_MAX_CONCURRENT_TARGETS"):
        load_config()


def test_load_config_without_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SECRETSCAN_OBFUSCATION_THRESHOLD", "3")

    assert load_config(apply_env=False).obfuscation.threshold == 9
