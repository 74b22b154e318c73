"""3-layer configuration system for hostguard.

Loads and merges configuration from:
1. Default settings (built-in)
2. Config file (--config, or .hostguard/config.yaml in the working directory)
3. CLI parameters (override)
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Optional

import yaml

from ..errors import ConfigError

DEFAULT_CONFIG: dict = {
    "analysis": {
        "depth": "comprehensive",
        "parallel_execution": True,
        "max_parallel_agents": 3,
        "detector_timeout_seconds": 120,
        "adaptive_mode": True,
        "blockchain_detection": True,
        "extended_forensics": {
            "min_high_findings": 1,
            "min_medium_findings": 5,
        },
    },
    "detectors": {
        "core": {},
        "adaptive": {},
    },
    "privacy": {
        "redact_user_paths": True,
        "redact_usernames": True,
        "redact_ips": False,
    },
    "external_analysis": {
        "enabled": True,
        "provider": "none",
        "mode": "summary",
        "objective": "integrated",
        "min_findings_to_analyze": 1,
        "enable_logging": False,
        "log_dir": "./logs/llm-requests",
        "temperature": 0.1,
        "timeout_seconds": 120,
        "retry_attempts": 3,
        "retry_delay_seconds": 5,
        "anthropic": {
            "model": "claude-sonnet-4-5-20250929",
            "api_key_env": "ANTHROPIC_API_KEY",
            "max_tokens": 4000,
        },
        "openai": {
            "model": "gpt-4.1",
            "api_key_env": "OPENAI_API_KEY",
            "max_tokens": 4000,
        },
    },
    "logging": {
        "level": "warning",
    },
}

PROVIDER_NAMES = ("anthropic", "openai")
LOG_LEVELS = ("debug", "info", "warning", "error")


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Arrays are replaced, not merged."""
    result = {}
    for key in base:
        result[key] = base[key]
    for key, value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            result[key] = deep_merge(base_value, value)
        else:
            result[key] = value
    return result


def find_config_file(cwd: Optional[Path] = None) -> Optional[Path]:
    """Locate .hostguard/config.yaml under the working directory."""
    candidate = (cwd or Path.cwd()) / ".hostguard" / "config.yaml"
    return candidate if candidate.exists() else None


def load_config_file(config_path: Path) -> dict:
    """Load a YAML config file. An explicitly named file must be readable."""
    try:
        content = config_path.read_text(encoding="utf-8-sig")  # utf-8-sig strips BOM
        data = yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def validate_config(config: dict) -> dict:
    """Reject out-of-range values. Returns the config unchanged."""
    analysis = config.get("analysis", {})

    max_parallel = analysis.get("max_parallel_agents")
    if not isinstance(max_parallel, int) or not 1 <= max_parallel <= 10:
        raise ConfigError(f"analysis.max_parallel_agents must be 1..10, got {max_parallel!r}")

    timeout = analysis.get("detector_timeout_seconds")
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(f"analysis.detector_timeout_seconds must be > 0, got {timeout!r}")

    if analysis.get("depth") not in ("fast", "comprehensive", "deep"):
        raise ConfigError(f"analysis.depth must be fast, comprehensive or deep, got {analysis.get('depth')!r}")

    thresholds = analysis.get("extended_forensics", {})
    for key in ("min_high_findings", "min_medium_findings"):
        value = thresholds.get(key)
        if not isinstance(value, int) or value < 1:
            raise ConfigError(f"analysis.extended_forensics.{key} must be a positive int, got {value!r}")

    external = config.get("external_analysis", {})
    provider = external.get("provider", "none")
    if provider not in PROVIDER_NAMES + ("none",):
        raise ConfigError(f"Unknown external analysis provider: {provider}")
    if external.get("mode") not in ("summary", "full"):
        raise ConfigError(f"external_analysis.mode must be summary or full, got {external.get('mode')!r}")

    level = str(config.get("logging", {}).get("level", "warning")).lower()
    if level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}, got {level!r}")

    for phase in ("core", "adaptive"):
        entries = config.get("detectors", {}).get(phase) or {}
        if not isinstance(entries, dict):
            raise ConfigError(f"detectors.{phase} must map detector keys to import strings")

    return config


def get_effective_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
    cwd: Optional[Path] = None,
) -> dict:
    """Get the fully resolved, validated configuration for a run."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = config_path or find_config_file(cwd)
    if path is not None:
        config = deep_merge(config, load_config_file(Path(path)))
        config["_config_path"] = str(path)

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    return validate_config(config)
