"""
Image Batch — Layered Config Loader

Three-tier configuration loading:
  1. Base file batch_config.yaml (IB_CONFIG_PATH, working directory, repo root)
  2. Per-environment overlay files (config/{IB_ENV}.yaml merged over base)
  3. Environment variable overrides (IB_ prefixed, "__" separates levels)

load_settings() turns the merged dict into typed PipelineSettings that
the orchestrator and CLI consume.

Usage:
    from batch_engine.config import load_config, load_settings, get_config_value

    cfg = load_config(env="prod")
    daily = get_config_value("budget.daily", cfg, default=None)
    settings = load_settings(cfg)

Environment variables:
    IB_CONFIG_PATH   — explicit base config file
    IB_ENV           — active profile (dev, staging, prod)
    IB_CONFIG_DIR    — directory for overlay files (default: config/)
    IB_*             — overrides (e.g., IB_BUDGET__DAILY=5, IB_DISPATCH__GEMINI__CONCURRENCY=4)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from batch_engine.budget import BackendPricing, BudgetLimits, load_pricing
from batch_engine.circuit_breaker import BreakerConfig
from batch_engine.dispatch import DispatchConfig
from batch_engine.resources import ResourceLimits
from batch_engine.retry import RetryPolicy

logger = logging.getLogger("image_batch.config")

CONFIG_FILENAME = "batch_config.yaml"
ENV_PREFIX = "IB_"
_META_VARS = {"IB_ENV", "IB_CONFIG_DIR", "IB_CONFIG_PATH"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any) -> bool:
    """Set d[k1][k2]...=value. Returns False when an existing value is in the way."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
        if not isinstance(d, dict):
            return False
    if isinstance(d.get(keys[-1]), dict):
        return False
    d[keys[-1]] = value
    return True


def _parse_value(value: str) -> Any:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Tier 1: Base File
# ═══════════════════════════════════════════════════════════════════

def find_base_config() -> Path | None:
    candidates = [
        os.environ.get("IB_CONFIG_PATH", ""),
        str(Path.cwd() / CONFIG_FILENAME),
        str(Path(__file__).parent.parent / CONFIG_FILENAME),
    ]
    for candidate in candidates:
        if candidate and Path(candidate).is_file():
            return Path(candidate)
    return None


def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: Path | None,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then config/{env}.yaml beside the base file.
    """
    env = env or os.environ.get("IB_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("IB_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
    ]
    if base_path is not None:
        candidates.append(base_path.parent / "config" / f"{env}.yaml")

    for path in candidates:
        if path.exists():
            try:
                overlay = _load_yaml(path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)
                continue
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    IB_SECTION__KEY=value → {"section": {"key": value}}

    Values are parsed as YAML (numbers, booleans, lists). Single
    underscores stay part of the key: IB_BUDGET__PER_REQUEST → budget.per_request.
    """
    environ = os.environ if environ is None else environ
    entries = []
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key in _META_VARS:
            continue
        path = [p for p in key[len(ENV_PREFIX):].lower().split("__") if p]
        if path:
            entries.append((path, key, value))

    # nested keys first: IB_BUDGET__DAILY wins over a scalar IB_BUDGET
    entries.sort(key=lambda e: (-len(e[0]), e[1]))
    overrides: dict[str, Any] = {}
    for path, key, value in entries:
        if not _set_nested(overrides, path, _parse_value(value)):
            logger.warning("Ignoring env override %s: conflicts with a nested override", key)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str | Path | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (IB_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (batch_config.yaml)
    """
    path = Path(base_path) if base_path else find_base_config()
    config: dict[str, Any] = {}
    if path is not None:
        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
        config = _load_yaml(path)
        logger.debug("Loaded base config: %s", path)

    overlay = _load_overlay_file(path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides(environ)
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("IB_ENV", "default")
    config["_config_source"] = str(path) if path else "<defaults>"
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("dispatch.gemini.concurrency", cfg, 10)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class PipelineSettings:
    """Everything the orchestrator needs, resolved from config."""
    default_backend: str = ""
    item_timeout: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    breaker_overrides: dict[str, BreakerConfig] = field(default_factory=dict)
    dispatch: dict[str, DispatchConfig] = field(default_factory=dict)
    budget: BudgetLimits = field(default_factory=BudgetLimits)
    budget_warning_threshold: float = 80.0
    pricing: dict[str, BackendPricing] = field(default_factory=lambda: load_pricing(None))
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    ledger_write_retries: int = 3
    ledger_fsync: bool = True
    progress_interval: float = 1.0
    log_level: str = "INFO"
    log_json: bool = True
    backends: dict[str, dict[str, Any]] = field(default_factory=dict)

    def dispatch_for(self, backend: str) -> DispatchConfig:
        return self.dispatch.get(backend) or DispatchConfig.for_backend(backend)


def load_settings(config: dict[str, Any] | None = None) -> PipelineSettings:
    """Build PipelineSettings from a merged config dict (load_config() if None)."""
    if config is None:
        config = load_config()

    def section(name: str) -> dict[str, Any]:
        value = config.get(name) or {}
        if not isinstance(value, dict):
            raise ValueError(f"Config section '{name}' must be a mapping")
        return value

    breaker_cfg = section("circuit_breaker")
    breaker_default = BreakerConfig.from_dict(breaker_cfg)
    breaker_overrides = {
        name: BreakerConfig.from_dict({**breaker_cfg, **(cfg or {})})
        for name, cfg in (breaker_cfg.get("backends") or {}).items()
    }

    dispatch_cfg = section("dispatch")
    default_dispatch = dispatch_cfg.get("default") or {}
    dispatch = {
        name: DispatchConfig.for_backend(name, {**default_dispatch, **(cfg or {})})
        for name, cfg in dispatch_cfg.items()
        if name != "default"
    }

    budget_cfg = section("budget")
    ledger_cfg = section("ledger")
    logging_cfg = section("logging")
    pipeline_cfg = section("pipeline")

    settings = PipelineSettings(
        default_backend=str(pipeline_cfg.get("default_backend", "") or ""),
        item_timeout=float(pipeline_cfg.get("item_timeout", 60.0)),
        retry=RetryPolicy.from_dict(section("retry")),
        breaker=breaker_default,
        breaker_overrides=breaker_overrides,
        dispatch=dispatch,
        budget=BudgetLimits.from_dict(budget_cfg),
        budget_warning_threshold=float(budget_cfg.get("warning_threshold", 80.0)),
        pricing=load_pricing(section("pricing")),
        resources=ResourceLimits.from_dict(section("resources")),
        ledger_write_retries=int(ledger_cfg.get("write_retries", 3)),
        ledger_fsync=bool(ledger_cfg.get("fsync", True)),
        progress_interval=float(pipeline_cfg.get("progress_interval", 1.0)),
        log_level=str(logging_cfg.get("level", "INFO")).upper(),
        log_json=bool(logging_cfg.get("json", True)),
        backends={k: dict(v or {}) for k, v in section("backends").items()},
    )
    logger.debug(
        "Settings loaded: env=%s backends=%s",
        config.get("_active_env", "default"), sorted(settings.backends),
    )
    return settings
