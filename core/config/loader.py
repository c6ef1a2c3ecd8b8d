"""Configuration loading & validation.

Precedence (last wins): base.yaml → overrides.local.yaml → ENV (RELAY__*).

Each known section is validated by its own schema
(`core.config.schemas.*`); unknown top-level sections are rejected.
Configuration is resolved once and cached; tests call
`clear_config_cache()` between cases.
"""
from __future__ import annotations

import logging
import os
import pathlib
import threading
from functools import lru_cache
from typing import Any, Dict, Type

import yaml
from core import metrics
from core.errors import validate_error_type
from pydantic import BaseModel, ConfigDict

from .schemas.observability import LoggingConfig, MetricsConfig
from .schemas.server import ServerConfig
from .schemas.upstream import UpstreamConfig


class AggregatedConfig(BaseModel):
    schema_version: int = 1
    upstream: UpstreamConfig = UpstreamConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    metrics: MetricsConfig = MetricsConfig()

    model_config = ConfigDict(extra="forbid")


DEFAULT_CONFIG_DIR = "configs"
CONFIG_DIR_ENV = "RELAY_CONFIG_DIR"
ENV_PREFIX = "RELAY__"

SUB_SCHEMA_CLASSES: Dict[str, Type[BaseModel]] = {
    "upstream": UpstreamConfig,
    "server": ServerConfig,
    "logging": LoggingConfig,
    "metrics": MetricsConfig,
}

logger = logging.getLogger("chatrelay.config")


class ConfigError(Exception):
    pass


def _load_yaml_if_exists(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _merge_dict(
    base: Dict[str, Any], override: Dict[str, Any]
) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def _cast_env_value(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        try:
            return float(value)
        except ValueError:
            return value


def _apply_env(cfg: Dict[str, Any]) -> None:
    prefix_len = len(ENV_PREFIX)
    for env_key, value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        path_parts = env_key[prefix_len:].lower().split("__")
        target = cfg
        for part in path_parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]
        target[path_parts[-1]] = _cast_env_value(value)
        dotted_path = ".".join(path_parts)
        metrics.inc("env_override_total", {"path": dotted_path})
        # value masked: overrides commonly carry the upstream credential
        logger.info(
            "config env override path=%s value=*** source=env", dotted_path
        )


_lock = threading.Lock()


def _resolve_config_dir() -> pathlib.Path:
    """Resolve config directory each call honoring env var changes."""
    return pathlib.Path(os.getenv(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR))


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Configs written before versioning carried the upstream block as
    ``qwen.api``; move it to ``upstream`` and stamp schema_version 1."""
    if "schema_version" not in data:
        logger.warning("config schema_version missing, assuming 1")
        data["schema_version"] = 1
    legacy = data.pop("qwen", None)
    if isinstance(legacy, dict) and "upstream" not in data:
        api = legacy.get("api", legacy)
        if isinstance(api, dict):
            renamed = dict(api)
            if "key" in renamed:
                renamed["api_key"] = renamed.pop("key")
            renamed.pop("stream", None)  # upstream is always streamed
            data["upstream"] = renamed
    return data


def _validate_sub_schemas(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate each known section via its schema class."""
    validated: Dict[str, Any] = {}
    for name, cls in SUB_SCHEMA_CLASSES.items():
        if name in raw:
            try:
                validated[name] = cls.model_validate(raw[name] or {})
            except Exception as e:  # noqa: BLE001
                raise ConfigError(
                    f"Validation failed for section '{name}': {e}"
                ) from e
    return validated


def _normalize_and_validate(raw: Dict[str, Any]) -> None:
    """Cross-field bounds validation.

    Violations are counted in ``config_validation_errors_total`` and
    reported together in a single ConfigError:
      - upstream.max_tokens > 0
      - upstream.timeout_s > 0
      - upstream.max_in_memory_bytes > 0
    """
    errors: list[tuple[str, str, str]] = []  # (path, code, msg)
    upstream = raw.get("upstream")
    if isinstance(upstream, dict):
        for key in ("max_tokens", "timeout_s", "max_in_memory_bytes"):
            val = upstream.get(key)
            if isinstance(val, (int, float)) and val <= 0:
                errors.append(
                    (f"upstream.{key}", "config-out-of-range", ">0 required")
                )

    if errors:
        for path, code, _ in errors:
            validate_error_type(code)
            metrics.inc(
                "config_validation_errors_total",
                {"path": path, "code": code},
            )
        details = ", ".join(f"{p}:{c}:{m}" for p, c, m in errors)
        raise ConfigError(f"config validation failed: {details}")


@lru_cache(maxsize=1)
def get_config() -> AggregatedConfig:  # noqa: D401
    with _lock:
        cfg_dir = _resolve_config_dir()
        base_cfg = _load_yaml_if_exists(cfg_dir / "base.yaml")
        overrides_cfg = _load_yaml_if_exists(cfg_dir / "overrides.local.yaml")
        merged = _merge_dict(base_cfg, overrides_cfg)
        _apply_env(merged)
        migrated = _migrate_legacy(merged)
        _normalize_and_validate(migrated)
        validated_sub = _validate_sub_schemas(migrated)
        try:
            agg = AggregatedConfig.model_validate(
                {**migrated, **validated_sub}
            )
        except Exception as e:  # noqa: BLE001
            raise ConfigError(str(e)) from e
        return agg


def clear_config_cache() -> None:
    """Clear cached config (primarily for tests)."""
    get_config.cache_clear()


def as_dict() -> Dict[str, Any]:
    return get_config().model_dump()
