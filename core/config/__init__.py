"""Config subsystem public API.

Provides:
    get_config() -> AggregatedConfig (upstream/server/logging/metrics)
    as_dict()    -> dict representation
    ConfigError  -> raised on validation / unknown key
"""

from .loader import (  # noqa: F401
    AggregatedConfig,
    get_config,
    as_dict,
    ConfigError,
    clear_config_cache,
)
from .schemas.upstream import UpstreamConfig  # noqa: F401

__all__ = [
    "AggregatedConfig",
    "UpstreamConfig",
    "get_config",
    "as_dict",
    "ConfigError",
    "clear_config_cache",
]
