"""Endpoint configuration.

Sources, lowest precedence first:
- EndpointConfig defaults
- YAML file passed to load_config()
- WEBVIEW_RPC_* environment variables

Example YAML:
    name: host
    default_timeout: 10
    max_call_id: 1000000
    log_frames: true
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from .registry import DEFAULT_MAX_CALL_ID

logger = logging.getLogger(__name__)

ENV_PREFIX = "WEBVIEW_RPC_"

# Values that mean "no default deadline"
_NO_TIMEOUT = {"", "0", "none", "null", "off"}
_TRUE = {"1", "true", "yes", "on"}


@dataclass
class EndpointConfig:
    """Configuration for an Endpoint.

    Attributes:
        name: Endpoint name used in log lines
        default_timeout: Deadline in seconds for unary calls (None = wait forever).
            Subscriptions never have a default deadline.
        max_call_id: Largest call id the endpoint may allocate
        log_frames: Log every frame at DEBUG
    """

    name: str = "endpoint"
    default_timeout: float | None = 30.0
    max_call_id: int = DEFAULT_MAX_CALL_ID
    log_frames: bool = False

    def __post_init__(self) -> None:
        if self.default_timeout is not None and self.default_timeout <= 0:
            raise ValueError("default_timeout must be positive or None")
        if self.max_call_id < 1:
            raise ValueError("max_call_id must be at least 1")

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], base: EndpointConfig | None = None
    ) -> EndpointConfig:
        """Build a config from a mapping of field values.

        Unknown keys are ignored with a warning.
        """
        known = {f.name for f in fields(cls)}
        updates: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            updates[key] = _coerce(key, value)
        return replace(base or cls(), **updates)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        base: EndpointConfig | None = None,
    ) -> EndpointConfig:
        """Build a config from WEBVIEW_RPC_* environment variables."""
        environ = os.environ if environ is None else environ
        data = {
            f.name: environ[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if ENV_PREFIX + f.name.upper() in environ
        }
        return cls.from_mapping(data, base=base)


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EndpointConfig:
    """Load config from an optional YAML file, then apply the environment.

    Raises:
        FileNotFoundError: If path is given but does not exist
        ValueError: If the file is not a YAML mapping or a value is invalid
    """
    config = EndpointConfig()
    if path is not None:
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        config = EndpointConfig.from_mapping(data, base=config)
    return EndpointConfig.from_env(environ, base=config)


def _coerce(key: str, value: Any) -> Any:
    if key == "default_timeout":
        if value is None or (isinstance(value, str) and value.strip().lower() in _NO_TIMEOUT):
            return None
        timeout = float(value)
        return timeout if timeout > 0 else None
    if key == "max_call_id":
        return int(value)
    if key == "log_frames":
        if isinstance(value, str):
            return value.strip().lower() in _TRUE
        return bool(value)
    return str(value)
