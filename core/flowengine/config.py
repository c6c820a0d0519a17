"""Shared engine configuration.

Reads ~/.flowengine/configuration.json once per call and layers environment
overrides on top, so the CLI, the FlowRuntime and tests all resolve settings
the same way.

Example configuration file::

    {
      "execution": {"max_parallel_nodes": 8, "run_timeout_minutes": 10},
      "build": {"max_nodes": 250},
      "logging": {"log_dir": "/var/lib/flowengine/runs"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWENGINE_CONFIG_FILE = Path.home() / ".flowengine" / "configuration.json"

# Environment variable -> (section, key, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "FLOWENGINE_MAX_PARALLEL_NODES": ("execution", "max_parallel_nodes", int),
    "FLOWENGINE_RUN_TIMEOUT_MINUTES": ("execution", "run_timeout_minutes", float),
    "FLOWENGINE_SLOW_NODE_MS": ("execution", "slow_node_ms", int),
    "FLOWENGINE_EXPRESSION_EVALUATOR": ("execution", "expression_evaluator", str),
    "FLOWENGINE_LOG_DIR": ("logging", "log_dir", str),
}


def get_engine_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load the raw configuration dict. Missing or unreadable files yield {}."""
    config_path = path or FLOWENGINE_CONFIG_FILE
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable configuration %s: %s", config_path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    merged = {section: dict(values) for section, values in raw.items() if isinstance(values, dict)}
    for env_var, (section, key, cast) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value is None or value == "":
            continue
        try:
            merged.setdefault(section, {})[key] = cast(value)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", env_var, value, cast.__name__)
    return merged


def _coerce(value: Any, expected: type) -> Any:
    """Cast a file value to a field type. Raises ValueError or TypeError when it does not fit."""
    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ValueError(f"not a boolean: {value!r}")
    if isinstance(value, bool) or isinstance(value, dict | list):
        raise TypeError(f"unexpected {type(value).__name__}")
    if expected is str and not isinstance(value, str):
        raise TypeError(f"unexpected {type(value).__name__}")
    return expected(value)


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Settings consumed by the executor, builder, runtime and CLI."""

    # execution
    max_parallel_nodes: int = 5
    run_timeout_minutes: float = 30
    max_timeout_minutes: float = 240
    retry_delay_ms: int = 1000
    max_backoff_ms: int = 60_000
    slow_node_ms: int = 5000
    expression_evaluator: str = "safe"  # "safe" or "fallback"
    http_timeout_seconds: float = 30.0

    # build
    max_nodes: int = 100
    max_edges: int = 200
    cycle_detection: bool = True

    # logging
    log_dir: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _SECTIONS = ("execution", "build", "logging")

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "EngineConfig":
        expected: dict[str, type] = {
            f.name: f.type for f in fields(cls) if f.name != "extra" and isinstance(f.type, type)
        }
        expected["log_dir"] = str
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for section in cls._SECTIONS:
            for key, value in (raw.get(section) or {}).items():
                if key not in expected:
                    extra[f"{section}.{key}"] = value
                    continue
                try:
                    values[key] = _coerce(value, expected[key])
                except (TypeError, ValueError):
                    logger.warning(
                        "Ignoring %s.%s=%r: expected %s", section, key, value, expected[key].__name__
                    )
        return cls(**values, extra=extra)

    @classmethod
    def load(cls, path: Path | None = None) -> "EngineConfig":
        """Build config from the configuration file plus environment overrides."""
        return cls.from_dict(_apply_env_overrides(get_engine_config_file(path)))

    def run_timeout_seconds(self, timeout_minutes: float | None = None) -> float:
        """Resolve a run timeout, clamped to ``max_timeout_minutes``."""
        minutes = timeout_minutes if timeout_minutes is not None else self.run_timeout_minutes
        if minutes <= 0:
            minutes = self.run_timeout_minutes
        return min(minutes, self.max_timeout_minutes) * 60
