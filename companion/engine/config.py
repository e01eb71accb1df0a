"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via COMPANION_* env vars,
a YAML file (see yaml_config.py) or CLI flags, in increasing precedence.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class EngineConfig:
    """Companion core configuration."""

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3456

    # Agent defaults
    default_binary: str = "claude"
    default_model: str | None = None
    default_cwd: str = "."

    # Process supervision
    grace_timeout_seconds: float = 5.0
    kill_timeout_seconds: float = 2.0
    write_timeout_seconds: float = 10.0

    # Buffers
    max_messages: int = 500
    observer_queue_size: int = 1000

    # Environment bundles
    env_dir: str = "~/.companion/envs"
    strict_env_bundles: bool = False

    # Logging
    log_level: str = "INFO"
    log_dir: str = "~/.companion/logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from COMPANION_* environment variables."""
        companion_vars = sorted(
            k for k in os.environ if k.startswith("COMPANION_")
        )
        if companion_vars:
            logger.info(
                "EngineConfig.from_env: COMPANION_* env overrides: %s",
                ", ".join(companion_vars),
            )
        else:
            logger.debug("EngineConfig.from_env: no COMPANION_* env vars set, using defaults")

        return cls(
            host=os.getenv("COMPANION_HOST", cls.host),
            port=int(os.getenv("COMPANION_PORT", str(cls.port))),
            default_binary=os.getenv("COMPANION_BINARY", cls.default_binary),
            default_model=os.getenv("COMPANION_MODEL") or cls.default_model,
            default_cwd=os.getenv("COMPANION_DEFAULT_CWD", cls.default_cwd),
            grace_timeout_seconds=float(os.getenv(
                "COMPANION_GRACE_TIMEOUT", str(cls.grace_timeout_seconds)
            )),
            kill_timeout_seconds=float(os.getenv(
                "COMPANION_KILL_TIMEOUT", str(cls.kill_timeout_seconds)
            )),
            write_timeout_seconds=float(os.getenv(
                "COMPANION_WRITE_TIMEOUT", str(cls.write_timeout_seconds)
            )),
            max_messages=int(os.getenv(
                "COMPANION_MAX_MESSAGES", str(cls.max_messages)
            )),
            observer_queue_size=int(os.getenv(
                "COMPANION_QUEUE_SIZE", str(cls.observer_queue_size)
            )),
            env_dir=os.getenv("COMPANION_ENV_DIR", cls.env_dir),
            strict_env_bundles=_env_bool(
                "COMPANION_STRICT_ENV_BUNDLES", cls.strict_env_bundles
            ),
            log_level=os.getenv("COMPANION_LOG_LEVEL", cls.log_level),
            log_dir=os.getenv("COMPANION_LOG_DIR", cls.log_dir),
        )

    def merged(self, overrides: dict[str, Any]) -> EngineConfig:
        """Return a copy with known keys replaced; unknown keys are logged."""
        known = {f.name: f for f in fields(self)}
        values = {name: getattr(self, name) for name in known}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("EngineConfig: ignoring unknown setting %r", key)
                continue
            if value is None:
                continue
            current = values[key]
            if isinstance(current, bool):
                value = value if isinstance(value, bool) else str(value).lower() in _TRUE_VALUES
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            values[key] = value
        return EngineConfig(**values)
