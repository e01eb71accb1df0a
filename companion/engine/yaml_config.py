"""YAML configuration loader.

Example YAML:
    engine:
      port: 3456
      default_binary: claude
      default_cwd: /path/to/project
      grace_timeout_seconds: 5
      max_messages: 1000
      strict_env_bundles: true

Values in the ``engine`` section overlay the environment-derived
configuration. Unknown keys are logged and ignored.
"""
from __future__ import annotations

import logging
from pathlib import Path

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load a YAML config file on top of ``base`` (default: from_env)."""
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    engine = raw.get("engine") or {}
    if not isinstance(engine, dict):
        raise ValueError(f"{path}: 'engine' section must be a mapping")
    for section in sorted(set(raw) - {"engine"}):
        logger.warning("load_yaml_config: ignoring unknown section %r", section)

    config = base if base is not None else EngineConfig.from_env()
    return config.merged(engine)
