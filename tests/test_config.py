"""Tests for configuration layering: env vars, YAML file, CLI flags."""
from __future__ import annotations

import os
import tempfile
from argparse import Namespace
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from companion.app import build_config
from companion.engine.config import EngineConfig
from companion.engine.yaml_config import load_yaml_config


def _args(**kwargs) -> Namespace:
    defaults = dict(host=None, port=None, config=None, cwd=None, binary=None, verbose=False)
    defaults.update(kwargs)
    return Namespace(**defaults)


def _clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if not k.startswith("COMPANION_")}


def test_defaults() -> None:
    with patch.dict(os.environ, _clean_env(), clear=True):
        config = EngineConfig.from_env()
    assert config.port == 3456
    assert config.default_binary == "claude"
    assert config.default_model is None
    assert config.strict_env_bundles is False


def test_from_env_overrides() -> None:
    env = _clean_env()
    env.update({
        "COMPANION_PORT": "4000",
        "COMPANION_MODEL": "sonnet",
        "COMPANION_GRACE_TIMEOUT": "1.5",
        "COMPANION_MAX_MESSAGES": "20",
        "COMPANION_STRICT_ENV_BUNDLES": "yes",
    })
    with patch.dict(os.environ, env, clear=True):
        config = EngineConfig.from_env()

    assert config.port == 4000
    assert config.default_model == "sonnet"
    assert config.grace_timeout_seconds == 1.5
    assert config.max_messages == 20
    assert config.strict_env_bundles is True


def test_merged_coerces_and_ignores_unknown_keys() -> None:
    config = EngineConfig().merged({
        "port": "9000",
        "strict_env_bundles": "false",
        "kill_timeout_seconds": 3,
        "default_model": None,
        "no_such_setting": 1,
    })

    assert config.port == 9000
    assert config.strict_env_bundles is False
    assert config.kill_timeout_seconds == 3.0
    assert config.default_model is None
    assert not hasattr(config, "no_such_setting")


def test_load_yaml_config() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "companion.yaml"
        path.write_text(yaml.safe_dump({
            "engine": {"port": 5000, "max_messages": 50, "strict_env_bundles": True, "bogus": 1},
            "extras": {"ignored": True},
        }))

        config = load_yaml_config(path, base=EngineConfig(default_binary="agent"))

    assert config.port == 5000
    assert config.max_messages == 50
    assert config.strict_env_bundles is True
    assert config.default_binary == "agent"


def test_load_yaml_config_errors() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(FileNotFoundError):
            load_yaml_config(Path(tmpdir) / "missing.yaml")

        bad = Path(tmpdir) / "bad.yaml"
        bad.write_text("engine: [1, 2")
        with pytest.raises(yaml.YAMLError):
            load_yaml_config(bad)

        wrong = Path(tmpdir) / "wrong.yaml"
        wrong.write_text("engine: 5\n")
        with pytest.raises(ValueError):
            load_yaml_config(wrong)


def test_build_config_precedence() -> None:
    env = _clean_env()
    env.update({"COMPANION_PORT": "4000", "COMPANION_BINARY": "from-env"})
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "companion.yaml"
        path.write_text("engine:\n  port: 5000\n  default_cwd: /from/yaml\n")

        with patch.dict(os.environ, env, clear=True):
            config = build_config(_args(config=str(path), port=6000, verbose=True))

    assert config.port == 6000
    assert config.default_cwd == "/from/yaml"
    assert config.default_binary == "from-env"
    assert config.log_level == "DEBUG"
