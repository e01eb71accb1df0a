"""Companion CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from companion.engine.config import EngineConfig


def _configure_logging(level: str, log_dir: str) -> Path:
    """Rotating file log plus stderr, shared format."""
    directory = Path(log_dir).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / "companion.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def build_config(args) -> EngineConfig:
    """Environment, then YAML file, then CLI flags."""
    config = EngineConfig.from_env()
    if args.config:
        from companion.engine.yaml_config import load_yaml_config

        config = load_yaml_config(args.config, base=config)
    overrides = {
        "host": args.host,
        "port": args.port,
        "default_cwd": args.cwd,
        "default_binary": args.binary,
        "log_level": "DEBUG" if args.verbose else None,
    }
    return config.merged({k: v for k, v in overrides.items() if v is not None})


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="companion",
        description="Companion: supervise agent CLIs and stream their sessions",
    )
    parser.add_argument("--host", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument(
        "--port", type=int,
        help="Server port (default: 3456, 0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with an 'engine' section",
    )
    parser.add_argument("--cwd", help="Default working directory for new sessions")
    parser.add_argument("--binary", help="Agent CLI binary (default: claude)")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    config = build_config(args)
    log_file = _configure_logging(config.log_level, config.log_dir)
    logging.getLogger(__name__).info(
        "Starting companion server cwd=%s port=%s config=%s log=%s",
        Path.cwd(),
        config.port,
        args.config or "<none>",
        log_file,
    )

    from companion.server.server import CompanionServer

    server = CompanionServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
