"""Daemon bridge: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from daemonbridge.engine.config import BridgeConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "bridge.yaml"


def _configure_logging(config: BridgeConfig, verbose: bool = False) -> Path | None:
    """Rotating file log under the bridge's base dir, mirrored to stderr."""
    level_name = "DEBUG" if verbose else config.log_level.upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = config.log_dir / "bridge.log"
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
    except OSError as exc:
        logger.warning("File logging disabled (%s): %s", log_file, exc)
        return None
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


def _resolve_config_path(explicit: str | None, config: BridgeConfig) -> Path | None:
    """Explicit --config wins; otherwise auto-discover <base_dir>/bridge.yaml."""
    if explicit:
        return Path(explicit).expanduser()
    candidate = config.base_path / DEFAULT_CONFIG_NAME
    if candidate.exists():
        return candidate
    return None


def build_config(args) -> BridgeConfig:
    """Env config, overlaid by the YAML file, overlaid by CLI flags."""
    from daemonbridge.engine.yaml_config import load_yaml_config

    config = BridgeConfig.from_env()
    config_path = _resolve_config_path(args.config, config)
    if config_path is not None:
        config = load_yaml_config(config_path, base=config)

    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level
    if args.no_relay:
        config.relay_enabled = False
    for name in args.plugin or []:
        if name not in config.watch_plugins:
            config.watch_plugins.append(name)
    return config


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="daemonbridge",
        description="Bridge between a desktop UI host and local daemons on Unix sockets",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help=f"YAML config file (default: <base_dir>/{DEFAULT_CONFIG_NAME} if present)",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface for the host-facing HTTP server",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--plugin", metavar="NAME", action="append",
        help="Also watch liveness of plugin daemon NAME (repeatable)",
    )
    parser.add_argument(
        "--no-relay", action="store_true",
        help="Do not relay the primary daemon's domain events",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Log level (DEBUG, INFO, WARNING, ...)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Shorthand for --log-level DEBUG",
    )
    args = parser.parse_args()

    try:
        config = build_config(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: cannot load configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    log_file = _configure_logging(config, verbose=args.verbose)
    logger.info(
        "Starting daemon bridge host=%s port=%s base_dir=%s plugins=%s log=%s",
        config.host,
        config.port,
        config.base_dir,
        ",".join(config.watch_plugins) or "<none>",
        log_file or "<stderr only>",
    )

    from daemonbridge.host.server import BridgeServer

    server = BridgeServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
