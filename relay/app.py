"""agent-relay: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(log_dir: Path | None = None) -> Path:
    """Send root logging to a rotating file and stderr. Returns the log file path."""
    log_level = os.getenv("RELAY_LOG_LEVEL", "INFO").upper()
    log_dir = log_dir or Path.home() / ".agent-relay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "relay-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agent-relay",
        description="HTTP/SSE relay in front of long-running Claude agent processes",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: config server.host, else localhost)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: PORT env, config server.port, else 3000)",
    )
    parser.add_argument(
        "--config", metavar="PATH", default=None,
        help="Config file (default: CLAUDE_CONFIG_PATH, ./config.json, ./relay.yaml)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR", default=None,
        help="Directory holding sessions.json and projects.json",
    )
    args = parser.parse_args()

    from relay.engine.config import load_config
    from relay.engine.errors import ConfigError
    from relay.shared.services.process_cleanup import cleanup_stale_agent_processes
    from relay.web.server import RelayServer

    log_file = configure_logging()

    try:
        config = load_config(args.config, data_dir=args.data_dir)
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(2)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    config.data_dir.mkdir(parents=True, exist_ok=True)

    if os.getenv("RELAY_CLEANUP_STALE_AGENTS", "0").lower() in {"1", "true", "yes"}:
        try:
            reaped = cleanup_stale_agent_processes(config.agent_binary, log=logger.info)
            if reaped:
                logger.warning("Reaped %d stale agent process(es) at startup", reaped)
        except Exception:
            logger.exception("Startup stale-process cleanup failed")

    logger.info(
        "Starting agent-relay cwd=%s host=%s port=%s config=%s config_exists=%s "
        "data_dir=%s binary=%s base_url=%s api_key_configured=%s background=%s log=%s",
        Path.cwd(), config.host, config.port, config.config_path, config.config_exists,
        config.data_dir, config.agent_binary, config.base_url,
        bool(config.resolve_api_key()), config.keep_running_in_background, log_file,
    )

    server = RelayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
