from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

import structlog
import uvicorn

from failover.config import load_config
from failover.store import Store
from failover_api.app import create_app
from failover_api.settings import FailoverSettings


logger = structlog.get_logger(__name__)

DEFAULT_PORT = 8081


def configure_logging(level: str) -> None:
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Telegram and DingTalk tokens are embedded in request URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def reset_token(data_path: str) -> int:
    store = Store(data_path)
    store.load()
    print("=== Reset admin token ===")
    try:
        token = input("New token: ").strip()
    except EOFError:
        token = ""
    if not token:
        print("Token must not be empty", file=sys.stderr)
        return 1
    store.set_auth_token(token)
    print("Token updated. Restart the service and log in with the new token.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="DNS failover monitor")
    parser.add_argument("--config", default=os.getenv("FAILOVER_CONFIG", "config.yaml"), help="Path to YAML config")
    parser.add_argument("--data", default=os.getenv("FAILOVER_DATA_PATH", "data.json"), help="Path to the JSON data file")
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: server.port from config, 8081)")
    parser.add_argument("--reset-token", action="store_true", help="Prompt for a new admin token and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("FAILOVER_LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)

    if args.reset_token:
        return reset_token(args.data)

    bootstrap = load_config(Path(args.config))
    settings = FailoverSettings()
    settings = replace(
        settings,
        config_path=args.config,
        data_path=args.data,
        host=args.host or settings.host,
        port=args.port or settings.port or bootstrap.server.port or DEFAULT_PORT,
        log_level=args.log_level,
    )

    app = create_app(settings, bootstrap=bootstrap)
    logger.info("DNS failover server starting", host=settings.host, port=settings.port, data=settings.data_path)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=str(args.log_level).lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
