"""Entrypoint.

Usage:
  python -m tradegate.app.main api                      # run FastAPI server
  python -m tradegate.app.main api --config config.yaml
"""

from __future__ import annotations

import argparse
from pathlib import Path

import uvicorn

from tradegate.infrastructure.logging.logging import configure_logging, get_logger
from tradegate.infrastructure.utils.config import load_config


def main() -> None:
    parser = argparse.ArgumentParser("tradegate")
    parser.add_argument("command", choices=["api"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.log_level, json_logs=config.json_logs)
    log = get_logger("main")

    if args.command == "api":
        from tradegate.controllers.api_controller import create_app

        host = args.host or config.api.host
        port = args.port or config.api.port
        log.info("api_starting", host=host, port=port, store=config.store.type)
        uvicorn.run(create_app(config), host=host, port=port, reload=False, log_config=None)
        return


if __name__ == "__main__":
    main()
