"""Script to launch the local agent chat bridge."""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_client.bridge import create_app  # noqa: E402
from chat_client.config import ENV_CONFIG_PATH, load_config  # noqa: E402

APP_FACTORY = "chat_client.bridge:create_app"


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the agent chat bridge.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $AGENT_CHAT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST"),
        help="Host to bind the bridge to (default: bridge.host from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ["PORT"]) if os.environ.get("PORT") else None,
        help="Port to bind the bridge to (default: bridge.port from config)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: off)",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    level = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    bridge_cfg = cfg.get("bridge", {})
    options = dict(
        host=args.host or bridge_cfg.get("host", "127.0.0.1"),
        port=args.port or int(bridge_cfg.get("port", 8765)),
        log_level=level.lower(),
    )

    if args.reload:
        # reload needs an import string; the config path goes via the environment
        if args.config:
            os.environ[ENV_CONFIG_PATH] = os.path.abspath(args.config)
        uvicorn.run(APP_FACTORY, factory=True, reload=True, app_dir=SRC_DIR, **options)
    else:
        uvicorn.run(create_app(args.config), **options)


if __name__ == "__main__":
    main()
