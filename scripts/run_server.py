"""Script to launch the chat relay server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_relay.config import load_config, setup_logging  # noqa: E402
from chat_relay.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the chat relay server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $CHAT_RELAY_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--backend",
        choices=["kv", "session"],
        default=None,
        help="Override the memory backend from the config file",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    if args.backend:
        cfg["memory"]["backend"] = args.backend
    setup_logging(cfg)

    app = create_app(cfg=cfg)

    # The stateful backend keeps sessions in process memory: one worker only.
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=str(cfg["logging"]["level"]).lower(),
    )


if __name__ == "__main__":
    main()
