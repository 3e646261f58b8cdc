#!/usr/bin/env python3
"""Convenience script to run the Depthflow order book engine API.

Streams Binance spot depth + trades for subscribed symbols, keeps a live
order book per symbol and serves predictions over HTTP.

USAGE:
  python run_server.py
  python run_server.py --symbols BTCUSDT,PAXGUSDT --port 8000

ENVIRONMENT VARIABLES:
  DEPTHFLOW_CONFIG     - Path to the YAML config (default: config/depthflow.yaml)
  ML_BACKEND_URL       - Remote model backend; empty disables it
  DEPTHFLOW_SYMBOLS    - Comma separated symbols to stream on startup
  HOST / PORT          - Bind address (default: 0.0.0.0:8000)
  LOG_LEVEL            - Logging level (default: INFO)
"""

import argparse
import logging
import os
import sys
from pathlib import Path

import uvicorn

# Add project root to Python path
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from depthflow.config import load_config, split_symbols
from depthflow.http_api import create_app


def main():
    parser = argparse.ArgumentParser(description="Depthflow order book engine")
    parser.add_argument("--config", default=None, help="YAML config path")
    parser.add_argument("--symbols", default=os.environ.get("DEPTHFLOW_SYMBOLS", ""),
                        help="Comma separated symbols to stream on startup")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    args = parser.parse_args()

    config = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if args.symbols:
        config.stream.autostart_symbols = list(split_symbols(args.symbols))

    mode = "remote + local fallback" if config.gateway.remote_url else "local ensemble only"
    print("\n" + "=" * 60)
    print("  DEPTHFLOW ORDER BOOK ENGINE")
    print(f"  Predictions: {mode}")
    print(f"  Streaming:   {', '.join(config.stream.autostart_symbols) or '(on demand)'}")
    print("=" * 60 + "\n")

    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
