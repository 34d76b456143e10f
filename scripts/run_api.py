#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import pathlib
import sys

import uvicorn

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from xray.main import create_app


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the trace ingestion and query API.")
    parser.add_argument("--host", default="127.0.0.1", help="bind address")
    parser.add_argument("--port", type=int, default=4319, help="bind port")
    parser.add_argument("--log-level", default="info", help="python logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
