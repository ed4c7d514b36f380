#!/usr/bin/env python3
"""
Maintenance CLI for the fund performance store.
Usage:
  python cli.py serve [--host HOST] [--port PORT]
  python cli.py init-db
  python cli.py prune-duplicates
"""

import argparse
import sys
from typing import List, Optional

from app import ConfigError, Settings, create_app
from fund_store import FundStore, StorageError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fund-perf-ingest")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the upload/health HTTP server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None, help="defaults to $PORT or 8089")

    sub.add_parser("init-db", help="create the funds table and indexes")
    sub.add_parser(
        "prune-duplicates",
        help="delete repeated (name, upload_date) snapshots, keeping the earliest",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.command == "serve":
        import uvicorn

        uvicorn.run(create_app(settings), host=args.host, port=args.port or settings.port)
        return 0

    store = FundStore(settings.database)
    try:
        store.init_schema()
        if args.command == "prune-duplicates":
            removed = store.prune_duplicates()
            print(f"Removed {removed} duplicate snapshot(s); {store.count_funds()} remaining")
        else:
            print(f"Schema ready at {settings.database}")
    except StorageError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
