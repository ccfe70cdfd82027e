from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import httpx

from app.services import build_services
from app.settings import Settings
from store.db import open_database


async def _run(args: argparse.Namespace) -> dict:
    settings = Settings()
    db = open_database(args.db or settings.db_path)
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            services = build_services(settings, db, client)
            if args.override:
                services.scheduler.enable_override(
                    args.override, duration_minutes=args.override_minutes
                )
            payload = await services.aggregator.run_cycle()
            return payload.to_dict()
    finally:
        with db.lock:
            db.conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one polling cycle and print it.")
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument(
        "--override",
        metavar="REASON",
        default=None,
        help="bypass polling windows and quotas for this run",
    )
    parser.add_argument("--override-minutes", type=int, default=60)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    print(json.dumps(asyncio.run(_run(args)), indent=2))


if __name__ == "__main__":
    main()
