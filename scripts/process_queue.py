#!/usr/bin/env python3
"""Drain queued worker registrations (cron alternative to POST /api/workers/process-registrations).

Usage:
  python scripts/process_queue.py [--batch-size 10] [--loop --interval 30]
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.remonta import create_app
from app.remonta.db import session_scope
from app.remonta.modules.task_queue.processor import process_registrations


def run_once(app, batch_size: int | None) -> dict[str, int]:
    with app.app_context(), session_scope(app) as s:
        return process_registrations(s, batch_size=batch_size)


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--loop", action="store_true", help="Keep polling instead of exiting after one batch")
    parser.add_argument("--interval", type=int, default=30, help="Seconds between polls with --loop")
    args = parser.parse_args()

    app = create_app()
    while True:
        result = run_once(app, args.batch_size)
        print(
            f"fetched={result['fetched']} completed={result['completed']} "
            f"retried={result['retried']} failed={result['failed']}",
            flush=True,
        )
        if not args.loop:
            break
        time.sleep(max(1, args.interval))


if __name__ == "__main__":
    main()
