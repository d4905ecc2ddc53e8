#!/usr/bin/env python
"""Run the sync job worker outside the API process.

Polls the ``sync_jobs`` table, runs due jobs on a thread pool and
enqueues a dispatch job every ``SYNC_DISPATCH_INTERVAL_SECONDS``.
Stops cleanly on SIGINT/SIGTERM.

Usage:
    python -m scripts.run_worker                    # run until stopped
    python -m scripts.run_worker --once             # drain due jobs and exit
    python -m scripts.run_worker --once --dispatch  # enqueue a dispatch first
    python -m scripts.run_worker --concurrency 8
"""

import argparse
import logging
import signal
import sys
import threading

from database import get_session_local
from logging_config import setup_logging
from services.sync_worker import JobRunner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the sync job worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run every job that is due now, then exit",
    )
    parser.add_argument(
        "--dispatch",
        action="store_true",
        help="Enqueue a dispatch job (and run queue housekeeping) before running",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of jobs to run in parallel (default: SYNC_WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between queue polls (default: SYNC_WORKER_POLL_SECONDS)",
    )
    return parser


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, frame):
        logger.info("Received signal %d, stopping after current batch", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv: list[str] | None = None, runner: JobRunner | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if args.concurrency is not None and args.concurrency < 1:
        print("--concurrency must be at least 1", file=sys.stderr)
        return 2

    runner = runner or JobRunner(
        get_session_local(),
        concurrency=args.concurrency,
        poll_interval=args.poll_interval,
    )

    if args.once:
        try:
            if args.dispatch:
                runner.enqueue_dispatch()
            count = runner.run_pending()
        finally:
            runner.close()
        print(f"Ran {count} job(s)")
        return 0

    if args.dispatch:
        logger.info("--dispatch is implied when running continuously")

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    runner.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
