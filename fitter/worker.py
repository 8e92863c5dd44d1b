"""Long-lived pipeline process.

Usage:
    python -m fitter.worker                      # run the daily triggers forever
    python -m fitter.worker --once aggregate --day 2026-10-17
    python -m fitter.worker --once suggestions
"""

import argparse
import json
import logging
import signal
import threading
from typing import Optional

from fitter.core.config import load_config
from fitter.core.dates import parse_day
from fitter.db import session as db_session
from fitter.services.jobs import JOB_NAMES, PipelineJobs
from fitter.services.scheduler import Scheduler

logger = logging.getLogger("fitter.worker")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fitter daily aggregation and suggestion worker.")
    parser.add_argument("--once", choices=JOB_NAMES, help="Run a single job and exit.")
    parser.add_argument("--day", help="Day to aggregate (YYYY-MM-DD). Only used with --once aggregate.")
    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if config.db_path != db_session.DB_PATH:
        db_session.configure_database(config.db_path)
    db_session.create_tables()

    jobs = PipelineJobs(config, db_session.SessionLocal)
    scheduler = Scheduler.from_config(config, jobs.registry())

    if args.once:
        kwargs = {}
        if args.day:
            if args.once != "aggregate":
                parser.error("--day is only valid with --once aggregate")
            kwargs["day"] = parse_day(args.day)
        result = scheduler.run_once(args.once, **kwargs)
        payload = result.as_dict() if hasattr(result, "as_dict") else {"job": args.once, "count": result}
        print(json.dumps(payload, indent=2))
        return 1 if payload.get("failed") else 0

    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        logger.info("shutdown_requested signal=%s", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    scheduler.run_forever(stop)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
