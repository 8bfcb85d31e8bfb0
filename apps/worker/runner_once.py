"""
Worker runner (one-shot mode for cron jobs).
Processes ONE job and exits: the job named on the command line, or the next
claimable one.
"""
import argparse
import logging
import sys
import time

from apps.worker.pipeline_context import PipelineDeps
from apps.worker.runner import claim_job, process_claimed
from apps.worker.steps.step07_delivery import process_pending_deliveries
from packages.db.database import init_db

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one processing job through the report pipeline.")
    parser.add_argument("--job-id", help="Job to drive; defaults to the next pending job")
    parser.add_argument(
        "--deliveries",
        action="store_true",
        help="Also sweep completed jobs for pending delivery before exiting",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    init_db()
    deps = PipelineDeps()

    job_id = args.job_id or claim_job()
    if not job_id:
        logger.info("No pending jobs found.")
    else:
        logger.info(f"[{job_id}] Starting pipeline...")
        start = time.monotonic()
        process_claimed(job_id, deps)
        logger.info(f"[{job_id}] Finished in {time.monotonic() - start:.1f}s")

    if args.deliveries:
        results = process_pending_deliveries(deps=deps)
        logger.info(f"Delivery sweep handled {len(results)} job(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
