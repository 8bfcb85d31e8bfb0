"""
Worker runner script.
Polls the database for pending jobs, drives them with the orchestrator, then
sweeps completed jobs for delivery.
"""
import logging
import os
import platform
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_

from apps.worker.pipeline import run_job
from apps.worker.pipeline_context import PipelineDeps
from apps.worker.steps.step07_delivery import process_pending_deliveries
from packages.db.database import get_session, init_db
from packages.db.models import ProcessingJob
from packages.shared.models.enums import JobStatus

logger = logging.getLogger(__name__)

# Config
HEARTBEAT_INTERVAL = 10  # Seconds
STALE_THRESHOLD_MINUTES = 10
POLL_INTERVAL = 2
DELIVERY_SWEEP_LIMIT = 50
WORKER_ID = f"{platform.node()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def get_utc_now():
    return datetime.now(timezone.utc)


def claim_job(worker_id: str = WORKER_ID) -> str | None:
    """Find and atomically claim a pending job, or reclaim one whose worker went quiet."""
    with get_session() as session:
        stale_cutoff = get_utc_now() - timedelta(minutes=STALE_THRESHOLD_MINUTES)
        is_stale = or_(
            ProcessingJob.heartbeat_at < stale_cutoff,
            and_(ProcessingJob.heartbeat_at.is_(None), ProcessingJob.updated_at < stale_cutoff),
        )

        # Stale in_progress jobs first (recovery)
        stale_job = (
            session.query(ProcessingJob)
            .filter(ProcessingJob.status == JobStatus.IN_PROGRESS.value)
            .filter(is_stale)
            .order_by(ProcessingJob.created_at)
            .first()
        )
        if stale_job:
            logger.warning(f"[{stale_job.id}] Stale job (last heartbeat {stale_job.heartbeat_at}). Reclaiming.")
            target = stale_job
        else:
            target = (
                session.query(ProcessingJob)
                .filter_by(status=JobStatus.PENDING.value)
                .order_by(ProcessingJob.created_at)
                .first()
            )
        if not target:
            return None

        job_id = target.id
        expected_status = target.status
        now = get_utc_now()
        claim = session.query(ProcessingJob).filter(ProcessingJob.id == job_id, ProcessingJob.status == expected_status)
        if stale_job:
            claim = claim.filter(is_stale)
        rows_updated = claim.update(
            {
                "status": JobStatus.IN_PROGRESS.value,
                "worker_id": worker_id,
                "claimed_at": now,
                "heartbeat_at": now,
                "started_at": target.started_at or now,
            },
            synchronize_session=False,
        )
        session.commit()

        if rows_updated == 1:
            return job_id
        logger.info(f"[{job_id}] Claimed by another worker")
        return None


class HeartbeatThread(threading.Thread):
    def __init__(self, job_id: str):
        super().__init__(daemon=True)
        self.job_id = job_id
        self.stop_event = threading.Event()

    def run(self):
        logger.debug(f"[{self.job_id}] Heartbeat started")
        while not self.stop_event.is_set():
            try:
                with get_session() as session:
                    session.query(ProcessingJob).filter_by(id=self.job_id).update({"heartbeat_at": get_utc_now()})
            except Exception as e:
                logger.error(f"[{self.job_id}] Heartbeat failed: {e}")
            self.stop_event.wait(HEARTBEAT_INTERVAL)
        logger.debug(f"[{self.job_id}] Heartbeat stopped")

    def stop(self):
        self.stop_event.set()


def process_claimed(job_id: str, deps: PipelineDeps) -> None:
    beater = HeartbeatThread(job_id)
    beater.start()
    try:
        run_job(job_id, deps=deps)
    finally:
        beater.stop()
        beater.join()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    init_db()
    deps = PipelineDeps()
    logger.info(f"Worker runner started. ID: {WORKER_ID}")

    while True:
        try:
            job_id = claim_job()
            if job_id:
                logger.info(f"[{job_id}] Claimed. Starting pipeline...")
                process_claimed(job_id, deps)
                logger.info(f"[{job_id}] Processing complete.")
            else:
                delivered = process_pending_deliveries(limit=DELIVERY_SWEEP_LIMIT, deps=deps)
                if delivered:
                    logger.info(f"Delivery sweep handled {len(delivered)} job(s)")
                time.sleep(POLL_INTERVAL)

        except KeyboardInterrupt:
            logger.info("Worker stopping by user request.")
            break
        except Exception as exc:
            logger.exception(f"Unexpected error in worker loop: {exc}")
            time.sleep(5)


if __name__ == "__main__":
    main()
