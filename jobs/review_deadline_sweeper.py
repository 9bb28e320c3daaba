"""
Review Deadline Sweeper
Finds jobs whose review window has lapsed and finalizes each one in its own
transaction. Finalization is idempotent, so overlapping sweeps and on-read
finalization of the same job are harmless.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from config import Config
from models import Job, JobStatus
from services.job_lifecycle import JobLifecycleService
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class ReviewDeadlineSweeper:
    """Batch finalization of UNDER_REVIEW jobs past their deadline"""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or Config.REVIEW_SWEEP_BATCH_SIZE

    def due_job_ids(self, now: datetime) -> List[int]:
        with atomic_transaction() as session:
            return list(session.execute(
                select(Job.id)
                .where(
                    Job.status == JobStatus.UNDER_REVIEW.value,
                    Job.review_deadline.is_not(None),
                    Job.review_deadline <= now,
                )
                .order_by(Job.review_deadline, Job.id)
                .limit(self.batch_size)
            ).scalars())

    def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or get_naive_utc_now()
        results = {
            "scanned": 0,
            "completed": [],
            "disputed": [],
            "skipped": [],
            "errors": [],
        }

        job_ids = self.due_job_ids(now)
        results["scanned"] = len(job_ids)
        if not job_ids:
            logger.debug("🔍 REVIEW_SWEEP: no jobs past their review deadline")
            return results

        logger.info(f"🔍 REVIEW_SWEEP: {len(job_ids)} jobs past their review deadline")
        for job_id in job_ids:
            result = JobLifecycleService.finalize_in_own_transaction(job_id, now)
            if result.outcome == "completed":
                results["completed"].append(job_id)
            elif result.outcome == "disputed":
                results["disputed"].append(job_id)
            elif result.outcome == "error":
                results["errors"].append({"job_id": job_id, "error": result.detail})
            else:
                results["skipped"].append(job_id)

        logger.info(
            f"✅ REVIEW_SWEEP_DONE: completed={len(results['completed'])} disputed={len(results['disputed'])} "
            f"skipped={len(results['skipped'])} errors={len(results['errors'])}"
        )
        return results


async def run_review_deadline_sweep(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Scheduler entry point; the blocking DB work runs in a worker thread"""
    try:
        return await asyncio.to_thread(ReviewDeadlineSweeper().run_sweep, now)
    except Exception as e:
        logger.error(f"❌ REVIEW_SWEEP_ERROR: {e}")
        return {"scanned": 0, "completed": [], "disputed": [], "skipped": [], "errors": [{"error": str(e)}]}
